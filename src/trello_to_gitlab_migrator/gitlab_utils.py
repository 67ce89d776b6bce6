"""GitLab target built on python-gitlab, implementing the TargetClient protocol."""

from __future__ import annotations

import logging
import mimetypes
from typing import TYPE_CHECKING, Any

from gitlab import Gitlab

from .models import TargetIssue, TargetMilestone, TargetNote, TargetUpload, TargetUser
from .trello_utils import parse_datetime

if TYPE_CHECKING:
    import datetime as dt
    from pathlib import Path

    from gitlab.v4.objects import Project as GitlabProject
    from gitlab.v4.objects import ProjectIssue

    from .options import GitLabOptions

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)


def get_client(url: str, token: str | None) -> Gitlab:
    """Get a GitLab client using the private token."""
    return Gitlab(url, private_token=token)


def issue_from_attributes(attrs: dict[str, Any]) -> TargetIssue:
    milestone = attrs.get("milestone") or {}
    return TargetIssue(
        id=attrs["id"],
        iid=attrs["iid"],
        title=attrs.get("title") or "",
        description=attrs.get("description") or "",
        state="closed" if attrs.get("state") == "closed" else "opened",
        labels=list(attrs.get("labels") or []),
        milestone_id=milestone.get("id"),
        assignee_ids=[assignee["id"] for assignee in attrs.get("assignees") or []],
        due_date=attrs.get("due_date"),
    )


def note_from_attributes(attrs: dict[str, Any]) -> TargetNote:
    author = attrs.get("author") or {}
    return TargetNote(
        id=attrs["id"],
        body=attrs.get("body") or "",
        author_id=author.get("id"),
        created_at=parse_datetime(attrs.get("created_at")),
    )


class GitLabTarget:
    """GitLab project receiving the migrated issues.

    With ``sudo`` enabled the token must belong to an administrator: calls
    that carry an acting user are sent with the ``Sudo`` header, which makes
    GitLab record that user as author.
    """

    _client: Gitlab
    _project: GitlabProject
    _sudo: bool

    def __init__(self, client: Gitlab, project_id: int, *, sudo: bool = False) -> None:
        self._client = client
        self._project = client.projects.get(project_id, lazy=True)
        self._project_id = project_id
        self._sudo = sudo

    @classmethod
    def from_options(cls, options: GitLabOptions) -> GitLabTarget:
        return cls(get_client(options.url, options.token), options.project_id, sudo=options.sudo)

    @property
    def sudo(self) -> bool:
        return self._sudo

    def _as(self, acting_user_id: int | None) -> dict[str, Any]:
        if self._sudo and acting_user_id is not None:
            return {"sudo": acting_user_id}
        return {}

    def _issue(self, iid: int) -> ProjectIssue:
        return self._project.issues.get(iid, lazy=True)

    def list_users(self) -> list[TargetUser]:
        return [
            TargetUser(id=user.id, username=user.username, is_admin=bool(getattr(user, "is_admin", False)))
            for user in self._client.users.list(get_all=True)
        ]

    def set_admin(self, user_id: int, admin: bool) -> None:
        self._client.users.update(user_id, {"admin": admin})
        logger.debug(f"Set admin={admin} for GitLab user {user_id}")

    def list_milestones(self) -> list[TargetMilestone]:
        return [
            TargetMilestone(id=m.id, iid=m.iid, title=m.title)
            for m in self._project.milestones.list(get_all=True)
        ]

    def list_issues(self) -> list[TargetIssue]:
        issues = self._project.issues.list(get_all=True, state="all")
        return [issue_from_attributes(issue.attributes) for issue in issues]

    def create_issue(self, fields: dict[str, Any], acting_user_id: int | None = None) -> TargetIssue:
        issue = self._project.issues.create(fields, **self._as(acting_user_id))
        logger.debug(f"Created issue #{issue.iid}: {issue.title}")
        return issue_from_attributes(issue.attributes)

    def edit_issue(self, iid: int, fields: dict[str, Any], acting_user_id: int | None = None) -> TargetIssue:
        attrs = self._project.issues.update(iid, fields, **self._as(acting_user_id))
        return issue_from_attributes(attrs)

    def list_notes(self, iid: int) -> list[TargetNote]:
        notes = self._issue(iid).notes.list(get_all=True, sort="asc", order_by="created_at")
        # System notes ("changed the description") are generated by GitLab
        return [note_from_attributes(note.attributes) for note in notes if not getattr(note, "system", False)]

    def create_note(
        self,
        iid: int,
        body: str,
        created_at: dt.datetime | None = None,
        acting_user_id: int | None = None,
    ) -> TargetNote:
        data: dict[str, Any] = {"body": body}
        if created_at is not None:
            data["created_at"] = created_at.isoformat()
        note = self._issue(iid).notes.create(data, **self._as(acting_user_id))
        return note_from_attributes(note.attributes)

    def edit_note(self, iid: int, note_id: int, body: str) -> TargetNote:
        attrs = self._issue(iid).notes.update(note_id, {"body": body})
        return note_from_attributes(attrs)

    def upload_file(self, path: Path, mime_type: str | None = None) -> TargetUpload:
        """Upload a file to the project (markdown uploads API)."""
        content_type = mime_type or mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        with path.open("rb") as fh:
            result = self._client.http_post(
                f"/projects/{self._project_id}/uploads",
                files={"file": (path.name, fh, content_type)},
            )
        assert isinstance(result, dict)
        return TargetUpload(
            url=result["url"],
            markdown=result.get("markdown") or "",
        )

    def delete_issues(self, iid_greater_than: int) -> int:
        doomed = sorted((issue.iid for issue in self.list_issues() if issue.iid > iid_greater_than), reverse=True)
        for iid in doomed:
            self._project.issues.delete(iid)
            logger.info(f"Deleted issue #{iid}")
        return len(doomed)
