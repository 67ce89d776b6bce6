"""
Pytest configuration, fixtures and shared fakes.

FakeSource and FakeTarget are in-memory implementations of the SourceClient
and TargetClient protocols, so the migrator can be exercised end to end
without any network access.

Integration tests fail on any WARNING logged by the code under test.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import TYPE_CHECKING, Any

import pytest
from gitlab.exceptions import GitlabError
from typing_extensions import override

from trello_to_gitlab_migrator.models import (
    COMMENT_CARD,
    CREATE_CARD,
    UPDATE_CARD,
    SourceAction,
    SourceAttachment,
    SourceBoard,
    SourceCard,
    TargetIssue,
    TargetMilestone,
    TargetNote,
    TargetUpload,
    TargetUser,
)
from trello_to_gitlab_migrator.options import ConverterOptions

if TYPE_CHECKING:
    from collections.abc import Generator
    from pathlib import Path

    from trello_to_gitlab_migrator.models import CustomFieldDefinition, CustomFieldItem

TRELLO_URL = "https://source.example"

# Warning records captured per integration test
_integration_test_warnings: dict[str, list[logging.LogRecord]] = {}


class IntegrationTestWarningHandler(logging.Handler):
    """Collects WARNING and above records emitted during one integration test."""

    test_nodeid: str

    def __init__(self, test_nodeid: str) -> None:
        super().__init__()
        self.test_nodeid = test_nodeid
        self.setLevel(logging.WARNING)

    @override
    def emit(self, record: logging.LogRecord) -> None:
        _integration_test_warnings.setdefault(self.test_nodeid, []).append(record)


@pytest.fixture(autouse=True)
def fail_on_log_warnings_for_integration_tests(request: pytest.FixtureRequest) -> Generator[None]:
    """Capture logger warnings during integration tests; the report hook turns them into failures."""
    if request.node.get_closest_marker("integration") is None:
        yield
        return

    handler = IntegrationTestWarningHandler(request.node.nodeid)
    _integration_test_warnings[request.node.nodeid] = []
    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    try:
        yield
    finally:
        root_logger.removeHandler(handler)


@pytest.hookimpl(tryfirst=True, hookwrapper=True)
def pytest_runtest_makereport(item: pytest.Item, call: pytest.CallInfo[None]) -> Generator[None]:  # type: ignore[misc]
    outcome = yield
    report = outcome.get_result()

    if call.when == "call" and report.outcome == "passed":
        records = _integration_test_warnings.pop(item.nodeid, [])
        if records:
            messages = [f"{r.levelname}: {r.getMessage()} (in {r.name}:{r.lineno})" for r in records]
            report.outcome = "failed"
            report.longrepr = f"Integration test failed: {len(records)} warning(s) detected:\n" + "\n".join(
                f"  - {msg}" for msg in messages
            )


def ts(day: int, hour: int = 12) -> dt.datetime:
    return dt.datetime(2024, 1, day, hour, 0, 0, tzinfo=dt.UTC)


def make_card(card_id: str, short_link: str, name: str, **kwargs: Any) -> SourceCard:
    kwargs.setdefault("id_list", "list-1")
    kwargs.setdefault("date_last_activity", ts(20))
    kwargs.setdefault("short_url", f"{TRELLO_URL}/c/{short_link}")
    return SourceCard(id=card_id, short_link=short_link, name=name, **kwargs)


def make_action(action_id: str, action_type: str, day: int, **kwargs: Any) -> SourceAction:
    return SourceAction(id=action_id, type=action_type, date=ts(day), **kwargs)


def create_action(action_id: str, card_id: str, day: int, member: str = "member-1") -> SourceAction:
    return make_action(action_id, CREATE_CARD, day, card_id=card_id, member_creator_id=member)


def comment_action(action_id: str, card_id: str, day: int, text: str, member: str = "member-1") -> SourceAction:
    return make_action(action_id, COMMENT_CARD, day, card_id=card_id, member_creator_id=member, text=text)


def close_card_action(action_id: str, card_id: str, day: int, member: str = "member-1") -> SourceAction:
    return make_action(action_id, UPDATE_CARD, day, card_id=card_id, member_creator_id=member, old={"closed": False})


class FakeSource:
    """In-memory Trello board."""

    def __init__(self, board: SourceBoard | None = None) -> None:
        self.board: SourceBoard = board or SourceBoard()
        self.attachments: dict[str, list[SourceAttachment]] = {}
        self.files: dict[str, bytes] = {}
        self.custom_fields: list[CustomFieldDefinition] = []
        self.custom_field_items: dict[str, list[CustomFieldItem]] = {}
        self.board_fetches: int = 0

    def get_board(self) -> SourceBoard:
        self.board_fetches += 1
        return self.board

    def get_attachments(self, card_id: str) -> list[SourceAttachment]:
        return list(self.attachments.get(card_id, []))

    def download_attachment(self, url: str) -> bytes:
        if url not in self.files:
            from trello_to_gitlab_migrator.exceptions import ApiError

            raise ApiError(404, "Not Found", "missing")
        return self.files[url]

    def get_custom_field_definitions(self) -> list[CustomFieldDefinition]:
        return list(self.custom_fields)

    def get_custom_field_items(self, card_id: str) -> list[CustomFieldItem]:
        return list(self.custom_field_items.get(card_id, []))


class FakeTarget:
    """In-memory GitLab project recording every call."""

    def __init__(self, *, sudo: bool = False) -> None:
        self._sudo = sudo
        self.issues: dict[int, TargetIssue] = {}
        self.notes: dict[int, list[TargetNote]] = {}
        self.users: list[TargetUser] = []
        self.milestones: list[TargetMilestone] = []
        self.calls: list[tuple[str, Any]] = []
        self.uploads: list[tuple[str, bytes, str | None]] = []
        self.fail_on: set[str] = set()
        self.list_notes_calls: int = 0
        self._next_note_id = 1

    @property
    def sudo(self) -> bool:
        return self._sudo

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.fail_on:
            raise GitlabError("boom", response_code=500)

    def add_issue(self, iid: int, title: str, description: str = "", notes: list[str] | None = None) -> TargetIssue:
        issue = TargetIssue(id=1000 + iid, iid=iid, title=title, description=description)
        self.issues[iid] = issue
        self.notes[iid] = []
        for body in notes or []:
            self._add_note(iid, body)
        return issue

    def _add_note(self, iid: int, body: str) -> TargetNote:
        note = TargetNote(id=self._next_note_id, body=body)
        self._next_note_id += 1
        self.notes.setdefault(iid, []).append(note)
        return note

    def list_users(self) -> list[TargetUser]:
        return list(self.users)

    def set_admin(self, user_id: int, admin: bool) -> None:
        self.calls.append(("set_admin", (user_id, admin)))
        self._maybe_fail(f"set_admin:{user_id}:{admin}")

    def list_milestones(self) -> list[TargetMilestone]:
        return list(self.milestones)

    def list_issues(self) -> list[TargetIssue]:
        # Copies, like a fresh API response
        return [
            TargetIssue(id=i.id, iid=i.iid, title=i.title, description=i.description, state=i.state)
            for i in self.issues.values()
        ]

    def create_issue(self, fields: dict[str, Any], acting_user_id: int | None = None) -> TargetIssue:
        self.calls.append(("create_issue", (fields, acting_user_id)))
        self._maybe_fail("create_issue")
        iid = max(self.issues, default=0) + 1
        issue = self.add_issue(iid, fields["title"], fields.get("description", ""))
        return TargetIssue(id=issue.id, iid=iid, title=issue.title, description=issue.description)

    def edit_issue(self, iid: int, fields: dict[str, Any], acting_user_id: int | None = None) -> TargetIssue:
        self.calls.append(("edit_issue", (iid, fields, acting_user_id)))
        self._maybe_fail("edit_issue")
        issue = self.issues[iid]
        if "description" in fields:
            issue.description = fields["description"]
        if fields.get("state_event") == "close":
            issue.state = "closed"
        return issue

    def list_notes(self, iid: int) -> list[TargetNote]:
        self.list_notes_calls += 1
        return [TargetNote(id=n.id, body=n.body) for n in self.notes.get(iid, [])]

    def create_note(
        self,
        iid: int,
        body: str,
        created_at: dt.datetime | None = None,
        acting_user_id: int | None = None,
    ) -> TargetNote:
        self.calls.append(("create_note", (iid, body, created_at, acting_user_id)))
        self._maybe_fail("create_note")
        note = self._add_note(iid, body)
        return TargetNote(id=note.id, body=note.body)

    def edit_note(self, iid: int, note_id: int, body: str) -> TargetNote:
        self.calls.append(("edit_note", (iid, note_id, body)))
        note = next(n for n in self.notes[iid] if n.id == note_id)
        note.body = body
        return note

    def upload_file(self, path: Path, mime_type: str | None = None) -> TargetUpload:
        self._maybe_fail("upload_file")
        self.uploads.append((str(path), path.read_bytes(), mime_type))
        url = f"/uploads/{len(self.uploads):032x}/{path.name}"
        return TargetUpload(url=url, markdown=f"![{path.name}]({url})")

    def delete_issues(self, iid_greater_than: int) -> int:
        doomed = [iid for iid in self.issues if iid > iid_greater_than]
        for iid in doomed:
            del self.issues[iid]
        return len(doomed)

    def calls_named(self, name: str) -> list[Any]:
        return [args for call, args in self.calls if call == name]


@pytest.fixture
def options() -> ConverterOptions:
    opts = ConverterOptions()
    opts.trello.key = "key"
    opts.trello.token = "token"  # noqa: S105
    opts.trello.board_id = "board-1"
    opts.trello.url = TRELLO_URL
    opts.gitlab.token = "gitlab-token"  # noqa: S105
    opts.gitlab.project_id = 42
    return opts
