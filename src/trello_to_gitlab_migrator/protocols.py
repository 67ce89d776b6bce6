"""Protocols defining the contracts for the source and target systems.

The migration architecture separates concerns into three components:

1. SourceClient: Reads the Trello board (cards, actions, attachments, custom fields)
2. TargetClient: Creates and edits data in the GitLab project
3. TrelloToGitLabMigrator: Orchestrates the flow, owns the per-run caches

This separation allows:
- Testing the migration engine with in-memory implementations
- Keeping HTTP details (pagination, authentication, sudo) out of the engine
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from datetime import datetime
    from pathlib import Path

    from .models import (
        CustomFieldDefinition,
        CustomFieldItem,
        SourceAttachment,
        SourceBoard,
        TargetIssue,
        TargetMilestone,
        TargetNote,
        TargetUpload,
        TargetUser,
    )


class SourceClient(Protocol):
    """Protocol for reading a Trello board.

    All methods raise on transport or non-2xx failures; the migrator decides
    which failures are fatal and which only affect one card.
    """

    def get_board(self) -> SourceBoard:
        """Return a full board snapshot.

        Actions are paginated internally and restricted to card creation,
        card update, comment and list update events.
        """
        ...

    def get_attachments(self, card_id: str) -> list[SourceAttachment]:
        """Return the attachments of one card."""
        ...

    def download_attachment(self, url: str) -> bytes:
        """Download the bytes of an attachment."""
        ...

    def get_custom_field_definitions(self) -> list[CustomFieldDefinition]:
        """Return the custom fields defined on the board."""
        ...

    def get_custom_field_items(self, card_id: str) -> list[CustomFieldItem]:
        """Return the custom field values set on one card."""
        ...


class TargetClient(Protocol):
    """Protocol for the GitLab project receiving the issues.

    ``acting_user_id`` is only honoured when the client was configured with
    sudo rights; otherwise the call is made as the token owner.
    """

    @property
    def sudo(self) -> bool:
        """Whether the token may impersonate users and set timestamps."""
        ...

    def list_users(self) -> list[TargetUser]: ...

    def set_admin(self, user_id: int, admin: bool) -> None: ...

    def list_milestones(self) -> list[TargetMilestone]: ...

    def list_issues(self) -> list[TargetIssue]:
        """Return all project issues (all pages)."""
        ...

    def create_issue(self, fields: dict[str, Any], acting_user_id: int | None = None) -> TargetIssue: ...

    def edit_issue(self, iid: int, fields: dict[str, Any], acting_user_id: int | None = None) -> TargetIssue: ...

    def list_notes(self, iid: int) -> list[TargetNote]:
        """Return all notes of an issue (all pages)."""
        ...

    def create_note(
        self,
        iid: int,
        body: str,
        created_at: datetime | None = None,
        acting_user_id: int | None = None,
    ) -> TargetNote: ...

    def edit_note(self, iid: int, note_id: int, body: str) -> TargetNote: ...

    def upload_file(self, path: Path, mime_type: str | None = None) -> TargetUpload: ...

    def delete_issues(self, iid_greater_than: int) -> int:
        """Delete every issue whose iid is greater than the given one; return the count."""
        ...
