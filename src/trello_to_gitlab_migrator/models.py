"""Data models exchanged between the Trello source, the GitLab target and the migrator.

Source models are snapshots of the board and are never mutated by the
migration engine. Target models mirror the few GitLab fields the engine
reads back.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

# Trello action types fetched with the board
CREATE_CARD = "createCard"
UPDATE_CARD = "updateCard"
COMMENT_CARD = "commentCard"
UPDATE_LIST = "updateList"


@dataclass(frozen=True)
class SourceCard:
    """A Trello card."""

    id: str
    short_link: str
    name: str
    desc: str = ""
    closed: bool = False
    short_url: str = ""
    due: datetime | None = None
    id_list: str = ""
    id_labels: tuple[str, ...] = ()
    id_members: tuple[str, ...] = ()
    date_last_activity: datetime | None = None


@dataclass(frozen=True)
class SourceList:
    """A Trello list (column)."""

    id: str
    name: str = ""
    closed: bool = False


@dataclass(frozen=True)
class CheckItem:
    name: str
    state: str  # "complete" or "incomplete"


@dataclass(frozen=True)
class Checklist:
    id: str
    name: str
    id_card: str
    check_items: tuple[CheckItem, ...] = ()


@dataclass(frozen=True)
class SourceAction:
    """A typed board event: card creation, card/list update or comment.

    ``old`` holds the previous values of updated fields, e.g. ``{"closed": False}``
    for a close transition.
    """

    id: str
    type: str
    date: datetime
    member_creator_id: str | None = None
    card_id: str | None = None
    list_id: str | None = None
    text: str | None = None
    old: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SourceAttachment:
    id: str
    name: str
    url: str
    mime_type: str | None = None


@dataclass(frozen=True)
class CustomFieldOption:
    id: str
    text: str


@dataclass(frozen=True)
class CustomFieldDefinition:
    """A board level custom field; ``type`` is "list" for choice fields."""

    id: str
    name: str
    type: str
    options: tuple[CustomFieldOption, ...] = ()

    def option_text(self, option_id: str | None) -> str | None:
        for option in self.options:
            if option.id == option_id:
                return option.text
        return None


@dataclass(frozen=True)
class CustomFieldItem:
    """A card's value for one custom field."""

    id_custom_field: str
    value: str | None = None
    id_value: str | None = None


@dataclass
class SourceBoard:
    """Snapshot of a Trello board, fetched once per top-level command."""

    cards: list[SourceCard] = field(default_factory=list)
    lists: list[SourceList] = field(default_factory=list)
    checklists: list[Checklist] = field(default_factory=list)
    actions: list[SourceAction] = field(default_factory=list)

    def get_list(self, list_id: str) -> SourceList | None:
        return next((lst for lst in self.lists if lst.id == list_id), None)

    def find_card_by_short_link(self, short_link: str) -> SourceCard | None:
        return next((card for card in self.cards if card.short_link == short_link), None)


@dataclass
class TargetIssue:
    """A GitLab issue; ``id`` is global, ``iid`` is the project sequence number."""

    id: int
    iid: int
    title: str
    description: str = ""
    state: Literal["opened", "closed"] = "opened"
    labels: list[str] = field(default_factory=list)
    milestone_id: int | None = None
    assignee_ids: list[int] = field(default_factory=list)
    due_date: str | None = None


@dataclass
class TargetNote:
    id: int
    body: str
    author_id: int | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class TargetUser:
    id: int
    username: str
    is_admin: bool = False


@dataclass(frozen=True)
class TargetMilestone:
    id: int
    iid: int
    title: str = ""


@dataclass(frozen=True)
class TargetUpload:
    """Result of a project upload; ``markdown`` is GitLab's ready-made rendering."""

    url: str
    markdown: str
