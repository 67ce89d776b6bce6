"""Build GitLab issue fields from Trello card data."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Final, NamedTuple

from .content import render_checklists
from .models import COMMENT_CARD, CREATE_CARD, UPDATE_CARD, UPDATE_LIST
from .reference_index import card_title
from .utils import truncate

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from .models import SourceAction, SourceBoard, SourceCard
    from .options import AssociationsOptions

DESCRIPTION_MAX_LENGTH: Final[int] = 1048576


class CloseResolution(NamedTuple):
    """Whether the issue must be closed, and the Trello action that closed the card (if known)."""

    closed: bool
    action: SourceAction | None


def find_create_action(board: SourceBoard, card: SourceCard) -> SourceAction | None:
    return next((a for a in board.actions if a.type == CREATE_CARD and a.card_id == card.id), None)


def find_comment_actions(board: SourceBoard, card: SourceCard) -> list[SourceAction]:
    """Comment actions of the card in chronological order (Trello returns newest first)."""
    comments = [a for a in board.actions if a.type == COMMENT_CARD and a.card_id == card.id]
    return sorted(comments, key=lambda a: a.date)


def _latest_close_transition(actions: Iterable[SourceAction], matches: Callable[[SourceAction], bool]) -> SourceAction | None:
    """Most recent action flipping ``closed`` from false to true."""
    transitions = [a for a in actions if matches(a) and "closed" in a.old and a.old["closed"] is False]
    return max(transitions, key=lambda a: a.date, default=None)


def find_close_card_action(board: SourceBoard, card: SourceCard) -> SourceAction | None:
    return _latest_close_transition(board.actions, lambda a: a.type == UPDATE_CARD and a.card_id == card.id)


def find_close_list_action(board: SourceBoard, list_id: str) -> SourceAction | None:
    return _latest_close_transition(board.actions, lambda a: a.type == UPDATE_LIST and a.list_id == list_id)


def resolve_close(board: SourceBoard, card: SourceCard) -> CloseResolution:
    """Decide whether the issue is closed; the card's own close action wins over its list's."""
    trello_list = board.get_list(card.id_list)
    list_closed = trello_list is not None and trello_list.closed

    if card.closed:
        action = find_close_card_action(board, card)
        if action is None and list_closed:
            action = find_close_list_action(board, card.id_list)
        return CloseResolution(closed=True, action=action)
    if list_closed:
        return CloseResolution(closed=True, action=find_close_list_action(board, card.id_list))
    return CloseResolution(closed=False, action=None)


def card_labels(card: SourceCard, associations: AssociationsOptions) -> list[str]:
    labels = [associations.labels_labels[id_label] for id_label in card.id_labels if id_label in associations.labels_labels]
    list_label = associations.lists_labels.get(card.id_list)
    if list_label is not None:
        labels.append(list_label)
    return labels


def card_milestone(
    card: SourceCard,
    lists_milestones: dict[str, int],
    labels_milestones: dict[str, int],
) -> int | None:
    """Milestone id from the list association, else from the first associated label."""
    if card.id_list in lists_milestones:
        return lists_milestones[card.id_list]
    for id_label in card.id_labels:
        if id_label in labels_milestones:
            return labels_milestones[id_label]
    return None


def associated_user_id(member_id: str | None, associations: AssociationsOptions) -> int | None:
    if not member_id:
        return None
    return associations.members_users.get(member_id)


def card_assignees(card: SourceCard, associations: AssociationsOptions) -> list[int]:
    return [user_id for m in card.id_members if (user_id := associated_user_id(m, associations)) is not None]


def build_description(board: SourceBoard, card: SourceCard, custom_fields_section: str = "") -> str:
    """Card description followed by its checklists and custom fields."""
    description = card.desc or ""
    checklists = [checklist for checklist in board.checklists if checklist.id_card == card.id]
    description += render_checklists(checklists)
    description += custom_fields_section
    return truncate(description, DESCRIPTION_MAX_LENGTH)


def build_issue_fields(
    card: SourceCard,
    description: str,
    *,
    labels: list[str],
    assignee_ids: list[int],
    milestone_id: int | None,
    created_at: str | None,
) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "title": card_title(card),
        "description": description,
        "labels": ",".join(labels),
        "assignee_ids": assignee_ids,
    }
    if card.due is not None:
        fields["due_date"] = card.due.date().isoformat()
    if milestone_id is not None:
        fields["milestone_id"] = milestone_id
    if created_at is not None:
        fields["created_at"] = created_at
    return fields
