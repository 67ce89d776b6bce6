"""Lookup from Trello cards to the GitLab issues they were migrated to.

Every migrated issue carries one marker note: an HTML comment (invisible once
rendered) stamped with a fixed token plus the card and list ids. Scanning for
that note makes re-runs idempotent without any side table. Issues created
before markers existed are matched by title, but only when the match is
unique.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Final

from .utils import truncate

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .models import SourceCard, TargetIssue, TargetNote
    from .protocols import TargetClient

logger: logging.Logger = logging.getLogger(__name__)

# Changing this orphans every marker already written
MARKER_TOKEN: Final[str] = "t2g-8f3a61c9d2e04b7d95a1c6e8b0f47a23"
MARKER_PHRASE: Final[str] = "Migrated from Trello card"
TITLE_MAX_LENGTH: Final[int] = 255


def build_marker_note(card: SourceCard) -> str:
    link = card.short_url or card.short_link
    return f"<!-- {MARKER_TOKEN} card:{card.id} list:{card.id_list} -->\n{MARKER_PHRASE} {link}"


def is_marker_note(body: str) -> bool:
    return MARKER_TOKEN in body


def marker_references(body: str, card_id: str) -> bool:
    """True if the note is a marker for the given card (raw id, never the short link)."""
    return is_marker_note(body) and f"card:{card_id} " in body


def card_title(card: SourceCard) -> str:
    return truncate(card.name, TITLE_MAX_LENGTH)


class ReferenceIndex:
    """Per-run card -> issue resolver with a lazily filled note cache."""

    _target: TargetClient
    _notes: dict[int, list[TargetNote]]

    def __init__(self, target: TargetClient) -> None:
        self._target = target
        self._notes = {}

    def notes_for(self, issue: TargetIssue) -> list[TargetNote]:
        """Return the issue's notes, fetching them at most once per run."""
        notes = self._notes.get(issue.iid)
        if notes is None:
            notes = self._target.list_notes(issue.iid)
            self._notes[issue.iid] = notes
        return notes

    def register(self, issue: TargetIssue, notes: Sequence[TargetNote]) -> None:
        """Record the notes of an issue created in this run."""
        self._notes[issue.iid] = list(notes)

    def add_note(self, issue: TargetIssue, note: TargetNote) -> None:
        self.notes_for(issue).append(note)

    def has_marker(self, issue: TargetIssue) -> bool:
        return any(is_marker_note(note.body) for note in self.notes_for(issue))

    def find_marked(self, card: SourceCard, issues: Sequence[TargetIssue]) -> TargetIssue | None:
        matches = [
            issue for issue in issues if any(marker_references(note.body, card.id) for note in self.notes_for(issue))
        ]
        if len(matches) > 1:
            iids = ", ".join(f"#{issue.iid}" for issue in matches)
            logger.warning(f"Card {card.id} has markers on several issues ({iids}); using #{matches[0].iid}")
        return matches[0] if matches else None

    def find_by_title(self, card: SourceCard, issues: Sequence[TargetIssue]) -> TargetIssue | None:
        """Unique exact title match among issues that carry no marker at all."""
        title = card_title(card)
        candidates = [issue for issue in issues if issue.title == title and not self.has_marker(issue)]
        if len(candidates) == 1:
            return candidates[0]
        if len(candidates) > 1:
            logger.debug(f"Card {card.id} title matches {len(candidates)} issues; leaving it unresolved")
        return None

    def resolve(self, card: SourceCard, issues: Sequence[TargetIssue]) -> TargetIssue | None:
        """Return the issue migrated from ``card``, or None when unknown or ambiguous."""
        return self.find_marked(card, issues) or self.find_by_title(card, issues)
