"""Text transformations applied to card descriptions and comments.

Only CrossLinkRewriter reaches the network, through the reference index it
resolves cards with. Each transformation can be applied to its own output
without changing it again, so a re-run over already migrated text is
harmless.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final

from .reference_index import MARKER_PHRASE, MARKER_TOKEN

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping, Sequence

    from .models import (
        Checklist,
        CustomFieldDefinition,
        CustomFieldItem,
        SourceAttachment,
        SourceBoard,
        SourceCard,
        TargetIssue,
        TargetUpload,
    )
    from .reference_index import ReferenceIndex

logger: logging.Logger = logging.getLogger(__name__)

ATTACHMENTS_HEADING: Final[str] = "### Attachments"
CUSTOM_FIELDS_HEADING: Final[str] = "### Custom Fields"
LIST_FIELD_TYPE: Final[str] = "list"


@dataclass
class AttachmentMapping:
    """A card attachment and its rehosted upload (None when rehosting failed)."""

    attachment: SourceAttachment
    upload: TargetUpload | None
    replaced: bool = False

    @property
    def failed(self) -> bool:
        return self.upload is None


def rewrite_mentions(text: str | None, mentions: Mapping[str, str]) -> str | None:
    """Replace ``@trelloUser`` by ``@gitlabUser`` (word bounded, case-insensitive).

    A name followed by ``.word`` or ``-`` is part of a longer (GitLab style)
    username and is left alone, so ``alice -> alice.gl`` does not grow on a
    second pass. Pairs are applied in mapping order; with names that prefix
    each other the result depends on that order.
    """
    if not text:
        return text
    for trello_name, gitlab_name in mentions.items():
        source = trello_name.strip("@")
        target = "@" + gitlab_name.strip("@")
        if not source:
            continue
        pattern = rf"@\b{re.escape(source)}(?![\w-]|\.\w)"
        text = re.sub(pattern, lambda _match, t=target: t, text, flags=re.IGNORECASE)
    return text


def replace_attachments(text: str | None, mappings: Iterable[AttachmentMapping]) -> str | None:
    """Substitute rehosted URLs for Trello attachment URLs found verbatim in the text.

    The mappings are not marked here: call mark_replaced once the text has
    actually been written to GitLab.
    """
    if not text:
        return text
    for mapping in mappings:
        if mapping.upload is None:
            continue
        if mapping.attachment.url and mapping.attachment.url in text:
            text = text.replace(mapping.attachment.url, mapping.upload.url)
    return text


def mark_replaced(written: str | None, mappings: Iterable[AttachmentMapping]) -> None:
    """Mark the mappings whose rehosted URL appears in text stored on GitLab."""
    if not written:
        return
    for mapping in mappings:
        if mapping.upload is not None and mapping.upload.url in written:
            mapping.replaced = True


def _attachment_line(mapping: AttachmentMapping) -> str:
    if mapping.upload is not None:
        return f"- {mapping.upload.markdown or mapping.upload.url}"
    # Rehosting failed: link to the original file
    name = mapping.attachment.name or mapping.attachment.url
    return f"- [{name}]({mapping.attachment.url})"


def append_unreplaced_attachments(text: str | None, mappings: Iterable[AttachmentMapping]) -> str:
    """Append an Attachments section listing every mapping not referenced in the text."""
    text = text or ""
    lines = [_attachment_line(m) for m in mappings if not m.replaced and m.attachment.url]
    missing = [line for line in lines if line not in text]
    if not missing:
        return text
    if ATTACHMENTS_HEADING not in text:
        text += f"\n\n{ATTACHMENTS_HEADING}\n\n"
    elif not text.endswith("\n"):
        text += "\n"
    return text + "\n".join(missing) + "\n"


def render_custom_fields(
    description: str | None,
    definitions: Sequence[CustomFieldDefinition],
    items: Sequence[CustomFieldItem],
) -> str:
    """Return the Custom Fields section for a card, or "" if there is nothing to add.

    Nothing is rendered when the description already has the section, so
    backfilling twice appends it once.
    """
    if not definitions or not items:
        return ""
    if description and CUSTOM_FIELDS_HEADING in description:
        return ""

    values = {item.id_custom_field: item for item in items}
    bullets: list[str] = []
    for definition in definitions:
        item = values.get(definition.id)
        if item is None:
            continue
        if definition.type == LIST_FIELD_TYPE:
            value = definition.option_text(item.id_value)
        else:
            value = item.value
        if value is None or not str(value).strip():
            continue
        bullets.append(f"- **{definition.name}**: {value}")

    if not bullets:
        return ""
    return f"\n\n{CUSTOM_FIELDS_HEADING}\n\n" + "\n".join(bullets) + "\n"


def render_checklists(checklists: Iterable[Checklist]) -> str:
    """Render each checklist as a markdown task list under its own heading."""
    rendered = ""
    for checklist in checklists:
        rendered += f"\n\n### {checklist.name}\n\n"
        for item in checklist.check_items:
            mark = "x" if item.state == "complete" else " "
            rendered += f"- [{mark}] {item.name}\n"
    return rendered


class CrossLinkRewriter:
    """Rewrites links to Trello cards into GitLab issue references (``#iid``).

    Two forms are recognised: a markdown link whose label is the card URL
    itself (Trello writes ``[url](url "smartCard-inline")``), and a bare
    card URL. Links inside ordinary markdown links with another label are
    left alone, as ``[text](#7)`` would not point at the issue.
    """

    def __init__(
        self,
        trello_url: str,
        board: SourceBoard,
        index: ReferenceIndex,
        issues: Sequence[TargetIssue],
        *,
        is_included: Callable[[SourceCard], bool],
        notify: Callable[[str], None],
    ) -> None:
        host = re.sub(r"^https?://(?:www\.)?", "", trello_url.rstrip("/"))
        card_url = rf"https?://(?:www\.)?{re.escape(host)}/c/(?P<short_link>[A-Za-z0-9]+)(?:/[^\s()\[\]<>\"]*[^\s()\[\]<>\".,;:!?])?"
        self._markdown_link = re.compile(rf"\[(?P<url>{card_url})\]\((?P=url)(?:\s+\"[^\"]*\")?\)")
        self._bare_link = re.compile(rf"(?<!\]\()(?<!\[){card_url}")
        self._board = board
        self._index = index
        self._issues = issues
        self._is_included = is_included
        self._notify = notify

    def _reference(self, match: re.Match[str]) -> str:
        short_link = match.group("short_link")
        card = self._board.find_card_by_short_link(short_link)
        if card is None:
            logger.debug(f"Link to unknown card {short_link} left unchanged")
            return match.group(0)
        if not self._is_included(card):
            self._notify(f"Skipping link to card {card.id} ({short_link}): card is not included")
            return match.group(0)
        issue = self._index.resolve(card, self._issues)
        if issue is None:
            logger.debug(f"Link to card {short_link} left unchanged: no matching issue")
            return match.group(0)
        return f"#{issue.iid}"

    def rewrite(self, text: str | None) -> str | None:
        if not text:
            return text
        # Never rewrite the marker note itself
        if MARKER_TOKEN in text or MARKER_PHRASE in text:
            return text
        text = self._markdown_link.sub(self._reference, text)
        return self._bare_link.sub(self._reference, text)
