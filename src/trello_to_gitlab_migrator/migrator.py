"""Migration orchestrator for Trello boards to GitLab projects.

A full run walks through these steps:

    Init -> FetchingBoard -> [GrantingPrivileges] -> [FetchingMilestones]
         -> ConvertingCards -> RewritingCrossLinks -> [RevokingPrivileges] -> Finished

Cards are migrated one at a time. Before a card is converted the reference
index is asked whether an issue already exists for it, which makes a re-run
against a partially migrated project converge instead of duplicating issues.

Errors while migrating one card (API failures on either side) are collected
as readable lines and reported through the progress sink; the batch goes on
with the next card. Only configuration problems stop a run before it starts.

All caches (board snapshot, note cache, issue list) belong to one migrator
instance and live for the duration of one command.
"""

from __future__ import annotations

import logging
from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import requests
from gitlab.exceptions import GitlabError

from .attachments import AttachmentRehoster
from .content import (
    CrossLinkRewriter,
    append_unreplaced_attachments,
    mark_replaced,
    render_custom_fields,
    replace_attachments,
    rewrite_mentions,
)
from .exceptions import MigrationError
from .gitlab_utils import GitLabTarget
from .issue_builder import (
    associated_user_id,
    build_description,
    build_issue_fields,
    card_assignees,
    card_labels,
    card_milestone,
    find_comment_actions,
    find_create_action,
    resolve_close,
)
from .options import ConverterAction, validate_options
from .privileges import impersonation
from .progress import ConversionStep, ProgressReport, log_progress
from .reference_index import ReferenceIndex, build_marker_note, is_marker_note
from .trello_utils import TrelloClient

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from .models import CustomFieldDefinition, SourceBoard, SourceCard, TargetIssue
    from .options import ConverterOptions
    from .progress import ProgressSink
    from .protocols import SourceClient, TargetClient

logger: logging.Logger = logging.getLogger(__name__)

# Failures that only affect the card being processed
CARD_ERRORS = (GitlabError, requests.RequestException, MigrationError)


@dataclass
class MigrationStats:
    """Statistics collected during a run."""

    issues_created: int = 0
    comments_created: int = 0
    issues_closed: int = 0
    issues_updated: int = 0
    markers_created: int = 0
    cards_skipped: int = 0
    errors: list[str] = field(default_factory=list)


class CardFilter:
    """Allow-list of card ids or short links (case-insensitive); empty includes every card."""

    def __init__(self, cards_to_include: Iterable[str] | None) -> None:
        self._allowed = {entry.strip().lower() for entry in cards_to_include or [] if entry.strip()}

    def __call__(self, card: SourceCard) -> bool:
        if not self._allowed:
            return True
        keys = {card.id.lower(), card.short_link.lower(), card.short_url.lower()}
        return not keys.isdisjoint(self._allowed)


def format_error(context: str, exc: Exception, card: SourceCard, issue: TargetIssue | None = None) -> str:
    issue_info = f"\nIssue: {issue.id} (#{issue.iid})" if issue is not None else ""
    return f"Error while {context}: {exc}\nCard: {card.id}{issue_info}"


class TrelloToGitLabMigrator:
    """Migrates the cards of one Trello board into one GitLab project.

    Usage:
        options = load_options("options.json")
        migrator = TrelloToGitLabMigrator.from_options(options)
        migrator.run()
    """

    _source: SourceClient
    _target: TargetClient
    _board: SourceBoard | None
    _issues: list[TargetIssue]

    def __init__(
        self,
        options: ConverterOptions,
        source: SourceClient,
        target: TargetClient,
        progress: ProgressSink = log_progress,
    ) -> None:
        self.options: ConverterOptions = options
        self._source = source
        self._target = target
        self._progress = progress
        self._is_included: CardFilter = CardFilter(options.trello.cards_to_include)
        self._index: ReferenceIndex = ReferenceIndex(target)
        self._rehoster: AttachmentRehoster = AttachmentRehoster(source, target)
        self._board = None
        self._issues = []
        self._custom_fields: list[CustomFieldDefinition] | None = None
        # Resolved from milestone iids (options) to global ids
        self._labels_milestones: dict[str, int] = {}
        self._lists_milestones: dict[str, int] = {}
        self.stats: MigrationStats = MigrationStats()

    @classmethod
    def from_options(cls, options: ConverterOptions, progress: ProgressSink = log_progress) -> TrelloToGitLabMigrator:
        """Validate options and build the Trello and GitLab clients."""
        validate_options(options)
        return cls(options, TrelloClient(options.trello), GitLabTarget.from_options(options.gitlab), progress)

    @property
    def board(self) -> SourceBoard:
        if self._board is None:
            msg = "Trello board not loaded yet."
            raise MigrationError(msg)
        return self._board

    def run(self, action: ConverterAction | None = None) -> bool:
        """Execute the configured run mode; returns True when the batch completed."""
        action = self.options.global_options.action if action is None else action
        logger.info(f"Running {action.name} for board {self.options.trello.board_id}")
        if action is ConverterAction.ALL:
            return self.convert_all()
        if action is ConverterAction.ADJUST_MENTIONS:
            return self.adjust_mentions()
        if action is ConverterAction.MOVE_CUSTOM_FIELDS:
            return self.move_custom_fields()
        if action is ConverterAction.ASSOCIATE_WITH_TRELLO:
            return self.associate_with_trello()
        if action is ConverterAction.REPLACE_TRELLO_LINKS:
            return self.replace_trello_links()
        if action is ConverterAction.DELETE_ISSUES:
            return self.delete_issues(self.options.global_options.delete_if_greater_than_issue_id)
        msg = f"Unsupported action: {action}"
        raise MigrationError(msg)

    # Shared steps

    def _notify(self, message: str) -> None:
        self._progress(ProgressReport.custom(message))

    def _report_errors(self, step: ConversionStep, current: int, total: int, errors: list[str]) -> None:
        if errors:
            self.stats.errors.extend(errors)
            self._progress(ProgressReport(step, current, total, errors=tuple(errors)))

    def _fetch_board(self) -> SourceBoard:
        self._progress(ProgressReport(ConversionStep.FETCHING_BOARD))
        self._board = self._source.get_board()
        self._progress(ProgressReport(ConversionStep.BOARD_FETCHED))
        return self._board

    def _load_issues(self) -> None:
        self._issues = self._target.list_issues()
        logger.info(f"Found {len(self._issues)} existing issues in the GitLab project")

    def _skip_excluded(self, card: SourceCard) -> bool:
        if self._is_included(card):
            return False
        self.stats.cards_skipped += 1
        self._notify(f"Skipping card {card.id} ({card.short_link}): card is not included")
        return True

    def _for_each_card(self, step: ConversionStep, handler: Callable[[SourceCard], list[str]]) -> None:
        cards = self.board.cards
        for i, card in enumerate(cards):
            self._progress(ProgressReport(step, i, len(cards)))
            if self._skip_excluded(card):
                continue
            self._report_errors(step, i, len(cards), handler(card))

    def _custom_field_definitions(self) -> list[CustomFieldDefinition]:
        if self._custom_fields is None:
            self._custom_fields = self._source.get_custom_field_definitions()
        return self._custom_fields

    def _custom_fields_section(self, card: SourceCard, description: str | None) -> str:
        definitions = self._custom_field_definitions()
        if not definitions:
            return ""
        items = self._source.get_custom_field_items(card.id)
        return render_custom_fields(description, definitions, items)

    def _resolve_milestones(self) -> None:
        """Map configured milestone iids to global ids; unknown iids are reported and dropped."""
        associations = self.options.associations
        configured = [("label", k, v) for k, v in associations.labels_milestones.items()] + [
            ("list", k, v) for k, v in associations.lists_milestones.items()
        ]
        if not configured:
            return

        self._progress(ProgressReport(ConversionStep.FETCH_MILESTONES))
        try:
            milestone_ids = {m.iid: m.id for m in self._target.list_milestones()}
        except CARD_ERRORS as e:
            self._report_errors(ConversionStep.FETCH_MILESTONES, 0, len(configured), [f"Error while fetching milestones: {e}"])
            return

        for i, (kind, key, iid) in enumerate(configured):
            self._progress(ProgressReport(ConversionStep.FETCH_MILESTONES, i, len(configured)))
            milestone_id = milestone_ids.get(iid)
            if milestone_id is None:
                error = f"Error while fetching milestone: milestone with iid '{iid}' not found on project"
                self._report_errors(ConversionStep.FETCH_MILESTONES, i, len(configured), [error])
                continue
            if kind == "label":
                self._labels_milestones[key] = milestone_id
            else:
                self._lists_milestones[key] = milestone_id
        self._progress(ProgressReport(ConversionStep.MILESTONES_FETCHED))

    # Full migration

    def convert_all(self) -> bool:
        """Convert every included card, then rewrite the links between them."""
        self._progress(ProgressReport(ConversionStep.INIT))
        board = self._fetch_board()
        total = len(board.cards)

        bracket = (
            impersonation(self._target, set(self.options.associations.members_users.values()), self._progress)
            if self._target.sudo
            else nullcontext()
        )
        with bracket:
            self._resolve_milestones()
            self._load_issues()
            self._for_each_card(ConversionStep.CONVERTING_CARDS, self.convert_card)
            self._progress(ProgressReport(ConversionStep.CARDS_CONVERTED))
            self._rewrite_cross_links()

        logger.info(
            f"Migration finished: {self.stats.issues_created} issues, {self.stats.comments_created} comments, "
            f"{self._rehoster.uploaded_files_count} attachments ({self._rehoster.failed_files_count} failed), "
            f"{len(self.stats.errors)} errors"
        )
        self._progress(ProgressReport(ConversionStep.FINISHED, total, total))
        return True

    def convert_card(self, card: SourceCard) -> list[str]:
        """Migrate one card; returns the errors met (an empty list on success)."""
        errors: list[str] = []
        associations = self.options.associations
        sudo = self._target.sudo

        try:
            existing = self._index.resolve(card, self._issues)
        except CARD_ERRORS as e:
            return [format_error("looking up existing issue", e, card)]
        if existing is not None:
            self.stats.cards_skipped += 1
            self._notify(f"Card {card.id} ({card.short_link}) already migrated as #{existing.iid}, skipping")
            return errors

        create_action = find_create_action(self.board, card)
        if sudo:
            created_at = create_action.date if create_action is not None else card.date_last_activity
            created_by = associated_user_id(create_action.member_creator_id if create_action else None, associations)
        else:
            created_at = card.date_last_activity
            created_by = None

        try:
            mappings = self._rehoster.rehost_all(self._source.get_attachments(card.id))
            description = build_description(self.board, card, self._custom_fields_section(card, card.desc))
            description = rewrite_mentions(replace_attachments(description, mappings), self.options.mentions) or ""
            fields = build_issue_fields(
                card,
                description,
                labels=card_labels(card, associations),
                assignee_ids=card_assignees(card, associations),
                milestone_id=card_milestone(card, self._lists_milestones, self._labels_milestones),
                created_at=created_at.isoformat() if created_at is not None else None,
            )
            issue = self._target.create_issue(fields, created_by)
        except CARD_ERRORS as e:
            errors.append(format_error("creating issue", e, card))
            return errors

        mark_replaced(description, mappings)
        self.stats.issues_created += 1
        self._issues.append(issue)
        self._index.register(issue, [])

        try:
            marker = self._target.create_note(issue.iid, build_marker_note(card))
            self._index.add_note(issue, marker)
            self.stats.markers_created += 1
        except CARD_ERRORS as e:
            errors.append(format_error("creating migration marker", e, card, issue))

        for action in find_comment_actions(self.board, card):
            body = rewrite_mentions(replace_attachments(action.text, mappings), self.options.mentions)
            if not body:
                continue
            try:
                note = self._target.create_note(
                    issue.iid,
                    body,
                    created_at=action.date if sudo else None,
                    acting_user_id=associated_user_id(action.member_creator_id, associations),
                )
                self._index.add_note(issue, note)
                self.stats.comments_created += 1
                mark_replaced(body, mappings)
            except CARD_ERRORS as e:
                errors.append(format_error("creating issue comment", e, card, issue))

        if any(not mapping.replaced for mapping in mappings):
            description = append_unreplaced_attachments(description, mappings)
            try:
                _ = self._target.edit_issue(issue.iid, {"description": description})
                issue.description = description
            except CARD_ERRORS as e:
                errors.append(format_error("appending non-referenced attachments", e, card, issue))

        close = resolve_close(self.board, card)
        if close.closed:
            close_fields: dict[str, str] = {"state_event": "close"}
            closed_by = None
            if close.action is not None:
                closed_by = associated_user_id(close.action.member_creator_id, associations)
                if sudo:
                    close_fields["updated_at"] = close.action.date.isoformat()
            try:
                _ = self._target.edit_issue(issue.iid, close_fields, closed_by)
                issue.state = "closed"
                self.stats.issues_closed += 1
            except CARD_ERRORS as e:
                errors.append(format_error("closing issue", e, card, issue))

        return errors

    # Cross-link rewrite

    def _rewrite_cross_links(self) -> None:
        self._progress(ProgressReport(ConversionStep.REWRITING_LINKS))
        rewriter = CrossLinkRewriter(
            self.options.trello.url,
            self.board,
            self._index,
            self._issues,
            is_included=self._is_included,
            notify=self._notify,
        )
        self._for_each_card(ConversionStep.REWRITING_LINKS, lambda card: self._rewrite_card_links(card, rewriter))
        self._progress(ProgressReport(ConversionStep.LINKS_REWRITTEN))

    def _rewrite_card_links(self, card: SourceCard, rewriter: CrossLinkRewriter) -> list[str]:
        return self._rewrite_issue_texts(card, rewriter.rewrite, "rewriting Trello links")

    def _rewrite_issue_texts(self, card: SourceCard, transform: Callable[[str], str | None], context: str) -> list[str]:
        """Apply ``transform`` to the description and comments of the card's issue, saving what changed."""
        errors: list[str] = []
        issue: TargetIssue | None = None
        try:
            issue = self._index.resolve(card, self._issues)
            if issue is None:
                return errors

            description = transform(issue.description)
            if description is not None and description != issue.description:
                _ = self._target.edit_issue(issue.iid, {"description": description})
                issue.description = description
                self.stats.issues_updated += 1

            for note in self._index.notes_for(issue):
                if is_marker_note(note.body):
                    continue
                body = transform(note.body)
                if body is not None and body != note.body:
                    _ = self._target.edit_note(issue.iid, note.id, body)
                    note.body = body
        except CARD_ERRORS as e:
            errors.append(format_error(context, e, card, issue))
        return errors

    # Narrow run modes

    def replace_trello_links(self) -> bool:
        """Rewrite card links into issue references across already migrated issues."""
        board = self._fetch_board()
        self._load_issues()
        self._rewrite_cross_links()
        self._progress(ProgressReport(ConversionStep.FINISHED, len(board.cards), len(board.cards)))
        return True

    def adjust_mentions(self) -> bool:
        """Apply the mention mapping to already migrated descriptions and comments."""
        board = self._fetch_board()
        self._load_issues()
        mentions = self.options.mentions
        self._for_each_card(
            ConversionStep.CONVERTING_CARDS,
            lambda card: self._rewrite_issue_texts(card, lambda text: rewrite_mentions(text, mentions), "adjusting mentions"),
        )
        self._progress(ProgressReport(ConversionStep.FINISHED, len(board.cards), len(board.cards)))
        return True

    def move_custom_fields(self) -> bool:
        """Append the Custom Fields section to migrated issues that lack it."""
        board = self._fetch_board()
        self._load_issues()
        self._for_each_card(ConversionStep.CONVERTING_CARDS, self._backfill_custom_fields)
        self._progress(ProgressReport(ConversionStep.FINISHED, len(board.cards), len(board.cards)))
        return True

    def _backfill_custom_fields(self, card: SourceCard) -> list[str]:
        issue: TargetIssue | None = None
        try:
            issue = self._index.resolve(card, self._issues)
            if issue is None:
                return []
            section = self._custom_fields_section(card, issue.description)
            if not section:
                return []
            description = issue.description + section
            _ = self._target.edit_issue(issue.iid, {"description": description})
            issue.description = description
            self.stats.issues_updated += 1
        except CARD_ERRORS as e:
            return [format_error("moving custom fields", e, card, issue)]
        return []

    def associate_with_trello(self) -> bool:
        """Write migration markers on issues that only match their card by title."""
        board = self._fetch_board()
        self._load_issues()
        self._for_each_card(ConversionStep.CONVERTING_CARDS, self._associate_card)
        self._progress(ProgressReport(ConversionStep.FINISHED, len(board.cards), len(board.cards)))
        return True

    def _associate_card(self, card: SourceCard) -> list[str]:
        issue: TargetIssue | None = None
        try:
            if self._index.find_marked(card, self._issues) is not None:
                return []
            issue = self._index.find_by_title(card, self._issues)
            if issue is None:
                self._notify(f"No unique issue found for card {card.id} ({card.short_link})")
                return []
            note = self._target.create_note(issue.iid, build_marker_note(card))
            self._index.add_note(issue, note)
            self.stats.markers_created += 1
            self._notify(f"Associated card {card.id} ({card.short_link}) with #{issue.iid}")
        except CARD_ERRORS as e:
            return [format_error("associating issue with card", e, card, issue)]
        return []

    def delete_issues(self, iid_greater_than: int) -> bool:
        """Delete every issue above the given iid (test utility, destructive)."""
        self._notify(f"Deleting issues with ID greater than {iid_greater_than}...")
        deleted = self._target.delete_issues(iid_greater_than)
        self._notify(f"{deleted} issues deleted.")
        return True
