"""Progress events emitted by the migrator and a logging sink for them."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum

logger: logging.Logger = logging.getLogger(__name__)


class ConversionStep(Enum):
    INIT = "init"
    FETCHING_BOARD = "fetching_board"
    BOARD_FETCHED = "board_fetched"
    GRANT_ADMIN_PRIVILEGES = "grant_admin_privileges"
    ADMIN_PRIVILEGES_GRANTED = "admin_privileges_granted"
    FETCH_MILESTONES = "fetch_milestones"
    MILESTONES_FETCHED = "milestones_fetched"
    CONVERTING_CARDS = "converting_cards"
    CARDS_CONVERTED = "cards_converted"
    REWRITING_LINKS = "rewriting_links"
    LINKS_REWRITTEN = "links_rewritten"
    REVOKE_ADMIN_PRIVILEGES = "revoke_admin_privileges"
    ADMIN_PRIVILEGES_REVOKED = "admin_privileges_revoked"
    FINISHED = "finished"
    CUSTOM = "custom"


@dataclass(frozen=True)
class ProgressReport:
    step: ConversionStep
    current: int = 0
    total: int | None = None
    errors: Sequence[str] = field(default_factory=tuple)
    info: str | None = None

    @classmethod
    def custom(cls, info: str) -> ProgressReport:
        return cls(ConversionStep.CUSTOM, info=info)


ProgressSink = Callable[[ProgressReport], None]

_STEP_MESSAGES: dict[ConversionStep, str] = {
    ConversionStep.INIT: "Starting",
    ConversionStep.FETCHING_BOARD: "Fetching Trello board...",
    ConversionStep.BOARD_FETCHED: "Trello board fetched",
    ConversionStep.GRANT_ADMIN_PRIVILEGES: "Granting admin privileges",
    ConversionStep.ADMIN_PRIVILEGES_GRANTED: "Admin privileges granted",
    ConversionStep.FETCH_MILESTONES: "Fetching milestones",
    ConversionStep.MILESTONES_FETCHED: "Milestones fetched",
    ConversionStep.CONVERTING_CARDS: "Converting cards",
    ConversionStep.CARDS_CONVERTED: "Cards converted",
    ConversionStep.REWRITING_LINKS: "Rewriting Trello links",
    ConversionStep.LINKS_REWRITTEN: "Trello links rewritten",
    ConversionStep.REVOKE_ADMIN_PRIVILEGES: "Revoking admin privileges",
    ConversionStep.ADMIN_PRIVILEGES_REVOKED: "Admin privileges revoked",
    ConversionStep.FINISHED: "Finished",
}


def format_report(report: ProgressReport) -> str:
    if report.step is ConversionStep.CUSTOM:
        return report.info or ""
    message = _STEP_MESSAGES[report.step]
    if report.total is not None:
        message += f" ({report.current}/{report.total})"
    return message


def log_progress(report: ProgressReport) -> None:
    """Default progress sink: steps at INFO, per-item progress at DEBUG, errors at ERROR."""
    for error in report.errors:
        logger.error(error)
    if report.errors:
        return
    is_item_progress = report.total is not None and report.step is not ConversionStep.FINISHED
    logger.log(logging.DEBUG if is_item_progress else logging.INFO, format_report(report))


class ProgressCollector:
    """Sink that keeps every report; used to summarize a run."""

    def __init__(self, forward: ProgressSink | None = None) -> None:
        self.reports: list[ProgressReport] = []
        self._forward = forward

    def __call__(self, report: ProgressReport) -> None:
        self.reports.append(report)
        if self._forward is not None:
            self._forward(report)

    @property
    def errors(self) -> list[str]:
        return [error for report in self.reports for error in report.errors]

    @property
    def infos(self) -> list[str]:
        return [report.info for report in self.reports if report.info]
