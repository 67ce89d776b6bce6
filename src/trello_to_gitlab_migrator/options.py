"""
Options file loading and validation.

The options file is JSON. Keys may be written in camelCase (``boardId``) or
snake_case (``board_id``). Secrets may be omitted from the file and are then
looked up in the environment or in the ``pass`` password store.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Any, Final

from .exceptions import ConfigurationError
from .utils import resolve_secret

logger: logging.Logger = logging.getLogger(__name__)

VALID_CARD_FILTERS: Final[tuple[str, ...]] = ("all", "open", "visible", "closed")

_TRELLO_KEY_ENV_VAR: Final[str] = "TRELLO_KEY"
_TRELLO_TOKEN_ENV_VAR: Final[str] = "TRELLO_TOKEN"  # noqa: S105
_GITLAB_TOKEN_ENV_VAR: Final[str] = "GITLAB_TOKEN"  # noqa: S105
_DEFAULT_TRELLO_KEY_PASS_PATH: Final[str] = "trello/api/key"
_DEFAULT_TRELLO_TOKEN_PASS_PATH: Final[str] = "trello/api/token"  # noqa: S105
_DEFAULT_GITLAB_TOKEN_PASS_PATH: Final[str] = "gitlab/api/token"  # noqa: S105


class ConverterAction(IntEnum):
    """Run modes; every mode reuses the same components with a narrower entry point."""

    ALL = 0
    ADJUST_MENTIONS = 1
    DELETE_ISSUES = 2
    MOVE_CUSTOM_FIELDS = 3
    ASSOCIATE_WITH_TRELLO = 4
    REPLACE_TRELLO_LINKS = 5

    @classmethod
    def parse(cls, value: str | int | None) -> ConverterAction:
        if value is None or value == "":
            return cls.ALL
        if isinstance(value, int):
            try:
                return cls(value)
            except ValueError as e:
                msg = f"Invalid action: {value}"
                raise ConfigurationError(msg) from e
        normalized = _snake_case(value.strip()).upper()
        # Older option files spell it "AssocitateWithTrello"
        normalized = normalized.replace("ASSOCITATE", "ASSOCIATE")
        try:
            return cls[normalized]
        except KeyError as e:
            valid = ", ".join(member.name for member in cls)
            msg = f"Invalid action '{value}'. Valid values are: {valid}"
            raise ConfigurationError(msg) from e


@dataclass
class GlobalOptions:
    action: ConverterAction = ConverterAction.ALL
    delete_if_greater_than_issue_id: int = 0


@dataclass
class TrelloOptions:
    key: str | None = None
    token: str | None = None
    board_id: str = ""
    include: str = "all"
    # Card ids or short links; empty means every card is included
    cards_to_include: list[str] = field(default_factory=list)
    url: str = "https://trello.com"
    key_pass_path: str | None = None
    token_pass_path: str | None = None


@dataclass
class GitLabOptions:
    url: str = "https://gitlab.com"
    token: str | None = None
    sudo: bool = False
    project_id: int = 0
    token_pass_path: str | None = None


@dataclass
class AssociationsOptions:
    labels_labels: dict[str, str] = field(default_factory=dict)
    lists_labels: dict[str, str] = field(default_factory=dict)
    # Milestone values are project iids in the file; the migrator resolves them to global ids
    labels_milestones: dict[str, int] = field(default_factory=dict)
    lists_milestones: dict[str, int] = field(default_factory=dict)
    members_users: dict[str, int] = field(default_factory=dict)


@dataclass
class ConverterOptions:
    global_options: GlobalOptions = field(default_factory=GlobalOptions)
    trello: TrelloOptions = field(default_factory=TrelloOptions)
    gitlab: GitLabOptions = field(default_factory=GitLabOptions)
    associations: AssociationsOptions = field(default_factory=AssociationsOptions)
    # Trello username -> GitLab username, applied in file order
    mentions: dict[str, str] = field(default_factory=dict)


def _snake_case(name: str) -> str:
    return re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", name).lower()


def _normalize_keys(section: Any, name: str) -> dict[str, Any]:
    if section is None:
        return {}
    if not isinstance(section, dict):
        msg = f"Options section '{name}' must be an object"
        raise ConfigurationError(msg)
    return {_snake_case(key): value for key, value in section.items()}


def _int_mapping(mapping: dict[str, Any], name: str) -> dict[str, int]:
    try:
        return {str(key): int(value) for key, value in mapping.items()}
    except (TypeError, ValueError) as e:
        msg = f"Association '{name}' values must be integers"
        raise ConfigurationError(msg) from e


def parse_options(data: dict[str, Any]) -> ConverterOptions:
    """Build ConverterOptions from the decoded JSON document."""
    global_section = _normalize_keys(data.get("global"), "global")
    trello_section = _normalize_keys(data.get("trello"), "trello")
    gitlab_section = _normalize_keys(data.get("gitlab") or data.get("gitLab"), "gitlab")
    # Association keys are already snake_case in the file (labels_labels, ...)
    associations_section = _normalize_keys(data.get("associations"), "associations")

    mentions = data.get("mentions") or associations_section.get("mentions") or {}

    try:
        global_options = GlobalOptions(
            action=ConverterAction.parse(global_section.get("action")),
            delete_if_greater_than_issue_id=int(global_section.get("delete_if_greater_than_issue_id") or 0),
        )
        trello = TrelloOptions(
            key=trello_section.get("key"),
            token=trello_section.get("token"),
            board_id=trello_section.get("board_id") or "",
            include=trello_section.get("include") or "all",
            cards_to_include=list(trello_section.get("cards_to_include") or []),
            url=(trello_section.get("url") or "https://trello.com").rstrip("/"),
            key_pass_path=trello_section.get("key_pass_path"),
            token_pass_path=trello_section.get("token_pass_path"),
        )
        gitlab = GitLabOptions(
            url=(gitlab_section.get("url") or "https://gitlab.com").rstrip("/"),
            token=gitlab_section.get("token"),
            sudo=bool(gitlab_section.get("sudo", False)),
            project_id=int(gitlab_section.get("project_id") or 0),
            token_pass_path=gitlab_section.get("token_pass_path"),
        )
    except (TypeError, ValueError) as e:
        msg = f"Invalid options: {e}"
        raise ConfigurationError(msg) from e

    associations = AssociationsOptions(
        labels_labels=dict(associations_section.get("labels_labels") or {}),
        lists_labels=dict(associations_section.get("lists_labels") or {}),
        labels_milestones=_int_mapping(associations_section.get("labels_milestones") or {}, "labels_milestones"),
        lists_milestones=_int_mapping(associations_section.get("lists_milestones") or {}, "lists_milestones"),
        members_users=_int_mapping(associations_section.get("members_users") or {}, "members_users"),
    )

    return ConverterOptions(
        global_options=global_options,
        trello=trello,
        gitlab=gitlab,
        associations=associations,
        mentions={str(key): str(value) for key, value in mentions.items()},
    )


def resolve_secrets(options: ConverterOptions) -> None:
    """Fill in secrets missing from the file from pass or the environment."""
    options.trello.key = resolve_secret(
        options.trello.key,
        env_var=_TRELLO_KEY_ENV_VAR,
        pass_path=options.trello.key_pass_path,
        default_pass_path=_DEFAULT_TRELLO_KEY_PASS_PATH,
    )
    options.trello.token = resolve_secret(
        options.trello.token,
        env_var=_TRELLO_TOKEN_ENV_VAR,
        pass_path=options.trello.token_pass_path,
        default_pass_path=_DEFAULT_TRELLO_TOKEN_PASS_PATH,
    )
    options.gitlab.token = resolve_secret(
        options.gitlab.token,
        env_var=_GITLAB_TOKEN_ENV_VAR,
        pass_path=options.gitlab.token_pass_path,
        default_pass_path=_DEFAULT_GITLAB_TOKEN_PASS_PATH,
    )


def validate_options(options: ConverterOptions) -> None:
    """Check options validity; raises ConfigurationError naming the first problem."""
    if not options.trello.key:
        msg = "Missing Trello key."
        raise ConfigurationError(msg)
    if not options.trello.token:
        msg = "Missing Trello token."
        raise ConfigurationError(msg)
    if not options.trello.board_id:
        msg = "Missing Trello board ID."
        raise ConfigurationError(msg)
    if options.trello.include not in VALID_CARD_FILTERS:
        msg = "Invalid Trello include. Valid values are: 'all', 'open', 'visible' or 'closed'"
        raise ConfigurationError(msg)
    if not options.gitlab.token:
        msg = "Missing GitLab token."
        raise ConfigurationError(msg)
    if not options.gitlab.project_id:
        msg = "Missing GitLab project ID."
        raise ConfigurationError(msg)


def load_options(path: str | Path, *, resolve: bool = True) -> ConverterOptions:
    """Load, complete and validate the options file."""
    options_path = Path(path)
    if not options_path.is_file():
        msg = f"The options file cannot be located at: {options_path}"
        raise ConfigurationError(msg)

    try:
        data = json.loads(options_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        msg = f"The options file is not valid JSON: {e}"
        raise ConfigurationError(msg) from e
    if not isinstance(data, dict):
        msg = "The options file must contain a JSON object"
        raise ConfigurationError(msg)

    options = parse_options(data)
    if resolve:
        resolve_secrets(options)
    validate_options(options)
    logger.debug(f"Loaded options from {options_path} (action: {options.global_options.action.name})")
    return options
