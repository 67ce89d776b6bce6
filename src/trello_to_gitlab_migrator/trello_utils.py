"""Trello REST client and conversion of Trello JSON into source models."""

from __future__ import annotations

import datetime as dt
import logging
from typing import TYPE_CHECKING, Any, Final

import requests

from .exceptions import ApiError
from .models import (
    COMMENT_CARD,
    CREATE_CARD,
    UPDATE_CARD,
    UPDATE_LIST,
    CheckItem,
    Checklist,
    CustomFieldDefinition,
    CustomFieldItem,
    CustomFieldOption,
    SourceAction,
    SourceAttachment,
    SourceBoard,
    SourceCard,
    SourceList,
)

if TYPE_CHECKING:
    from .options import TrelloOptions

logger: logging.Logger = logging.getLogger(__name__)

API_BASE_URL: Final[str] = "https://api.trello.com/1"
# The actions endpoint returns at most this many items per call
ACTIONS_PAGE_LIMIT: Final[int] = 1000
ACTION_FILTER: Final[str] = ",".join((CREATE_CARD, UPDATE_CARD, COMMENT_CARD, UPDATE_LIST))
REQUEST_TIMEOUT: Final[int] = 60


def parse_datetime(value: str | None) -> dt.datetime | None:
    """Parse a Trello ISO 8601 timestamp ("2024-01-15T10:30:45.123Z")."""
    if not value:
        return None
    try:
        return dt.datetime.fromisoformat(value)
    except ValueError:
        logger.warning(f"Ignoring unparsable Trello date: {value}")
        return None


def parse_card(data: dict[str, Any]) -> SourceCard:
    return SourceCard(
        id=data["id"],
        short_link=data.get("shortLink") or "",
        short_url=data.get("shortUrl") or "",
        name=data.get("name") or "",
        desc=data.get("desc") or "",
        closed=bool(data.get("closed", False)),
        due=parse_datetime(data.get("due")),
        id_list=data.get("idList") or "",
        id_labels=tuple(data.get("idLabels") or ()),
        id_members=tuple(data.get("idMembers") or ()),
        date_last_activity=parse_datetime(data.get("dateLastActivity")),
    )


def parse_list(data: dict[str, Any]) -> SourceList:
    return SourceList(id=data["id"], name=data.get("name") or "", closed=bool(data.get("closed", False)))


def parse_checklist(data: dict[str, Any]) -> Checklist:
    items = sorted(data.get("checkItems") or [], key=lambda item: item.get("pos", 0))
    return Checklist(
        id=data["id"],
        name=data.get("name") or "",
        id_card=data.get("idCard") or "",
        check_items=tuple(CheckItem(name=item.get("name") or "", state=item.get("state") or "") for item in items),
    )


def parse_action(data: dict[str, Any]) -> SourceAction:
    payload: dict[str, Any] = data.get("data") or {}
    card = payload.get("card") or {}
    trello_list = payload.get("list") or {}
    date = parse_datetime(data.get("date")) or dt.datetime.min.replace(tzinfo=dt.UTC)
    return SourceAction(
        id=data["id"],
        type=data.get("type") or "",
        date=date,
        member_creator_id=data.get("idMemberCreator"),
        card_id=card.get("id"),
        list_id=trello_list.get("id"),
        text=payload.get("text"),
        old=dict(payload.get("old") or {}),
    )


def parse_attachment(data: dict[str, Any]) -> SourceAttachment:
    return SourceAttachment(
        id=data.get("id") or "",
        name=data.get("name") or "",
        url=data.get("url") or "",
        mime_type=data.get("mimeType") or None,
    )


def parse_custom_field(data: dict[str, Any]) -> CustomFieldDefinition:
    options = tuple(
        CustomFieldOption(id=option["id"], text=(option.get("value") or {}).get("text") or "")
        for option in data.get("options") or []
    )
    return CustomFieldDefinition(id=data["id"], name=data.get("name") or "", type=data.get("type") or "", options=options)


def parse_custom_field_item(data: dict[str, Any]) -> CustomFieldItem:
    value: dict[str, Any] = data.get("value") or {}
    # Non-list fields keep their value under a key named after the type (text, number, date, checked)
    text = next((str(v) for v in value.values() if v not in (None, "")), None)
    return CustomFieldItem(
        id_custom_field=data.get("idCustomField") or "",
        value=text,
        id_value=data.get("idValue"),
    )


class TrelloClient:
    """Thin Trello API client implementing the SourceClient protocol."""

    _session: requests.Session
    _board_id: str
    _include: str

    def __init__(self, options: TrelloOptions, session: requests.Session | None = None) -> None:
        self._key = options.key or ""
        self._token = options.token or ""
        self._board_id = options.board_id
        self._include = options.include
        self._session = session or requests.Session()

    def _request(self, path: str, params: dict[str, Any] | None = None) -> Any:
        query = {"key": self._key, "token": self._token, **(params or {})}
        url = f"{API_BASE_URL}/{path.lstrip('/')}"
        response = self._session.get(url, params=query, timeout=REQUEST_TIMEOUT)
        if response.status_code >= 400:
            raise ApiError(response.status_code, response.reason, response.text)
        return response.json()

    def get_board(self) -> SourceBoard:
        data = self._request(
            f"boards/{self._board_id}",
            {"fields": "none", "cards": self._include, "checklists": "all", "lists": "all"},
        )
        board = SourceBoard(
            cards=[parse_card(card) for card in data.get("cards") or []],
            lists=[parse_list(lst) for lst in data.get("lists") or []],
            checklists=[parse_checklist(checklist) for checklist in data.get("checklists") or []],
            actions=self._get_all_actions(),
        )
        logger.info(
            f"Fetched board {self._board_id}: {len(board.cards)} cards, {len(board.lists)} lists, "
            f"{len(board.actions)} actions"
        )
        return board

    def _get_all_actions(self) -> list[SourceAction]:
        """Page through the board actions (newest first) using the id of the last action seen."""
        actions: list[SourceAction] = []
        while True:
            params: dict[str, Any] = {"limit": ACTIONS_PAGE_LIMIT, "filter": ACTION_FILTER}
            if actions:
                params["before"] = actions[-1].id
            page = self._request(f"boards/{self._board_id}/actions", params)
            actions.extend(parse_action(action) for action in page)
            if len(page) < ACTIONS_PAGE_LIMIT:
                return actions

    def get_attachments(self, card_id: str) -> list[SourceAttachment]:
        return [parse_attachment(a) for a in self._request(f"cards/{card_id}/attachments")]

    def download_attachment(self, url: str) -> bytes:
        """Download an attachment; uploads on Trello's storage require the OAuth header."""
        headers = {"Authorization": f'OAuth oauth_consumer_key="{self._key}", oauth_token="{self._token}"'}
        response = self._session.get(url, headers=headers, timeout=REQUEST_TIMEOUT)
        if response.status_code >= 400:
            raise ApiError(response.status_code, response.reason, response.text)
        return response.content

    def get_custom_field_definitions(self) -> list[CustomFieldDefinition]:
        return [parse_custom_field(f) for f in self._request(f"boards/{self._board_id}/customFields")]

    def get_custom_field_items(self, card_id: str) -> list[CustomFieldItem]:
        return [parse_custom_field_item(i) for i in self._request(f"cards/{card_id}/customFieldItems")]
