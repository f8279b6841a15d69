"""
Trello REST client for the operations dashboard.

Every public call returns a Result instead of raising or returning None, so
the caller decides whether a failure degrades to an empty view or is pushed
up to the user. Credentials are captured once in a TrelloConfig and passed
to the client explicitly.
"""
from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import requests
from dateutil import parser as dtparser
from dotenv import load_dotenv

logger = logging.getLogger("trello_client")

API_URL = "https://api.trello.com/1"

# Trello truncates /boards/{id}/actions at this many records per call.
ACTION_PAGE_LIMIT = 1000
SPLIT_PARTS = 4
# Windows narrower than this are not split further even if still at the cap.
MIN_SPLIT_WIDTH = timedelta(seconds=4)


class MissingCredentialsError(RuntimeError):
    """Raised when the API key or token is not configured."""


class TrelloAPIError(Exception):
    """Raised when a Trello call fails: non-2xx status, transport error or bad JSON.

    status_code is None for failures that never produced an HTTP response.
    """

    def __init__(self, status_code: int | None, detail: str = "", method: str = "", path: str = "") -> None:
        self.status_code = status_code
        self.detail = detail
        self.method = method
        self.path = path
        where = f" ({method} {path})" if method else ""
        super().__init__(f"Trello API error {status_code}{where}: {detail}")


# ----------------------------
# Config
# ----------------------------
@dataclass(frozen=True)
class TrelloConfig:
    api_key: str
    token: str
    board_id: str | None = None
    base_url: str = API_URL
    member_id: str | None = None
    timeout: float = 60

    def __post_init__(self) -> None:
        if not self.api_key or not self.token:
            raise MissingCredentialsError("Missing Trello credentials. Set TRELLO_API_KEY and TRELLO_TOKEN.")

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None, dotenv: bool = True) -> "TrelloConfig":
        """Build the config from TRELLO_* variables (loading .env first when dotenv is set)."""
        if env is None:
            if dotenv:
                load_dotenv()
            env = dict(os.environ)
        return cls(
            api_key=env.get("TRELLO_API_KEY", ""),
            token=env.get("TRELLO_TOKEN", ""),
            board_id=env.get("TRELLO_BOARD_ID") or None,
            base_url=env.get("TRELLO_BASE_URL") or API_URL,
            member_id=env.get("TRELLO_MEMBER_ID") or None,
        )

    def auth_params(self) -> dict[str, str]:
        return {"key": self.api_key, "token": self.token}


# ----------------------------
# Result type
# ----------------------------
@dataclass(frozen=True)
class Result:
    value: Any = None
    error: Exception | None = None

    @classmethod
    def success(cls, value: Any = None) -> "Result":
        return cls(value=value)

    @classmethod
    def failure(cls, error: Exception) -> "Result":
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.value

    def value_or(self, default: Any) -> Any:
        return self.value if self.error is None else default

    def map(self, func: Callable[[Any], Any]) -> "Result":
        if self.error is not None:
            return self
        return Result.success(func(self.value))


@dataclass
class ActionWindow:
    """Actions pulled for one [since, before) interval.

    truncated lists the sub-windows that still hit ACTION_PAGE_LIMIT after
    splitting, i.e. where some actions may be missing.
    """

    actions: list[dict[str, Any]] = field(default_factory=list)
    truncated: list[tuple[datetime, datetime]] = field(default_factory=list)

    @classmethod
    def empty(cls) -> "ActionWindow":
        return cls()


# ----------------------------
# Helpers
# ----------------------------
def parse_dt(s):
    """Parse an ISO-8601 string (or pass a datetime through) as an aware datetime.

    Naive values are taken to be UTC. Returns None for empty or unparsable input.
    """
    if not s:
        return None
    if isinstance(s, datetime):
        dt = s
    else:
        try:
            dt = dtparser.isoparse(s)
        except (TypeError, ValueError):
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def to_iso(value) -> str:
    """UTC timestamp in the form Trello returns, e.g. 2024-05-01T03:00:00.000Z."""
    dt = parse_dt(value)
    if dt is None:
        raise ValueError(f"Not a timestamp: {value!r}")
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def split_interval(since, before, parts: int = SPLIT_PARTS) -> list[tuple[datetime, datetime]]:
    """Split [since, before) into `parts` contiguous, equal-width windows.

    Each window's end is the next window's start; the last one ends exactly at `before`.
    """
    start, end = parse_dt(since), parse_dt(before)
    if start is None or end is None:
        raise ValueError(f"Invalid interval: {since!r} .. {before!r}")
    if start >= end:
        raise ValueError(f"since must be earlier than before ({since!r} >= {before!r})")
    if parts < 1:
        raise ValueError("parts must be positive")
    width = (end - start) / parts
    bounds = [start + width * i for i in range(parts)] + [end]
    return [(bounds[i], bounds[i + 1]) for i in range(parts)]


def _merge_windows(windows: list[ActionWindow]) -> ActionWindow:
    # Keeps interval order; an action sitting exactly on a shared boundary can come back twice.
    seen = set()
    merged = ActionWindow()
    for w in windows:
        for action in w.actions:
            aid = action.get("id")
            if aid is not None:
                if aid in seen:
                    continue
                seen.add(aid)
            merged.actions.append(action)
        merged.truncated.extend(w.truncated)
    return merged


# ----------------------------
# Trello client
# ----------------------------
class TrelloClient:
    def __init__(self, config: TrelloConfig, session: requests.Session | None = None):
        self.config = config
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})

    def _board(self, suffix: str = "") -> str:
        if not self.config.board_id:
            raise ValueError("TRELLO_BOARD_ID is not configured")
        return f"/boards/{self.config.board_id}{suffix}"

    def _request(self, method: str, path: str, params: dict | None = None, json: Any = None) -> Any:
        url = self.config.base_url.rstrip("/") + path
        query = dict(params or {})
        query.update(self.config.auth_params())
        try:
            r = self.session.request(method, url, params=query, json=json, timeout=self.config.timeout)
        except requests.RequestException as e:
            # str(e) can carry the full URL, query string included
            raise TrelloAPIError(None, type(e).__name__, method, path) from e
        if not 200 <= r.status_code < 300:
            raise TrelloAPIError(r.status_code, (r.text or "")[:500], method, path)
        if r.status_code == 204 or not r.content:
            return None
        try:
            return r.json()
        except ValueError as e:
            raise TrelloAPIError(r.status_code, f"invalid JSON: {e}", method, path) from e

    def _call(self, method: str, path: str, params: dict | None = None, json: Any = None) -> Result:
        try:
            return Result.success(self._request(method, path, params=params, json=json))
        except TrelloAPIError as e:
            logger.warning("%s %s failed: %s", method, path, e.detail or e.status_code)
            return Result.failure(e)

    # ---------- reads ----------
    def get_cards_by_list(self, list_id: str, fields: list[str] | None = None) -> Result:
        params = {"fields": ",".join(fields)} if fields else None
        return self._call("GET", f"/lists/{list_id}/cards", params=params)

    def get_cards_by_list_and_member(self, list_id: str, member_id: str) -> Result:
        return self.get_cards_by_list(list_id).map(
            lambda cards: [c for c in cards or [] if member_id in (c.get("idMembers") or [])]
        )

    def get_lists(self, include_closed: bool = True) -> Result:
        """Open lists of the board, followed by the closed ones when include_closed is set."""
        open_lists = self._call("GET", self._board("/lists"))
        if not open_lists.ok or not include_closed:
            return open_lists
        closed_lists = self._call("GET", self._board("/lists"), params={"filter": "closed"})
        if not closed_lists.ok:
            return closed_lists
        return Result.success(list(open_lists.value or []) + list(closed_lists.value or []))

    def get_board_cards(self, since=None, before=None, fields: list[str] | None = None) -> Result:
        params = {}
        if since is not None:
            params["since"] = to_iso(since)
        if before is not None:
            params["before"] = to_iso(before)
        if fields:
            params["fields"] = ",".join(fields)
        return self._call("GET", self._board("/cards"), params=params)

    def get_cards_by_member(self, member_id: str) -> Result:
        return self._call("GET", self._board(f"/cards/member/{member_id}"), params={"fields": "all"})

    def get_card(self, card_id: str) -> Result:
        return self._call("GET", f"/cards/{card_id}")

    def get_card_actions(self, card_id: str, action_filter: str = "all") -> Result:
        return self._call("GET", f"/cards/{card_id}/actions", params={"filter": action_filter})

    def get_card_created_at(self, card_id: str) -> Result:
        """Date string of the card's createCard action, or None when Trello has none."""
        return self.get_card_actions(card_id, action_filter="createCard").map(
            lambda actions: actions[0].get("date") if actions else None
        )

    def get_board_actions(self, since, before, action_filter: str = "all", limit: int = ACTION_PAGE_LIMIT) -> Result:
        params = {
            "since": to_iso(since),
            "before": to_iso(before),
            "filter": action_filter,
            "limit": limit,
        }
        return self._call("GET", self._board("/actions"), params=params)

    def get_board_members(self) -> Result:
        return self._call("GET", self._board("/members"),
                          params={"fields": "id,fullName,username,avatarUrl,initials"})

    def get_board_labels(self, limit: int = 100) -> Result:
        return self._call("GET", self._board("/labels"), params={"limit": limit})

    def search_cards(self, query: str, limit: int = 100) -> Result:
        params = {
            "query": query,
            "modelTypes": "cards",
            "cards_limit": limit,
            "partial": "true",
        }
        if self.config.board_id:
            params["idBoards"] = self.config.board_id
        return self._call("GET", "/search", params=params).map(lambda data: (data or {}).get("cards", []))

    def list_webhooks(self) -> Result:
        return self._call("GET", f"/tokens/{self.config.token}/webhooks")

    def get_webhook(self, webhook_id: str) -> Result:
        return self._call("GET", f"/webhooks/{webhook_id}")

    def get_card_attachments(self, card_id: str) -> Result:
        return self._call("GET", f"/cards/{card_id}/attachments")

    def get_member_notifications(self, member_id: str | None = None) -> Result:
        member = member_id or self.config.member_id or "me"
        return self._call("GET", f"/members/{member}/notifications", params={"filter": "all"})

    # ---------- writes ----------
    def move_card(self, card_id: str, list_id: str) -> Result:
        return self._call("PUT", f"/cards/{card_id}", params={"idList": list_id})

    def add_member(self, card_id: str, member_id: str) -> Result:
        return self._call("POST", f"/cards/{card_id}/idMembers", params={"value": member_id})

    def remove_member(self, card_id: str, member_id: str) -> Result:
        return self._call("DELETE", f"/cards/{card_id}/idMembers/{member_id}")

    def add_label(self, card_id: str, label_id: str) -> Result:
        return self._call("POST", f"/cards/{card_id}/idLabels", params={"value": label_id})

    def remove_label(self, card_id: str, label_id: str) -> Result:
        return self._call("DELETE", f"/cards/{card_id}/idLabels/{label_id}")

    def add_comment(self, card_id: str, text: str) -> Result:
        return self._call("POST", f"/cards/{card_id}/actions/comments", params={"text": text})

    def update_card(self, card_id: str, **fields) -> Result:
        if not fields:
            raise ValueError("update_card needs at least one field")
        return self._call("PUT", f"/cards/{card_id}", json=fields)

    def update_card_name(self, card_id: str, name: str) -> Result:
        return self.update_card(card_id, name=name)

    def update_card_description(self, card_id: str, description: str) -> Result:
        return self.update_card(card_id, desc=description)

    def update_card_due(self, card_id: str, due) -> Result:
        return self.update_card(card_id, due=to_iso(due) if due else None)

    def mark_complete(self, card_id: str, complete: bool = True) -> Result:
        return self.update_card(card_id, dueComplete=complete)

    def create_webhook(self, callback_url: str, id_model: str, description: str = "") -> Result:
        params = {"callbackURL": callback_url, "idModel": id_model, "description": description}
        return self._call("POST", "/webhooks", params=params)

    def update_webhook(self, webhook_id: str, **fields) -> Result:
        return self._call("PUT", f"/webhooks/{webhook_id}", params=fields)

    def delete_webhook(self, webhook_id: str) -> Result:
        return self._call("DELETE", f"/webhooks/{webhook_id}")

    def delete_attachment(self, card_id: str, attachment_id: str) -> Result:
        return self._call("DELETE", f"/cards/{card_id}/attachments/{attachment_id}")

    def mark_all_notifications_read(self) -> Result:
        return self._call("POST", "/notifications/all/read")

    def update_notification(self, notification_id: str, read: bool) -> Result:
        return self._call("PUT", f"/notifications/{notification_id}", json={"unread": not read})

    # ---------- bounded-interval action fetch ----------
    def fetch_actions_in_interval(self, since, before, action_filter: str = "all", max_depth: int = 2) -> Result:
        """All board actions in [since, before), fetched as 4 concurrent sub-windows.

        Waits for every sub-fetch; if any fails the whole call fails with the
        first error. A sub-window that comes back at ACTION_PAGE_LIMIT is split
        again, up to max_depth more levels, and reported in
        ActionWindow.truncated if it is still full at the bottom.
        """
        windows = split_interval(since, before, SPLIT_PARTS)
        with ThreadPoolExecutor(max_workers=SPLIT_PARTS) as pool:
            futures = [pool.submit(self._fetch_window, s, b, action_filter, max_depth) for s, b in windows]
            outcomes = [f.result() for f in futures]

        for outcome in outcomes:
            if not outcome.ok:
                return outcome
        merged = _merge_windows([o.value for o in outcomes])
        if merged.truncated:
            logger.warning("%d window(s) between %s and %s may be truncated at %d actions",
                           len(merged.truncated), to_iso(since), to_iso(before), ACTION_PAGE_LIMIT)
        return Result.success(merged)

    def _fetch_window(self, since: datetime, before: datetime, action_filter: str, depth: int) -> Result:
        result = self.get_board_actions(since, before, action_filter=action_filter, limit=ACTION_PAGE_LIMIT)
        if not result.ok:
            return result
        actions = list(result.value or [])
        if len(actions) < ACTION_PAGE_LIMIT:
            return Result.success(ActionWindow(actions))
        if depth <= 0 or before - since < MIN_SPLIT_WIDTH:
            logger.warning("Actions between %s and %s hit the %d-action cap",
                           to_iso(since), to_iso(before), ACTION_PAGE_LIMIT)
            return Result.success(ActionWindow(actions, [(since, before)]))

        parts = []
        for s, b in split_interval(since, before, SPLIT_PARTS):
            sub = self._fetch_window(s, b, action_filter, depth - 1)
            if not sub.ok:
                return sub
            parts.append(sub.value)
        return Result.success(_merge_windows(parts))
