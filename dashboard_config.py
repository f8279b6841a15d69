"""
Locally curated lookup tables for the dashboard.

Trello only knows member ids, list ids and label names. Everything the
reports group by (who is on the TS team, which list means "done", which
app label belongs to which product team, how many KPI points a level label
is worth) is kept in dashboard_config.json next to this file.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from shifts import DEFAULT_TIMEZONE, local_timezone

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent / "dashboard_config.json"

# Semantic list categories; moves are classified by list id through these, never by list name.
LIST_CATEGORIES = (
    "new_issues",
    "doing",
    "done",
    "waiting_to_fix",
    "waiting_to_fix_from_dev",
    "update_workflow_or_waiting_access",
    "waiting_confirmation",
    "fix_done_from_dev",
)

TS_ROLES = frozenset({"ts", "ts-lead"})
APP_LABEL_PREFIX = "App:"

DEFAULT_ISSUE_POINTS = {
    "Issue: level 0": 4,
    "Issue: level 1": 13,
    "Issue: level 2": 20,
    "Issue: level 3": 35,
    "Issues: Level 4": 45,
}
DEFAULT_BUG_POINTS = 15
DEFAULT_CONFIRMATION_SLA_DAYS = 2


class ConfigError(ValueError):
    """Raised when dashboard_config.json is missing or malformed."""


@dataclass(frozen=True)
class Member:
    id: str
    full_name: str
    username: str = ""
    role: str = ""
    group: str = ""

    @property
    def is_ts(self) -> bool:
        return self.role.lower() in TS_ROLES


@dataclass(frozen=True)
class App:
    app_name: str
    label: str
    group_ts: str = ""
    product_team: str = ""


@dataclass
class DashboardConfig:
    timezone: str = DEFAULT_TIMEZONE
    members: list[Member] = field(default_factory=list)
    list_categories: dict[str, str] = field(default_factory=dict)  # list id -> category
    list_names: dict[str, str] = field(default_factory=dict)  # list id -> display name
    apps: list[App] = field(default_factory=list)
    teams: list[str] = field(default_factory=list)
    issue_points: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_ISSUE_POINTS))
    bug_points: float = DEFAULT_BUG_POINTS
    issues_list_id: str | None = None
    bugs_list_id: str | None = None
    confirmation_sla_days: int = DEFAULT_CONFIRMATION_SLA_DAYS

    def member(self, member_id: str) -> Member | None:
        for m in self.members:
            if m.id == member_id:
                return m
        return None

    def member_name(self, member_id: str) -> str:
        m = self.member(member_id)
        return m.full_name if m else member_id

    @property
    def member_ids(self) -> set[str]:
        return {m.id for m in self.members}

    @property
    def ts_members(self) -> list[Member]:
        return [m for m in self.members if m.is_ts]

    @property
    def ts_member_ids(self) -> set[str]:
        return {m.id for m in self.ts_members}

    def list_ids_for(self, category: str) -> set[str]:
        return {lid for lid, cat in self.list_categories.items() if cat == category}


def _require(entry: dict[str, Any], key: str, where: str) -> Any:
    if not isinstance(entry, dict):
        raise ConfigError(f"{where}: expected an object, got {type(entry).__name__}")
    value = entry.get(key)
    if not value:
        raise ConfigError(f"{where}: missing '{key}'")
    return value


def config_from_dict(data: dict[str, Any]) -> DashboardConfig:
    if not isinstance(data, dict):
        raise ConfigError("config root must be an object")

    tz_name = data.get("timezone") or DEFAULT_TIMEZONE
    try:
        local_timezone(tz_name)
    except ValueError as e:
        raise ConfigError(str(e)) from e

    members = []
    for i, m in enumerate(data.get("members") or []):
        members.append(Member(
            id=_require(m, "id", f"members[{i}]"),
            full_name=m.get("full_name") or m.get("username") or m["id"],
            username=m.get("username") or "",
            role=m.get("role") or "",
            group=m.get("group") or "",
        ))

    list_categories, list_names = {}, {}
    for i, lst in enumerate(data.get("lists") or []):
        lid = _require(lst, "id", f"lists[{i}]")
        category = lst.get("category")
        if category is not None:
            if category not in LIST_CATEGORIES:
                raise ConfigError(f"lists[{i}]: unknown category {category!r}")
            list_categories[lid] = category
        list_names[lid] = lst.get("name") or lid

    apps = []
    for i, a in enumerate(data.get("apps") or []):
        name = _require(a, "app_name", f"apps[{i}]")
        apps.append(App(
            app_name=name,
            label=a.get("label") or f"{APP_LABEL_PREFIX} {name}",
            group_ts=a.get("group_ts") or "",
            product_team=a.get("product_team") or "",
        ))

    teams = list(data.get("teams") or [])
    if not teams:
        teams = sorted({a.product_team for a in apps if a.product_team})

    try:
        issue_points = {str(k): float(v) for k, v in (data.get("issue_points") or DEFAULT_ISSUE_POINTS).items()}
        bug_points = float(data.get("bug_points", DEFAULT_BUG_POINTS))
        sla_days = int(data.get("confirmation_sla_days", DEFAULT_CONFIRMATION_SLA_DAYS))
    except (TypeError, ValueError, AttributeError) as e:
        raise ConfigError(f"invalid number in config: {e}") from e

    return DashboardConfig(
        timezone=tz_name,
        members=members,
        list_categories=list_categories,
        list_names=list_names,
        apps=apps,
        teams=teams,
        issue_points=issue_points,
        bug_points=bug_points,
        issues_list_id=data.get("issues_list_id"),
        bugs_list_id=data.get("bugs_list_id"),
        confirmation_sla_days=sla_days,
    )


def load_config(path: Path | str | None = None) -> DashboardConfig:
    path = Path(path) if path else DEFAULT_CONFIG_PATH
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"config file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"{path}: invalid JSON ({e})") from e
    try:
        return config_from_dict(data)
    except ConfigError as e:
        raise ConfigError(f"{path}: {e}") from e
