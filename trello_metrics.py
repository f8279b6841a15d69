"""
Aggregations over Trello cards and actions.

Everything here is pure: records in (the JSON dicts Trello returns), dicts
and lists out. Fetching lives in trello_client, presentation in
trello_analytics / generate_dashboard.
"""
from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from dashboard_config import APP_LABEL_PREFIX, App, DashboardConfig
from shifts import Granularity, classify, local_timezone, shift_labels
from trello_client import parse_dt

ACTION_CATEGORIES = (
    "complete",
    "move_to_done",
    "move_to_doing",
    "move_to_waiting_to_fix",
    "move_to_waiting_to_fix_from_dev",
    "move_to_update_workflow_or_waiting_access",
    "move_to_fix_done_from_dev",
    "left_card",
    "comment_card",
    "assigned",
)

# list category of listAfter -> action category
_MOVE_CATEGORIES = {
    "done": "move_to_done",
    "doing": "move_to_doing",
    "waiting_to_fix": "move_to_waiting_to_fix",
    "waiting_to_fix_from_dev": "move_to_waiting_to_fix_from_dev",
    "update_workflow_or_waiting_access": "move_to_update_workflow_or_waiting_access",
    "fix_done_from_dev": "move_to_fix_done_from_dev",
}

_MULTI_KEY_TYPES = (list, tuple, set, frozenset)


# ----------------------------
# Helpers
# ----------------------------
def percentile(values, p):
    if not values:
        return None
    values = sorted(values)
    k = (len(values) - 1) * (p / 100.0)
    f = math.floor(k)
    c = math.ceil(k)
    if f == c:
        return values[int(k)]
    return values[f] + (values[c] - values[f]) * (k - f)


def summarize_minutes(values):
    values = [v for v in values if v is not None and v >= 0]
    if not values:
        return {}
    return {
        "count": len(values),
        "avg_minutes": round(sum(values) / len(values), 1),
        "p50_minutes": percentile(values, 50),
        "p90_minutes": percentile(values, 90),
    }


def action_card_id(action):
    return ((action.get("data") or {}).get("card") or {}).get("id")


def action_date(action):
    return parse_dt(action.get("date"))


def sort_actions_by_timeline(actions):
    """Oldest first; actions without a parsable date go last, in input order."""
    far_future = datetime.max.replace(tzinfo=timezone.utc)
    return sorted(actions or [], key=lambda a: action_date(a) or far_future)


def counts(groups):
    return {k: len(v) for k, v in groups.items()}


# ----------------------------
# Grouping
# ----------------------------
def group_by(records, key_func: Callable[[Any], Any], seed_keys: Iterable = ()):
    """Bucket records by key_func.

    key_func returns a key, None (record dropped) or a list/tuple/set of keys
    (record goes to each, once). Keys never produced are absent unless they
    are in seed_keys, which are always present, possibly with empty lists.
    """
    groups = {k: [] for k in seed_keys}
    for record in records or []:
        keys = key_func(record)
        if keys is None:
            continue
        if not isinstance(keys, _MULTI_KEY_TYPES):
            keys = (keys,)
        for k in dict.fromkeys(keys):
            if k is not None:
                groups.setdefault(k, []).append(record)
    return groups


def actions_by_member(actions):
    """Actor bucket for every action; for addMemberToCard also the added member's bucket.

    An action lands in a given member's bucket at most once, so adding
    yourself to a card counts once.
    """
    groups = {}
    seen = set()

    def _add(member_id, action):
        marker = (member_id, action.get("id"))
        if action.get("id") is not None and marker in seen:
            return
        seen.add(marker)
        groups.setdefault(member_id, []).append(action)

    for a in actions or []:
        actor = a.get("idMemberCreator")
        if actor:
            _add(actor, a)
        if a.get("type") == "addMemberToCard":
            affected = (a.get("data") or {}).get("idMember")
            if affected and affected != actor:
                _add(affected, a)
    return groups


def actions_by_card(actions):
    return group_by(actions, action_card_id)


def local_day(timestamp, tz=None):
    dt = parse_dt(timestamp)
    if dt is None:
        return None
    return dt.astimezone(local_timezone(tz)).date().isoformat()


def actions_by_day(actions, tz=None):
    return group_by(actions, lambda a: local_day(a.get("date"), tz))


def _shift_key(timestamp, granularity, tz):
    if parse_dt(timestamp) is None:
        return None
    return classify(timestamp, granularity, tz).label


def actions_by_shift(actions, granularity=Granularity.FINE, tz=None):
    return group_by(actions, lambda a: _shift_key(a.get("date"), granularity, tz),
                    seed_keys=shift_labels(granularity))


def day_shift_matrix(actions, granularity=Granularity.FINE, tz=None):
    """{local day: {shift label: count}} with every shift label present for each day seen."""
    matrix = {}
    for day, day_actions in sorted(actions_by_day(actions, tz).items()):
        matrix[day] = counts(actions_by_shift(day_actions, granularity, tz))
    return matrix


def cards_by_list(cards, seed_list_ids=()):
    return group_by(cards, lambda c: c.get("idList"), seed_keys=seed_list_ids)


def app_labels(card):
    return [l.get("name") for l in card.get("labels") or []
            if (l.get("name") or "").startswith(APP_LABEL_PREFIX)]


def cards_by_app(cards, apps: list[App], group_ts: str | None = None):
    """Cards per configured app (matched on exact label name), every selected app seeded."""
    selected = [a for a in apps if group_ts is None or a.group_ts == group_ts]
    by_label = {a.label: a.app_name for a in selected}
    return group_by(cards, lambda c: [by_label[l] for l in app_labels(c) if l in by_label],
                    seed_keys=[a.app_name for a in selected])


def card_team(card, apps: list[App]):
    """Product team of the card's first app label that maps to a configured app."""
    by_label = {a.label: a.product_team for a in apps}
    for label in app_labels(card):
        team = by_label.get(label)
        if team:
            return team
    return None


def cards_by_team(cards, apps: list[App], teams: Iterable[str] = ()):
    return group_by(cards, lambda c: card_team(c, apps), seed_keys=teams)


# ----------------------------
# Action categories
# ----------------------------
def classify_action(action, list_categories: dict[str, str], ts_member_ids=frozenset()):
    """Set of ACTION_CATEGORIES an action belongs to (possibly empty)."""
    cats = set()
    kind = action.get("type")
    data = action.get("data") or {}
    if kind == "updateCard":
        if (data.get("card") or {}).get("dueComplete") is True:
            cats.add("complete")
        after = (data.get("listAfter") or {}).get("id")
        move = _MOVE_CATEGORIES.get(list_categories.get(after))
        if move:
            cats.add(move)
    elif kind == "removeMemberFromCard":
        actor = action.get("idMemberCreator")
        if actor and actor == data.get("idMember"):
            cats.add("left_card")
    elif kind == "commentCard":
        cats.add("comment_card")
    elif kind == "addMemberToCard":
        if data.get("idMember") in ts_member_ids:
            cats.add("assigned")
    return cats


def category_counts(actions, list_categories, ts_member_ids=frozenset()):
    c = Counter()
    for a in actions or []:
        c.update(classify_action(a, list_categories, ts_member_ids))
    return {cat: c.get(cat, 0) for cat in ACTION_CATEGORIES}


def member_action_summary(actions, config: DashboardConfig, category=None, member_id=None):
    """Per TS member: time-sorted actions (optionally one category only) and category counts.

    Members without any matching action are left out.
    """
    if category is not None and category not in ACTION_CATEGORIES:
        raise ValueError(f"Unknown action category: {category}")
    ts_ids = config.ts_member_ids
    grouped = actions_by_member(actions)
    rows = []
    for m in config.ts_members:
        if member_id is not None and m.id != member_id:
            continue
        member_actions = sort_actions_by_timeline(grouped.get(m.id, []))
        if category is not None:
            member_actions = [a for a in member_actions
                              if category in classify_action(a, config.list_categories, ts_ids)]
        if not member_actions:
            continue
        rows.append({
            "member_id": m.id,
            "name": m.full_name,
            "group": m.group,
            "total": len(member_actions),
            "counts": category_counts(member_actions, config.list_categories, ts_ids),
            "actions": member_actions,
        })
    return rows


# ----------------------------
# KPI points
# ----------------------------
@dataclass
class KpiReport:
    members: dict[str, dict[str, Any]] = field(default_factory=dict)
    multi_assignee: list[dict[str, Any]] = field(default_factory=list)
    no_points: list[dict[str, Any]] = field(default_factory=list)
    multi_level: list[dict[str, Any]] = field(default_factory=list)

    def totals(self):
        return {mid: row["points"] for mid, row in self.members.items()}

    def to_dict(self):
        return {
            "members": self.members,
            "multi_assignee": self.multi_assignee,
            "no_points": self.no_points,
            "multi_level": self.multi_level,
        }


def _card_ref(card, **extra):
    ref = {"id": card.get("id"), "name": card.get("name"), "shortUrl": card.get("shortUrl")}
    ref.update(extra)
    return ref


def credit_points(cards, point_func: Callable[[dict], list], qualifying_ids) -> KpiReport:
    """Credit each card's points to its qualifying assignees.

    point_func(card) returns the card's candidate (level, points) pairs; a
    card needs exactly one. One assignee gets the full points, two get half
    each, three or more get nothing and the card goes to multi_assignee.
    Cards with no qualifying assignee are ignored.
    """
    report = KpiReport()
    for card in cards or []:
        assignees = [m for m in dict.fromkeys(card.get("idMembers") or []) if m in qualifying_ids]
        if not assignees:
            continue
        candidates = point_func(card)
        if not candidates:
            report.no_points.append(_card_ref(card, members=assignees))
            continue
        if len(candidates) > 1:
            report.multi_level.append(_card_ref(card, members=assignees, levels=[lv for lv, _ in candidates]))
            continue
        level, points = candidates[0]
        if len(assignees) > 2:
            report.multi_assignee.append(_card_ref(card, members=assignees, level=level, points=points))
            continue
        share = points / len(assignees)
        for mid in assignees:
            row = report.members.setdefault(mid, {
                "points": 0, "card_count": 0, "cards": [], "level_points": {}, "level_counts": {},
            })
            row["points"] += share
            row["card_count"] += 1
            row["cards"].append(_card_ref(card, level=level, points=share))
            row["level_points"][level] = row["level_points"].get(level, 0) + share
            row["level_counts"][level] = row["level_counts"].get(level, 0) + 1
    return report


def issue_kpi(cards, config: DashboardConfig) -> KpiReport:
    """Issue KPI: points from the card's level label, credited to TS members."""
    def levels(card):
        return [(l["name"], config.issue_points[l["name"]])
                for l in card.get("labels") or [] if l.get("name") in config.issue_points]
    return credit_points(cards, levels, config.ts_member_ids)


def bug_kpi(cards, config: DashboardConfig) -> KpiReport:
    """Bug KPI: flat points per fixed bug, credited to any configured member."""
    return credit_points(cards, lambda card: [("bug", config.bug_points)], config.member_ids)


# ----------------------------
# Resolution time / SLA
# ----------------------------
def _minutes_between(start, end):
    return int((end - start).total_seconds() / 60)


def resolution_time(actions, list_categories: dict[str, str], start_category="doing"):
    """Minutes from card creation to the first move into start_category, then to the last completion.

    Returns None unless the card has a createCard action, such a move and a
    dueComplete=true update.
    """
    ordered = [a for a in sort_actions_by_timeline(actions) if action_date(a) is not None]
    created = next((a for a in ordered if a.get("type") == "createCard"), None)
    started = next((a for a in ordered if a.get("type") == "updateCard"
                    and list_categories.get(((a.get("data") or {}).get("listAfter") or {}).get("id")) == start_category),
                   None)
    completed = next((a for a in reversed(ordered) if a.get("type") == "updateCard"
                      and ((a.get("data") or {}).get("card") or {}).get("dueComplete") is True), None)
    if not created or not started or not completed:
        return None
    t_created, t_started, t_done = action_date(created), action_date(started), action_date(completed)
    return {
        "first_action_minutes": _minutes_between(t_created, t_started),
        "resolution_minutes": _minutes_between(t_started, t_done),
        "total_minutes": _minutes_between(t_created, t_done),
    }


def dev_resolution_time(actions, list_categories):
    return resolution_time(actions, list_categories, start_category="waiting_to_fix_from_dev")


def overdue_confirmation_cards(actions, list_categories: dict[str, str], now=None, sla_days=2):
    """Cards left in the customer-confirmation list longer than sla_days.

    A card is overdue when its most recent move into that list is older
    than the SLA and no later action moved it to another list.
    """
    now = parse_dt(now) or datetime.now(timezone.utc)
    confirmation_ids = {lid for lid, cat in list_categories.items() if cat == "waiting_confirmation"}
    overdue = []
    for card_id, card_actions in actions_by_card(actions).items():
        newest_first = list(reversed([a for a in sort_actions_by_timeline(card_actions) if action_date(a)]))
        moved_in = next((a for a in newest_first if a.get("type") == "updateCard"
                         and ((a.get("data") or {}).get("listAfter") or {}).get("id") in confirmation_ids), None)
        if moved_in is None:
            continue
        moved_at = action_date(moved_in)
        elapsed_days = (now - moved_at).total_seconds() / 86400.0
        if elapsed_days <= sla_days:
            continue
        moved_away = any(
            a.get("type") == "updateCard"
            and action_date(a) > moved_at
            and ((a.get("data") or {}).get("listAfter") or {}).get("id") not in (None, *confirmation_ids)
            for a in newest_first
        )
        if moved_away:
            continue
        overdue.append({
            "card_id": card_id,
            "card_name": ((moved_in.get("data") or {}).get("card") or {}).get("name") or "Unknown Card",
            "moved_at": moved_in.get("date"),
            "days_overdue": math.ceil(elapsed_days - sla_days),
        })
    return sorted(overdue, key=lambda r: -r["days_overdue"])
