#!/usr/bin/env python3
"""
Pull one shift (or one day) of Trello board activity plus the KPI lists,
aggregate it and save trello_analytics_latest.json for generate_dashboard.py.

Run:
  python trello_analytics.py                               # current shift, today
  python trello_analytics.py --date 2024-05-01 --shift "Ca 2"
  python trello_analytics.py --whole-day --granularity coarse
  python trello_analytics.py --category move_to_done --member <member id>
  python trello_analytics.py --watch 60                    # refresh the current shift every minute
  python trello_analytics.py move <card id> <list id>
  python trello_analytics.py comment <card id> "Checked with customer"
  python trello_analytics.py complete <card id>

Needs TRELLO_API_KEY, TRELLO_TOKEN and TRELLO_BOARD_ID (a .env file works).
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timezone

import pandas as pd

from dashboard_config import DashboardConfig, load_config
from shifts import Granularity, current_shift, day_window, local_timezone, parse_granularity, shift_window
from trello_client import ActionWindow, TrelloClient, TrelloConfig, parse_dt, to_iso
from trello_metrics import (
    ACTION_CATEGORIES,
    action_card_id,
    actions_by_card,
    actions_by_shift,
    bug_kpi,
    cards_by_app,
    cards_by_list,
    cards_by_team,
    category_counts,
    classify_action,
    counts,
    day_shift_matrix,
    dev_resolution_time,
    issue_kpi,
    member_action_summary,
    overdue_confirmation_cards,
    resolution_time,
    sort_actions_by_timeline,
    summarize_minutes,
)

logger = logging.getLogger("trello_analytics")

OUT_DIR = os.path.dirname(os.path.abspath(__file__))
LATEST_NAME = "trello_analytics_latest.json"


# ----------------------------
# Stale-refresh guard
# ----------------------------
class FetchGeneration:
    """Keeps the newest fetch result that has finished.

    begin() hands out increasing tokens; commit() stores a value only when its
    token is newer than the one already committed, so a slow earlier fetch that
    finishes late cannot overwrite a newer result. A fetch that was overtaken
    by a later begin() still commits if nothing newer has landed yet.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._latest = 0
        self.committed_token = 0
        self.value = None

    def begin(self) -> int:
        with self._lock:
            self._latest += 1
            return self._latest

    def is_current(self, token: int) -> bool:
        with self._lock:
            return token == self._latest

    def commit(self, token: int, value, on_commit=None) -> bool:
        """Store value unless a newer token already committed; on_commit(value) runs under the same lock."""
        with self._lock:
            if token <= self.committed_token:
                return False
            self.committed_token = token
            self.value = value
            if on_commit is not None:
                on_commit(value)
            return True


# ----------------------------
# Serialisation helpers
# ----------------------------
def _action_row(action, config: DashboardConfig):
    data = action.get("data") or {}
    dt = parse_dt(action.get("date"))
    return {
        "id": action.get("id"),
        "date": action.get("date"),
        "local_time": dt.astimezone(local_timezone(config.timezone)).strftime("%Y-%m-%d %H:%M") if dt else None,
        "type": action.get("type"),
        "member_id": action.get("idMemberCreator"),
        "member": config.member_name(action.get("idMemberCreator") or ""),
        "card_id": action_card_id(action),
        "card_name": (data.get("card") or {}).get("name"),
        "list_before": (data.get("listBefore") or {}).get("name"),
        "list_after": (data.get("listAfter") or {}).get("name"),
        "text": data.get("text"),
        "categories": sorted(classify_action(action, config.list_categories, config.ts_member_ids)),
    }


def _kpi_rows(report, config: DashboardConfig):
    rows = []
    for mid, row in report.members.items():
        rows.append({
            "member_id": mid,
            "name": config.member_name(mid),
            "points": round(row["points"], 2),
            "card_count": row["card_count"],
            "level_points": row["level_points"],
            "level_counts": row["level_counts"],
            "cards": row["cards"],
        })
    return sorted(rows, key=lambda r: -r["points"])


def _json_default(obj):
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, set):
        return sorted(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def save_results(results, out_dir=OUT_DIR):
    """Write the snapshot as trello_analytics_latest.json and a timestamped copy."""
    run_ts = results.get("run_iso_ts") or datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    latest_path = os.path.join(out_dir, LATEST_NAME)
    ts_path = os.path.join(out_dir, f"trello_analytics_{run_ts.replace(':', '-')}.json")
    for path in (latest_path, ts_path):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(results, f, indent=2, ensure_ascii=False, default=_json_default)
    return latest_path, ts_path


# ----------------------------
# Card histories (resolution time, SLA)
# ----------------------------
def _card_histories(client: TrelloClient, cards, limit):
    histories = {}
    for card in (cards or [])[:limit]:
        cid = card.get("id")
        if not cid:
            continue
        histories[cid] = client.get_card_actions(cid).value_or([]) or []
    return histories


def _resolution_rows(cards, histories, config: DashboardConfig, func):
    rows = []
    names = {c.get("id"): c for c in cards or []}
    for cid, card_actions in histories.items():
        timing = func(card_actions, config.list_categories)
        if timing is None:
            continue
        card = names.get(cid) or {}
        rows.append({"card_id": cid, "name": card.get("name"), "shortUrl": card.get("shortUrl"), **timing})
    return rows


# ----------------------------
# Report
# ----------------------------
def build_report(client: TrelloClient, config: DashboardConfig, day: date | None = None, shift: str | None = None,
                 granularity=Granularity.FINE, whole_day=False, member_id=None, category=None,
                 now: datetime | None = None, history_limit=30):
    now = parse_dt(now) or datetime.now(timezone.utc)
    granularity = parse_granularity(granularity)
    tz = local_timezone(config.timezone)
    day = day or now.astimezone(tz).date()
    if whole_day:
        shift_label = None
        since, before = day_window(day, tz)
    else:
        shift_label = shift or current_shift(granularity, tz, now=now).label
        since, before = shift_window(day, shift_label, granularity, tz)

    results = {
        "run_iso_ts": now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "board_id": client.config.board_id,
        "date": day.isoformat(),
        "shift": shift_label,
        "granularity": granularity.value,
        "timezone": config.timezone,
        "window": {"since": to_iso(since), "before": to_iso(before)},
        "errors": [],
    }

    # ---------
    # 1) Board actions in the window
    # ---------
    print(f"\nPulling board actions {results['window']['since']} -> {results['window']['before']}...")
    fetched = client.fetch_actions_in_interval(since, before)
    if not fetched.ok:
        print(f"  Action fetch failed: {fetched.error}")
        results["errors"].append(f"actions: {fetched.error}")
    window = fetched.value_or(ActionWindow.empty())
    actions = sort_actions_by_timeline(window.actions)
    print(f"Actions pulled: {len(actions)}")
    if window.truncated:
        print(f"  WARNING: {len(window.truncated)} window(s) hit the per-call cap, counts may be low")

    results["action_count"] = len(actions)
    results["truncated_windows"] = [{"since": to_iso(s), "before": to_iso(b)} for s, b in window.truncated]
    results["shift_counts"] = counts(actions_by_shift(actions, granularity, tz))
    results["day_shift_matrix"] = day_shift_matrix(actions, granularity, tz)
    results["category_counts"] = category_counts(actions, config.list_categories, config.ts_member_ids)

    summary = member_action_summary(actions, config, category=category, member_id=member_id)
    results["members"] = [
        {**{k: v for k, v in row.items() if k != "actions"},
         "actions": [_action_row(a, config) for a in row["actions"]]}
        for row in summary
    ]
    results["category_filter"] = category
    results["member_filter"] = member_id

    by_card = actions_by_card(actions)
    top_cards = sorted(by_card.items(), key=lambda kv: -len(kv[1]))[:15]
    results["busiest_cards"] = [
        {"card_id": cid, "name": ((acts[0].get("data") or {}).get("card") or {}).get("name"), "actions": len(acts)}
        for cid, acts in top_cards
    ]

    # ---------
    # 2) Board lists and open cards per list
    # ---------
    print("\nPulling board lists and cards...")
    fetched_lists = client.get_lists(include_closed=False)
    if not fetched_lists.ok:
        results["errors"].append(f"lists: {fetched_lists.error}")
    list_names = dict(config.list_names)
    list_names.update({l["id"]: l.get("name") or l["id"] for l in fetched_lists.value_or([]) or [] if l.get("id")})
    fetched_cards = client.get_board_cards(fields=["id", "name", "idList", "idMembers", "labels", "shortUrl"])
    if not fetched_cards.ok:
        results["errors"].append(f"cards: {fetched_cards.error}")
    board_cards = fetched_cards.value_or([]) or []
    per_list = counts(cards_by_list(board_cards, seed_list_ids=config.list_categories))
    results["cards_per_list"] = [
        {"list_id": lid, "name": list_names.get(lid, lid), "category": config.list_categories.get(lid), "cards": n}
        for lid, n in per_list.items()
    ]
    print(f"Lists: {len(list_names)}, open cards: {len(board_cards)}")

    # ---------
    # 3) KPI lists
    # ---------
    issue_cards, bug_cards = [], []
    if config.issues_list_id:
        print("\nPulling issue cards for KPI...")
        fetched_issues = client.get_cards_by_list(config.issues_list_id)
        if not fetched_issues.ok:
            results["errors"].append(f"issues: {fetched_issues.error}")
        issue_cards = fetched_issues.value_or([]) or []
        print(f"Issue cards pulled: {len(issue_cards)}")
    if config.bugs_list_id:
        print("Pulling bug cards for KPI...")
        fetched_bugs = client.get_cards_by_list(config.bugs_list_id)
        if not fetched_bugs.ok:
            results["errors"].append(f"bugs: {fetched_bugs.error}")
        bug_cards = fetched_bugs.value_or([]) or []
        print(f"Bug cards pulled: {len(bug_cards)}")

    issues = issue_kpi(issue_cards, config)
    bugs = bug_kpi(bug_cards, config)
    results["issue_kpi"] = {**issues.to_dict(), "members": _kpi_rows(issues, config)}
    results["bug_kpi"] = {**bugs.to_dict(), "members": _kpi_rows(bugs, config)}
    results["issues_by_app"] = counts(cards_by_app(issue_cards, config.apps))
    results["issues_by_team"] = counts(cards_by_team(issue_cards, config.apps, config.teams))

    # ---------
    # 4) Resolution time + confirmation SLA (per-card histories)
    # ---------
    print(f"\nPulling card histories (up to {history_limit} per list)...")
    issue_histories = _card_histories(client, issue_cards, history_limit)
    ts_rows = _resolution_rows(issue_cards, issue_histories, config, resolution_time)
    bug_histories = _card_histories(client, bug_cards, history_limit)
    dev_rows = _resolution_rows(bug_cards, bug_histories, config, dev_resolution_time)
    results["resolution_time"] = {
        "cards": ts_rows,
        "summary": summarize_minutes([r["resolution_minutes"] for r in ts_rows]),
        "first_action_summary": summarize_minutes([r["first_action_minutes"] for r in ts_rows]),
    }
    results["dev_resolution_time"] = {
        "cards": dev_rows,
        "summary": summarize_minutes([r["resolution_minutes"] for r in dev_rows]),
    }
    print(f"  Resolution time (doing -> complete): {results['resolution_time']['summary']}")

    confirmation_cards = []
    for list_id in sorted(config.list_ids_for("waiting_confirmation")):
        fetched_confirm = client.get_cards_by_list(list_id)
        if not fetched_confirm.ok:
            results["errors"].append(f"confirmation list {list_id}: {fetched_confirm.error}")
        confirmation_cards.extend(fetched_confirm.value_or([]) or [])
    confirm_histories = _card_histories(client, confirmation_cards, history_limit)
    all_confirm_actions = [a for acts in confirm_histories.values() for a in acts]
    results["overdue_confirmation"] = overdue_confirmation_cards(
        all_confirm_actions, config.list_categories, now=now, sla_days=config.confirmation_sla_days)
    print(f"  Overdue in customer confirmation: {len(results['overdue_confirmation'])}")

    return results


def print_report(results):
    label = results["shift"] or "whole day"
    print(f"\n{results['date']} - {label} ({results['granularity']}): {results['action_count']} actions")

    print("\nActions by shift:")
    for shift_label, n in results["shift_counts"].items():
        print(f"  {shift_label}: {n}")

    if results["members"]:
        df = pd.DataFrame([{"name": m["name"], "total": m["total"], **m["counts"]} for m in results["members"]])
        view_cols = ["name", "total"] + [c for c in ACTION_CATEGORIES if c in df.columns and df[c].sum() > 0]
        print("\nTS member activity:")
        print(df[view_cols].to_string(index=False))
    else:
        print("\nNo TS member activity in this window.")

    for key, title in (("issue_kpi", "Issue KPI"), ("bug_kpi", "Bug KPI")):
        rows = results[key]["members"]
        if rows:
            print(f"\n{title}:")
            print(pd.DataFrame(rows)[["name", "points", "card_count"]].to_string(index=False))
        if results[key]["multi_assignee"]:
            print(f"  {len(results[key]['multi_assignee'])} card(s) with 3+ assignees not credited")

    for err in results["errors"]:
        print(f"  ERROR: {err}")


# ----------------------------
# Watch mode
# ----------------------------
def watch(client, config, interval, out_dir=OUT_DIR, iterations=None, sleep=time.sleep, **report_kwargs):
    """Rebuild the current-shift report every `interval` seconds.

    Refreshes run in the background, at most one at a time. A tick that
    arrives while the previous refresh is still running is skipped. On
    Ctrl+C the running refresh is abandoned rather than waited for.
    """
    generation = FetchGeneration()

    def _publish(results):
        save_results(results, out_dir)
        print(f"[{results['run_iso_ts']}] {results['shift'] or 'day'}: {results['action_count']} actions saved")

    def _done(token, future):
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.warning("Refresh %d failed: %s", token, exc)
            return
        if not generation.commit(token, future.result(), on_commit=_publish):
            logger.info("Discarded stale refresh %d", token)

    n = 0
    in_flight = None
    pool = ThreadPoolExecutor(max_workers=1)
    try:
        while iterations is None or n < iterations:
            if in_flight is None or in_flight.done():
                token = generation.begin()
                in_flight = pool.submit(build_report, client, config, **report_kwargs)
                in_flight.add_done_callback(lambda f, t=token: _done(t, f))
            else:
                logger.info("Refresh still running, skipping tick %d", n + 1)
            n += 1
            if iterations is None or n < iterations:
                sleep(interval)
    except KeyboardInterrupt:
        pool.shutdown(wait=False, cancel_futures=True)
        raise
    pool.shutdown(wait=True)
    return generation


# ----------------------------
# Main
# ----------------------------
def run_mutation(client: TrelloClient, args):
    """Card mutations raise on failure so the caller sees the error."""
    if args.command == "move":
        card = client.move_card(args.card_id, args.list_id).unwrap()
        print(f"Moved card {args.card_id} to list {(card or {}).get('idList', args.list_id)}")
    elif args.command == "comment":
        client.add_comment(args.card_id, args.text).unwrap()
        print(f"Commented on card {args.card_id}")
    elif args.command == "complete":
        client.mark_complete(args.card_id, complete=not args.undo).unwrap()
        print(f"Card {args.card_id} marked {'incomplete' if args.undo else 'complete'}")
    else:
        raise ValueError(f"Unknown command: {args.command}")


def build_parser():
    parser = argparse.ArgumentParser(description="Trello shift activity and KPI report.")
    parser.add_argument("--config", help="Path to dashboard_config.json")
    parser.add_argument("--out", default=OUT_DIR, help="Directory for the JSON snapshot")
    parser.add_argument("--date", type=date.fromisoformat, help="Local day, YYYY-MM-DD (default: today)")
    parser.add_argument("--shift", help='Shift label, e.g. "Ca 2" (default: current shift)')
    parser.add_argument("--granularity", default="fine", choices=[g.value for g in Granularity])
    parser.add_argument("--whole-day", action="store_true", help="Report the whole local day instead of one shift")
    parser.add_argument("--member", help="Only this member id")
    parser.add_argument("--category", choices=ACTION_CATEGORIES, help="Only actions of this category")
    parser.add_argument("--history-limit", type=int, default=30, help="Max card histories pulled per list")
    parser.add_argument("--watch", type=float, metavar="SECONDS", help="Refresh the current shift continuously")
    parser.add_argument("-v", "--verbose", action="store_true")

    sub = parser.add_subparsers(dest="command")
    p_move = sub.add_parser("move", help="Move a card to another list")
    p_move.add_argument("card_id")
    p_move.add_argument("list_id")
    p_comment = sub.add_parser("comment", help="Add a comment to a card")
    p_comment.add_argument("card_id")
    p_comment.add_argument("text")
    p_complete = sub.add_parser("complete", help="Mark a card's due date complete")
    p_complete.add_argument("card_id")
    p_complete.add_argument("--undo", action="store_true", help="Mark incomplete instead")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(levelname)s %(name)s: %(message)s")

    client = TrelloClient(TrelloConfig.from_env())
    if args.command:
        run_mutation(client, args)
        return 0

    config = load_config(args.config)
    report_kwargs = {
        "granularity": args.granularity,
        "whole_day": args.whole_day,
        "member_id": args.member,
        "category": args.category,
        "history_limit": args.history_limit,
    }
    if args.watch:
        print(f"Watching board {client.config.board_id} every {args.watch:g}s (Ctrl+C to stop)...")
        try:
            watch(client, config, args.watch, out_dir=args.out, **report_kwargs)
        except KeyboardInterrupt:
            print("\nStopped.")
        return 0

    results = build_report(client, config, day=args.date, shift=args.shift, **report_kwargs)
    print_report(results)
    latest_path, ts_path = save_results(results, args.out)
    print(f"\nResults saved to: {latest_path}")
    print(f"              and: {ts_path}")
    print("\nDone.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
