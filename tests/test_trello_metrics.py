"""
Tests for the aggregation routines in trello_metrics.
"""

from datetime import datetime, timezone

import pytest

from conftest import (
    CONFIRM,
    DEV,
    DOING,
    DONE,
    LEAD,
    TS_A,
    TS_B,
    TS_C,
    WAITING_DEV,
    make_action,
    make_card,
)
from shifts import Granularity, shift_labels
from trello_metrics import (
    ACTION_CATEGORIES,
    actions_by_card,
    actions_by_day,
    actions_by_member,
    actions_by_shift,
    bug_kpi,
    cards_by_app,
    cards_by_list,
    cards_by_team,
    category_counts,
    classify_action,
    day_shift_matrix,
    dev_resolution_time,
    group_by,
    issue_kpi,
    member_action_summary,
    overdue_confirmation_cards,
    percentile,
    resolution_time,
    sort_actions_by_timeline,
    summarize_minutes,
)


class TestHelpers:
    """Tests for small helpers."""

    def test_percentile(self):
        assert percentile([], 50) is None
        assert percentile([5], 90) == 5
        assert percentile([1, 2, 3, 4], 50) == 2.5

    def test_summarize_minutes_skips_missing(self):
        s = summarize_minutes([10, None, 30, -5])
        assert s["count"] == 2
        assert s["avg_minutes"] == 20
        assert summarize_minutes([]) == {}

    def test_sort_actions_missing_dates_last(self):
        actions = [
            {"id": "c", "date": "2024-05-01T03:00:00Z"},
            {"id": "x"},
            {"id": "a", "date": "2024-05-01T01:00:00Z"},
        ]
        assert [a["id"] for a in sort_actions_by_timeline(actions)] == ["a", "c", "x"]


class TestGroupBy:
    """Tests for group_by and the grouping wrappers."""

    def test_completeness(self):
        """Test bucket sizes add up to the records that produced a key."""
        records = [{"k": "a"}, {"k": "b"}, {"k": None}, {"k": "a"}, {}]
        groups = group_by(records, lambda r: r.get("k"))
        assert sum(len(v) for v in groups.values()) == 3
        assert set(groups) == {"a", "b"}

    def test_seed_keys_present_when_empty(self):
        groups = group_by([{"k": "a"}], lambda r: r["k"], seed_keys=["a", "z"])
        assert groups["z"] == []
        assert len(groups["a"]) == 1

    def test_multi_key_records_once_per_key(self):
        groups = group_by([{"tags": ["x", "y", "x"]}], lambda r: r["tags"])
        assert {k: len(v) for k, v in groups.items()} == {"x": 1, "y": 1}

    def test_by_card(self):
        actions = [make_action("1", "2024-05-01T00:00:00Z", card_id="c1"),
                   make_action("2", "2024-05-01T00:00:00Z", card_id="c2"),
                   make_action("3", "2024-05-01T00:00:00Z", card_id="c1")]
        assert {k: len(v) for k, v in actions_by_card(actions).items()} == {"c1": 2, "c2": 1}

    def test_by_day_uses_local_date(self):
        """Test 18:00 UTC is counted on the next local day."""
        actions = [make_action("1", "2024-05-01T18:00:00Z"), make_action("2", "2024-05-01T10:00:00Z")]
        assert sorted(actions_by_day(actions)) == ["2024-05-01", "2024-05-02"]

    def test_by_list_seeded(self):
        cards = [make_card("c1", list_id=DONE)]
        groups = cards_by_list(cards, seed_list_ids=[DONE, DOING])
        assert len(groups[DONE]) == 1
        assert groups[DOING] == []


class TestActionsByMember:
    """Tests for member attribution."""

    def test_self_add_counted_once(self):
        """Test adding yourself to a card lands once in your bucket."""
        a = make_action("1", "2024-05-01T00:00:00Z", kind="addMemberToCard", actor=TS_A, member=TS_A)
        assert actions_by_member([a]) == {TS_A: [a]}

    def test_add_other_member_counted_for_both(self):
        a = make_action("1", "2024-05-01T00:00:00Z", kind="addMemberToCard", actor=LEAD, member=TS_B)
        groups = actions_by_member([a])
        assert groups[LEAD] == [a]
        assert groups[TS_B] == [a]

    def test_repeated_action_id_not_double_counted(self):
        a = make_action("1", "2024-05-01T00:00:00Z", actor=TS_A)
        assert len(actions_by_member([a, dict(a)])[TS_A]) == 1

    def test_remove_member_only_actor(self):
        a = make_action("1", "2024-05-01T00:00:00Z", kind="removeMemberFromCard", actor=LEAD, member=TS_B)
        assert set(actions_by_member([a])) == {LEAD}


class TestShiftAggregation:
    """Tests for shift and day/shift grouping."""

    def test_three_actions_three_shifts(self):
        """Test 01:00, 05:30 and 21:00 local end up in three distinct shifts and nowhere else."""
        actions = [
            make_action("a1", "2024-04-30T18:00:00Z"),  # 01:00 local
            make_action("a2", "2024-04-30T22:30:00Z"),  # 05:30 local
            make_action("a3", "2024-05-01T14:00:00Z"),  # 21:00 local
        ]
        matrix = day_shift_matrix(actions, Granularity.COARSE)
        assert list(matrix) == ["2024-05-01"]
        day = matrix["2024-05-01"]
        assert day == {"Ca 1": 1, "Ca 2": 1, "Ca 3": 0, "Ca 4": 0, "Ca 5": 0, "Ca 6": 1}

    def test_all_shift_labels_seeded(self):
        groups = actions_by_shift([], Granularity.FINE)
        assert list(groups) == shift_labels(Granularity.FINE)

    def test_undated_actions_dropped(self):
        groups = actions_by_shift([{"id": "x"}, make_action("1", "2024-05-01T01:00:00Z")])
        assert sum(len(v) for v in groups.values()) == 1


class TestAppsAndTeams:
    """Tests for app label and product team grouping."""

    def test_cards_by_app(self, config):
        cards = [
            make_card("c1", labels=["App: SEO Booster", "Issue: level 1"]),
            make_card("c2", labels=["App: SEO Booster", "App: Cookie Bar"]),
            make_card("c3", labels=["App: Unknown"]),
        ]
        groups = cards_by_app(cards, config.apps)
        assert [c["id"] for c in groups["SEO Booster"]] == ["c1", "c2"]
        assert [c["id"] for c in groups["Cookie Bar"]] == ["c2"]
        assert set(groups) == {"SEO Booster", "Cookie Bar"}

    def test_cards_by_app_for_group(self, config):
        groups = cards_by_app([make_card("c1", labels=["App: Cookie Bar"])], config.apps, group_ts="TS1")
        assert groups == {"SEO Booster": []}

    def test_cards_by_team_seeded(self, config):
        cards = [make_card("c1", labels=["App: Cookie Bar"]), make_card("c2")]
        groups = cards_by_team(cards, config.apps, config.teams)
        assert {k: len(v) for k, v in groups.items()} == {"Growth": 0, "Compliance": 1, "Operations": 0}


class TestClassifyAction:
    """Tests for action categories."""

    def test_move_classified_by_list_id(self, config):
        a = make_action("1", "2024-05-01T00:00:00Z", list_after=DONE)
        assert classify_action(a, config.list_categories) == {"move_to_done"}

    def test_renamed_list_name_does_not_matter(self, config):
        """Test a move into an unmapped list whose name says done is not a done move."""
        a = make_action("1", "2024-05-01T00:00:00Z")
        a["data"]["listAfter"] = {"id": "list-archive", "name": "Done (old)"}
        assert classify_action(a, config.list_categories) == set()

    def test_complete_and_move(self, config):
        a = make_action("1", "2024-05-01T00:00:00Z", list_after=DOING, due_complete=True)
        assert classify_action(a, config.list_categories) == {"complete", "move_to_doing"}

    def test_left_card_only_when_removing_self(self, config):
        own = make_action("1", "2024-05-01T00:00:00Z", kind="removeMemberFromCard", actor=TS_A, member=TS_A)
        other = make_action("2", "2024-05-01T00:00:00Z", kind="removeMemberFromCard", actor=LEAD, member=TS_A)
        assert classify_action(own, config.list_categories) == {"left_card"}
        assert classify_action(other, config.list_categories) == set()

    def test_assigned_only_for_ts_members(self, config):
        ts = make_action("1", "2024-05-01T00:00:00Z", kind="addMemberToCard", actor=LEAD, member=TS_A)
        dev = make_action("2", "2024-05-01T00:00:00Z", kind="addMemberToCard", actor=LEAD, member=DEV)
        assert classify_action(ts, config.list_categories, config.ts_member_ids) == {"assigned"}
        assert classify_action(dev, config.list_categories, config.ts_member_ids) == set()

    def test_comment(self, config):
        a = make_action("1", "2024-05-01T00:00:00Z", kind="commentCard", text="hi")
        assert classify_action(a, config.list_categories) == {"comment_card"}

    def test_category_counts_zero_filled(self, config):
        c = category_counts([make_action("1", "2024-05-01T00:00:00Z", list_after=DONE)], config.list_categories)
        assert list(c) == list(ACTION_CATEGORIES)
        assert c["move_to_done"] == 1
        assert c["comment_card"] == 0


class TestMemberActionSummary:
    """Tests for member_action_summary."""

    def _actions(self):
        return [
            make_action("3", "2024-05-01T03:00:00Z", actor=TS_A, list_after=DONE),
            make_action("1", "2024-05-01T01:00:00Z", actor=TS_A, kind="commentCard", text="x"),
            make_action("2", "2024-05-01T02:00:00Z", actor=DEV, list_after=DONE),
            make_action("4", "2024-05-01T04:00:00Z", actor=LEAD, kind="addMemberToCard", member=TS_B),
        ]

    def test_only_ts_members_with_actions(self, config):
        rows = member_action_summary(self._actions(), config)
        assert [r["member_id"] for r in rows] == [LEAD, TS_A, TS_B]

    def test_actions_sorted_and_counted(self, config):
        row = next(r for r in member_action_summary(self._actions(), config) if r["member_id"] == TS_A)
        assert [a["id"] for a in row["actions"]] == ["1", "3"]
        assert row["total"] == 2
        assert row["counts"]["move_to_done"] == 1
        assert row["counts"]["comment_card"] == 1

    def test_category_filter(self, config):
        rows = member_action_summary(self._actions(), config, category="assigned")
        assert [r["member_id"] for r in rows] == [LEAD, TS_B]

    def test_member_filter(self, config):
        rows = member_action_summary(self._actions(), config, member_id=TS_A)
        assert [r["member_id"] for r in rows] == [TS_A]

    def test_unknown_category(self, config):
        with pytest.raises(ValueError):
            member_action_summary([], config, category="coffee_break")


class TestKpi:
    """Tests for KPI point crediting."""

    def test_single_assignee_full_points(self, config):
        report = issue_kpi([make_card("c1", [TS_A], ["Issue: level 2"])], config)
        assert report.totals() == {TS_A: 20}
        assert report.members[TS_A]["level_counts"] == {"Issue: level 2": 1}

    def test_two_assignees_half_each(self, config):
        report = issue_kpi([make_card("c1", [TS_A, TS_B], ["Issue: level 1"])], config)
        assert report.totals() == {TS_A: 6.5, TS_B: 6.5}

    def test_three_assignees_excluded(self, config):
        report = issue_kpi([make_card("c1", [TS_A, TS_B, TS_C], ["Issue: level 3"])], config)
        assert report.totals() == {}
        assert [c["id"] for c in report.multi_assignee] == ["c1"]
        assert report.multi_assignee[0]["points"] == 35

    def test_non_ts_assignees_ignored(self, config):
        """Test a dev on an issue card does not take a share of the points."""
        report = issue_kpi([make_card("c1", [TS_A, DEV], ["Issue: level 0"]), make_card("c2", [DEV], ["Issue: level 0"])],
                           config)
        assert report.totals() == {TS_A: 4}
        assert report.no_points == []

    def test_no_level_label(self, config):
        report = issue_kpi([make_card("c1", [TS_A], ["App: Cookie Bar"])], config)
        assert report.totals() == {}
        assert [c["id"] for c in report.no_points] == ["c1"]

    def test_several_level_labels(self, config):
        report = issue_kpi([make_card("c1", [TS_A], ["Issue: level 1", "Issue: level 2"])], config)
        assert report.totals() == {}
        assert report.multi_level[0]["levels"] == ["Issue: level 1", "Issue: level 2"]

    def test_points_accumulate(self, config):
        cards = [make_card("c1", [TS_A], ["Issue: level 0"]), make_card("c2", [TS_A, TS_B], ["Issues: Level 4"])]
        report = issue_kpi(cards, config)
        assert report.totals() == {TS_A: 26.5, TS_B: 22.5}
        assert report.members[TS_A]["card_count"] == 2

    def test_bug_kpi_flat_points_any_member(self, config):
        cards = [make_card("b1", [DEV]), make_card("b2", [DEV, TS_A]), make_card("b3", ["stranger"])]
        report = bug_kpi(cards, config)
        assert report.totals() == {DEV: 22.5, TS_A: 7.5}

    def test_to_dict(self, config):
        d = issue_kpi([], config).to_dict()
        assert set(d) == {"members", "multi_assignee", "no_points", "multi_level"}


class TestResolutionTime:
    """Tests for resolution and dev resolution time."""

    def _history(self, start_list=DOING):
        return [
            make_action("4", "2024-05-01T05:00:00Z", due_complete=True),
            make_action("1", "2024-05-01T00:00:00Z", kind="createCard"),
            make_action("2", "2024-05-01T00:30:00Z", list_after=start_list),
            make_action("3", "2024-05-01T02:00:00Z", due_complete=True),
        ]

    def test_resolution_time(self, config):
        r = resolution_time(self._history(), config.list_categories)
        assert r == {"first_action_minutes": 30, "resolution_minutes": 270, "total_minutes": 300}

    def test_missing_marker(self, config):
        history = [a for a in self._history() if a["type"] != "createCard"]
        assert resolution_time(history, config.list_categories) is None

    def test_dev_resolution_time(self, config):
        r = dev_resolution_time(self._history(start_list=WAITING_DEV), config.list_categories)
        assert r["resolution_minutes"] == 270
        assert resolution_time(self._history(start_list=WAITING_DEV), config.list_categories) is None


class TestOverdueConfirmation:
    """Tests for the customer confirmation SLA check."""

    now = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)

    def test_overdue_card(self, config):
        actions = [make_action("1", "2024-05-05T12:00:00Z", card_id="c1", card_name="Slow", list_after=CONFIRM)]
        rows = overdue_confirmation_cards(actions, config.list_categories, now=self.now, sla_days=2)
        assert rows == [{"card_id": "c1", "card_name": "Slow", "moved_at": "2024-05-05T12:00:00Z", "days_overdue": 3}]

    def test_partial_day_over_sla_counts_as_one(self, config):
        actions = [make_action("1", "2024-05-08T00:00:00Z", card_id="c1", list_after=CONFIRM)]
        rows = overdue_confirmation_cards(actions, config.list_categories, now=self.now, sla_days=2)
        assert rows[0]["days_overdue"] == 1

    def test_within_sla(self, config):
        actions = [make_action("1", "2024-05-09T12:00:00Z", list_after=CONFIRM)]
        assert overdue_confirmation_cards(actions, config.list_categories, now=self.now) == []

    def test_moved_away_not_overdue(self, config):
        actions = [
            make_action("1", "2024-05-01T12:00:00Z", list_after=CONFIRM),
            make_action("2", "2024-05-02T12:00:00Z", list_after=DONE),
        ]
        assert overdue_confirmation_cards(actions, config.list_categories, now=self.now) == []

    def test_sorted_most_overdue_first(self, config):
        actions = [
            make_action("1", "2024-05-06T12:00:00Z", card_id="c1", list_after=CONFIRM),
            make_action("2", "2024-05-01T12:00:00Z", card_id="c2", list_after=CONFIRM),
        ]
        rows = overdue_confirmation_cards(actions, config.list_categories, now=self.now)
        assert [r["card_id"] for r in rows] == ["c2", "c1"]
