import unittest
from datetime import datetime, timezone

from helpers import deal
from services.hubspot_client import ActivityRecord
from services.leaderboard_service import (
    ActiveUser,
    aggregate_activity,
    aggregate_largest_deals,
    assign_competition_ranks,
    follow_up_rate,
)


def _user(number: int) -> ActiveUser:
    return ActiveUser(
        id=f"user-{number}",
        email=f"rep{number}@acme.test",
        full_name=f"Rep {number}",
        hs_owner_id=f"owner-{number}",
    )


def _activity(kind: str, owner_id: str, day: int = 12) -> ActivityRecord:
    return ActivityRecord(
        kind=kind,
        hubspot_id=f"{kind}-{owner_id}-{day}",
        timestamp=datetime(2024, 6, day, 9, tzinfo=timezone.utc),
        owner_id=owner_id,
    )


class _Entry:
    def __init__(self, value):
        self.value = value
        self.rank = 0


class CompetitionRankTests(unittest.TestCase):
    def test_ties_share_rank_and_next_value_skips(self):
        entries = [_Entry(500), _Entry(500), _Entry(300), _Entry(100)]
        assign_competition_ranks(entries, lambda entry: entry.value)
        self.assertEqual([entry.rank for entry in entries], [1, 1, 3, 4])

    def test_all_equal_values_share_first_place(self):
        entries = [_Entry(7), _Entry(7), _Entry(7)]
        assign_competition_ranks(entries, lambda entry: entry.value)
        self.assertEqual([entry.rank for entry in entries], [1, 1, 1])

    def test_empty_input(self):
        self.assertEqual(list(assign_competition_ranks([], lambda entry: entry.value)), [])


class LargestDealAggregationTests(unittest.TestCase):
    def setUp(self):
        self.users = [_user(1), _user(2), _user(3), _user(4)]

    def test_ranks_by_largest_deal_with_competition_ranking(self):
        deals = [
            deal("d4", "owner-4", 100),
            deal("d3", "owner-3", 300),
            deal("d2", "owner-2", 500),
            deal("d1", "owner-1", 500),
        ]
        entries = aggregate_largest_deals(deals, self.users)
        self.assertEqual([entry.user.id for entry in entries], ["user-1", "user-2", "user-3", "user-4"])
        self.assertEqual([entry.rank for entry in entries], [1, 1, 3, 4])

    def test_exact_tie_prefers_more_recent_reference_date(self):
        older = deal("closed-jan", "owner-1", 1000, close_date=datetime(2024, 1, 1, tzinfo=timezone.utc))
        newer = deal("modified-jun", "owner-1", 1000, last_modified=datetime(2024, 6, 1, tzinfo=timezone.utc))
        for ordering in ([older, newer], [newer, older]):
            entries = aggregate_largest_deals(ordering, self.users)
            self.assertEqual(len(entries), 1)
            self.assertEqual(entries[0].largest_deal_name, "Deal modified-jun")

    def test_records_from_unknown_owners_are_ignored(self):
        deals = [
            deal("ghost", "owner-99", 10_000),
            deal("d1", "owner-1", 200),
            deal("d2", "owner-2", 100),
        ]
        entries = aggregate_largest_deals(deals, self.users)
        self.assertEqual([entry.user.id for entry in entries], ["user-1", "user-2"])
        self.assertEqual([entry.rank for entry in entries], [1, 2])
        self.assertNotIn("ghost", [entry.largest_deal_id for entry in entries])

    def test_users_without_deals_are_dropped(self):
        entries = aggregate_largest_deals([deal("d1", "owner-1", 50)], self.users)
        self.assertEqual([entry.user.id for entry in entries], ["user-1"])
        self.assertLessEqual(len(entries), len(self.users))

    def test_missing_amount_counts_as_zero(self):
        entries = aggregate_largest_deals([deal("d1", "owner-2", None)], self.users)
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].user.id, "user-2")
        self.assertEqual(entries[0].largest_deal_amount, 0)
        self.assertEqual(entries[0].largest_deal_name, "Deal d1")
        self.assertEqual(entries[0].deal_count, 1)
        self.assertEqual(entries[0].total_pipeline, 0)

    def test_tracks_total_pipeline_and_deal_count(self):
        deals = [deal("a", "owner-1", 100), deal("b", "owner-1", 250), deal("c", "owner-1", None)]
        entry = aggregate_largest_deals(deals, self.users)[0]
        self.assertEqual(entry.total_pipeline, 350)
        self.assertEqual(entry.deal_count, 3)
        self.assertEqual(entry.largest_deal_amount, 250)
        self.assertEqual(entry.to_dict()["owner_name"], "Rep 1")

    def test_empty_user_set_yields_empty_result(self):
        self.assertEqual(aggregate_largest_deals([deal("d1", "owner-1", 100)], []), [])


class ActivityAggregationTests(unittest.TestCase):
    def setUp(self):
        self.users = [_user(1), _user(2), _user(3)]

    def test_one_entry_per_active_user_including_zero_rows(self):
        this_week = [
            _activity("meetings", "owner-1"),
            _activity("calls", "owner-1"),
            _activity("emails", "owner-3"),
            _activity("calls", "owner-3"),
            _activity("meetings", "owner-99"),
        ]
        entries = aggregate_activity(this_week, [], self.users)
        self.assertEqual(len(entries), len(self.users))
        self.assertEqual([entry.user.id for entry in entries], ["user-1", "user-3", "user-2"])
        self.assertEqual([entry.rank for entry in entries], [1, 1, 3])
        zero = entries[-1].to_dict()
        self.assertEqual(zero["total_activities"], 0)
        self.assertEqual(zero["follow_up_rate"], 0)

    def test_counts_per_category_and_trend(self):
        this_week = [_activity("meetings", "owner-1"), _activity("meetings", "owner-1"), _activity("emails", "owner-2")]
        last_week = [_activity("calls", "owner-1", day=4), _activity("calls", "owner-2", day=4), _activity("emails", "owner-2", day=5)]
        entries = {entry.user.id: entry.to_dict() for entry in aggregate_activity(this_week, last_week, self.users)}
        self.assertEqual(entries["user-1"]["meetings_this_week"], 2)
        self.assertEqual(entries["user-1"]["calls_last_week"], 1)
        self.assertEqual(entries["user-1"]["trend"], "up")
        self.assertEqual(entries["user-2"]["trend"], "down")
        self.assertEqual(entries["user-3"]["trend"], "flat")

    def test_follow_up_rate_uses_open_deals(self):
        this_week = [_activity("meetings", "owner-1"), _activity("calls", "owner-1")]
        entries = aggregate_activity(this_week, [], self.users, {"user-1": 3})
        self.assertEqual(entries[0].follow_up_rate, 67)


class FollowUpRateTests(unittest.TestCase):
    def test_rounds_half_up(self):
        self.assertEqual(follow_up_rate(1, 8), 13)
        self.assertEqual(follow_up_rate(1, 200), 1)

    def test_zero_without_open_deals(self):
        self.assertEqual(follow_up_rate(5, 0), 0)
        self.assertEqual(follow_up_rate(0, 0), 0)

    def test_can_exceed_one_hundred(self):
        self.assertEqual(follow_up_rate(3, 2), 150)


if __name__ == "__main__":
    unittest.main()
