"""Tests for business-timezone dates and the sync progress store."""

from datetime import date

from hudlab.utils.dates import trailing_day_range
from hudlab.utils.sync_state import SyncStateStore


class TestTrailingDayRange:
    def test_thirty_days_inclusive(self):
        assert trailing_day_range(30, today=date(2025, 3, 31)) == ("2025-03-02", "2025-03-31")

    def test_one_day_is_today(self):
        assert trailing_day_range(1, today=date(2025, 3, 31)) == ("2025-03-31", "2025-03-31")

    def test_crosses_year(self):
        assert trailing_day_range(60, today=date(2025, 1, 15)) == ("2024-11-17", "2025-01-15")


class TestSyncStateStore:
    def test_publish_notifies_subscribers(self):
        store = SyncStateStore()
        seen = []
        store.subscribe(lambda state: seen.append(state["phase"]))

        store.publish(is_running=True, phase="fetching_deals")

        assert seen == ["fetching_deals"]
        assert store.snapshot()["is_running"] is True

    def test_unsubscribe(self):
        store = SyncStateStore()
        seen = []
        unsubscribe = store.subscribe(lambda state: seen.append(state))

        unsubscribe()
        store.publish(phase="upserting")

        assert seen == []

    def test_failing_subscriber_does_not_break_others(self):
        store = SyncStateStore()
        seen = []

        def broken(state):
            raise RuntimeError("boom")

        store.subscribe(broken)
        store.subscribe(lambda state: seen.append(state["phase"]))

        store.publish(phase="completed")

        assert seen == ["completed"]

    def test_snapshot_is_a_copy(self):
        store = SyncStateStore()
        snapshot = store.snapshot()
        snapshot["phase"] = "mutated"

        assert store.snapshot()["phase"] == "idle"

    def test_reset(self):
        store = SyncStateStore()
        store.publish(is_running=True, phase="failed", last_error="x")

        store.reset()

        assert store.snapshot()["phase"] == "idle"
        assert store.snapshot()["last_error"] is None
