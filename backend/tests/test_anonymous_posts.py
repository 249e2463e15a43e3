"""Tests for the per-device anonymous post tracker."""

from datetime import timedelta

from anonymous_posts import AnonymousPostTracker


def test_fresh_device_has_full_allowance(mock_store, clock):
    tracker = AnonymousPostTracker("ios-device-1", mock_store, clock)

    assert tracker.posts() == []
    assert tracker.remaining() == 2
    assert tracker.can_post() is True


def test_each_post_reduces_remaining(mock_store, clock):
    tracker = AnonymousPostTracker("ios-device-1", mock_store, clock)

    tracker.record_post("report-a")
    assert tracker.remaining() == 1
    assert tracker.can_post() is True

    tracker.record_post("report-b")
    assert tracker.remaining() == 0
    assert tracker.can_post() is False


def test_record_post_does_not_enforce_quota(mock_store, clock):
    """Remaining goes negative when the caller ignores can_post."""
    tracker = AnonymousPostTracker("ios-device-1", mock_store, clock)
    for i in range(3):
        tracker.record_post(f"report-{i}")

    assert tracker.remaining() == -1
    assert tracker.can_post() is False


def test_records_carry_current_instant_and_order(mock_store, clock):
    tracker = AnonymousPostTracker("ios-device-1", mock_store, clock)
    first = tracker.record_post("report-a")
    clock.advance(hours=1)
    second = tracker.record_post("report-b")

    assert first.timestamp + timedelta(hours=1) == second.timestamp
    assert [p.id for p in tracker.posts()] == ["report-a", "report-b"]


def test_allowance_restored_after_window(mock_store, clock):
    tracker = AnonymousPostTracker("ios-device-1", mock_store, clock)
    tracker.record_post("report-a")
    tracker.record_post("report-b")
    assert tracker.remaining() == 0

    clock.advance(days=31)

    assert tracker.remaining() == 2
    assert tracker.can_post() is True
    # Expired records are kept, just not counted.
    assert len(tracker.posts()) == 2


def test_partial_expiry(mock_store, clock):
    tracker = AnonymousPostTracker("ios-device-1", mock_store, clock)
    tracker.record_post("old")
    clock.advance(days=20)
    tracker.record_post("new")
    clock.advance(days=11)

    assert tracker.remaining() == 1


def test_custom_window_and_limit(mock_store, clock):
    tracker = AnonymousPostTracker("ios-device-1", mock_store, clock)
    tracker.record_post("report-a")

    assert tracker.remaining(window=timedelta(hours=1), limit=5) == 4
    later = clock() + timedelta(hours=2)
    assert tracker.remaining(window=timedelta(hours=1), limit=5, now=later) == 5


def test_devices_are_isolated(mock_store, clock):
    first = AnonymousPostTracker("device-a", mock_store, clock)
    second = AnonymousPostTracker("device-b", mock_store, clock)
    first.record_post("report-a")
    first.record_post("report-b")

    assert first.remaining() == 0
    assert second.remaining() == 2


def test_history_survives_new_tracker_instance(mock_store, clock):
    """State lives in the store, not in the tracker object."""
    AnonymousPostTracker("device-a", mock_store, clock).record_post("report-a")

    assert AnonymousPostTracker("device-a", mock_store, clock).remaining() == 1
