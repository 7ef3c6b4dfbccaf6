"""Tests for alarm windows and the window tracker."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from nanami_alarm.scheduler.window import AlarmWindow, WindowTracker, next_window

INTERVAL = timedelta(minutes=10)


def _at(hour: int, minute: int = 0) -> datetime:
    return datetime(2024, 1, 1, hour, minute, tzinfo=UTC)


class TestAlarmWindow:
    """Tests for AlarmWindow."""

    def test_contains_is_half_open(self) -> None:
        """Start is inclusive, end is exclusive."""
        window = AlarmWindow(_at(1), _at(2))
        assert window.contains(_at(1))
        assert window.contains(_at(1, 59))
        assert not window.contains(_at(2))
        assert not window.contains(_at(0, 59))

    def test_rejects_start_after_end(self) -> None:
        with pytest.raises(ValueError):
            AlarmWindow(_at(2), _at(1))

    def test_rejects_naive_boundaries(self) -> None:
        with pytest.raises(ValueError):
            AlarmWindow(datetime(2024, 1, 1), _at(1))

    def test_empty_window(self) -> None:
        window = AlarmWindow(_at(1), _at(1))
        assert window.is_empty
        assert not window.contains(_at(1))

    def test_to_dict(self) -> None:
        window = AlarmWindow(_at(1), _at(2))
        assert window.to_dict() == {
            "window_start_utc": "2024-01-01T01:00:00+00:00",
            "window_end_utc": "2024-01-01T02:00:00+00:00",
        }


class TestNextWindow:
    """Tests for next_window."""

    def test_first_window_covers_one_interval(self) -> None:
        """Without a previous end the window is [now - interval, now)."""
        window = next_window(None, INTERVAL, _at(12))
        assert window.window_start_utc == _at(11, 50)
        assert window.window_end_utc == _at(12)

    def test_chains_from_previous_end(self) -> None:
        window = next_window(_at(11, 30), INTERVAL, _at(12))
        assert window.window_start_utc == _at(11, 30)
        assert window.window_end_utc == _at(12)

    def test_clock_skew_gives_empty_window(self) -> None:
        """A clock that went backwards yields an empty window, not an error."""
        window = next_window(_at(12), INTERVAL, _at(11))
        assert window.is_empty
        assert window.window_start_utc == _at(12)

    def test_rejects_non_positive_interval(self) -> None:
        with pytest.raises(ValueError):
            next_window(None, timedelta(0), _at(12))


class TestWindowTracker:
    """Tests for WindowTracker."""

    def test_continuity_across_ticks(self) -> None:
        """Consecutive windows share their boundary."""
        tracker = WindowTracker(INTERVAL)
        w1 = tracker.advance(_at(1))
        w2 = tracker.advance(_at(2))
        w3 = tracker.advance(_at(3))

        assert w1.window_end_utc == w2.window_start_utc == _at(1)
        assert w2.window_end_utc == w3.window_start_utc == _at(2)
        assert w3.window_end_utc == _at(3)

    def test_no_double_count_across_partition(self) -> None:
        """Every timestamp falls in exactly one of two back-to-back windows."""
        tracker = WindowTracker(INTERVAL)
        tracker.advance(_at(1))
        first = tracker.advance(_at(2))
        second = tracker.advance(_at(3))

        timestamps = [_at(1), _at(1, 30), _at(2), _at(2, 59)]
        for ts in timestamps:
            assert first.contains(ts) + second.contains(ts) == 1

    def test_peek_does_not_move_chain(self) -> None:
        tracker = WindowTracker(INTERVAL)
        tracker.peek(_at(1))
        assert tracker.previous_end is None

    def test_commit_never_moves_backwards(self) -> None:
        tracker = WindowTracker(INTERVAL)
        tracker.commit(AlarmWindow(_at(1), _at(3)))
        tracker.commit(AlarmWindow(_at(1), _at(2)))
        assert tracker.previous_end == _at(3)

    def test_retry_from_keeps_first_window_start(self) -> None:
        """A failed first tick is retried from its own start."""
        tracker = WindowTracker(INTERVAL)
        failed = tracker.peek(_at(12))
        tracker.retry_from(failed)

        retry = tracker.peek(_at(12, 10))
        assert retry.window_start_utc == failed.window_start_utc
        assert retry.window_end_utc == _at(12, 10)

    def test_retry_from_after_success_keeps_chain(self) -> None:
        tracker = WindowTracker(INTERVAL)
        tracker.advance(_at(12))
        failed = tracker.peek(_at(12, 10))
        tracker.retry_from(failed)
        assert tracker.previous_end == _at(12)

    def test_reset(self) -> None:
        tracker = WindowTracker(INTERVAL)
        tracker.advance(_at(12))
        tracker.reset()
        assert tracker.previous_end is None
        assert tracker.interval == INTERVAL
