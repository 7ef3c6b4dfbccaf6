"""Time window tracking for alarm ticks.

Every tick of a source covers a half-open UTC interval ``[start, end)``.
Windows are chained: the end of one tick is the start of the next, so no
interval is skipped or covered twice while the process is alive. After a
restart the first window is re-derived as ``[now - interval, now)``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta


def _require_aware(value: datetime, name: str) -> None:
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError(f"{name} must be timezone-aware (UTC), got naive {value!r}")


@dataclass(frozen=True)
class AlarmWindow:
    """Half-open UTC interval a tick is responsible for.

    Attributes:
        window_start_utc: Inclusive lower boundary.
        window_end_utc: Exclusive upper boundary.
    """

    window_start_utc: datetime
    window_end_utc: datetime

    def __post_init__(self) -> None:
        _require_aware(self.window_start_utc, "window_start_utc")
        _require_aware(self.window_end_utc, "window_end_utc")
        if self.window_start_utc > self.window_end_utc:
            raise ValueError(
                f"window start {self.window_start_utc.isoformat()} is after "
                f"end {self.window_end_utc.isoformat()}"
            )

    @property
    def is_empty(self) -> bool:
        """True when the window covers no time at all."""
        return self.window_start_utc == self.window_end_utc

    @property
    def duration(self) -> timedelta:
        """Length of the window."""
        return self.window_end_utc - self.window_start_utc

    def contains(self, timestamp: datetime) -> bool:
        """Check ``start <= timestamp < end``."""
        _require_aware(timestamp, "timestamp")
        return self.window_start_utc <= timestamp < self.window_end_utc

    def __str__(self) -> str:
        return f"[{self.window_start_utc.isoformat()}, {self.window_end_utc.isoformat()})"

    def to_dict(self) -> dict[str, str]:
        """Serialize boundaries as ISO strings (for logs and health output)."""
        return {
            "window_start_utc": self.window_start_utc.isoformat(),
            "window_end_utc": self.window_end_utc.isoformat(),
        }


def next_window(
    previous_end: datetime | None,
    interval: timedelta,
    now: datetime,
) -> AlarmWindow:
    """Compute the window for the next tick.

    Args:
        previous_end: End of the previous window, or None on the first
            tick after process start.
        interval: Poll interval of the source.
        now: Current UTC time.

    Returns:
        The window ``[previous_end, now)`` or ``[now - interval, now)``.
        When the clock went backwards (``now < previous_end``) the window is
        empty and anchored at ``previous_end``.
    """
    _require_aware(now, "now")
    if interval <= timedelta(0):
        raise ValueError("interval must be positive")

    if previous_end is None:
        return AlarmWindow(window_start_utc=now - interval, window_end_utc=now)

    _require_aware(previous_end, "previous_end")
    if now < previous_end:
        return AlarmWindow(window_start_utc=previous_end, window_end_utc=previous_end)

    return AlarmWindow(window_start_utc=previous_end, window_end_utc=now)


class WindowTracker:
    """Keeps the window chain for a single source."""

    def __init__(self, interval: timedelta) -> None:
        self._interval = interval
        self._previous_end: datetime | None = None

    @property
    def interval(self) -> timedelta:
        return self._interval

    @property
    def previous_end(self) -> datetime | None:
        return self._previous_end

    def peek(self, now: datetime) -> AlarmWindow:
        """Return the next window without moving the chain."""
        return next_window(self._previous_end, self._interval, now)

    def commit(self, window: AlarmWindow) -> None:
        """Move the chain to the end of a processed window.

        The boundary never moves backwards.
        """
        end = window.window_end_utc
        if self._previous_end is None or end > self._previous_end:
            self._previous_end = end

    def retry_from(self, window: AlarmWindow) -> None:
        """Make the next window start where an unprocessed window started."""
        if self._previous_end is None:
            self._previous_end = window.window_start_utc

    def advance(self, now: datetime) -> AlarmWindow:
        """Return the next window and move the chain forward."""
        window = self.peek(now)
        self.commit(window)
        return window

    def reset(self) -> None:
        """Forget the chain, as a process restart would."""
        self._previous_end = None
