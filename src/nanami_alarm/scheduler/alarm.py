"""Alarm scheduler.

Runs one background task per source adapter. Each task ticks once
immediately and then every ``poll_interval``; a tick fetches the items of
the current window, formats them and hands them to the dispatcher, then
advances the source's last-seen marker.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from nanami_alarm.errors import DeliveryError, StateWriteError
from nanami_alarm.scheduler.window import AlarmWindow, WindowTracker

if TYPE_CHECKING:
    from nanami_alarm.alerter.models import DiscordOutbound
    from nanami_alarm.sources.base import EventPayload, SourceAdapter

logger = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    """State of the alarm scheduler."""

    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class TickStats:
    """Running statistics for one source."""

    ticks: int = 0
    skipped_overlaps: int = 0
    failures: int = 0
    items_dispatched: int = 0
    delivery_failures: int = 0
    last_tick_time: datetime | None = None
    last_tick_duration_seconds: float = 0.0
    last_window: AlarmWindow | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ticks": self.ticks,
            "skipped_overlaps": self.skipped_overlaps,
            "failures": self.failures,
            "items_dispatched": self.items_dispatched,
            "delivery_failures": self.delivery_failures,
            "last_tick_time": self.last_tick_time.isoformat() if self.last_tick_time else None,
            "last_tick_duration_seconds": round(self.last_tick_duration_seconds, 3),
            "last_window": self.last_window.to_dict() if self.last_window else None,
            "last_error": self.last_error,
        }


@dataclass
class TickResult:
    """Outcome of a single tick."""

    source: str
    window: AlarmWindow | None = None
    fetched: int = 0
    dispatched: int = 0
    duplicates: int = 0
    delivery_failures: int = 0
    skipped_overlap: bool = False
    error: str | None = None
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return not self.skipped_overlap and self.error is None


class MessageDispatcher(Protocol):
    """Protocol for the component that delivers formatted messages."""

    async def send(self, destination: str, message: DiscordOutbound) -> None:
        """Deliver one message; raises DeliveryError on failure."""
        ...


class MarkerStore(Protocol):
    """Protocol for the persisted last-seen marker."""

    async def get_last_id(self, source_key: str) -> str | None: ...

    async def set_last_id(self, source_key: str, item_id: str) -> None: ...


class SentHistory(Protocol):
    """Protocol for the optional delivery history."""

    async def should_send(self, source: str, item_id: str) -> bool: ...

    async def record_sent(self, source: str, item_id: str, link: str | None = None) -> bool: ...


# Type aliases for callbacks
Clock = Callable[[], datetime]
TickCallback = Callable[[TickResult], None]


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class _SourceRunner:
    adapter: SourceAdapter[Any]
    tracker: WindowTracker
    stats: TickStats = field(default_factory=TickStats)
    last_id: str | None = None
    in_progress: bool = False
    task: asyncio.Task[None] | None = None


class AlarmScheduler:
    """Periodic fetch and dispatch loop for every registered source.

    Sources never block each other: each has its own task, window chain,
    marker and statistics. A tick that is still running when the next
    trigger arrives causes that trigger to be skipped.

    Example:
        ```python
        scheduler = AlarmScheduler(dispatcher, state_store=store)
        await scheduler.run([cve_source, hn_source])
        ...
        await scheduler.stop()
        ```
    """

    def __init__(
        self,
        dispatcher: MessageDispatcher,
        *,
        state_store: MarkerStore | None = None,
        history: SentHistory | None = None,
        clock: Clock = utc_now,
        on_tick_complete: TickCallback | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            dispatcher: Delivers formatted messages.
            state_store: Persists the last-seen marker per source.
            history: Optional delivery history consulted before sending.
            clock: Source of the current UTC time.
            on_tick_complete: Callback invoked with every tick result.
        """
        self._dispatcher = dispatcher
        self._state_store = state_store
        self._history = history
        self._clock = clock
        self._on_tick_complete = on_tick_complete

        self._runners: dict[str, _SourceRunner] = {}
        self._state = SchedulerState.STOPPED
        self._stop_event = asyncio.Event()

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def sources(self) -> list[str]:
        return list(self._runners)

    def stats(self) -> dict[str, TickStats]:
        """Per-source statistics."""
        return {name: runner.stats for name, runner in self._runners.items()}

    def last_id(self, source: str) -> str | None:
        return self._runner(source).last_id

    def previous_end(self, source: str) -> datetime | None:
        return self._runner(source).tracker.previous_end

    def _runner(self, source: str) -> _SourceRunner:
        try:
            return self._runners[source]
        except KeyError:
            raise KeyError(f"Unknown source: {source}") from None

    async def register(self, adapter: SourceAdapter[Any]) -> None:
        """Register a source and seed its marker from the state store."""
        if adapter.name in self._runners:
            raise ValueError(f"Source already registered: {adapter.name}")

        runner = _SourceRunner(adapter=adapter, tracker=WindowTracker(adapter.options.poll_interval))
        if self._state_store is not None:
            try:
                runner.last_id = await self._state_store.get_last_id(adapter.name)
            except Exception as e:
                logger.warning("Could not read last-seen marker for %s: %s", adapter.name, e)
        self._runners[adapter.name] = runner
        logger.info(
            "Registered source %s (every %ss, channel %s, last id %s)",
            adapter.name,
            adapter.options.poll_interval_seconds,
            adapter.options.destination_channel_id or "-",
            runner.last_id,
        )

    async def run(self, adapters: Iterable[SourceAdapter[Any]]) -> None:
        """Register the adapters and start one timer task per source.

        Returns once the tasks are started; ``stop()`` cancels them.
        """
        if self._state != SchedulerState.STOPPED:
            logger.warning("Cannot start scheduler: already in state %s", self._state.value)
            return

        for adapter in adapters:
            await self.register(adapter)

        self._stop_event.clear()
        self._state = SchedulerState.RUNNING
        for runner in self._runners.values():
            runner.task = asyncio.create_task(
                self._loop(runner), name=f"alarm-{runner.adapter.name}"
            )
        logger.info("Alarm scheduler started with %d sources", len(self._runners))

    async def stop(self) -> None:
        """Cancel every source task."""
        if self._state == SchedulerState.STOPPED:
            return

        self._state = SchedulerState.STOPPING
        self._stop_event.set()

        tasks = [r.task for r in self._runners.values() if r.task is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for runner in self._runners.values():
            runner.task = None

        self._state = SchedulerState.STOPPED
        logger.info("Alarm scheduler stopped")

    async def trigger(self, source: str) -> TickResult:
        """Run one tick for a source right now (admin and tests)."""
        return await self._tick(self._runner(source))

    async def _loop(self, runner: _SourceRunner) -> None:
        interval = runner.adapter.options.poll_interval_seconds
        while not self._stop_event.is_set():
            await self._tick(runner)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except TimeoutError:
                pass

    async def _tick(self, runner: _SourceRunner) -> TickResult:
        source = runner.adapter.name
        stats = runner.stats
        result = TickResult(source=source)

        if runner.in_progress:
            stats.skipped_overlaps += 1
            result.skipped_overlap = True
            logger.warning("Skipping %s tick: previous tick still running", source)
            return result

        runner.in_progress = True
        started = time.monotonic()
        try:
            await self._run_tick(runner, result)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            stats.failures += 1
            stats.last_error = f"{type(e).__name__}: {e}"
            result.error = stats.last_error
            logger.exception("Tick failed for %s (window %s)", source, result.window)
        else:
            stats.last_error = None
        finally:
            runner.in_progress = False
            result.duration_seconds = time.monotonic() - started
            stats.ticks += 1
            stats.last_tick_time = self._clock()
            stats.last_tick_duration_seconds = result.duration_seconds
            if result.window is not None:
                stats.last_window = result.window

        self._notify(result)
        return result

    async def _run_tick(self, runner: _SourceRunner, result: TickResult) -> None:
        adapter = runner.adapter
        source = adapter.name

        window = runner.tracker.peek(self._clock())
        result.window = window
        try:
            payloads = await adapter.fetch_new_items(window)
        except Exception:
            runner.tracker.retry_from(window)
            raise
        runner.tracker.commit(window)
        result.fetched = len(payloads)

        if not payloads:
            logger.info("No new items for %s in %s", source, window)
            return

        destination = adapter.options.destination_channel_id
        try:
            await self._deliver_all(runner, payloads, destination, result)
        finally:
            if result.dispatched and runner.last_id is not None:
                await self._persist_last_id(source, runner.last_id)

        logger.info(
            "Tick %s %s: %d fetched, %d sent, %d duplicates, %d failed",
            source,
            window,
            result.fetched,
            result.dispatched,
            result.duplicates,
            result.delivery_failures,
        )

    async def _deliver_all(
        self,
        runner: _SourceRunner,
        payloads: list[EventPayload],
        destination: str,
        result: TickResult,
    ) -> None:
        adapter = runner.adapter
        source = adapter.name
        for payload in payloads:
            if payload.item_id == runner.last_id:
                result.duplicates += 1
                logger.debug("Skipping %s item %s: already the last seen", source, payload.item_id)
                continue
            if self._history is not None and not await self._history.should_send(
                source, payload.item_id
            ):
                result.duplicates += 1
                logger.debug("Skipping %s item %s: already delivered", source, payload.item_id)
                continue

            message = await adapter.format(payload)
            if message is None:
                logger.info("Nothing to send for %s item %s", source, payload.item_id)
                continue

            try:
                await self._dispatcher.send(destination, message)
            except DeliveryError as e:
                result.delivery_failures += 1
                runner.stats.delivery_failures += 1
                logger.error("Delivery failed for %s item %s: %s", source, payload.item_id, e)
                continue

            result.dispatched += 1
            runner.stats.items_dispatched += 1
            runner.last_id = payload.item_id
            if self._history is not None:
                await self._history.record_sent(source, payload.item_id, payload.canonical_link)

    async def _persist_last_id(self, source: str, item_id: str) -> None:
        if self._state_store is None:
            return
        try:
            await self._state_store.set_last_id(source, item_id)
        except StateWriteError as e:
            logger.error("Could not persist last-seen marker for %s: %s", source, e)

    def _notify(self, result: TickResult) -> None:
        if self._on_tick_complete is None:
            return
        try:
            self._on_tick_complete(result)
        except Exception as e:
            logger.warning("Tick callback failed: %s", e)
