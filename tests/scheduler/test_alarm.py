"""Tests for the alarm scheduler."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from nanami_alarm.alerter.models import DiscordOutbound
from nanami_alarm.errors import DeliveryError, FetchError, StateWriteError
from nanami_alarm.llm.summarizer import NullSummarizer
from nanami_alarm.scheduler.alarm import AlarmScheduler, SchedulerState, TickResult
from nanami_alarm.scheduler.window import AlarmWindow
from nanami_alarm.sources.base import EventPayload, SourceAdapter, SourceOptions

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def tick(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeSource(SourceAdapter[EventPayload]):
    """Adapter returning canned payloads and recording the windows it saw."""

    name = "fake"

    def __init__(self, payloads: list[EventPayload] | None = None) -> None:
        super().__init__(
            SourceOptions(poll_interval_ms=600_000, remote_endpoint="https://example.com", destination_channel_id="c1"),
            http=MagicMock(),
            summarizer=NullSummarizer(),
        )
        self.payloads = payloads or []
        self.windows: list[AlarmWindow] = []
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None

    async def fetch_new_items(self, window: AlarmWindow) -> list[EventPayload]:
        self.windows.append(window)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return [p for p in self.payloads if window.contains(p.published_at)]

    async def format(self, payload: EventPayload) -> DiscordOutbound | None:
        return DiscordOutbound(content=payload.summary_text)


def _payload(item_id: str, minutes_before_now: int = 1) -> EventPayload:
    return EventPayload(
        summary_text=f"summary {item_id}",
        canonical_link=f"https://example.com/{item_id}",
        published_at=NOW - timedelta(minutes=minutes_before_now),
        item_id=item_id,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def dispatcher() -> MagicMock:
    mock = MagicMock()
    mock.send = AsyncMock()
    return mock


@pytest.fixture
def state_store() -> MagicMock:
    store = MagicMock()
    store.get_last_id = AsyncMock(return_value=None)
    store.set_last_id = AsyncMock()
    return store


class TestRegistration:
    """Tests for source registration."""

    async def test_register_seeds_marker(self, dispatcher: MagicMock, state_store: MagicMock) -> None:
        """The persisted marker becomes the in-memory last id."""
        state_store.get_last_id.return_value = "item-9"
        scheduler = AlarmScheduler(dispatcher, state_store=state_store)

        await scheduler.register(FakeSource())

        assert scheduler.last_id("fake") == "item-9"
        assert scheduler.sources == ["fake"]

    async def test_register_tolerates_store_failure(
        self, dispatcher: MagicMock, state_store: MagicMock
    ) -> None:
        state_store.get_last_id.side_effect = RuntimeError("db down")
        scheduler = AlarmScheduler(dispatcher, state_store=state_store)

        await scheduler.register(FakeSource())

        assert scheduler.last_id("fake") is None

    async def test_register_twice_fails(self, dispatcher: MagicMock) -> None:
        scheduler = AlarmScheduler(dispatcher)
        await scheduler.register(FakeSource())
        with pytest.raises(ValueError):
            await scheduler.register(FakeSource())

    async def test_unknown_source(self, dispatcher: MagicMock) -> None:
        scheduler = AlarmScheduler(dispatcher)
        with pytest.raises(KeyError):
            await scheduler.trigger("missing")


class TestTick:
    """Tests for a single tick."""

    async def test_marker_scenario(
        self, dispatcher: MagicMock, state_store: MagicMock, clock: FakeClock
    ) -> None:
        """A null marker gives [now - interval, now); a dispatch moves the marker."""
        source = FakeSource([_payload("item-1")])
        scheduler = AlarmScheduler(dispatcher, state_store=state_store, clock=clock)
        await scheduler.register(source)

        result = await scheduler.trigger("fake")

        assert source.windows[0].window_start_utc == NOW - timedelta(minutes=10)
        assert source.windows[0].window_end_utc == NOW
        assert result.dispatched == 1
        assert scheduler.last_id("fake") == "item-1"
        state_store.set_last_id.assert_awaited_once_with("fake", "item-1")
        dispatcher.send.assert_awaited_once()
        assert dispatcher.send.await_args.args[0] == "c1"

    async def test_windows_chain_between_ticks(
        self, dispatcher: MagicMock, clock: FakeClock
    ) -> None:
        source = FakeSource()
        scheduler = AlarmScheduler(dispatcher, clock=clock)
        await scheduler.register(source)

        await scheduler.trigger("fake")
        clock.tick(minutes=10)
        await scheduler.trigger("fake")

        assert source.windows[1].window_start_utc == source.windows[0].window_end_utc
        assert scheduler.previous_end("fake") == NOW + timedelta(minutes=10)

    async def test_clock_skew_is_not_an_error(self, dispatcher: MagicMock, clock: FakeClock) -> None:
        source = FakeSource([_payload("item-1")])
        scheduler = AlarmScheduler(dispatcher, clock=clock)
        await scheduler.register(source)

        await scheduler.trigger("fake")
        clock.tick(minutes=-5)
        result = await scheduler.trigger("fake")

        assert result.succeeded
        assert result.window is not None and result.window.is_empty
        assert result.fetched == 0

    async def test_partial_failure_isolation(
        self, dispatcher: MagicMock, state_store: MagicMock, clock: FakeClock
    ) -> None:
        """A delivery failure on one payload does not stop the others."""
        source = FakeSource([_payload("item-1", 3), _payload("item-2", 2), _payload("item-3", 1)])
        dispatcher.send.side_effect = [None, DeliveryError("c1", "unknown channel"), None]
        scheduler = AlarmScheduler(dispatcher, state_store=state_store, clock=clock)
        await scheduler.register(source)

        result = await scheduler.trigger("fake")

        assert result.succeeded
        assert result.dispatched == 2
        assert result.delivery_failures == 1
        assert dispatcher.send.await_count == 3
        assert scheduler.last_id("fake") == "item-3"
        state_store.set_last_id.assert_awaited_once_with("fake", "item-3")
        assert scheduler.stats()["fake"].delivery_failures == 1

    async def test_marker_written_once_per_tick(
        self, dispatcher: MagicMock, state_store: MagicMock, clock: FakeClock
    ) -> None:
        """Several dispatches in one tick persist only the newest sent id."""
        source = FakeSource([_payload("item-1", 3), _payload("item-2", 2), _payload("item-3", 1)])
        scheduler = AlarmScheduler(dispatcher, state_store=state_store, clock=clock)
        await scheduler.register(source)

        result = await scheduler.trigger("fake")

        assert result.dispatched == 3
        state_store.set_last_id.assert_awaited_once_with("fake", "item-3")

    async def test_no_marker_write_when_nothing_sent(
        self, dispatcher: MagicMock, state_store: MagicMock, clock: FakeClock
    ) -> None:
        dispatcher.send.side_effect = DeliveryError("c1", "missing access")
        scheduler = AlarmScheduler(dispatcher, state_store=state_store, clock=clock)
        await scheduler.register(FakeSource([_payload("item-1")]))

        result = await scheduler.trigger("fake")

        assert result.delivery_failures == 1
        assert scheduler.last_id("fake") is None
        state_store.set_last_id.assert_not_awaited()

    async def test_marker_persisted_when_tick_aborts(
        self, dispatcher: MagicMock, state_store: MagicMock, clock: FakeClock
    ) -> None:
        """Items sent before an unexpected error still move the stored marker."""
        source = FakeSource([_payload("item-1", 2), _payload("item-2", 1)])
        dispatcher.send.side_effect = [None, RuntimeError("boom")]
        scheduler = AlarmScheduler(dispatcher, state_store=state_store, clock=clock)
        await scheduler.register(source)

        result = await scheduler.trigger("fake")

        assert not result.succeeded
        state_store.set_last_id.assert_awaited_once_with("fake", "item-1")

    async def test_fetch_failure_keeps_window(
        self, dispatcher: MagicMock, clock: FakeClock
    ) -> None:
        """A failed fetch is retried from the same start on the next tick."""
        source = FakeSource()
        source.error = FetchError("fake", "https://example.com", status=503)
        scheduler = AlarmScheduler(dispatcher, clock=clock)
        await scheduler.register(source)

        result = await scheduler.trigger("fake")
        assert not result.succeeded
        assert result.error is not None and "FetchError" in result.error
        assert scheduler.stats()["fake"].failures == 1

        source.error = None
        clock.tick(minutes=10)
        await scheduler.trigger("fake")

        assert source.windows[1].window_start_utc == source.windows[0].window_start_utc
        assert scheduler.stats()["fake"].last_error is None

    async def test_skips_last_seen_item(self, dispatcher: MagicMock, state_store: MagicMock) -> None:
        state_store.get_last_id.return_value = "item-1"
        source = FakeSource([_payload("item-1"), _payload("item-2")])
        scheduler = AlarmScheduler(dispatcher, state_store=state_store, clock=FakeClock())
        await scheduler.register(source)

        result = await scheduler.trigger("fake")

        assert result.duplicates == 1
        assert result.dispatched == 1

    async def test_history_suppresses_delivered_items(self, dispatcher: MagicMock) -> None:
        history = MagicMock()
        history.should_send = AsyncMock(side_effect=[False, True])
        history.record_sent = AsyncMock(return_value=True)
        source = FakeSource([_payload("item-1", 2), _payload("item-2", 1)])
        scheduler = AlarmScheduler(dispatcher, history=history, clock=FakeClock())
        await scheduler.register(source)

        result = await scheduler.trigger("fake")

        assert result.duplicates == 1
        assert result.dispatched == 1
        history.record_sent.assert_awaited_once_with(
            "fake", "item-2", "https://example.com/item-2"
        )

    async def test_state_write_failure_still_moves_marker(
        self, dispatcher: MagicMock, state_store: MagicMock
    ) -> None:
        state_store.set_last_id.side_effect = StateWriteError("fake")
        scheduler = AlarmScheduler(dispatcher, state_store=state_store, clock=FakeClock())
        await scheduler.register(FakeSource([_payload("item-1")]))

        result = await scheduler.trigger("fake")

        assert result.succeeded
        assert scheduler.last_id("fake") == "item-1"

    async def test_reentrant_trigger_is_skipped(self, dispatcher: MagicMock) -> None:
        """A trigger that arrives while a tick runs is skipped."""
        source = FakeSource()
        source.gate = asyncio.Event()
        scheduler = AlarmScheduler(dispatcher, clock=FakeClock())
        await scheduler.register(source)

        first = asyncio.create_task(scheduler.trigger("fake"))
        await asyncio.sleep(0)
        second = await scheduler.trigger("fake")
        source.gate.set()
        first_result = await first

        assert second.skipped_overlap
        assert not first_result.skipped_overlap
        assert len(source.windows) == 1
        assert scheduler.stats()["fake"].skipped_overlaps == 1

    async def test_tick_callback_receives_results(self, dispatcher: MagicMock) -> None:
        results: list[TickResult] = []
        scheduler = AlarmScheduler(dispatcher, clock=FakeClock(), on_tick_complete=results.append)
        await scheduler.register(FakeSource([_payload("item-1")]))

        await scheduler.trigger("fake")

        assert len(results) == 1
        assert results[0].source == "fake"
        assert results[0].dispatched == 1

    async def test_failing_callback_is_ignored(self, dispatcher: MagicMock) -> None:
        callback = MagicMock(side_effect=RuntimeError("boom"))
        scheduler = AlarmScheduler(dispatcher, clock=FakeClock(), on_tick_complete=callback)
        await scheduler.register(FakeSource())

        result = await scheduler.trigger("fake")

        assert result.succeeded
        callback.assert_called_once()


class TestLifecycle:
    """Tests for run and stop."""

    async def test_run_ticks_immediately_and_stops(self, dispatcher: MagicMock) -> None:
        source = FakeSource([_payload("item-1")])
        scheduler = AlarmScheduler(dispatcher, clock=FakeClock())

        await scheduler.run([source])
        assert scheduler.state == SchedulerState.RUNNING
        for _ in range(10):
            await asyncio.sleep(0)
        await scheduler.stop()

        assert scheduler.state == SchedulerState.STOPPED
        assert len(source.windows) == 1
        dispatcher.send.assert_awaited_once()

    async def test_stop_when_stopped_is_noop(self, dispatcher: MagicMock) -> None:
        scheduler = AlarmScheduler(dispatcher)
        await scheduler.stop()
        assert scheduler.state == SchedulerState.STOPPED

    async def test_run_twice_is_ignored(self, dispatcher: MagicMock) -> None:
        scheduler = AlarmScheduler(dispatcher, clock=FakeClock())
        await scheduler.run([FakeSource()])
        await scheduler.run([FakeSource()])
        assert scheduler.sources == ["fake"]
        await scheduler.stop()
