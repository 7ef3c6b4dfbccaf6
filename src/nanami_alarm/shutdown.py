"""Stop coordination for the alarm process.

``GracefulShutdown`` turns SIGTERM/SIGINT into an awaitable event and runs
the registered stop callbacks when its ``async with`` block exits::

    async with GracefulShutdown() as shutdown:
        pipeline = Pipeline(settings)
        shutdown.register_cleanup(pipeline.stop)
        await pipeline.start()
        await shutdown.wait()
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from contextlib import suppress
from types import FrameType
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_SHUTDOWN_TIMEOUT = 30.0

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)

CleanupCallback = Callable[[], Awaitable[Any] | Any]

_USE_SIGNAL_MODULE = sys.platform == "win32"


class GracefulShutdown:
    """Signal trap plus an ordered list of stop callbacks.

    A first signal only flags the stop; a repeated one terminates the
    process with ``128 + signum`` so a stuck drain can be interrupted.
    """

    def __init__(self, timeout: float = DEFAULT_SHUTDOWN_TIMEOUT) -> None:
        """
        Args:
            timeout: Seconds allowed for each stop callback.
        """
        self._timeout = timeout
        self._callbacks: list[CleanupCallback] = []
        self._event: asyncio.Event | None = None
        self._requested = False
        self._forced = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._previous: dict[signal.Signals, Any] = {}

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def is_shutdown_requested(self) -> bool:
        return self._requested

    @property
    def is_force_exit_requested(self) -> bool:
        return self._forced

    def register_cleanup(self, callback: CleanupCallback) -> None:
        """Queue ``callback`` (plain or coroutine function) for the exit path."""
        self._callbacks.append(callback)

    def _ensure_event(self) -> asyncio.Event:
        if self._event is None:
            self._event = asyncio.Event()
            if self._requested:
                self._event.set()
        return self._event

    def _mark_requested(self) -> None:
        self._requested = True
        if self._event is not None:
            self._event.set()

    def request_shutdown(self) -> None:
        """Ask the process to stop as if a signal had arrived."""
        if not self._requested:
            logger.info("Stop requested by application")
            self._mark_requested()

    async def wait(self) -> None:
        """Return once a stop has been requested."""
        await self._ensure_event().wait()

    def install_signal_handlers(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._ensure_event()
        for sig in SHUTDOWN_SIGNALS:
            try:
                if _USE_SIGNAL_MODULE:
                    self._previous[sig] = signal.signal(sig, self._on_signal_frame)
                else:
                    self._loop.add_signal_handler(sig, self._handle_signal, sig)
            except (ValueError, OSError, NotImplementedError) as exc:
                logger.warning("%s handler not installed: %s", sig.name, exc)

    def remove_signal_handlers(self) -> None:
        if _USE_SIGNAL_MODULE:
            while self._previous:
                sig, previous = self._previous.popitem()
                with suppress(ValueError, OSError):
                    signal.signal(sig, previous)
            return
        if self._loop is None:
            return
        for sig in SHUTDOWN_SIGNALS:
            with suppress(ValueError, OSError, NotImplementedError):
                self._loop.remove_signal_handler(sig)

    def _handle_signal(self, sig: signal.Signals) -> None:
        if self._requested:
            self._forced = True
            logger.warning("%s received twice, exiting now", sig.name)
            sys.exit(128 + sig.value)
        logger.info("%s received, stopping alarms", sig.name)
        self._mark_requested()

    def _on_signal_frame(self, signum: int, _frame: FrameType | None) -> None:
        self._handle_signal(signal.Signals(signum))

    async def _invoke(self, callback: CleanupCallback) -> None:
        outcome = callback()
        if asyncio.iscoroutine(outcome):
            await asyncio.wait_for(outcome, timeout=self._timeout)

    async def run_cleanup_callbacks(self) -> None:
        """Run every stop callback in registration order.

        A failing or slow callback is logged and the remaining ones still run.
        """
        for callback in self._callbacks:
            try:
                await self._invoke(callback)
            except TimeoutError:
                logger.error("Stop callback %r exceeded %.1fs", callback, self._timeout)
            except Exception:
                logger.exception("Stop callback %r failed", callback)

    async def __aenter__(self) -> GracefulShutdown:
        self.install_signal_handlers()
        return self

    async def __aexit__(self, *_exc: object) -> None:
        self.remove_signal_handlers()
        await self.run_cleanup_callbacks()
