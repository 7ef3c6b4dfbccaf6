"""Health endpoint and Prometheus metrics.

Serves ``/health`` (plain ``OK`` for platform probes), ``/health/details``
(scheduler state and per-source tick statistics) and ``/metrics``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from aiohttp import web
from prometheus_client import Counter, Gauge, Histogram, generate_latest

from nanami_alarm.scheduler.alarm import SchedulerState

if TYPE_CHECKING:
    from nanami_alarm.scheduler.alarm import AlarmScheduler, TickResult, TickStats

logger = logging.getLogger(__name__)

DEFAULT_HTTP_PORT = 3000


class HealthStatus(Enum):
    """Overall health status."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class HealthReport:
    """Health of the scheduler and every source."""

    status: HealthStatus
    scheduler_state: SchedulerState
    sources: dict[str, TickStats] = field(default_factory=dict)
    uptime_seconds: float = 0.0
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "scheduler": self.scheduler_state.value,
            "uptime_seconds": round(self.uptime_seconds, 1),
            "sources": {name: stats.to_dict() for name, stats in self.sources.items()},
        }


# Prometheus metrics
TICKS_TOTAL = Counter(
    "nanami_ticks_total",
    "Total number of alarm ticks run",
    ["source"],
)

TICK_FAILURES_TOTAL = Counter(
    "nanami_tick_failures_total",
    "Total number of alarm ticks that failed",
    ["source"],
)

ITEMS_DISPATCHED_TOTAL = Counter(
    "nanami_items_dispatched_total",
    "Total number of alarm items delivered",
    ["source"],
)

DELIVERY_FAILURES_TOTAL = Counter(
    "nanami_delivery_failures_total",
    "Total number of alarm items that could not be delivered",
    ["source"],
)

TICK_DURATION = Histogram(
    "nanami_tick_duration_seconds",
    "Alarm tick duration in seconds",
    ["source"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0],
)

LAST_TICK_TIMESTAMP = Gauge(
    "nanami_last_tick_timestamp",
    "Unix timestamp of the last completed tick",
    ["source"],
)


def record_tick(result: TickResult) -> None:
    """Update metrics from a tick result (scheduler callback)."""
    if result.skipped_overlap:
        return
    source = result.source
    TICKS_TOTAL.labels(source=source).inc()
    if result.error is not None:
        TICK_FAILURES_TOTAL.labels(source=source).inc()
    if result.dispatched:
        ITEMS_DISPATCHED_TOTAL.labels(source=source).inc(result.dispatched)
    if result.delivery_failures:
        DELIVERY_FAILURES_TOTAL.labels(source=source).inc(result.delivery_failures)
    TICK_DURATION.labels(source=source).observe(result.duration_seconds)
    LAST_TICK_TIMESTAMP.labels(source=source).set(time.time())


class HealthServer:
    """HTTP server exposing health and metrics for the scheduler.

    Example:
        ```python
        server = HealthServer(scheduler)
        await server.start(port=3000)
        ...
        await server.stop()
        ```
    """

    def __init__(self, scheduler: AlarmScheduler) -> None:
        self._scheduler = scheduler
        self._start_time = time.time()
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    @property
    def is_running(self) -> bool:
        return self._runner is not None

    def get_health_report(self) -> HealthReport:
        """Build a report from the scheduler state and statistics."""
        state = self._scheduler.state
        sources = self._scheduler.stats()

        if state != SchedulerState.RUNNING:
            status = HealthStatus.UNHEALTHY
        elif any(stats.last_error for stats in sources.values()):
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY

        return HealthReport(
            status=status,
            scheduler_state=state,
            sources=dict(sources),
            uptime_seconds=time.time() - self._start_time,
        )

    # HTTP handlers

    async def _handle_health(self, _request: web.Request) -> web.Response:
        """Handle /health endpoint (liveness probe)."""
        return web.Response(text="OK")

    async def _handle_details(self, _request: web.Request) -> web.Response:
        """Handle /health/details endpoint."""
        report = self.get_health_report()
        status_code = 503 if report.status == HealthStatus.UNHEALTHY else 200
        return web.json_response(report.to_dict(), status=status_code)

    async def _handle_metrics(self, _request: web.Request) -> web.Response:
        """Handle /metrics endpoint (Prometheus format)."""
        return web.Response(
            body=generate_latest(),
            content_type="text/plain",
            charset="utf-8",
        )

    def create_app(self) -> web.Application:
        """Create the aiohttp application."""
        app = web.Application()
        app.router.add_get("/", self._handle_health)
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/health/details", self._handle_details)
        app.router.add_get("/metrics", self._handle_metrics)
        return app

    async def start(self, port: int = DEFAULT_HTTP_PORT, host: str = "0.0.0.0") -> None:
        """Start the HTTP server.

        Args:
            port: Port to listen on.
            host: Interface to bind.
        """
        if self._runner:
            logger.warning("HTTP server already running")
            return

        self._app = self.create_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        site = web.TCPSite(self._runner, host, port)
        await site.start()

        logger.info("Health HTTP server started on port %d", port)

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._app = None
            logger.info("Health HTTP server stopped")
