"""Tests for the health server and metrics."""

from unittest.mock import MagicMock

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer
from prometheus_client import REGISTRY

from nanami_alarm.health import HealthServer, HealthStatus, record_tick
from nanami_alarm.scheduler.alarm import SchedulerState, TickResult, TickStats

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def scheduler() -> MagicMock:
    """Create a mock scheduler in the running state."""
    mock = MagicMock()
    mock.state = SchedulerState.RUNNING
    mock.stats.return_value = {"cve": TickStats(ticks=3, items_dispatched=2)}
    return mock


@pytest.fixture
def server(scheduler: MagicMock) -> HealthServer:
    return HealthServer(scheduler)


@pytest.fixture
def app(server: HealthServer) -> web.Application:
    return server.create_app()


def _sample(name: str, source: str) -> float:
    return REGISTRY.get_sample_value(name, {"source": source}) or 0.0


# ============================================================================
# Report Tests
# ============================================================================


class TestHealthReport:
    """Tests for report status derivation."""

    def test_healthy(self, server: HealthServer) -> None:
        report = server.get_health_report()

        assert report.status == HealthStatus.HEALTHY
        assert report.to_dict()["sources"]["cve"]["ticks"] == 3

    def test_degraded_on_source_error(self, server: HealthServer, scheduler: MagicMock) -> None:
        scheduler.stats.return_value = {"cve": TickStats(last_error="HTTP 503")}

        assert server.get_health_report().status == HealthStatus.DEGRADED

    def test_unhealthy_when_stopped(self, server: HealthServer, scheduler: MagicMock) -> None:
        scheduler.state = SchedulerState.STOPPED

        report = server.get_health_report()

        assert report.status == HealthStatus.UNHEALTHY
        assert report.to_dict()["scheduler"] == "stopped"


# ============================================================================
# HTTP Endpoint Tests
# ============================================================================


class TestHealthEndpoints:
    """Tests for HTTP endpoints."""

    @pytest.mark.parametrize("path", ["/", "/health"])
    async def test_liveness(self, app: web.Application, path: str) -> None:
        async with TestClient(TestServer(app)) as client:
            resp = await client.get(path)
            assert resp.status == 200
            assert await resp.text() == "OK"

    async def test_details(self, app: web.Application) -> None:
        async with TestClient(TestServer(app)) as client:
            resp = await client.get("/health/details")
            assert resp.status == 200

            data = await resp.json()
            assert data["status"] == "healthy"
            assert data["sources"]["cve"]["items_dispatched"] == 2

    async def test_details_unhealthy(self, app: web.Application, scheduler: MagicMock) -> None:
        scheduler.state = SchedulerState.STOPPING

        async with TestClient(TestServer(app)) as client:
            resp = await client.get("/health/details")
            assert resp.status == 503

    async def test_metrics(self, app: web.Application) -> None:
        record_tick(TickResult(source="metrics-test", dispatched=1))

        async with TestClient(TestServer(app)) as client:
            resp = await client.get("/metrics")
            assert resp.status == 200
            assert "text/plain" in resp.headers.get("Content-Type", "")
            assert "nanami_ticks_total" in await resp.text()


class TestHealthServerLifecycle:
    """Tests for start/stop."""

    async def test_start_stop(self, server: HealthServer, unused_tcp_port: int) -> None:
        await server.start(port=unused_tcp_port, host="127.0.0.1")
        assert server.is_running

        await server.start(port=unused_tcp_port, host="127.0.0.1")
        assert server.is_running

        await server.stop()
        assert not server.is_running

    async def test_stop_when_not_running(self, server: HealthServer) -> None:
        await server.stop()
        assert not server.is_running


# ============================================================================
# Metrics Tests
# ============================================================================


class TestRecordTick:
    """Tests for record_tick."""

    def test_counts(self) -> None:
        before = _sample("nanami_ticks_total", "record-test")

        record_tick(
            TickResult(source="record-test", dispatched=2, delivery_failures=1, error="boom")
        )

        assert _sample("nanami_ticks_total", "record-test") == before + 1
        assert _sample("nanami_tick_failures_total", "record-test") >= 1
        assert _sample("nanami_items_dispatched_total", "record-test") >= 2
        assert _sample("nanami_delivery_failures_total", "record-test") >= 1

    def test_skipped_overlap_ignored(self) -> None:
        before = _sample("nanami_ticks_total", "overlap-test")

        record_tick(TickResult(source="overlap-test", skipped_overlap=True))

        assert _sample("nanami_ticks_total", "overlap-test") == before
