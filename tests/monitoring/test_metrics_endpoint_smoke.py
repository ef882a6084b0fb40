"""
End-to-end smoke test for the metrics exporter + HTTP endpoint.

Verifies:
- All REQUIRED_METRIC_NAMES are present in /metrics output
- Metric TYPE annotations are correct (counter vs gauge)
- The refresh callback runs on every scrape
- /healthz maps the status field to 200 / 503
- Client-bound app syncs from live clients and reports their health
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import AioHTTPTestCase
from prometheus_client.registry import CollectorRegistry

from nyxcord.gateway.types import ConnectionState, GatewayStats
from nyxcord.monitoring import (
    REQUIRED_METRIC_NAMES,
    MetricsExporter,
    client_health,
    create_client_metrics_app,
    create_metrics_app,
    start_metrics_server,
    stop_metrics_server,
)
from nyxcord.rest.types import RestMetrics

# --- Stub types matching real interfaces used by MetricsExporter.update() ---


@dataclass
class _StubQueue:
    size: int = 0
    running: int = 0
    max_queue_size: int = 1000


@dataclass
class _StubRateLimit:
    bucket_count: int = 0


@dataclass
class _StubRest:
    metrics: RestMetrics = field(default_factory=RestMetrics)
    queue: _StubQueue = field(default_factory=_StubQueue)
    rate_limit: _StubRateLimit = field(default_factory=_StubRateLimit)
    closed: bool = False


def _gateway_stats(**overrides: Any) -> GatewayStats:
    values: dict[str, Any] = {
        "ping": 42,
        "last_heartbeat": None,
        "session_id": "sess-0",
        "sequence": 7,
        "reconnect_attempts": 0,
        "uptime": 1500,
        "state": ConnectionState.CONNECTED,
        "received_payloads": 10,
        "sent_payloads": 4,
        "missed_heartbeats": 0,
    }
    values.update(overrides)
    return GatewayStats(**values)


@dataclass
class _StubGateway:
    stats: GatewayStats = field(default_factory=_gateway_stats)


EXPECTED_GAUGES: frozenset[str] = frozenset(
    {
        "nyxcord_rest_queue_depth",
        "nyxcord_rest_queue_running",
        "nyxcord_rest_rate_limit_buckets",
        "nyxcord_gateway_connected",
        "nyxcord_gateway_ping_ms",
    }
)

# prometheus_client emits: # TYPE <name>_total counter
COUNTER_TYPE_NAMES: frozenset[str] = frozenset(
    {
        "nyxcord_rest_requests_total",
        "nyxcord_rest_rate_limited_total",
        "nyxcord_rest_retries_total",
        "nyxcord_gateway_payloads_received_total",
        "nyxcord_gateway_payloads_sent_total",
    }
)


def _parse_type_lines(body: str) -> dict[str, str]:
    """Extract {metric_name: type} from # TYPE lines."""
    result: dict[str, str] = {}
    for match in re.finditer(r"^# TYPE (\S+) (\S+)$", body, re.MULTILINE):
        result[match.group(1)] = match.group(2)
    return result


class TestMetricsEndpointSmoke(AioHTTPTestCase):
    """E2E smoke: exporter + /metrics endpoint runtime correctness."""

    async def get_application(self) -> web.Application:
        self.registry = CollectorRegistry()
        self.exporter = MetricsExporter(registry=self.registry)
        self.rest = _StubRest()
        self.refreshes = 0
        self.health: dict[str, Any] = {"status": "ok", "state": "CONNECTED"}

        def refresh() -> None:
            self.refreshes += 1
            self.exporter.update(rest=self.rest, gateway_stats=_gateway_stats())  # type: ignore[arg-type]

        return create_metrics_app(
            self.registry, health_fn=lambda: self.health, refresh_fn=refresh
        )

    async def _fetch_metrics(self) -> str:
        resp = await self.client.get("/metrics")
        assert resp.status == 200
        ct = resp.headers.get("Content-Type", "")
        assert ct.startswith("text/plain"), f"Unexpected Content-Type: {ct}"
        return await resp.text()

    async def test_all_required_metric_names_present(self) -> None:
        """All REQUIRED_METRIC_NAMES appear in /metrics after a scrape."""
        body = await self._fetch_metrics()

        missing = [name for name in sorted(REQUIRED_METRIC_NAMES) if name not in body]
        assert not missing, f"Missing metrics in /metrics output: {missing}"

    async def test_type_annotations_correct(self) -> None:
        body = await self._fetch_metrics()
        types = _parse_type_lines(body)

        for gauge_name in sorted(EXPECTED_GAUGES):
            assert types.get(gauge_name) == "gauge", gauge_name
        for counter_name in sorted(COUNTER_TYPE_NAMES):
            assert types.get(counter_name) == "counter", counter_name

    async def test_refresh_runs_per_scrape(self) -> None:
        await self._fetch_metrics()
        self.rest.metrics.requests_total = 3
        body = await self._fetch_metrics()

        assert self.refreshes == 2
        assert re.search(r"^nyxcord_rest_requests_total 3\.0$", body, re.MULTILINE)

    async def test_healthz_ok(self) -> None:
        resp = await self.client.get("/healthz")

        assert resp.status == 200
        assert await resp.json() == {"status": "ok", "state": "CONNECTED"}

    async def test_healthz_degraded(self) -> None:
        self.health = {"status": "degraded", "state": "RESUMING"}

        resp = await self.client.get("/healthz")

        assert resp.status == 503
        assert (await resp.json())["state"] == "RESUMING"


class TestClientMetricsApp(AioHTTPTestCase):
    """App bound to live clients: scrape syncs, /healthz reflects client state."""

    async def get_application(self) -> web.Application:
        self.exporter = MetricsExporter(registry=CollectorRegistry())
        self.rest = _StubRest()
        self.gateway = _StubGateway()
        return create_client_metrics_app(
            self.exporter,
            rest=self.rest,  # type: ignore[arg-type]
            gateway=self.gateway,  # type: ignore[arg-type]
        )

    async def test_scrape_reads_clients(self) -> None:
        self.rest.metrics.requests_total = 5
        self.gateway.stats = _gateway_stats(received_payloads=12)

        resp = await self.client.get("/metrics")
        body = await resp.text()

        assert resp.status == 200
        assert re.search(r"^nyxcord_rest_requests_total 5\.0$", body, re.MULTILINE)
        assert re.search(r"^nyxcord_gateway_payloads_received_total 12\.0$", body, re.MULTILINE)
        assert re.search(r"^nyxcord_gateway_connected 1\.0$", body, re.MULTILINE)

    async def test_healthz_connected(self) -> None:
        resp = await self.client.get("/healthz")
        info = await resp.json()

        assert resp.status == 200
        assert info["status"] == "ok"
        assert info["gateway"]["state"] == "CONNECTED"
        assert info["rest"]["closed"] is False

    async def test_healthz_while_resuming(self) -> None:
        self.gateway.stats = _gateway_stats(state=ConnectionState.RESUMING)

        resp = await self.client.get("/healthz")

        assert resp.status == 503
        assert (await resp.json())["gateway"]["state"] == "RESUMING"


class TestClientHealth:
    """Tests for the /healthz document."""

    def test_no_clients_ok(self) -> None:
        assert client_health() == {"status": "ok"}

    def test_closed_rest_degraded(self) -> None:
        rest = _StubRest(closed=True, queue=_StubQueue(size=3, running=1))

        info = client_health(rest=rest)  # type: ignore[arg-type]

        assert info["status"] == "degraded"
        assert info["rest"] == {"closed": True, "queue_depth": 3, "queue_running": 1}

    def test_no_session_details(self) -> None:
        info = client_health(gateway=_StubGateway())  # type: ignore[arg-type]

        assert "sess-0" not in repr(info)
        assert set(info["gateway"]) == {
            "state",
            "ping_ms",
            "missed_heartbeats",
            "reconnect_attempts",
        }

    @pytest.mark.asyncio
    async def test_server_start_stop(self) -> None:
        app = create_metrics_app(CollectorRegistry())
        runner = await start_metrics_server(app, port=0)
        try:
            port = runner.addresses[0][1]
            async with aiohttp.ClientSession() as session:
                async with session.get(f"http://127.0.0.1:{port}/healthz") as resp:
                    assert resp.status == 200
                    assert await resp.json() == {"status": "ok"}
        finally:
            await stop_metrics_server(runner)
