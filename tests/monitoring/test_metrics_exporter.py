"""
Tests for MetricsExporter.

Covers counter deltas, gauge updates and the low-cardinality label rule.
"""

from __future__ import annotations

from prometheus_client import generate_latest
from prometheus_client.registry import CollectorRegistry

from nyxcord.gateway.types import ConnectionState, GatewayStats
from nyxcord.monitoring import FORBIDDEN_LABELS, REQUIRED_METRIC_NAMES, MetricsExporter
from nyxcord.rest.client import Rest
from nyxcord.rest.types import RestConfig


def make_stats(
    state: ConnectionState = ConnectionState.CONNECTED,
    received: int = 0,
    sent: int = 0,
) -> GatewayStats:
    return GatewayStats(
        ping=35,
        last_heartbeat=None,
        session_id="abc",
        sequence=None,
        reconnect_attempts=1,
        uptime=1000,
        state=state,
        received_payloads=received,
        sent_payloads=sent,
        missed_heartbeats=0,
    )


def sample(registry: CollectorRegistry, name: str) -> float | None:
    return registry.get_sample_value(name)


class TestRestMetrics:
    """Tests for REST client sync."""

    def test_counters_follow_client_deltas(self) -> None:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)
        rest = Rest(RestConfig.from_token("secret-token"))

        rest.metrics.requests_total = 4
        rest.metrics.retries = 1
        exporter.update(rest=rest)
        assert sample(registry, "nyxcord_rest_requests_total") == 4.0
        assert sample(registry, "nyxcord_rest_retries_total") == 1.0

        rest.metrics.requests_total = 6
        exporter.update(rest=rest)
        exporter.update(rest=rest)
        assert sample(registry, "nyxcord_rest_requests_total") == 6.0

    def test_counters_never_decrease(self) -> None:
        """A replaced client with lower totals does not move counters backwards."""
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)

        first = Rest(RestConfig.from_token("secret-token"))
        first.metrics.rate_limited = 5
        exporter.update(rest=first)

        second = Rest(RestConfig.from_token("secret-token"))
        second.metrics.rate_limited = 2
        exporter.update(rest=second)
        assert sample(registry, "nyxcord_rest_rate_limited_total") == 5.0

        exporter.reset_counter_tracking()
        second.metrics.rate_limited = 3
        exporter.update(rest=second)
        assert sample(registry, "nyxcord_rest_rate_limited_total") == 8.0

    def test_gauges_reflect_queue_config(self) -> None:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)
        rest = Rest(RestConfig.from_token("secret-token"))
        rest.metrics.last_latency_ms = 87

        exporter.update(rest=rest)

        assert sample(registry, "nyxcord_rest_queue_depth") == 0.0
        assert sample(registry, "nyxcord_rest_queue_max_size") == float(
            rest.queue.max_queue_size
        )
        assert sample(registry, "nyxcord_rest_rate_limit_buckets") == 0.0
        assert sample(registry, "nyxcord_rest_last_latency_ms") == 87.0


class TestGatewayMetrics:
    """Tests for Gateway stats sync."""

    def test_connected_gauge(self) -> None:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)

        exporter.update(gateway_stats=make_stats())
        assert sample(registry, "nyxcord_gateway_connected") == 1.0
        assert sample(registry, "nyxcord_gateway_ping_ms") == 35.0

        exporter.update(gateway_stats=make_stats(state=ConnectionState.RESUMING))
        assert sample(registry, "nyxcord_gateway_connected") == 0.0

    def test_payload_counters(self) -> None:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)

        exporter.update(gateway_stats=make_stats(received=10, sent=3))
        exporter.update(gateway_stats=make_stats(received=15, sent=3))

        assert sample(registry, "nyxcord_gateway_payloads_received_total") == 15.0
        assert sample(registry, "nyxcord_gateway_payloads_sent_total") == 3.0


class TestExposition:
    """Tests for the exported text."""

    def test_required_names_present(self) -> None:
        registry = CollectorRegistry()
        MetricsExporter(registry=registry)

        body = generate_latest(registry).decode()

        for name in REQUIRED_METRIC_NAMES:
            assert name in body, name

    def test_no_forbidden_labels(self) -> None:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)
        exporter.update(
            rest=Rest(RestConfig.from_token("secret-token")), gateway_stats=make_stats()
        )

        for family in registry.collect():
            for metric_sample in family.samples:
                assert not set(metric_sample.labels) & FORBIDDEN_LABELS

        body = generate_latest(registry).decode()
        assert "secret-token" not in body
        assert "abc" not in body
