"""
Prometheus metrics exporter for the REST and Gateway clients.

Only low-cardinality metrics are exported: no route, path, guild, token or
session labels.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from prometheus_client import Counter, Gauge
from prometheus_client.registry import CollectorRegistry

from nyxcord.gateway.types import ConnectionState

if TYPE_CHECKING:
    from nyxcord.gateway.types import GatewayStats
    from nyxcord.rest.client import Rest


# Forbidden labels that would cause cardinality explosion or leak secrets
FORBIDDEN_LABELS = frozenset(
    {
        "path",
        "route",
        "bucket",
        "guild_id",
        "channel_id",
        "user_id",
        "request_id",
        "session_id",
        "token",
        "query",
    }
)


class MetricsExporter:
    """
    Syncs client counters and gauges into a prometheus_client registry.

    Metric families:
    - nyxcord_rest_*    : request totals, retries, rate limits, queue state
    - nyxcord_gateway_* : connection state, heartbeat latency, payload totals

    Usage:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)
        exporter.update(rest=rest, gateway_stats=gateway.stats)
        # generate_latest(registry) -> bytes for /metrics endpoint
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or CollectorRegistry()

        # REST counters
        self._rest_requests = self._counter("nyxcord_rest_requests", "Total REST requests issued")
        self._rest_requests_failed = self._counter(
            "nyxcord_rest_requests_failed", "Total REST requests that ended in an error"
        )
        self._rest_rate_limited = self._counter(
            "nyxcord_rest_rate_limited", "Total 429 responses received"
        )
        self._rest_retries = self._counter("nyxcord_rest_retries", "Total REST retry attempts")
        self._rest_queue_rejected = self._counter(
            "nyxcord_rest_queue_rejected", "Total requests rejected because the queue was full"
        )
        self._rest_queue_timed_out = self._counter(
            "nyxcord_rest_queue_timed_out", "Total requests that timed out waiting in the queue"
        )

        # REST gauges
        self._rest_queue_depth = self._gauge(
            "nyxcord_rest_queue_depth", "Requests waiting for an execution slot"
        )
        self._rest_queue_running = self._gauge(
            "nyxcord_rest_queue_running", "Requests currently executing"
        )
        self._rest_queue_max_size = self._gauge(
            "nyxcord_rest_queue_max_size", "Configured maximum queue size"
        )
        self._rest_rate_limit_buckets = self._gauge(
            "nyxcord_rest_rate_limit_buckets", "Rate limit buckets currently tracked"
        )
        self._rest_last_latency_ms = self._gauge(
            "nyxcord_rest_last_latency_ms", "Latency of the most recent REST response"
        )

        # Gateway
        self._gateway_connected = self._gauge(
            "nyxcord_gateway_connected", "1 when the Gateway connection is CONNECTED"
        )
        self._gateway_ping_ms = self._gauge(
            "nyxcord_gateway_ping_ms", "Most recent heartbeat round trip"
        )
        self._gateway_missed_heartbeats = self._gauge(
            "nyxcord_gateway_missed_heartbeats", "Consecutive unacknowledged heartbeats"
        )
        self._gateway_reconnect_attempts = self._gauge(
            "nyxcord_gateway_reconnect_attempts", "Reconnect attempts since the last READY"
        )
        self._gateway_uptime_ms = self._gauge(
            "nyxcord_gateway_uptime_ms", "Time since the current session became ready"
        )
        self._gateway_payloads_received = self._counter(
            "nyxcord_gateway_payloads_received", "Total Gateway payloads received"
        )
        self._gateway_payloads_sent = self._counter(
            "nyxcord_gateway_payloads_sent", "Total Gateway payloads sent"
        )

        # Last seen source values for counter deltas (counters are monotonic)
        self._last_seen: dict[str, int] = {}

    def _counter(self, name: str, documentation: str) -> Counter:
        return Counter(name, documentation, registry=self._registry)

    def _gauge(self, name: str, documentation: str) -> Gauge:
        return Gauge(name, documentation, registry=self._registry)

    @property
    def registry(self) -> CollectorRegistry:
        """Get the Prometheus CollectorRegistry."""
        return self._registry

    def update(
        self,
        rest: Rest | None = None,
        gateway_stats: GatewayStats | None = None,
    ) -> None:
        """
        Sync metrics from client state.

        Call on every scrape or on a timer.

        Args:
            rest: REST client whose metrics, queue and rate limit state are read.
            gateway_stats: Snapshot from GatewayConnection.stats.
        """
        if rest is not None:
            self._update_rest_metrics(rest)
        if gateway_stats is not None:
            self._update_gateway_metrics(gateway_stats)

    def _advance(self, counter: Counter, key: str, current: int) -> None:
        """Increment counter by the delta since the last update."""
        delta = current - self._last_seen.get(key, 0)
        if delta > 0:
            counter.inc(delta)
        self._last_seen[key] = current

    def _update_rest_metrics(self, rest: Rest) -> None:
        metrics = rest.metrics
        self._advance(self._rest_requests, "rest_requests", metrics.requests_total)
        self._advance(self._rest_requests_failed, "rest_requests_failed", metrics.requests_failed)
        self._advance(self._rest_rate_limited, "rest_rate_limited", metrics.rate_limited)
        self._advance(self._rest_retries, "rest_retries", metrics.retries)
        self._advance(self._rest_queue_rejected, "rest_queue_rejected", metrics.queue_rejected)
        self._advance(self._rest_queue_timed_out, "rest_queue_timed_out", metrics.queue_timed_out)

        self._rest_queue_depth.set(rest.queue.size)
        self._rest_queue_running.set(rest.queue.running)
        self._rest_queue_max_size.set(rest.queue.max_queue_size)
        self._rest_rate_limit_buckets.set(rest.rate_limit.bucket_count)
        self._rest_last_latency_ms.set(metrics.last_latency_ms)

    def _update_gateway_metrics(self, stats: GatewayStats) -> None:
        self._gateway_connected.set(1 if stats.state is ConnectionState.CONNECTED else 0)
        self._gateway_ping_ms.set(stats.ping)
        self._gateway_missed_heartbeats.set(stats.missed_heartbeats)
        self._gateway_reconnect_attempts.set(stats.reconnect_attempts)
        self._gateway_uptime_ms.set(stats.uptime)
        self._advance(
            self._gateway_payloads_received, "gateway_payloads_received", stats.received_payloads
        )
        self._advance(self._gateway_payloads_sent, "gateway_payloads_sent", stats.sent_payloads)

    def reset_counter_tracking(self) -> None:
        """
        Forget last seen source values.

        Use when a client is replaced. Does NOT reset the Prometheus counters.
        """
        self._last_seen.clear()


# Counters are exported with the _total suffix by prometheus_client
REQUIRED_METRIC_NAMES: frozenset[str] = frozenset(
    {
        "nyxcord_rest_requests_total",
        "nyxcord_rest_requests_failed_total",
        "nyxcord_rest_rate_limited_total",
        "nyxcord_rest_retries_total",
        "nyxcord_rest_queue_rejected_total",
        "nyxcord_rest_queue_timed_out_total",
        "nyxcord_rest_queue_depth",
        "nyxcord_rest_queue_running",
        "nyxcord_rest_queue_max_size",
        "nyxcord_rest_rate_limit_buckets",
        "nyxcord_rest_last_latency_ms",
        "nyxcord_gateway_connected",
        "nyxcord_gateway_ping_ms",
        "nyxcord_gateway_missed_heartbeats",
        "nyxcord_gateway_reconnect_attempts",
        "nyxcord_gateway_uptime_ms",
        "nyxcord_gateway_payloads_received_total",
        "nyxcord_gateway_payloads_sent_total",
    }
)
