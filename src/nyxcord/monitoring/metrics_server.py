"""
HTTP endpoints for Prometheus scraping and client health.

GET /metrics syncs the exporter from the live clients and serves the
registry; GET /healthz reports Gateway and REST state, answering 503 while
the Gateway is not CONNECTED or the REST client is closed.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import orjson
from aiohttp import web
from prometheus_client import generate_latest

from nyxcord.gateway.types import ConnectionState

if TYPE_CHECKING:
    from prometheus_client.registry import CollectorRegistry

    from nyxcord.gateway.connection import GatewayConnection
    from nyxcord.monitoring.exporter import MetricsExporter
    from nyxcord.rest.client import Rest

logger = logging.getLogger(__name__)

_Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

HealthFn = Callable[[], dict[str, Any]]
RefreshFn = Callable[[], None]

HEALTH_OK = "ok"
HEALTH_DEGRADED = "degraded"


def client_health(
    rest: Rest | None = None,
    gateway: GatewayConnection | None = None,
) -> dict[str, Any]:
    """
    Build the /healthz document for a pair of clients.

    Only aggregate state is reported; no session ids or tokens.
    """
    info: dict[str, Any] = {"status": HEALTH_OK}

    if gateway is not None:
        stats = gateway.stats
        info["gateway"] = {
            "state": stats.state.value,
            "ping_ms": stats.ping,
            "missed_heartbeats": stats.missed_heartbeats,
            "reconnect_attempts": stats.reconnect_attempts,
        }
        if stats.state is not ConnectionState.CONNECTED:
            info["status"] = HEALTH_DEGRADED

    if rest is not None:
        info["rest"] = {
            "closed": rest.closed,
            "queue_depth": rest.queue.size,
            "queue_running": rest.queue.running,
        }
        if rest.closed:
            info["status"] = HEALTH_DEGRADED

    return info


def _make_metrics_handler(
    registry: CollectorRegistry,
    refresh_fn: RefreshFn | None = None,
) -> _Handler:
    async def handler(request: web.Request) -> web.Response:
        if refresh_fn is not None:
            refresh_fn()
        return web.Response(
            body=generate_latest(registry),
            content_type="text/plain; version=0.0.4",
            charset="utf-8",
        )

    return handler


def _make_healthz_handler(health_fn: HealthFn) -> _Handler:
    async def handler(request: web.Request) -> web.Response:
        info = health_fn()
        status = 200 if info.get("status") == HEALTH_OK else 503
        return web.Response(
            body=orjson.dumps(info, default=str),
            status=status,
            content_type="application/json",
        )

    return handler


def create_metrics_app(
    registry: CollectorRegistry,
    *,
    health_fn: HealthFn | None = None,
    refresh_fn: RefreshFn | None = None,
) -> web.Application:
    """
    Create an aiohttp Application with /metrics and /healthz routes.

    Args:
        registry: Registry to serve.
        health_fn: Returns the /healthz document (default: always ok).
        refresh_fn: Called before each /metrics scrape.
    """
    app = web.Application()
    app.router.add_get("/metrics", _make_metrics_handler(registry, refresh_fn))
    app.router.add_get("/healthz", _make_healthz_handler(health_fn or client_health))
    return app


def create_client_metrics_app(
    exporter: MetricsExporter,
    *,
    rest: Rest | None = None,
    gateway: GatewayConnection | None = None,
) -> web.Application:
    """Create the metrics app bound to live clients: scrapes sync the exporter first."""

    def refresh() -> None:
        exporter.update(rest=rest, gateway_stats=gateway.stats if gateway is not None else None)

    return create_metrics_app(
        exporter.registry,
        health_fn=lambda: client_health(rest, gateway),
        refresh_fn=refresh,
    )


async def start_metrics_server(
    app: web.Application,
    host: str = "127.0.0.1",
    port: int = 9090,
) -> web.AppRunner:
    """
    Serve a metrics app.

    Returns:
        AppRunner (pass to stop_metrics_server on shutdown).
    """
    runner = web.AppRunner(app, access_log=None)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("Metrics server started", extra={"host": host, "port": port})
    return runner


async def stop_metrics_server(runner: web.AppRunner) -> None:
    await runner.cleanup()
    logger.info("Metrics server stopped")
