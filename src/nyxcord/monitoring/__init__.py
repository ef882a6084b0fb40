"""Prometheus metrics export for the REST and Gateway clients."""

from nyxcord.monitoring.exporter import FORBIDDEN_LABELS, REQUIRED_METRIC_NAMES, MetricsExporter
from nyxcord.monitoring.metrics_server import (
    client_health,
    create_client_metrics_app,
    create_metrics_app,
    start_metrics_server,
    stop_metrics_server,
)

__all__ = [
    "FORBIDDEN_LABELS",
    "REQUIRED_METRIC_NAMES",
    "MetricsExporter",
    "client_health",
    "create_client_metrics_app",
    "create_metrics_app",
    "start_metrics_server",
    "stop_metrics_server",
]
