"""
Monitoring Module

Structured logging setup and Prometheus metrics.
"""

from accountsync.monitoring.logs import configure_logging
from accountsync.monitoring.metrics import (
    Metrics,
    get_metrics,
    maybe_start_metrics_server,
)

__all__ = [
    "configure_logging",
    "Metrics",
    "get_metrics",
    "maybe_start_metrics_server",
]
