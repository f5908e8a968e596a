"""
Prometheus Metrics

Sync, token refresh and job runner metrics.
"""

import structlog
from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram, start_http_server

logger = structlog.get_logger()

# Singleton metrics instance
_metrics: "Metrics | None" = None
_server_started = False


class Metrics:
    """
    Prometheus metrics for the sync engine.

    Tracks:
    - Sync runs per source and outcome
    - Records stored and per-record failures
    - Provider call failures by error code
    - Token refresh outcomes
    - Job executions
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        registry = registry or REGISTRY

        self.sync_runs_total = Counter(
            "accountsync_sync_runs_total",
            "Total orchestrator invocations",
            ["source_type", "mode", "status"],
            registry=registry,
        )

        self.sync_run_duration_seconds = Histogram(
            "accountsync_sync_run_duration_seconds",
            "Orchestrator invocation duration in seconds",
            ["source_type", "mode"],
            buckets=[0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0, 600.0],
            registry=registry,
        )

        self.records_synced_total = Counter(
            "accountsync_records_synced_total",
            "Total records stored",
            ["source_type"],
            registry=registry,
        )

        self.record_failures_total = Counter(
            "accountsync_record_failures_total",
            "Records that failed inside a batch",
            ["source_type", "code"],
            registry=registry,
        )

        self.provider_errors_total = Counter(
            "accountsync_provider_errors_total",
            "Provider HTTP failures by operation and error code",
            ["connector_type", "operation", "code"],
            registry=registry,
        )

        self.token_refreshes_total = Counter(
            "accountsync_token_refreshes_total",
            "Token refresh attempts by outcome",
            ["provider", "outcome"],
            registry=registry,
        )

        self.jobs_total = Counter(
            "accountsync_jobs_total",
            "Jobs executed by type and outcome",
            ["job_type", "status"],
            registry=registry,
        )

        self.job_duration_seconds = Histogram(
            "accountsync_job_duration_seconds",
            "Job execution duration in seconds",
            ["job_type"],
            buckets=[0.1, 0.5, 1.0, 5.0, 30.0, 120.0, 600.0],
            registry=registry,
        )

        logger.debug("Prometheus metrics initialized")

    def track_sync_run(
        self,
        source_type: str,
        mode: str,
        status: str,
        duration: float,
        records_synced: int = 0,
    ) -> None:
        self.sync_runs_total.labels(source_type=source_type, mode=mode, status=status).inc()
        self.sync_run_duration_seconds.labels(source_type=source_type, mode=mode).observe(duration)
        if records_synced > 0:
            self.records_synced_total.labels(source_type=source_type).inc(records_synced)

    def track_record_failure(self, source_type: str, code: str) -> None:
        self.record_failures_total.labels(source_type=source_type, code=code).inc()

    def track_provider_error(self, connector_type: str, operation: str, code: str) -> None:
        self.provider_errors_total.labels(
            connector_type=connector_type,
            operation=operation,
            code=code,
        ).inc()

    def track_token_refresh(self, provider: str, outcome: str) -> None:
        self.token_refreshes_total.labels(provider=provider, outcome=outcome).inc()

    def track_job(self, job_type: str, status: str, duration: float) -> None:
        self.jobs_total.labels(job_type=job_type, status=status).inc()
        self.job_duration_seconds.labels(job_type=job_type).observe(duration)


def get_metrics() -> Metrics:
    """Get or create the singleton metrics instance."""
    global _metrics
    if _metrics is None:
        _metrics = Metrics()
    return _metrics


def maybe_start_metrics_server(port: int | None, *, component: str) -> None:
    """Expose /metrics for a standalone worker process when a port is configured."""
    global _server_started
    if _server_started or not port:
        return
    start_http_server(port, addr="0.0.0.0")
    _server_started = True
    logger.info("Prometheus metrics server started", component=component, port=port)

