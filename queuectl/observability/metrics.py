"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from queuectl.constants import (
    METRIC_API_LATENCY,
    METRIC_API_REQUESTS,
    METRIC_CLAIMS_ACQUIRED,
    METRIC_CLAIMS_EXPIRED,
    METRIC_JOB_DURATION,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_FINISHED,
    METRIC_QUEUE_DEPTH,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job queue.

    Collects metrics for:
    - Jobs per state
    - Job submissions and attempt outcomes
    - Command execution duration
    - Claim operations
    - API requests
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of jobs per state",
            ["state"],
            registry=self._registry,
        )

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            registry=self._registry,
        )

        # outcome: completed, retry_scheduled, dead, ignored
        self.jobs_finished = Counter(
            METRIC_JOBS_FINISHED,
            "Total number of finished job attempts by outcome",
            ["outcome"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job command execution duration in seconds",
            ["outcome"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
            registry=self._registry,
        )

        self.claims_acquired = Counter(
            METRIC_CLAIMS_ACQUIRED,
            "Total number of claims acquired",
            ["worker_id"],
            registry=self._registry,
        )

        self.claims_expired = Counter(
            METRIC_CLAIMS_EXPIRED,
            "Total number of expired claims released",
            registry=self._registry,
        )

        self.api_requests = Counter(
            METRIC_API_REQUESTS,
            "Total number of API requests",
            ["method", "endpoint", "status"],
            registry=self._registry,
        )

        self.api_latency = Histogram(
            METRIC_API_LATENCY,
            "API request latency in seconds",
            ["method", "endpoint"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
            registry=self._registry,
        )

    def record_job_enqueued(self) -> None:
        """Record a job submission."""
        self.jobs_enqueued.inc()

    def record_job_finished(self, outcome: str, duration_seconds: float) -> None:
        """Record the outcome of an execution attempt."""
        self.jobs_finished.labels(outcome=outcome).inc()
        self.job_duration.labels(outcome=outcome).observe(duration_seconds)

    def record_claim_acquired(self, worker_id: str) -> None:
        """Record a claim acquisition."""
        self.claims_acquired.labels(worker_id=worker_id).inc()

    def record_claims_expired(self, count: int) -> None:
        """Record released expired claims."""
        self.claims_expired.inc(count)

    def update_queue_depth(self, counts: dict[str, int]) -> None:
        """Update job counts per state."""
        for state, count in counts.items():
            self.queue_depth.labels(state=state).set(count)

    def record_api_request(
        self,
        method: str,
        endpoint: str,
        status: int,
        duration_seconds: float,
    ) -> None:
        """Record an API request."""
        self.api_requests.labels(
            method=method,
            endpoint=endpoint,
            status=str(status),
        ).inc()
        self.api_latency.labels(method=method, endpoint=endpoint).observe(
            duration_seconds
        )

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
