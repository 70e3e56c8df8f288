"""Prometheus metrics for job processing.

Metrics are exposed at the ``/metrics`` endpoint in Prometheus format:
- autopr_jobs_processed_total: Counter of finished jobs by result
- autopr_jobs_failed_total: Counter of failed jobs by failing stage
- autopr_job_duration_seconds: Histogram of claim-to-finish time
- autopr_jobs_by_state: Gauge of jobs per queue state

MetricsEventEmitter keeps these up to date from job events, so the queue
and the worker pool never touch metrics directly.
"""

import logging
from typing import Dict, Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from src.autopr.events.emitter import EventEmitter
from src.autopr.events.models import EventType, PipelineEvent


logger = logging.getLogger(__name__)


# 1 second to 1 hour; a job clones, generates and pushes
DEFAULT_DURATION_BUCKETS = (
    1.0,
    5.0,
    10.0,
    30.0,
    60.0,
    120.0,
    300.0,
    600.0,
    1800.0,
    3600.0,
)

JOB_STATES = ("waiting", "active", "completed", "failed")


class PipelineMetrics:
    """Container for the job Prometheus metrics.

    Pass a custom ``CollectorRegistry`` in tests to avoid clashing with
    the default registry.

    Example:
        >>> metrics = PipelineMetrics(CollectorRegistry())
        >>> metrics.record_job_processed(success=True)
        >>> metrics.record_duration(42.0)
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        self.jobs_processed_total = Counter(
            "autopr_jobs_processed_total",
            "Total number of jobs that reached a terminal state",
            labelnames=["result"],
            registry=self.registry,
        )

        self.jobs_failed_total = Counter(
            "autopr_jobs_failed_total",
            "Total number of failed jobs by the stage that failed",
            labelnames=["stage"],
            registry=self.registry,
        )

        self.job_duration_seconds = Histogram(
            "autopr_job_duration_seconds",
            "Time from claim to terminal state in seconds",
            buckets=DEFAULT_DURATION_BUCKETS,
            registry=self.registry,
        )

        self.jobs_by_state = Gauge(
            "autopr_jobs_by_state",
            "Jobs per queue state seen by this process",
            labelnames=["state"],
            registry=self.registry,
        )

        self._state_counts: Dict[str, int] = {state: 0 for state in JOB_STATES}
        for state in JOB_STATES:
            self.jobs_by_state.labels(state=state).set(0)

    def record_job_processed(self, success: bool) -> None:
        result = "success" if success else "failure"
        self.jobs_processed_total.labels(result=result).inc()

    def record_job_failed(self, stage: str) -> None:
        self.jobs_failed_total.labels(stage=stage).inc()

    def record_duration(self, duration_seconds: float) -> None:
        self.job_duration_seconds.observe(duration_seconds)

    def update_state_count(self, state: str, delta: int) -> None:
        """Shift the count of jobs in ``state`` by ``delta``, never below 0."""
        if state not in self._state_counts:
            return
        self._state_counts[state] = max(0, self._state_counts[state] + delta)
        self.jobs_by_state.labels(state=state).set(self._state_counts[state])


_default_metrics: Optional[PipelineMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> PipelineMetrics:
    """Return the process-wide metrics, or fresh metrics for ``registry``."""
    global _default_metrics

    if registry is not None:
        return PipelineMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = PipelineMetrics()

    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Render ``registry`` (default: the global registry) in text format."""
    return generate_latest(registry or REGISTRY)


class MetricsEventEmitter(EventEmitter):
    """Updates Prometheus metrics from job events.

    - STATE_TRANSITION: moves one job between jobs_by_state gauges
    - ERROR: counts a failure at its stage and a failed job
    - COMPLETION: counts a successful job and observes its duration
    - PROGRESS: ignored
    """

    def __init__(
        self,
        metrics: Optional[PipelineMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self._metrics = metrics if metrics is not None else get_metrics(registry)

    @property
    def metrics(self) -> PipelineMetrics:
        return self._metrics

    async def emit(self, event: PipelineEvent) -> None:
        try:
            if event.event_type == EventType.STATE_TRANSITION:
                from_state = event.details.get("from_state")
                to_state = event.details.get("to_state")
                if from_state:
                    self._metrics.update_state_count(from_state, -1)
                if to_state:
                    self._metrics.update_state_count(to_state, +1)
            elif event.event_type == EventType.ERROR:
                self._metrics.record_job_failed(
                    event.details.get("stage", "unknown")
                )
                self._metrics.record_job_processed(success=False)
                self._observe_duration(event)
            elif event.event_type == EventType.COMPLETION:
                self._metrics.record_job_processed(success=True)
                self._observe_duration(event)
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.event_type.value,
                str(e),
                extra={"event_type": event.event_type.value, "job_id": event.job_id},
            )

    def _observe_duration(self, event: PipelineEvent) -> None:
        duration = event.details.get("duration_seconds")
        if duration is not None:
            self._metrics.record_duration(float(duration))
