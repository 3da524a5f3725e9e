"""Prometheus metrics for the workflow engine.

Metrics:
- workflow_phase_transitions_total: Counter of phase entries/completions
- workflow_phase_failures_total: Counter of phase failures by error kind
- workflow_instances_finished_total: Counter of instances by outcome
- workflow_claims_total: Counter of registry claims by source
- workflow_active_instances: Gauge of instances currently holding a claim

Tests pass their own CollectorRegistry so metric names never collide with
the process-wide default registry.
"""

import logging
from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    generate_latest,
)

from src.workflow.events.emitter import EventEmitter
from src.workflow.events.models import EventType, WorkflowEvent


logger = logging.getLogger(__name__)


class WorkflowMetrics:
    """Container for every Prometheus metric the engine updates.

    Attributes:
        registry: The Prometheus registry the metrics are registered in.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        self.phase_transitions_total = Counter(
            "workflow_phase_transitions_total",
            "Number of phase entries and completions",
            labelnames=["phase", "status"],
            registry=self.registry,
        )

        self.phase_failures_total = Counter(
            "workflow_phase_failures_total",
            "Number of recorded phase failures",
            labelnames=["phase", "error_kind"],
            registry=self.registry,
        )

        self.instances_finished_total = Counter(
            "workflow_instances_finished_total",
            "Number of instances that stopped, by outcome",
            labelnames=["outcome"],
            registry=self.registry,
        )

        self.claims_total = Counter(
            "workflow_claims_total",
            "Number of tasks claimed in the registry",
            labelnames=["source"],
            registry=self.registry,
        )

        self.active_instances = Gauge(
            "workflow_active_instances",
            "Number of instances currently running in this process",
            registry=self.registry,
        )

    def record_transition(self, phase: str, status: str) -> None:
        self.phase_transitions_total.labels(phase=phase, status=status).inc()

    def record_failure(self, phase: str, error_kind: str) -> None:
        self.phase_failures_total.labels(phase=phase, error_kind=error_kind).inc()

    def record_claim(self, source: str) -> None:
        self.claims_total.labels(source=source).inc()
        self.active_instances.inc()

    def record_finished(self, outcome: str) -> None:
        self.instances_finished_total.labels(outcome=outcome).inc()
        self.active_instances.dec()


_default_metrics: Optional[WorkflowMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> WorkflowMetrics:
    """Return the process-wide metrics, or fresh metrics for a custom registry."""
    global _default_metrics

    if registry is not None:
        return WorkflowMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = WorkflowMetrics()
    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Render metrics in the Prometheus text exposition format."""
    return generate_latest(registry or REGISTRY)


class MetricsEventEmitter(EventEmitter):
    """Event emitter that updates Prometheus metrics from workflow events."""

    def __init__(
        self,
        metrics: Optional[WorkflowMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self._metrics = metrics if metrics is not None else get_metrics(registry)

    @property
    def metrics(self) -> WorkflowMetrics:
        return self._metrics

    async def emit(self, event: WorkflowEvent) -> None:
        details = event.details
        try:
            if event.event_type == EventType.PHASE_TRANSITION:
                self._metrics.record_transition(
                    str(details.get("phase", "unknown")),
                    str(details.get("status", "unknown")),
                )
            elif event.event_type == EventType.PHASE_FAILED:
                self._metrics.record_failure(
                    str(details.get("phase", "unknown")),
                    str(details.get("error_kind", "unknown")),
                )
            elif event.event_type == EventType.CLAIMED:
                self._metrics.record_claim(event.source)
            elif event.event_type in (
                EventType.SHIPPED,
                EventType.ABORTED,
                EventType.HALTED,
            ):
                self._metrics.record_finished(event.event_type.value)
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.event_type.value,
                str(e),
                extra={"event_type": event.event_type.value, "task_id": event.task_id},
            )
