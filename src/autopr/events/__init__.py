"""Job events and Prometheus metrics."""

from src.autopr.events.emitter import (
    CompositeEventEmitter,
    EventEmitter,
    EventSinkType,
    LoggingEventEmitter,
    NullEventEmitter,
    create_event_emitter,
)
from src.autopr.events.metrics import (
    MetricsEventEmitter,
    PipelineMetrics,
    generate_metrics_output,
    get_metrics,
)
from src.autopr.events.models import EventType, PipelineEvent

__all__ = [
    "CompositeEventEmitter",
    "EventEmitter",
    "EventSinkType",
    "EventType",
    "LoggingEventEmitter",
    "MetricsEventEmitter",
    "NullEventEmitter",
    "PipelineEvent",
    "PipelineMetrics",
    "create_event_emitter",
    "generate_metrics_output",
    "get_metrics",
]
