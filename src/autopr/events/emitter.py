"""Event emitter implementations.

This module provides the sinks job events are published to:

- LoggingEventEmitter: Emits events as structured log entries
- CompositeEventEmitter: Fans events out to several sinks
- NullEventEmitter: Discards events

Emitters never raise into the queue or the worker pool; a failing sink is
logged and skipped.
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from src.autopr.events.models import EventType, PipelineEvent


logger = logging.getLogger(__name__)


class EventSinkType(str, Enum):
    """Event sinks that can be enabled.

    Attributes:
        LOGGING: Emit events as structured log entries.
        METRICS: Update Prometheus metrics.
    """

    LOGGING = "logging"
    METRICS = "metrics"


class EventEmitter(ABC):
    """Abstract base class for job event emitters.

    Implementations are called from worker coroutines, so ``emit`` must
    not block and should not propagate failures.
    """

    @abstractmethod
    async def emit(self, event: PipelineEvent) -> None:
        """Publish ``event`` to the sink."""

    async def close(self) -> None:
        """Release sink resources. The default does nothing."""


# Progress is chatty; one line per checkpoint per job
_EVENT_LOG_LEVELS: Dict[EventType, int] = {
    EventType.STATE_TRANSITION: logging.INFO,
    EventType.PROGRESS: logging.DEBUG,
    EventType.COMPLETION: logging.INFO,
    EventType.ERROR: logging.ERROR,
}


class LoggingEventEmitter(EventEmitter):
    """Writes events as structured log entries.

    Example:
        >>> emitter = LoggingEventEmitter()
        >>> await emitter.emit(event)
        # Logs: INFO - Job event: state_transition for 5f0c...
    """

    def __init__(self, logger_name: Optional[str] = None):
        self._logger = logging.getLogger(logger_name or __name__)

    async def emit(self, event: PipelineEvent) -> None:
        self._logger.log(
            _EVENT_LOG_LEVELS.get(event.event_type, logging.INFO),
            "Job event: %s for %s",
            event.event_type.value,
            event.job_id,
            extra=event.to_log_dict(),
        )


class CompositeEventEmitter(EventEmitter):
    """Delegates each event to several child emitters.

    A failing child is logged and the remaining children still run.
    """

    def __init__(self, emitters: Optional[List[EventEmitter]] = None):
        self._emitters: List[EventEmitter] = list(emitters or [])

    @property
    def emitters(self) -> List[EventEmitter]:
        return list(self._emitters)

    async def emit(self, event: PipelineEvent) -> None:
        await self._each(
            lambda child: child.emit(event),
            "emit",
            {"event_type": event.event_type.value, "job_id": event.job_id},
        )

    async def close(self) -> None:
        await self._each(lambda child: child.close(), "close", {})

    async def _each(
        self,
        call: Callable[[EventEmitter], Awaitable[None]],
        action: str,
        context: Dict[str, str],
    ) -> None:
        for child in self._emitters:
            try:
                await call(child)
            except Exception as e:
                logger.error(
                    "Event sink %s failed to %s: %s",
                    type(child).__name__,
                    action,
                    e,
                    extra={"emitter_type": type(child).__name__, **context},
                )


class NullEventEmitter(EventEmitter):
    """Discards all events."""

    async def emit(self, event: PipelineEvent) -> None:
        return None


def _metrics_emitter(logger_name: Optional[str]) -> EventEmitter:
    # metrics.py imports EventEmitter from this module
    from src.autopr.events.metrics import MetricsEventEmitter

    return MetricsEventEmitter()


_SINK_FACTORIES: Dict[EventSinkType, Callable[[Optional[str]], EventEmitter]] = {
    EventSinkType.LOGGING: LoggingEventEmitter,
    EventSinkType.METRICS: _metrics_emitter,
}


def create_event_emitter(
    sink_types: Optional[List[EventSinkType]] = None,
    logger_name: Optional[str] = None,
) -> EventEmitter:
    """Build the emitter for ``sink_types``.

    No sinks means logging only. Several sinks are wrapped in a
    CompositeEventEmitter, in the order given.

    Example:
        >>> emitter = create_event_emitter(
        ...     [EventSinkType.LOGGING, EventSinkType.METRICS]
        ... )
        >>> isinstance(emitter, CompositeEventEmitter)
        True
    """
    emitters: List[EventEmitter] = []
    for sink_type in sink_types or [EventSinkType.LOGGING]:
        factory = _SINK_FACTORIES.get(sink_type)
        if factory is None:
            logger.warning("Unknown event sink type: %s, skipping", sink_type)
            continue
        emitters.append(factory(logger_name))

    if len(emitters) == 1:
        return emitters[0]
    return CompositeEventEmitter(emitters)
