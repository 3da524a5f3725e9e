"""Event emitter implementations for workflow observability.

- EventEmitter: abstract emitter interface
- LoggingEventEmitter: emits events as structured log entries
- CompositeEventEmitter: emits to multiple sinks, isolating failures
- NullEventEmitter: discards events

Emission never disrupts the state machine: sink failures are logged and
swallowed at the composite boundary.
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Optional

from src.workflow.events.models import EventType, WorkflowEvent


logger = logging.getLogger(__name__)


class EventSinkType(str, Enum):
    LOGGING = "logging"
    METRICS = "metrics"


class EventEmitter(ABC):
    """Abstract base class for workflow event emitters."""

    @abstractmethod
    async def emit(self, event: WorkflowEvent) -> None:
        """Emit an event to the sink."""
        ...

    async def close(self) -> None:
        """Release sink resources. Default implementation does nothing."""
        return None


class LoggingEventEmitter(EventEmitter):
    """Event emitter that writes events as structured log entries.

    Failures and halts are logged at WARNING/ERROR; everything else at INFO.
    """

    def __init__(self, logger_name: Optional[str] = None):
        self._logger = logging.getLogger(logger_name) if logger_name else logger
        self._log_level_map = {
            EventType.CLAIMED: logging.INFO,
            EventType.PHASE_TRANSITION: logging.INFO,
            EventType.PHASE_FAILED: logging.ERROR,
            EventType.HALTED: logging.WARNING,
            EventType.SHIPPED: logging.INFO,
            EventType.ABORTED: logging.WARNING,
        }

    async def emit(self, event: WorkflowEvent) -> None:
        log_level = self._log_level_map.get(event.event_type, logging.INFO)
        self._logger.log(
            log_level,
            "Workflow event: %s for %s:%s",
            event.event_type.value,
            event.source,
            event.task_id,
            extra=event.to_log_dict(),
        )


class CompositeEventEmitter(EventEmitter):
    """Event emitter that delegates to multiple child emitters.

    Each child is called independently; one failing sink does not stop
    the others from receiving the event.
    """

    def __init__(self, emitters: Optional[List[EventEmitter]] = None):
        self._emitters: List[EventEmitter] = emitters or []

    def add_emitter(self, emitter: EventEmitter) -> None:
        self._emitters.append(emitter)

    @property
    def emitters(self) -> List[EventEmitter]:
        return list(self._emitters)

    async def emit(self, event: WorkflowEvent) -> None:
        for emitter in self._emitters:
            try:
                await emitter.emit(event)
            except Exception as e:
                logger.error(
                    "Failed to emit event to %s: %s",
                    type(emitter).__name__,
                    str(e),
                    extra={
                        "emitter_type": type(emitter).__name__,
                        "event_type": event.event_type.value,
                        "task_id": event.task_id,
                    },
                )

    async def close(self) -> None:
        for emitter in self._emitters:
            try:
                await emitter.close()
            except Exception as e:
                logger.error(
                    "Failed to close emitter %s: %s",
                    type(emitter).__name__,
                    str(e),
                )


class NullEventEmitter(EventEmitter):
    """Event emitter that discards all events."""

    async def emit(self, event: WorkflowEvent) -> None:
        pass


def create_event_emitter(
    sink_types: Optional[List[EventSinkType]] = None,
    logger_name: Optional[str] = None,
) -> EventEmitter:
    """Create an emitter for the requested sinks.

    No sinks means logging only. Several sinks produce a
    CompositeEventEmitter so that each is isolated from the others.
    """
    from src.workflow.events.metrics import MetricsEventEmitter

    if not sink_types:
        return LoggingEventEmitter(logger_name=logger_name)

    emitters: List[EventEmitter] = []
    for sink_type in sink_types:
        if sink_type == EventSinkType.LOGGING:
            emitters.append(LoggingEventEmitter(logger_name=logger_name))
        elif sink_type == EventSinkType.METRICS:
            emitters.append(MetricsEventEmitter())
        else:
            logger.warning("Unknown event sink type: %s, skipping", sink_type)

    if not emitters:
        return LoggingEventEmitter(logger_name=logger_name)
    return CompositeEventEmitter(emitters)
