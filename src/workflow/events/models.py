"""Workflow event models for observability.

This module defines the data models for workflow events:
- EventType: Enum of all event types emitted by the engine
- WorkflowEvent: Structured event with the task identity and details

Events are side-channel observability only. The checkpoint log, not the
event stream, is the record of what happened to an instance.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, Field


# LogRecord attributes that structured ``extra`` keys must not overwrite.
_RESERVED_LOG_KEYS = frozenset(
    {
        "args", "asctime", "created", "exc_info", "exc_text", "filename",
        "funcName", "levelname", "levelno", "lineno", "message", "module",
        "msecs", "msg", "name", "pathname", "process", "processName",
        "relativeCreated", "stack_info", "taskName", "thread", "threadName",
    }
)


class EventType(str, Enum):
    """Types of events emitted by the workflow engine.

    Attributes:
        CLAIMED: A task was claimed in the registry by a new instance.
        PHASE_TRANSITION: An instance entered or completed a phase.
        PHASE_FAILED: A phase recorded a failure.
        HALTED: An instance stopped in a resumable state.
        SHIPPED: An instance completed the ship phase.
        ABORTED: An instance was aborted and its claim released.
    """

    CLAIMED = "claimed"
    PHASE_TRANSITION = "phase_transition"
    PHASE_FAILED = "phase_failed"
    HALTED = "halted"
    SHIPPED = "shipped"
    ABORTED = "aborted"


class WorkflowEvent(BaseModel):
    """Structured event emitted by the workflow engine.

    Attributes:
        event_type: The category of event.
        task_id: Identifier of the task within its source.
        source: Source kind of the task (github, gitlab, local, ...).
        timestamp: When the event occurred (UTC timezone).
        details: Additional context specific to the event type.

    Details Field Conventions:
        For PHASE_TRANSITION events:
            - phase: Phase entered or completed
            - status: started or completed
            - attempt: Attempt number of the phase

        For PHASE_FAILED and HALTED events:
            - phase: Phase where the failure occurred
            - error_kind: Workflow error kind
            - error: Rendered error message
    """

    event_type: EventType = Field(
        ...,
        description="The category of event being emitted",
    )

    task_id: str = Field(
        ...,
        min_length=1,
        description="Task identifier within its source",
    )

    source: str = Field(
        ...,
        min_length=1,
        description="Source kind of the task",
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC timezone)",
    )

    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Additional context specific to the event type",
    )

    def to_log_dict(self) -> Dict[str, Any]:
        """Flatten the event into a dictionary usable as logging ``extra``.

        Detail keys that collide with LogRecord attributes are prefixed
        with ``detail_``.
        """
        flat: Dict[str, Any] = {
            "event_type": self.event_type.value,
            "task_id": self.task_id,
            "source": self.source,
            "timestamp": self.timestamp.isoformat(),
        }
        for key, value in self.details.items():
            if key in _RESERVED_LOG_KEYS or key in flat:
                key = f"detail_{key}"
            flat[key] = value
        return flat
