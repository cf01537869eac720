"""Core modules for continuity: storage, models and the per-instance stores."""

from continuity.core.errors import (
    ActiveInstanceError,
    ContinuityError,
    InvalidChoiceError,
    InvalidInstanceIdError,
    NotFoundError,
)
from continuity.core.models import (
    Checkpoint,
    CommandLogEntry,
    Event,
    EventType,
    Instance,
    InstanceStatus,
    InstanceType,
    WorkSnapshot,
)
from continuity.core.state import Database

__all__ = [
    "ActiveInstanceError",
    "Checkpoint",
    "CommandLogEntry",
    "ContinuityError",
    "Database",
    "Event",
    "EventType",
    "Instance",
    "InstanceStatus",
    "InstanceType",
    "InvalidChoiceError",
    "InvalidInstanceIdError",
    "NotFoundError",
    "WorkSnapshot",
]
