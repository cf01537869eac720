"""Resume stale instances from reconstructed, confidence-scored state."""

from continuity.resume.engine import (
    InstanceDetails,
    ResumeEngine,
    ResumePhase,
    ResumeResult,
    Resumed,
)
from continuity.resume.resolver import Disambiguation, NotFound, Resolved

__all__ = [
    "Disambiguation",
    "InstanceDetails",
    "NotFound",
    "Resolved",
    "ResumeEngine",
    "ResumePhase",
    "ResumeResult",
    "Resumed",
]
