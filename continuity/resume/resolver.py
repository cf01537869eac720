"""Resolve a resume hint to a single stale instance.

Strategies run in a fixed order and the first one that produces anything
wins:

1. exact   - full instance ID
2. partial - 4 to 6 hex chars of the hash segment (prefix or suffix)
3. project - project name
4. epic    - current epic of an instance
5. newest  - no hint at all

Ambiguity is a result (Disambiguation), not an exception.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum

from continuity.core.errors import ActiveInstanceError
from continuity.core.models import Instance, InstanceStatus
from continuity.core.registry import INSTANCE_ID_PATTERN, InstanceRegistry

logger = logging.getLogger(__name__)

_PARTIAL_PATTERN = re.compile(r"^[0-9a-f]{4,6}$", re.IGNORECASE)


class ResolutionStrategy(str, Enum):
    EXACT = "exact"
    PARTIAL = "partial"
    PROJECT = "project"
    EPIC = "epic"
    NEWEST = "newest"


@dataclass
class Resolved:
    instance: Instance
    strategy: ResolutionStrategy


@dataclass
class Disambiguation:
    """Several stale instances matched; candidates are newest first."""

    candidates: list[Instance] = field(default_factory=list)
    hint: str = ""


@dataclass
class NotFound:
    hint: str | None
    reason: str


Resolution = Resolved | Disambiguation | NotFound


def _by_recency(instances: list[Instance]) -> list[Instance]:
    return sorted(instances, key=lambda i: i.last_heartbeat, reverse=True)


def _disambiguation(candidates: list[Instance], label: str) -> Disambiguation:
    candidates = _by_recency(candidates)
    newest = candidates[0]
    return Disambiguation(
        candidates=candidates,
        hint=(
            f"Multiple {label} found. Use: 'resume {newest.hash_segment}' "
            f"or pick one with --choice 1-{len(candidates)}"
        ),
    )


class InstanceResolver:
    """Turns a hint into Resolved, Disambiguation or NotFound.

    Reads only the registry, and every read goes to the store, so the
    active/stale decision for an exact ID is never made on stale data.
    """

    def __init__(self, registry: InstanceRegistry):
        self.registry = registry

    def resolve(self, hint: str | None = None) -> Resolution:
        """Resolve hint.

        Raises:
            ActiveInstanceError: hint is the exact ID of an instance that is
                still heartbeating
        """
        hint = (hint or "").strip()
        if not hint:
            return self._newest()

        for strategy in (self._exact, self._partial, self._project, self._epic):
            result = strategy(hint)
            if result is not None:
                logger.debug(f"Resolved hint '{hint}' via {strategy.__name__.lstrip('_')}")
                return result

        return NotFound(hint=hint, reason=f"No instance found matching '{hint}'")

    def _exact(self, hint: str) -> Resolution | None:
        if not INSTANCE_ID_PATTERN.match(hint):
            return None
        instance = self.registry.get(hint)
        if instance is None or instance.status == InstanceStatus.CLOSED:
            return None
        if instance.status == InstanceStatus.ACTIVE:
            raise ActiveInstanceError(
                instance.instance_id,
                instance.heartbeat_age_seconds(self.registry.clock.now()),
            )
        return Resolved(instance=instance, strategy=ResolutionStrategy.EXACT)

    def _partial(self, hint: str) -> Resolution | None:
        if not _PARTIAL_PATTERN.match(hint):
            return None
        matches = self.registry.match_hash_fragment(hint, stale_only=True)
        if not matches:
            return None
        if len(matches) == 1:
            return Resolved(instance=matches[0], strategy=ResolutionStrategy.PARTIAL)
        return _disambiguation(matches, f"instances matching '{hint}'")

    def _project(self, hint: str) -> Resolution | None:
        matches = self.registry.list_stale(project=hint)
        if not matches:
            return None
        if len(matches) == 1:
            return Resolved(instance=matches[0], strategy=ResolutionStrategy.PROJECT)
        return _disambiguation(matches, f"{hint.lower()} instances")

    def _epic(self, hint: str) -> Resolution | None:
        matches = [
            instance
            for instance in self.registry.list_stale()
            if instance.current_epic and instance.current_epic.lower() == hint.lower()
        ]
        if not matches:
            return None
        return Resolved(instance=_by_recency(matches)[0], strategy=ResolutionStrategy.EPIC)

    def _newest(self) -> Resolution:
        stale = self.registry.list_stale()
        if not stale:
            return NotFound(hint=None, reason="No stale instances found")
        return Resolved(instance=stale[0], strategy=ResolutionStrategy.NEWEST)
