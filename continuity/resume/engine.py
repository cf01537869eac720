"""Resume engine: resolve -> reconstruct -> score -> next steps -> handoff.

Resuming is a read operation. The engine never changes an instance's
status; the resumed session's first heartbeat is what makes it active
again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, Field

from continuity.config import ContinuityConfig
from continuity.core.checkpoints import CheckpointStore
from continuity.core.command_log import CommandLog
from continuity.core.errors import ActiveInstanceError, InvalidChoiceError, NotFoundError
from continuity.core.events import EventStore
from continuity.core.heartbeat import format_staleness_message
from continuity.core.models import (
    Checkpoint,
    CommandLogEntry,
    CommandStats,
    ConfidenceAssessment,
    Instance,
    InstanceStatus,
    ReconstructedState,
)
from continuity.core.probe import StateProbe
from continuity.core.registry import InstanceRegistry
from continuity.core.rendering import TemplateRenderer
from continuity.resume.confidence import ConfidenceScorer
from continuity.resume.handoff import (
    CheckpointInfo,
    ResumeSummary,
    build_summary,
    checkpoint_info,
    render_handoff,
)
from continuity.resume.next_steps import NextStepGenerator
from continuity.resume.reconstructor import ContextReconstructor, age_in_minutes
from continuity.resume.resolver import (
    Disambiguation,
    InstanceResolver,
    NotFound,
    ResolutionStrategy,
)

logger = logging.getLogger(__name__)


class ResumePhase(str, Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    DISAMBIGUATING = "disambiguating"
    NOT_FOUND = "not_found"
    RECONSTRUCTING = "reconstructing"
    SCORING = "scoring"
    READY = "ready"


_TRANSITIONS: dict[ResumePhase, frozenset[ResumePhase]] = {
    ResumePhase.IDLE: frozenset({ResumePhase.RESOLVING}),
    ResumePhase.RESOLVING: frozenset(
        {ResumePhase.DISAMBIGUATING, ResumePhase.NOT_FOUND, ResumePhase.RECONSTRUCTING}
    ),
    ResumePhase.RECONSTRUCTING: frozenset({ResumePhase.SCORING}),
    ResumePhase.SCORING: frozenset({ResumePhase.READY}),
    ResumePhase.DISAMBIGUATING: frozenset(),
    ResumePhase.NOT_FOUND: frozenset(),
    ResumePhase.READY: frozenset(),
}


class ResumeAttempt:
    """Phase tracker for one resume call."""

    def __init__(self) -> None:
        self.phase = ResumePhase.IDLE
        self.history: list[ResumePhase] = [ResumePhase.IDLE]

    @property
    def terminal(self) -> bool:
        return not _TRANSITIONS[self.phase]

    def advance(self, target: ResumePhase) -> None:
        if target not in _TRANSITIONS[self.phase]:
            raise RuntimeError(
                f"Illegal resume transition: {self.phase.value} -> {target.value}"
            )
        self.phase = target
        self.history.append(target)


@dataclass
class Resumed:
    instance: Instance
    summary: ResumeSummary
    confidence: ConfidenceAssessment
    reconstruction: ReconstructedState
    handoff_document: str
    strategy: ResolutionStrategy | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def instance_id(self) -> str:
        return self.instance.instance_id


ResumeResult = Resumed | Disambiguation | NotFound


class InstanceDetails(BaseModel):
    """Everything known about one instance, for inspection before a resume."""

    instance: Instance
    age_minutes: int
    staleness: str
    checkpoint: CheckpointInfo | None = None
    recovery_instructions: str | None = None
    recent_commands: list[CommandLogEntry] = Field(default_factory=list)
    command_stats: CommandStats
    event_counts: dict[str, int] = Field(default_factory=dict)


class ResumeEngine:
    """Compose resolver, reconstructor, scorer and next-step generator."""

    def __init__(
        self,
        registry: InstanceRegistry,
        events: EventStore,
        checkpoints: CheckpointStore,
        commands: CommandLog,
        probe: StateProbe | None = None,
        config: ContinuityConfig | None = None,
        renderer: TemplateRenderer | None = None,
    ):
        self.config = config or ContinuityConfig()
        self.registry = registry
        self.events = events
        self.checkpoints = checkpoints
        self.commands = commands
        self.renderer = renderer or checkpoints.renderer
        self.resolver = InstanceResolver(registry)
        self.reconstructor = ContextReconstructor(
            registry,
            events,
            checkpoints,
            commands,
            probe=probe,
            config=self.config.reconstruction,
        )
        self.scorer = ConfidenceScorer(self.config.confidence)
        self.next_steps = NextStepGenerator(self.config.next_steps.max_steps)
        self.last_attempt: ResumeAttempt | None = None

    def resume(self, hint: str | None = None, choice: int | None = None) -> ResumeResult:
        """Resume a stale instance.

        Args:
            hint: full ID, 4-6 char hash fragment, project, epic, or None
                for the most recently stale instance
            choice: 1-based index into the candidates when the hint is
                ambiguous

        Raises:
            ActiveInstanceError: the target is still heartbeating
            InvalidChoiceError: choice is outside the candidate list
            NotFoundError: the target disappeared or was closed mid-resume
        """
        attempt = ResumeAttempt()
        self.last_attempt = attempt
        attempt.advance(ResumePhase.RESOLVING)

        resolution = self.resolver.resolve(hint)
        strategy = None
        if isinstance(resolution, NotFound):
            attempt.advance(ResumePhase.NOT_FOUND)
            logger.info(f"Resume found nothing: {resolution.reason}")
            return resolution
        if isinstance(resolution, Disambiguation):
            if choice is None:
                attempt.advance(ResumePhase.DISAMBIGUATING)
                return resolution
            if not 1 <= choice <= len(resolution.candidates):
                raise InvalidChoiceError(choice, len(resolution.candidates))
            target_id = resolution.candidates[choice - 1].instance_id
        else:
            target_id = resolution.instance.instance_id
            strategy = resolution.strategy

        attempt.advance(ResumePhase.RECONSTRUCTING)
        instance = self._require_stale(target_id)
        reconstruction = self.reconstructor.reconstruct(instance.instance_id)

        attempt.advance(ResumePhase.SCORING)
        confidence = self.scorer.score(reconstruction)
        reconstruction.confidence = confidence
        steps = self.next_steps.generate(reconstruction.work_state)
        summary = build_summary(
            instance,
            reconstruction,
            steps,
            latest_checkpoint=self._latest_checkpoint(instance.instance_id),
        )
        handoff = render_handoff(
            self.renderer,
            instance,
            summary,
            confidence,
            reconstruction,
            generated_at=self.registry.clock.now(),
        )

        attempt.advance(ResumePhase.READY)
        logger.info(
            f"Resume ready for {instance.instance_id}: source={reconstruction.source.value}, "
            f"confidence={confidence.score} ({confidence.level.value})"
        )
        return Resumed(
            instance=instance,
            summary=summary,
            confidence=confidence,
            reconstruction=reconstruction,
            handoff_document=handoff,
            strategy=strategy,
            warnings=confidence.warnings,
        )

    def _latest_checkpoint(self, instance_id: str) -> Checkpoint | None:
        # None when the newest checkpoint is unreadable
        latest = self.checkpoints.list_for_instance(instance_id, limit=1)
        return latest[0] if latest else None

    def _require_stale(self, instance_id: str) -> Instance:
        """Fresh registry read; the target must still be stale."""
        instance = self.registry.require(instance_id)
        if instance.status == InstanceStatus.ACTIVE:
            raise ActiveInstanceError(
                instance_id, instance.heartbeat_age_seconds(self.registry.clock.now())
            )
        if instance.status == InstanceStatus.CLOSED:
            raise NotFoundError("Resumable instance", instance_id)
        return instance

    def instance_details(self, id_or_fragment: str) -> InstanceDetails:
        """Detailed recovery payload for one instance.

        Raises:
            NotFoundError: nothing (or more than one instance) matches
        """
        instance = self.registry.get_details(id_or_fragment)
        if instance is None:
            raise NotFoundError("Instance", id_or_fragment)

        now = self.registry.clock.now()
        checkpoint = self._latest_checkpoint(instance.instance_id)
        recent = self.commands.recent(instance.instance_id, limit=10)
        return InstanceDetails(
            instance=instance,
            age_minutes=age_in_minutes(now, instance.last_heartbeat),
            staleness=format_staleness_message(
                instance.heartbeat_age_seconds(now), instance.status
            ),
            checkpoint=checkpoint_info(checkpoint),
            recovery_instructions=(
                self.checkpoints.recovery_instructions(checkpoint) if checkpoint else None
            ),
            recent_commands=list(reversed(recent)),
            command_stats=self.commands.stats_for(instance.instance_id),
            event_counts=self.events.aggregate_by_type(instance.instance_id),
        )

    def list_stale(self, project: str | None = None) -> list[Instance]:
        return self.registry.list_stale(project=project)
