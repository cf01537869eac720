"""Resume summary and the markdown handoff document."""

from datetime import datetime

from pydantic import BaseModel, Field

from continuity.core.models import (
    Checkpoint,
    CheckpointType,
    ConfidenceAssessment,
    EpicState,
    GitState,
    Instance,
    ReconstructedState,
    SuiteResults,
)
from continuity.core.rendering import TemplateRenderer


class CheckpointInfo(BaseModel):
    checkpoint_id: str
    checkpoint_type: CheckpointType
    timestamp: datetime
    context_window_percent: int | None = None


class ResumeSummary(BaseModel):
    """What a resuming session needs to know, in one place."""

    project: str
    epic: EpicState | None = None
    git: GitState | None = None
    tests: SuiteResults | None = None
    pr_number: int | None = None
    pending_tasks: list[str] = Field(default_factory=list)
    recent_actions: list[str] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)
    checkpoint: CheckpointInfo | None = None
    last_error: str | None = None


def checkpoint_info(checkpoint: Checkpoint | None) -> CheckpointInfo | None:
    if checkpoint is None:
        return None
    return CheckpointInfo(
        checkpoint_id=checkpoint.checkpoint_id,
        checkpoint_type=checkpoint.checkpoint_type,
        timestamp=checkpoint.timestamp,
        context_window_percent=checkpoint.context_window_percent,
    )


def build_summary(
    instance: Instance,
    reconstruction: ReconstructedState,
    next_steps: list[str],
    latest_checkpoint: Checkpoint | None = None,
) -> ResumeSummary:
    state = reconstruction.work_state
    return ResumeSummary(
        project=state.project or instance.project,
        epic=state.epic,
        git=state.git,
        tests=state.tests,
        pr_number=state.pr_number,
        pending_tasks=state.pending_tasks,
        recent_actions=reconstruction.recent_actions,
        next_steps=next_steps,
        checkpoint=checkpoint_info(latest_checkpoint),
        last_error=getattr(state, "last_error", None),
    )


def render_handoff(
    renderer: TemplateRenderer,
    instance: Instance,
    summary: ResumeSummary,
    confidence: ConfidenceAssessment,
    reconstruction: ReconstructedState,
    generated_at: datetime,
) -> str:
    return renderer.render(
        "handoff.md.j2",
        instance=instance,
        summary=summary,
        confidence=confidence,
        reconstruction=reconstruction,
        generated_at=generated_at,
    )
