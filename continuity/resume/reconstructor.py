"""Rebuild what an instance was doing from the stores.

Sources are tried in priority order and the first usable one wins:

    checkpoint (younger than checkpoint_max_age_minutes)
      -> event replay (at least one work event)
        -> command-log analysis
          -> registry fields (always available)

A source that errors (storage failure, unreadable snapshot) is logged and
skipped. Only a missing instance is fatal.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from pathlib import Path

from continuity.config import ReconstructionConfig
from continuity.core.checkpoints import CheckpointStore
from continuity.core.command_log import CommandLog
from continuity.core.errors import ProbeError
from continuity.core.events import EventStore, fold_events
from continuity.core.models import (
    BasicWorkState,
    CheckpointWorkState,
    CommandLogEntry,
    CommandType,
    CommandWorkState,
    EpicState,
    EpicStatus,
    EventWorkState,
    GitState,
    Instance,
    ReconstructedState,
    ReconstructionSource,
    SuiteResults,
    ValidationIssue,
    ValidationIssueKind,
    WorkSnapshot,
)
from continuity.core.probe import LocalStateProbe, StateProbe
from continuity.core.registry import InstanceRegistry

logger = logging.getLogger(__name__)


def age_in_minutes(now: datetime, then: datetime) -> int:
    """Whole minutes elapsed, floored, never negative."""
    return max(0, int((now - then).total_seconds() // 60))


def _action(entry: CommandLogEntry) -> str:
    return f"{entry.command_type.value}: {entry.action}"


def analyze_commands(entries: list[CommandLogEntry], base: WorkSnapshot) -> WorkSnapshot:
    """Infer a coarse work snapshot from commands, oldest first."""
    state = base.model_copy(deep=True)

    for entry in entries:
        candidate = state.model_copy(deep=True)
        try:
            _apply_command(candidate, entry)
        except (ValueError, TypeError) as e:
            logger.warning(f"Skipping malformed command {entry.id} of {entry.instance_id}: {e}")
            continue
        state = candidate

    return state


def _apply_command(state: WorkSnapshot, entry: CommandLogEntry) -> None:
    params = entry.parameters
    result = entry.result or {}
    kind = entry.command_type

    if kind == CommandType.SPAWN and params.get("epic_id"):
        state.epic = EpicState(
            epic_id=params["epic_id"],
            name=params.get("name"),
            status=EpicStatus.IN_PROGRESS,
        )
    elif kind == CommandType.COMMIT and entry.success:
        git = state.git or GitState()
        git.commits_ahead += 1
        git.branch = params.get("branch") or git.branch
        git.last_commit = result.get("sha") or params.get("message") or git.last_commit
        state.git = git
    elif kind == CommandType.PUSH and entry.success:
        git = state.git or GitState()
        git.commits_ahead = 0
        git.branch = params.get("branch") or git.branch
        state.git = git
    elif kind == CommandType.PR:
        pr_number = result.get("pr_number") or params.get("pr_number")
        if pr_number is not None:
            state.pr_number = int(pr_number)
        state.pr_url = result.get("pr_url") or state.pr_url
    elif kind == CommandType.TEST:
        if "passed" in result or "failed" in result:
            state.tests = SuiteResults(
                passed=int(result.get("passed", 0)),
                failed=int(result.get("failed", 0)),
                skipped=int(result.get("skipped", 0)),
                coverage_percent=result.get("coverage_percent"),
            )
    elif kind == CommandType.GIT or entry.action == "checkout":
        if params.get("branch"):
            git = state.git or GitState()
            git.branch = params["branch"]
            state.git = git

    files = params.get("files")
    if isinstance(files, list):
        for path in files:
            if isinstance(path, str) and path not in state.modified_files:
                state.modified_files.append(path)


class ContextReconstructor:
    """Produce a ReconstructedState for one instance."""

    def __init__(
        self,
        registry: InstanceRegistry,
        events: EventStore,
        checkpoints: CheckpointStore,
        commands: CommandLog,
        probe: StateProbe | None = None,
        config: ReconstructionConfig | None = None,
    ):
        self.registry = registry
        self.events = events
        self.checkpoints = checkpoints
        self.commands = commands
        self.probe = probe or LocalStateProbe()
        self.config = config or ReconstructionConfig()

    def reconstruct(self, instance_id: str) -> ReconstructedState:
        """Rebuild state from the best available source.

        Raises:
            NotFoundError: instance_id is not registered
        """
        instance = self.registry.require(instance_id)
        now = self.registry.clock.now()

        state = None
        for source, build in (
            (ReconstructionSource.CHECKPOINT, self._from_checkpoint),
            (ReconstructionSource.EVENTS, self._from_events),
            (ReconstructionSource.COMMANDS, self._from_commands),
        ):
            try:
                state = build(instance, now)
            except (sqlite3.Error, ValueError) as e:
                logger.warning(
                    f"Could not reconstruct {instance_id} from {source.value}: {e}. "
                    "Falling back to the next source."
                )
                continue
            if state is not None:
                break
            logger.debug(f"No usable {source.value} data for {instance_id}")

        if state is None:
            state = self._from_registry(instance, now)

        state.validation_issues = self.validate(state.work_state)
        logger.info(
            f"Reconstructed {instance_id} from {state.source.value} "
            f"(age {state.age_minutes} min, {len(state.validation_issues)} validation issue(s))"
        )
        return state

    # --- Sources ---

    def _from_checkpoint(self, instance: Instance, now: datetime) -> ReconstructedState | None:
        checkpoint = self.checkpoints.latest_for(instance.instance_id)
        if checkpoint is None:
            return None
        age = age_in_minutes(now, checkpoint.timestamp)
        if age >= self.config.checkpoint_max_age_minutes:
            logger.debug(
                f"Checkpoint {checkpoint.checkpoint_id} is {age} min old, "
                f"past the {self.config.checkpoint_max_age_minutes} min cutoff"
            )
            return None

        snapshot = checkpoint.work_state
        work_state = CheckpointWorkState(
            **snapshot.model_dump(),
            checkpoint_id=checkpoint.checkpoint_id,
            checkpoint_type=checkpoint.checkpoint_type,
        )
        work_state.project = work_state.project or instance.project
        work_state.project_path = work_state.project_path or instance.project_path

        recent = self.commands.recent(instance.instance_id, limit=5)
        return ReconstructedState(
            instance_id=instance.instance_id,
            source=ReconstructionSource.CHECKPOINT,
            age_minutes=age,
            work_state=work_state,
            recent_actions=[_action(entry) for entry in recent],
        )

    def _from_events(self, instance: Instance, now: datetime) -> ReconstructedState | None:
        history = self.events.query(
            instance_id=instance.instance_id, limit=self.config.event_window
        )
        snapshot, summary = fold_events(
            history,
            base=instance.work_snapshot(),
            recent_limit=self.config.recent_actions,
        )
        if summary.work_events == 0 or summary.last_work_at is None:
            return None

        context_percent = summary.context_percent
        if context_percent is None:
            context_percent = instance.context_percent
        work_state = EventWorkState(
            **snapshot.model_dump(),
            event_count=summary.work_events,
            last_sequence_num=summary.last_sequence_num,
            last_error=summary.last_error,
            context_percent=context_percent,
        )
        return ReconstructedState(
            instance_id=instance.instance_id,
            source=ReconstructionSource.EVENTS,
            age_minutes=age_in_minutes(now, summary.last_work_at),
            work_state=work_state,
            recent_actions=summary.recent_actions,
        )

    def _from_commands(self, instance: Instance, now: datetime) -> ReconstructedState | None:
        entries = self.commands.recent(instance.instance_id, limit=self.config.command_window)
        if not entries:
            return None

        snapshot = analyze_commands(entries, instance.work_snapshot())
        work_state = CommandWorkState(
            **snapshot.model_dump(),
            command_count=len(entries),
            failed_commands=sum(1 for entry in entries if not entry.success),
        )
        return ReconstructedState(
            instance_id=instance.instance_id,
            source=ReconstructionSource.COMMANDS,
            age_minutes=age_in_minutes(now, entries[-1].created_at),
            work_state=work_state,
            recent_actions=[_action(entry) for entry in entries[-self.config.recent_actions:]],
        )

    def _from_registry(self, instance: Instance, now: datetime) -> ReconstructedState:
        work_state = BasicWorkState(
            **instance.work_snapshot().model_dump(),
            context_percent=instance.context_percent,
        )
        return ReconstructedState(
            instance_id=instance.instance_id,
            source=ReconstructionSource.BASIC,
            age_minutes=age_in_minutes(now, instance.last_heartbeat),
            work_state=work_state,
        )

    # --- Validation ---

    def validate(self, work_state: WorkSnapshot) -> list[ValidationIssue]:
        """Check the snapshot against the local filesystem and VCS.

        Checks that cannot be made (no project path recorded, git not
        runnable) are skipped rather than counted as failures.
        """
        project_path = work_state.project_path
        if not project_path:
            return []

        if not self.probe.directory_exists(project_path):
            return [
                ValidationIssue(
                    kind=ValidationIssueKind.PROJECT_MISSING,
                    detail=f"Project directory not found: {project_path}",
                )
            ]

        issues = []
        branch = work_state.git.branch if work_state.git else None
        if branch:
            try:
                if not self.probe.branch_exists(project_path, branch):
                    issues.append(
                        ValidationIssue(
                            kind=ValidationIssueKind.BRANCH_MISSING,
                            detail=f"Git branch not found: {branch}",
                        )
                    )
            except ProbeError as e:
                logger.warning(f"Skipping branch validation: {e}")

        checked = work_state.modified_files[: self.config.files_to_check]
        missing = [
            path for path in checked if not (Path(project_path) / path).exists()
        ]
        if missing:
            issues.append(
                ValidationIssue(
                    kind=ValidationIssueKind.FILES_MISSING,
                    detail=f"{len(missing)} of {len(checked)} referenced files not found",
                )
            )
        return issues
