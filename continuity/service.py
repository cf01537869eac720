"""Operation surface for continuity.

ContinuityService wires the stores, the heartbeat monitor and the resume
engine around one Database, and exposes the operations instances and
operators call. Transport (CLI, tool calls) is layered on top.
"""

from __future__ import annotations

import logging
from contextlib import AbstractContextManager
from datetime import datetime
from pathlib import Path
from typing import Any

from continuity.config import CONFIG_DIR, DB_FILENAME, ContinuityConfig, load_config
from continuity.core.checkpoints import CheckpointStore
from continuity.core.clock import Clock, SystemClock
from continuity.core.command_log import CommandLog, TrackedCall
from continuity.core.events import EventStore, fold_events
from continuity.core.heartbeat import HeartbeatMonitor
from continuity.core.models import (
    Checkpoint,
    CheckpointType,
    CommandFilters,
    CommandInput,
    CommandLogEntry,
    CommandStats,
    CommandType,
    Event,
    EventType,
    HeartbeatResult,
    Instance,
    InstanceType,
    RetentionPolicy,
    WorkSnapshot,
)
from continuity.core.probe import StateProbe
from continuity.core.registry import InstanceRegistry
from continuity.core.state import Database
from continuity.resume.engine import InstanceDetails, ResumeEngine, ResumeResult

logger = logging.getLogger(__name__)


class ContinuityService:
    """All continuity operations over one shared store."""

    def __init__(
        self,
        db: Database,
        config: ContinuityConfig | None = None,
        clock: Clock | None = None,
        probe: StateProbe | None = None,
    ):
        self.db = db
        self.config = config or ContinuityConfig()
        self.clock = clock or SystemClock()

        self.registry = InstanceRegistry(
            db, self.clock, stale_after_seconds=self.config.staleness.threshold_seconds
        )
        self.events = EventStore(db, self.clock)
        self.checkpoints = CheckpointStore(db, self.clock)
        self.commands = CommandLog(db, self.clock)
        self.monitor = HeartbeatMonitor(
            self.registry,
            self.events,
            self.checkpoints,
            auto_checkpoint_threshold=self.config.heartbeat.auto_checkpoint_threshold,
            event_window=self.config.reconstruction.event_window,
        )
        self.engine = ResumeEngine(
            self.registry,
            self.events,
            self.checkpoints,
            self.commands,
            probe=probe,
            config=self.config,
        )

    @classmethod
    def for_repo(
        cls,
        repo_path: Path,
        db_path: Path | None = None,
        clock: Clock | None = None,
    ) -> "ContinuityService":
        """Open the service for a repository's .continuity directory."""
        repo_path = Path(repo_path)
        config = load_config(repo_path)
        db = Database(db_path or repo_path / CONFIG_DIR / DB_FILENAME)
        logger.debug(f"Opened continuity store at {db.db_path}")
        return cls(db, config=config, clock=clock)

    # --- Instances ---

    def register_instance(
        self,
        project: str,
        instance_type: InstanceType | str = InstanceType.WORKER,
        project_path: str | None = None,
        host_machine: str | None = None,
    ) -> Instance:
        return self.registry.register(project, instance_type, project_path, host_machine)

    def heartbeat(
        self, instance_id: str, context_percent: int, current_epic: str | None = None
    ) -> HeartbeatResult:
        return self.monitor.heartbeat(instance_id, context_percent, current_epic)

    def list_instances(
        self, project: str | None = None, include_closed: bool = False
    ) -> list[Instance]:
        return self.registry.list_instances(project=project, include_closed=include_closed)

    def get_instance_details(self, id_or_fragment: str) -> Instance | None:
        return self.registry.get_details(id_or_fragment)

    def close_instance(self, instance_id: str) -> Instance:
        return self.registry.close(instance_id)

    # --- Events ---

    def emit_event(
        self,
        instance_id: str,
        event_type: EventType | str,
        event_data: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Event:
        return self.events.append(instance_id, event_type, event_data, metadata)

    def query_events(
        self,
        instance_id: str | None = None,
        event_types: list[EventType | str] | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[Event]:
        return self.events.query(instance_id, event_types, since, until, limit)

    def replay_events(self, instance_id: str, up_to_sequence: int | None = None) -> list[Event]:
        return self.events.replay(instance_id, up_to_sequence)

    def list_event_types(self) -> list[str]:
        return self.events.list_event_types()

    def aggregate_events(self, instance_id: str | None = None) -> dict[str, int]:
        return self.events.aggregate_by_type(instance_id)

    # --- Checkpoints ---

    def create_checkpoint(
        self,
        instance_id: str,
        checkpoint_type: CheckpointType | str = CheckpointType.MANUAL,
        context_percent: int | None = None,
        work_state: WorkSnapshot | dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Checkpoint:
        """Create a checkpoint.

        Without an explicit work_state, the snapshot is folded from the
        instance's event history.
        """
        if work_state is None:
            work_state = self.current_work_state(instance_id)
        if context_percent is None:
            context_percent = self.registry.require(instance_id).context_percent
        return self.checkpoints.create(
            instance_id, checkpoint_type, context_percent, work_state, metadata
        )

    def current_work_state(self, instance_id: str) -> WorkSnapshot:
        instance = self.registry.require(instance_id)
        history = self.events.query(
            instance_id=instance_id, limit=self.config.reconstruction.event_window
        )
        snapshot, _ = fold_events(history, base=instance.work_snapshot())
        return snapshot

    def get_checkpoint(self, checkpoint_id: str) -> Checkpoint | None:
        return self.checkpoints.get(checkpoint_id)

    def list_checkpoints(self, instance_id: str, limit: int | None = None) -> list[Checkpoint]:
        return self.checkpoints.list_for_instance(instance_id, limit)

    def cleanup_checkpoints(self, policy: RetentionPolicy | None = None) -> int:
        if policy is None:
            policy = RetentionPolicy(
                max_age_days=self.config.retention.max_age_days,
                max_per_instance=self.config.retention.max_per_instance,
            )
        return self.checkpoints.cleanup(policy)

    # --- Command log ---

    def log_command(
        self, instance_id: str, entry: CommandInput | dict[str, Any]
    ) -> CommandLogEntry:
        return self.commands.log(instance_id, entry)

    def track_tool_call(
        self,
        instance_id: str,
        tool_name: str,
        parameters: dict[str, Any] | None = None,
        command_type: CommandType = CommandType.TOOL,
    ) -> AbstractContextManager[TrackedCall]:
        """Context manager that records the wrapped tool call as an inferred command."""
        return self.commands.track(instance_id, tool_name, parameters, command_type)

    def search_commands(self, filters: CommandFilters | None = None) -> list[CommandLogEntry]:
        return self.commands.search(filters)

    def command_stats(self, instance_id: str) -> CommandStats:
        return self.commands.stats_for(instance_id)

    # --- Resume ---

    def resume_instance(self, hint: str | None = None, choice: int | None = None) -> ResumeResult:
        return self.engine.resume(hint, choice)

    def get_resume_instance_details(self, instance_id: str) -> InstanceDetails:
        return self.engine.instance_details(instance_id)

    def list_stale_instances(self, project: str | None = None) -> list[Instance]:
        return self.engine.list_stale(project)

    def detect_stale_instances(self, project: str | None = None) -> list[Instance]:
        return self.monitor.detect_stale(project)
