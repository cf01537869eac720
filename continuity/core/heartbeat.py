"""Heartbeat handling and stale-instance detection."""

from __future__ import annotations

import logging
import sqlite3

from continuity.core.checkpoints import CheckpointStore
from continuity.core.errors import ContinuityError
from continuity.core.events import EventStore, fold_events
from continuity.core.models import (
    CheckpointType,
    EventType,
    HeartbeatResult,
    Instance,
    InstanceStatus,
)
from continuity.core.registry import InstanceRegistry
from continuity.core.state import format_timestamp

logger = logging.getLogger(__name__)


def format_staleness_message(age_seconds: float, status: InstanceStatus | str) -> str:
    """One-line, human-readable liveness description."""
    status = InstanceStatus(status)
    if status == InstanceStatus.CLOSED:
        return "Instance is closed"
    if status == InstanceStatus.STALE:
        return f"Instance is stale (no heartbeat for {int(age_seconds // 60)} minutes)"
    if age_seconds < 60:
        return f"Instance active ({int(age_seconds)}s since last heartbeat)"
    return f"Instance active ({int(age_seconds // 60)}m since last heartbeat)"


class HeartbeatMonitor:
    """Records heartbeats and notices instances that stopped sending them.

    When a heartbeat pushes context usage across auto_checkpoint_threshold,
    an 'auto' checkpoint is taken from the instance's folded event history.
    """

    def __init__(
        self,
        registry: InstanceRegistry,
        events: EventStore,
        checkpoints: CheckpointStore,
        auto_checkpoint_threshold: int | None = 80,
        event_window: int = 200,
    ):
        self.registry = registry
        self.events = events
        self.checkpoints = checkpoints
        self.auto_checkpoint_threshold = auto_checkpoint_threshold
        self.event_window = event_window

    def heartbeat(
        self,
        instance_id: str,
        context_percent: int,
        current_epic: str | None = None,
    ) -> HeartbeatResult:
        previous = self.registry.require(instance_id)
        now = self.registry.clock.now()
        age_seconds = previous.heartbeat_age_seconds(now)
        was_stale = previous.status == InstanceStatus.STALE

        instance = self.registry.heartbeat(instance_id, context_percent, current_epic)
        if was_stale:
            logger.info(f"Instance {instance_id} heartbeating again after {int(age_seconds)}s")

        checkpoint_id = None
        if self._crossed_threshold(previous.context_percent, context_percent):
            checkpoint_id = self._auto_checkpoint(instance)

        return HeartbeatResult(
            instance=instance,
            stale=was_stale,
            age_seconds=age_seconds,
            auto_checkpoint_id=checkpoint_id,
        )

    def _crossed_threshold(self, before: int, after: int) -> bool:
        threshold = self.auto_checkpoint_threshold
        return threshold is not None and before < threshold <= after

    def _auto_checkpoint(self, instance: Instance) -> str | None:
        """Take an auto checkpoint. The heartbeat is already stored, so failures only log."""
        try:
            history = self.events.query(
                instance_id=instance.instance_id, limit=self.event_window
            )
            work_state, _ = fold_events(history, base=instance.work_snapshot())
            checkpoint = self.checkpoints.create(
                instance.instance_id,
                CheckpointType.AUTO,
                instance.context_percent,
                work_state,
                metadata={
                    "trigger": "context_threshold",
                    "threshold": self.auto_checkpoint_threshold,
                },
            )
        except (ContinuityError, ValueError, sqlite3.Error) as e:
            logger.warning(f"Auto checkpoint for {instance.instance_id} failed: {e}")
            return None
        logger.info(
            f"Context for {instance.instance_id} reached {instance.context_percent}%, "
            f"took auto checkpoint {checkpoint.checkpoint_id}"
        )
        return checkpoint.checkpoint_id

    def detect_stale(self, project: str | None = None) -> list[Instance]:
        """Record an instance_stale event for each newly stale instance.

        One event per heartbeat gap: an instance already marked stale for its
        current last_heartbeat is not marked again.
        """
        newly_stale = []
        now = self.registry.clock.now()
        for instance in self.registry.list_stale(project=project):
            last_heartbeat = format_timestamp(instance.last_heartbeat)
            marked = self.events.query(
                instance_id=instance.instance_id,
                event_types=[EventType.INSTANCE_STALE],
                limit=1,
            )
            if marked and marked[0].event_data.get("last_heartbeat") == last_heartbeat:
                continue

            age_seconds = instance.heartbeat_age_seconds(now)
            self.events.append(
                instance.instance_id,
                EventType.INSTANCE_STALE,
                {"last_heartbeat": last_heartbeat, "age_seconds": int(age_seconds)},
            )
            logger.warning(
                f"Instance {instance.instance_id} is stale: "
                f"{format_staleness_message(age_seconds, instance.status)}"
            )
            newly_stale.append(instance)
        return newly_stale
