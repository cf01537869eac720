"""Checkpoint store: immutable work-state snapshots per instance."""

from __future__ import annotations

import logging
import sqlite3
import uuid
from datetime import timedelta
from typing import Any

from pydantic import ValidationError

from continuity.core.clock import Clock, SystemClock
from continuity.core.errors import NotFoundError
from continuity.core.models import Checkpoint, CheckpointType, RetentionPolicy, WorkSnapshot
from continuity.core.rendering import TemplateRenderer
from continuity.core.state import (
    Database,
    format_timestamp,
    json_loads_or,
    parse_timestamp,
    safe_json_dumps,
)

logger = logging.getLogger(__name__)


class CheckpointStore:
    """Create, read and prune checkpoints. Checkpoints are never updated."""

    def __init__(
        self,
        db: Database,
        clock: Clock | None = None,
        renderer: TemplateRenderer | None = None,
    ):
        self.db = db
        self.clock = clock or SystemClock()
        self.renderer = renderer or TemplateRenderer()

    def create(
        self,
        instance_id: str,
        checkpoint_type: CheckpointType | str,
        context_percent: int | None,
        work_state: WorkSnapshot | dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> Checkpoint:
        """Snapshot an instance's work state.

        sequence_num records the instance's event-log position at capture.

        Raises:
            NotFoundError: instance_id is not registered
            ValueError: context_percent or work_state is invalid
        """
        checkpoint_type = CheckpointType(checkpoint_type)
        if context_percent is not None and not 0 <= context_percent <= 100:
            raise ValueError("context_percent must be between 0 and 100")
        if isinstance(work_state, dict):
            work_state = WorkSnapshot.model_validate(work_state)

        serialized = work_state.model_dump_json()
        meta = dict(metadata or {})
        meta.setdefault("trigger", checkpoint_type.value)
        meta["size_bytes"] = len(serialized.encode("utf-8"))

        checkpoint_id = f"cp-{uuid.uuid4().hex}"
        timestamp = format_timestamp(self.clock.now())

        with self.db.transaction() as conn:
            if not self.db.instance_exists(conn, instance_id):
                raise NotFoundError("Instance", instance_id)
            sequence_num = conn.execute(
                "SELECT COALESCE(MAX(sequence_num), 0) FROM events WHERE instance_id = ?",
                (instance_id,),
            ).fetchone()[0]
            conn.execute(
                """
                INSERT INTO checkpoints (checkpoint_id, instance_id, checkpoint_type,
                                         sequence_num, context_window_percent,
                                         work_state, metadata, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    checkpoint_id,
                    instance_id,
                    checkpoint_type.value,
                    sequence_num,
                    context_percent,
                    serialized,
                    safe_json_dumps(meta),
                    timestamp,
                ),
            )

        logger.info(
            f"Created {checkpoint_type.value} checkpoint {checkpoint_id} for {instance_id} "
            f"({meta['size_bytes']} bytes)"
        )
        return self.require(checkpoint_id)

    def _row_to_checkpoint(self, row: sqlite3.Row) -> Checkpoint:
        return Checkpoint(
            checkpoint_id=row["checkpoint_id"],
            instance_id=row["instance_id"],
            checkpoint_type=CheckpointType(row["checkpoint_type"]),
            sequence_num=row["sequence_num"],
            context_window_percent=row["context_window_percent"],
            work_state=WorkSnapshot.model_validate_json(row["work_state"]),
            metadata=json_loads_or(row["metadata"], {}),
            timestamp=parse_timestamp(row["timestamp"]),
        )

    def get(self, checkpoint_id: str) -> Checkpoint | None:
        with self.db._connect() as conn:
            row = conn.execute(
                "SELECT * FROM checkpoints WHERE checkpoint_id = ?", (checkpoint_id,)
            ).fetchone()
        return self._row_to_checkpoint(row) if row else None

    def require(self, checkpoint_id: str) -> Checkpoint:
        checkpoint = self.get(checkpoint_id)
        if checkpoint is None:
            raise NotFoundError("Checkpoint", checkpoint_id)
        return checkpoint

    def list_for_instance(self, instance_id: str, limit: int | None = None) -> list[Checkpoint]:
        """Checkpoints of one instance, newest first.

        Rows whose snapshot no longer validates are skipped with a warning.
        """
        query = "SELECT * FROM checkpoints WHERE instance_id = ? ORDER BY timestamp DESC"
        params: list[Any] = [instance_id]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self.db._connect() as conn:
            rows = conn.execute(query, params).fetchall()

        checkpoints = []
        for row in rows:
            try:
                checkpoints.append(self._row_to_checkpoint(row))
            except ValidationError as e:
                logger.warning(f"Skipping unreadable checkpoint {row['checkpoint_id']}: {e}")
        return checkpoints

    def latest_for(self, instance_id: str) -> Checkpoint | None:
        with self.db._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM checkpoints WHERE instance_id = ?
                ORDER BY timestamp DESC LIMIT 1
                """,
                (instance_id,),
            ).fetchone()
        return self._row_to_checkpoint(row) if row else None

    def cleanup(self, policy: RetentionPolicy | None = None) -> int:
        """Delete checkpoints outside the retention policy and return the count.

        The newest checkpoint of every non-closed instance is always kept.
        """
        policy = policy or RetentionPolicy()
        protected_sql = """
            SELECT c.checkpoint_id FROM checkpoints c
            JOIN instances i ON i.instance_id = c.instance_id
            WHERE i.status != 'closed'
              AND c.timestamp = (
                  SELECT MAX(c2.timestamp) FROM checkpoints c2
                  WHERE c2.instance_id = c.instance_id
              )
        """

        with self.db.transaction() as conn:
            protected = {row[0] for row in conn.execute(protected_sql).fetchall()}
            doomed: set[str] = set()

            if policy.max_age_days is not None:
                cutoff = self.clock.now() - timedelta(days=policy.max_age_days)
                rows = conn.execute(
                    "SELECT checkpoint_id FROM checkpoints WHERE timestamp < ?",
                    (format_timestamp(cutoff),),
                ).fetchall()
                doomed.update(row[0] for row in rows)

            if policy.max_per_instance is not None:
                rows = conn.execute(
                    """
                    SELECT checkpoint_id, instance_id FROM checkpoints
                    ORDER BY instance_id, timestamp DESC
                    """
                ).fetchall()
                seen: dict[str, int] = {}
                for row in rows:
                    seen[row["instance_id"]] = seen.get(row["instance_id"], 0) + 1
                    if seen[row["instance_id"]] > policy.max_per_instance:
                        doomed.add(row["checkpoint_id"])

            doomed -= protected
            for checkpoint_id in doomed:
                conn.execute("DELETE FROM checkpoints WHERE checkpoint_id = ?", (checkpoint_id,))

        if doomed:
            logger.info(f"Cleaned up {len(doomed)} checkpoint(s)")
        return len(doomed)

    def recovery_instructions(self, checkpoint: Checkpoint) -> str:
        """Plain-language markdown describing how to pick up from a checkpoint."""
        return self.renderer.render(
            "recovery.md.j2", checkpoint=checkpoint, state=checkpoint.work_state
        )
