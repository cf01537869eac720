"""Append-only per-instance event log.

Every event gets a sequence number that is unique per instance, starts at 1
and has no gaps. The number is assigned inside the INSERT itself
(COALESCE(MAX(sequence_num), 0) + 1) and guarded by
UNIQUE(instance_id, sequence_num); two writers can never both commit the
same number, and the loser of a race retries.
"""

from __future__ import annotations

import logging
import random
import sqlite3
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from continuity.core.clock import Clock, SystemClock
from continuity.core.errors import NotFoundError, SequenceConflictError
from continuity.core.models import (
    EpicState,
    EpicStatus,
    Event,
    EventType,
    GitState,
    SuiteResults,
    WorkSnapshot,
)
from continuity.core.state import (
    Database,
    format_timestamp,
    json_loads_or,
    parse_timestamp,
    safe_json_dumps,
)

logger = logging.getLogger(__name__)

_MAX_APPEND_ATTEMPTS = 5
_BASE_BACKOFF_SECONDS = 0.01
_SLOW_WRITE_SECONDS = 0.5


class EventStore:
    """Per-instance event log backed by the shared database."""

    def __init__(
        self,
        db: Database,
        clock: Clock | None = None,
        max_attempts: int = _MAX_APPEND_ATTEMPTS,
    ):
        self.db = db
        self.clock = clock or SystemClock()
        self.max_attempts = max_attempts

    def append(
        self,
        instance_id: str,
        event_type: EventType | str,
        event_data: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Event:
        """Append an event and return it with its assigned sequence number.

        Raises:
            NotFoundError: instance_id is not registered
            ValueError: event_type is not a known type
        """
        event_type = EventType(event_type)
        started = time.perf_counter()

        for attempt in range(1, self.max_attempts + 1):
            try:
                event = self._insert(instance_id, event_type, event_data or {}, metadata)
                break
            except SequenceConflictError:
                if attempt == self.max_attempts:
                    raise
                delay = _BASE_BACKOFF_SECONDS * (2 ** (attempt - 1))
                logger.warning(
                    f"Sequence conflict appending {event_type.value} for {instance_id}, "
                    f"retrying (attempt {attempt}/{self.max_attempts})"
                )
                time.sleep(delay + random.uniform(0, delay))

        elapsed = time.perf_counter() - started
        if elapsed > _SLOW_WRITE_SECONDS:
            logger.warning(f"Slow event append for {instance_id}: {elapsed:.2f}s")
        logger.debug(f"Appended {event.event_type.value} #{event.sequence_num} for {instance_id}")
        return event

    def _insert(
        self,
        instance_id: str,
        event_type: EventType,
        event_data: dict[str, Any],
        metadata: dict[str, Any] | None,
    ) -> Event:
        event_id = str(uuid.uuid4())
        timestamp = format_timestamp(self.clock.now())

        with self.db.transaction() as conn:
            if not self.db.instance_exists(conn, instance_id):
                raise NotFoundError("Instance", instance_id)
            try:
                conn.execute(
                    """
                    INSERT INTO events (event_id, instance_id, event_type, sequence_num,
                                        timestamp, event_data, metadata)
                    SELECT ?, ?, ?, COALESCE(MAX(sequence_num), 0) + 1, ?, ?, ?
                    FROM events WHERE instance_id = ?
                    """,
                    (
                        event_id,
                        instance_id,
                        event_type.value,
                        timestamp,
                        safe_json_dumps(event_data),
                        safe_json_dumps(metadata) if metadata is not None else None,
                        instance_id,
                    ),
                )
            except sqlite3.IntegrityError as e:
                if "UNIQUE constraint failed" in str(e):
                    raise SequenceConflictError(instance_id, "events") from e
                raise
            row = conn.execute(
                "SELECT * FROM events WHERE event_id = ?", (event_id,)
            ).fetchone()

        return self._row_to_event(row)

    def _row_to_event(self, row: sqlite3.Row) -> Event:
        return Event(
            event_id=row["event_id"],
            instance_id=row["instance_id"],
            event_type=EventType(row["event_type"]),
            sequence_num=row["sequence_num"],
            timestamp=parse_timestamp(row["timestamp"]),
            event_data=json_loads_or(row["event_data"], {}),
            metadata=json_loads_or(row["metadata"], None),
        )

    # --- Queries ---

    def query(
        self,
        instance_id: str | None = None,
        event_types: list[EventType | str] | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[Event]:
        """Filter events. Results are oldest first; limit keeps the newest N."""
        query = "SELECT * FROM events WHERE 1=1"
        params: list[Any] = []
        if instance_id:
            query += " AND instance_id = ?"
            params.append(instance_id)
        if event_types:
            values = [EventType(t).value for t in event_types]
            query += f" AND event_type IN ({','.join('?' * len(values))})"
            params.extend(values)
        if since:
            query += " AND timestamp >= ?"
            params.append(format_timestamp(since))
        if until:
            query += " AND timestamp <= ?"
            params.append(format_timestamp(until))
        query += " ORDER BY timestamp DESC, sequence_num DESC"
        if limit is not None:
            if limit < 1:
                raise ValueError("limit must be a positive integer")
            query += " LIMIT ?"
            params.append(limit)

        with self.db._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_event(row) for row in reversed(rows)]

    def replay(self, instance_id: str, up_to_sequence: int | None = None) -> list[Event]:
        """Events of one instance in sequence order, optionally up to a sequence number."""
        with self.db._connect() as conn:
            if not self.db.instance_exists(conn, instance_id):
                raise NotFoundError("Instance", instance_id)
            if up_to_sequence is None:
                rows = conn.execute(
                    "SELECT * FROM events WHERE instance_id = ? ORDER BY sequence_num",
                    (instance_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM events
                    WHERE instance_id = ? AND sequence_num <= ?
                    ORDER BY sequence_num
                    """,
                    (instance_id, up_to_sequence),
                ).fetchall()
        return [self._row_to_event(row) for row in rows]

    def latest(self, instance_id: str) -> Event | None:
        with self.db._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM events WHERE instance_id = ?
                ORDER BY sequence_num DESC LIMIT 1
                """,
                (instance_id,),
            ).fetchone()
        return self._row_to_event(row) if row else None

    def last_sequence(self, instance_id: str) -> int:
        """Highest sequence number of an instance, 0 when it has no events."""
        with self.db._connect() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(sequence_num), 0) FROM events WHERE instance_id = ?",
                (instance_id,),
            ).fetchone()
        return row[0]

    def list_event_types(self) -> list[str]:
        return [event_type.value for event_type in EventType]

    def aggregate_by_type(self, instance_id: str | None = None) -> dict[str, int]:
        """Event counts per type, optionally for one instance."""
        query = "SELECT event_type, COUNT(*) AS n FROM events"
        params: tuple[str, ...] = ()
        if instance_id:
            query += " WHERE instance_id = ?"
            params = (instance_id,)
        query += " GROUP BY event_type ORDER BY event_type"
        with self.db._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return {row["event_type"]: row["n"] for row in rows}


# --- Folding ---


@dataclass
class FoldSummary:
    """What a fold consumed, alongside the snapshot it produced."""

    work_events: int = 0
    last_sequence_num: int = 0
    last_work_at: datetime | None = None
    last_error: str | None = None
    context_percent: int | None = None
    recent_actions: list[str] = field(default_factory=list)


def _text(data: dict[str, Any], *keys: str) -> str | None:
    """First non-empty string value among keys."""
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _epic_id(data: dict[str, Any]) -> str | None:
    return _text(data, "epic_id", "epic")


def _describe(event: Event) -> str:
    data = event.event_data
    for key in ("summary", "message", "description", "name", "task", "feature"):
        if data.get(key):
            return f"{event.event_type.value}: {data[key]}"
    epic = _epic_id(data)
    if epic:
        return f"{event.event_type.value}: {epic}"
    if data.get("pr_number"):
        return f"{event.event_type.value}: PR #{data['pr_number']}"
    return event.event_type.value


def _add_files(state: WorkSnapshot, files: Any) -> None:
    if not isinstance(files, list):
        return
    for path in files:
        if isinstance(path, str) and path not in state.modified_files:
            state.modified_files.append(path)


def fold_events(
    events: list[Event],
    base: WorkSnapshot | None = None,
    recent_limit: int = 10,
) -> tuple[WorkSnapshot, FoldSummary]:
    """Fold an ordered event sequence into a work snapshot.

    Instance lifecycle events (registered, heartbeat, stale) carry no work
    content; they advance last_sequence_num but are not counted as work.
    """
    state = base.model_copy(deep=True) if base else WorkSnapshot()
    summary = FoldSummary()

    for event in events:
        summary.last_sequence_num = max(summary.last_sequence_num, event.sequence_num)
        if event.event_type.is_lifecycle:
            continue

        summary.work_events += 1
        summary.last_work_at = event.timestamp
        summary.recent_actions.append(_describe(event))

        # Applied to copies so a malformed payload leaves no partial update
        candidate = state.model_copy(deep=True)
        candidate_summary = replace(summary)
        try:
            _apply(candidate, candidate_summary, event)
        except (ValueError, TypeError) as e:
            logger.warning(
                f"Skipping malformed {event.event_type.value} event "
                f"#{event.sequence_num} of {event.instance_id}: {e}"
            )
            continue
        state, summary = candidate, candidate_summary

    summary.recent_actions = summary.recent_actions[-recent_limit:]
    return state, summary


def _apply(state: WorkSnapshot, summary: FoldSummary, event: Event) -> None:
    data = event.event_data
    kind = event.event_type

    if data.get("project_path"):
        state.project_path = str(data["project_path"])
    _add_files(state, data.get("files") or data.get("modified_files"))

    if kind in (EventType.EPIC_PLANNED, EventType.EPIC_STARTED):
        epic_id = _epic_id(data)
        if epic_id:
            if kind == EventType.EPIC_STARTED:
                state.epic = EpicState(
                    epic_id=epic_id, name=data.get("name"), status=EpicStatus.IN_PROGRESS
                )
            elif state.epic is None:
                state.epic = EpicState(
                    epic_id=epic_id, name=data.get("name"), status=EpicStatus.PLANNED
                )

    elif kind in (EventType.EPIC_COMPLETED, EventType.EPIC_FAILED):
        status = EpicStatus.COMPLETED if kind == EventType.EPIC_COMPLETED else EpicStatus.FAILED
        epic_id = _epic_id(data) or (state.epic.epic_id if state.epic else None)
        if epic_id:
            name = data.get("name") or (state.epic.name if state.epic else None)
            state.epic = EpicState(epic_id=epic_id, name=name, status=status)
        if kind == EventType.EPIC_FAILED:
            summary.last_error = _text(data, "error", "reason") or summary.last_error

    elif kind in (EventType.TEST_PASSED, EventType.TEST_FAILED):
        tests = state.tests or SuiteResults()
        if "passed_count" in data or "failed_count" in data:
            tests.passed = int(data.get("passed_count", 0))
            tests.failed = int(data.get("failed_count", 0))
            tests.skipped = int(data.get("skipped_count", tests.skipped))
        elif kind == EventType.TEST_PASSED:
            tests.passed += 1
        else:
            tests.failed += 1
        if data.get("coverage_percent") is not None:
            tests.coverage_percent = float(data["coverage_percent"])
        state.tests = tests
        if kind == EventType.TEST_FAILED:
            summary.last_error = _text(data, "error", "message") or summary.last_error

    elif kind in (EventType.VALIDATION_PASSED, EventType.VALIDATION_FAILED):
        outcome = "passed" if kind == EventType.VALIDATION_PASSED else "failed"
        detail = data.get("message") or data.get("check")
        state.notes.append(f"Validation {outcome}: {detail}" if detail else f"Validation {outcome}")
        if kind == EventType.VALIDATION_FAILED:
            summary.last_error = _text(data, "error", "message") or summary.last_error

    elif kind == EventType.COMMIT_CREATED:
        git = state.git or GitState()
        git.branch = _text(data, "branch") or git.branch
        git.last_commit = _text(data, "commit_sha", "sha", "message")
        git.commits_ahead += 1
        state.git = git

    elif kind == EventType.PR_CREATED:
        git = state.git or GitState()
        git.branch = _text(data, "branch") or git.branch
        git.commits_ahead = 0
        state.git = git
        if data.get("pr_number") is not None:
            state.pr_number = int(data["pr_number"])
        state.pr_url = _text(data, "pr_url", "url") or state.pr_url

    elif kind == EventType.PR_MERGED:
        pr_number = data.get("pr_number", state.pr_number)
        state.notes.append(f"PR #{pr_number} merged" if pr_number else "PR merged")

    elif kind in (
        EventType.DEPLOYMENT_STARTED,
        EventType.DEPLOYMENT_COMPLETED,
        EventType.DEPLOYMENT_FAILED,
    ):
        target = data.get("environment") or data.get("target") or "deployment"
        state.notes.append(f"{kind.value.replace('_', ' ')} ({target})")
        if kind == EventType.DEPLOYMENT_FAILED:
            summary.last_error = _text(data, "error") or summary.last_error

    elif kind == EventType.CONTEXT_WINDOW_UPDATED:
        percent = data.get("context_percent", data.get("percent"))
        if percent is not None:
            summary.context_percent = int(percent)

    elif kind in (EventType.FEATURE_REQUESTED, EventType.TASK_SPAWNED):
        task = data.get("task") or data.get("feature") or data.get("description")
        if task and task not in state.pending_tasks:
            state.pending_tasks.append(str(task))
