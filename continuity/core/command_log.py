"""Append-only log of commands and tool calls issued by instances.

Parameters and results are sanitized before they are written: values under
secret-looking keys and secret-looking substrings are replaced with
[REDACTED].
"""

from __future__ import annotations

import logging
import re
import sqlite3
import time
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from continuity.core.clock import Clock, SystemClock
from continuity.core.errors import ContinuityError, NotFoundError
from continuity.core.models import (
    CommandFilters,
    CommandInput,
    CommandLogEntry,
    CommandSource,
    CommandStats,
    CommandType,
)
from continuity.core.state import (
    Database,
    format_timestamp,
    json_loads_or,
    parse_timestamp,
    safe_json_dumps,
)

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"

_SENSITIVE_KEYWORDS = (
    "password",
    "passwd",
    "token",
    "secret",
    "api_key",
    "apikey",
    "private_key",
    "authorization",
    "bearer",
    "credential",
    "oauth",
    "jwt",
)

_SECRET_PATTERNS = [
    re.compile(r"(api_key|password|token)\s*=\s*[\"']?[^\s\"']+[\"']?", re.IGNORECASE),
    re.compile(r"(eyJ[a-zA-Z0-9_-]+\.){2}[a-zA-Z0-9_-]+"),
    re.compile(r"AKIA[0-9A-Z]{16}"),
    re.compile(r"[a-z][a-z0-9+.-]*://[^:/\s]+:[^@\s]+@", re.IGNORECASE),
    re.compile(r"Bearer\s+[a-zA-Z0-9._-]+"),
]


def is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(keyword in lowered for keyword in _SENSITIVE_KEYWORDS)


def sanitize(data: Any) -> Any:
    """Recursively redact secrets in dicts, lists and strings."""
    if isinstance(data, str):
        for pattern in _SECRET_PATTERNS:
            data = pattern.sub(REDACTED, data)
        return data
    if isinstance(data, dict):
        return {
            key: REDACTED if is_sensitive_key(str(key)) else sanitize(value)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [sanitize(item) for item in data]
    return data


@dataclass
class TrackedCall:
    """Handle yielded by CommandLog.track. Set result before the block ends."""

    result: Any = None
    entry: CommandLogEntry | None = None


class CommandLog:
    """Command log backed by the shared database."""

    def __init__(self, db: Database, clock: Clock | None = None):
        self.db = db
        self.clock = clock or SystemClock()

    def log(self, instance_id: str, entry: CommandInput | dict[str, Any]) -> CommandLogEntry:
        """Append a sanitized entry.

        Raises:
            NotFoundError: instance_id is not registered
        """
        if isinstance(entry, dict):
            entry = CommandInput.model_validate(entry)
        parameters = sanitize(entry.parameters)
        result = sanitize(entry.result) if entry.result is not None else None

        with self.db._connect() as conn:
            if not self.db.instance_exists(conn, instance_id):
                raise NotFoundError("Instance", instance_id)
            cursor = conn.execute(
                """
                INSERT INTO command_log (instance_id, command_type, action, tool_name,
                                         parameters, result, success, execution_time_ms,
                                         tags, source, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    instance_id,
                    entry.command_type.value,
                    entry.action,
                    entry.tool_name,
                    safe_json_dumps(parameters),
                    safe_json_dumps(result) if result is not None else None,
                    entry.success,
                    entry.execution_time_ms,
                    safe_json_dumps(entry.tags),
                    entry.source.value,
                    format_timestamp(self.clock.now()),
                ),
            )
            command_id = cursor.lastrowid

        logger.debug(f"Logged {entry.command_type.value} command {command_id} for {instance_id}")
        return self.get(command_id)  # type: ignore[arg-type,return-value]

    @contextmanager
    def track(
        self,
        instance_id: str,
        tool_name: str,
        parameters: dict[str, Any] | None = None,
        command_type: CommandType = CommandType.TOOL,
    ) -> Generator[TrackedCall, None, None]:
        """Time a tool call and record it as an inferred entry.

        Exceptions from the wrapped block are recorded as failures and
        re-raised. A failure to write the entry is only logged; it never
        affects the tool call.

        Example:
            with command_log.track(instance_id, "read_file", {"path": p}) as call:
                call.result = {"lines": len(read(p))}
        """
        call = TrackedCall()
        started = time.monotonic()
        try:
            yield call
        except Exception as e:
            self._record_call(instance_id, tool_name, parameters, command_type, call, started, e)
            raise
        self._record_call(instance_id, tool_name, parameters, command_type, call, started, None)

    def _record_call(
        self,
        instance_id: str,
        tool_name: str,
        parameters: dict[str, Any] | None,
        command_type: CommandType,
        call: TrackedCall,
        started: float,
        error: Exception | None,
    ) -> None:
        elapsed_ms = int((time.monotonic() - started) * 1000)
        if error is not None:
            result = {"error": str(error), "error_type": type(error).__name__}
        elif call.result is None or isinstance(call.result, dict):
            result = call.result
        else:
            result = {"value": call.result}

        try:
            call.entry = self.log(
                instance_id,
                CommandInput(
                    command_type=command_type,
                    action=tool_name,
                    tool_name=tool_name,
                    parameters=parameters or {},
                    result=result,
                    success=error is None,
                    execution_time_ms=elapsed_ms,
                    source=CommandSource.INFERRED,
                ),
            )
        except (ContinuityError, ValueError, TypeError, sqlite3.Error) as log_error:
            logger.warning(f"Could not log tool call {tool_name} for {instance_id}: {log_error}")

    def _row_to_entry(self, row: sqlite3.Row) -> CommandLogEntry:
        return CommandLogEntry(
            id=row["id"],
            instance_id=row["instance_id"],
            command_type=CommandType(row["command_type"]),
            action=row["action"],
            tool_name=row["tool_name"],
            parameters=json_loads_or(row["parameters"], {}),
            result=json_loads_or(row["result"], None),
            success=bool(row["success"]),
            execution_time_ms=row["execution_time_ms"],
            tags=json_loads_or(row["tags"], []),
            source=CommandSource(row["source"]),
            created_at=parse_timestamp(row["created_at"]),
        )

    def get(self, command_id: int) -> CommandLogEntry | None:
        with self.db._connect() as conn:
            row = conn.execute("SELECT * FROM command_log WHERE id = ?", (command_id,)).fetchone()
        return self._row_to_entry(row) if row else None

    def search(self, filters: CommandFilters | None = None) -> list[CommandLogEntry]:
        """Search entries, newest first."""
        filters = filters or CommandFilters()
        query = "SELECT * FROM command_log WHERE 1=1"
        params: list[Any] = []

        if filters.instance_id:
            query += " AND instance_id = ?"
            params.append(filters.instance_id)
        if filters.command_type:
            query += " AND command_type = ?"
            params.append(filters.command_type.value)
        if filters.action:
            query += " AND action = ?"
            params.append(filters.action)
        if filters.tool_name:
            query += " AND tool_name = ?"
            params.append(filters.tool_name)
        if filters.text:
            pattern = f"%{filters.text}%"
            query += (
                " AND (action LIKE ? OR COALESCE(parameters, '') LIKE ?"
                " OR COALESCE(result, '') LIKE ?)"
            )
            params.extend([pattern, pattern, pattern])
        for tag in filters.tags:
            query += " AND EXISTS (SELECT 1 FROM json_each(command_log.tags) WHERE value = ?)"
            params.append(tag)
        if filters.since:
            query += " AND created_at >= ?"
            params.append(format_timestamp(filters.since))
        if filters.until:
            query += " AND created_at <= ?"
            params.append(format_timestamp(filters.until))
        if filters.success_only:
            query += " AND success = 1"

        query += " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
        params.extend([filters.limit, filters.offset])

        with self.db._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def recent(self, instance_id: str, limit: int = 20) -> list[CommandLogEntry]:
        """Most recent entries of one instance, oldest first."""
        entries = self.search(CommandFilters(instance_id=instance_id, limit=limit))
        return list(reversed(entries))

    def stats_for(self, instance_id: str) -> CommandStats:
        with self.db._connect() as conn:
            totals = conn.execute(
                """
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(CASE WHEN success THEN 1 ELSE 0 END), 0) AS successful
                FROM command_log WHERE instance_id = ?
                """,
                (instance_id,),
            ).fetchone()
            by_type = conn.execute(
                """
                SELECT command_type, COUNT(*) AS n FROM command_log
                WHERE instance_id = ? GROUP BY command_type ORDER BY command_type
                """,
                (instance_id,),
            ).fetchall()
            tools = conn.execute(
                """
                SELECT DISTINCT tool_name FROM command_log
                WHERE instance_id = ? AND tool_name IS NOT NULL ORDER BY tool_name
                """,
                (instance_id,),
            ).fetchall()

        return CommandStats(
            total=totals["total"],
            successful=totals["successful"],
            failed=totals["total"] - totals["successful"],
            by_type={row["command_type"]: row["n"] for row in by_type},
            tools_used=[row["tool_name"] for row in tools],
        )
