"""SQLite storage handle shared by every continuity store.

One database file is the authoritative store for all instances. Components
receive a Database explicitly; nothing here is a module-level singleton.
"""

import json
import logging
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class _SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime, Pydantic models and Paths."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return format_timestamp(obj)
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


def safe_json_dumps(obj: Any) -> str:
    """Serialize object to JSON string, handling datetime and Pydantic models."""
    return json.dumps(obj, cls=_SafeJSONEncoder)


def json_loads_or(value: str | None, default: Any) -> Any:
    return json.loads(value) if value else default


def format_timestamp(moment: datetime) -> str:
    """Fixed-width UTC ISO timestamp, so stored values sort lexically."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime:
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment


class Database:
    """SQLite database holding instances, events, checkpoints and commands."""

    SCHEMA = """
    -- Instance registry. Only 'active' and 'closed' are stored;
    -- 'stale' is derived from last_heartbeat at read time.
    CREATE TABLE IF NOT EXISTS instances (
        instance_id TEXT PRIMARY KEY,
        project TEXT NOT NULL,
        instance_type TEXT NOT NULL CHECK(instance_type IN ('worker', 'coordinator')),
        status TEXT NOT NULL CHECK(status IN ('active', 'closed')),
        context_percent INTEGER NOT NULL DEFAULT 0,
        current_epic TEXT,
        project_path TEXT,
        host_machine TEXT,
        created_at TEXT NOT NULL,
        last_heartbeat TEXT NOT NULL,
        closed_at TEXT
    );

    -- Event log (append-only, one total order per instance)
    CREATE TABLE IF NOT EXISTS events (
        event_id TEXT PRIMARY KEY,
        instance_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        sequence_num INTEGER NOT NULL,
        timestamp TEXT NOT NULL,
        event_data JSON NOT NULL,
        metadata JSON,
        UNIQUE(instance_id, sequence_num),
        FOREIGN KEY (instance_id) REFERENCES instances(instance_id)
    );

    -- Checkpoints (immutable snapshots)
    CREATE TABLE IF NOT EXISTS checkpoints (
        checkpoint_id TEXT PRIMARY KEY,
        instance_id TEXT NOT NULL,
        checkpoint_type TEXT NOT NULL CHECK(checkpoint_type IN ('manual', 'auto')),
        sequence_num INTEGER NOT NULL DEFAULT 0,
        context_window_percent INTEGER,
        work_state JSON NOT NULL,
        metadata JSON,
        timestamp TEXT NOT NULL,
        FOREIGN KEY (instance_id) REFERENCES instances(instance_id)
    );

    -- Command log (append-only)
    CREATE TABLE IF NOT EXISTS command_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        instance_id TEXT NOT NULL,
        command_type TEXT NOT NULL,
        action TEXT NOT NULL,
        tool_name TEXT,
        parameters JSON,
        result JSON,
        success BOOLEAN NOT NULL,
        execution_time_ms INTEGER,
        tags JSON,
        source TEXT NOT NULL CHECK(source IN ('explicit', 'inferred')),
        created_at TEXT NOT NULL,
        FOREIGN KEY (instance_id) REFERENCES instances(instance_id)
    );

    CREATE INDEX IF NOT EXISTS idx_instances_project ON instances(project, last_heartbeat);
    CREATE INDEX IF NOT EXISTS idx_instances_heartbeat ON instances(last_heartbeat);
    CREATE INDEX IF NOT EXISTS idx_events_instance_seq ON events(instance_id, sequence_num);
    CREATE INDEX IF NOT EXISTS idx_events_type_time ON events(event_type, timestamp);
    CREATE INDEX IF NOT EXISTS idx_checkpoints_instance ON checkpoints(instance_id, timestamp);
    CREATE INDEX IF NOT EXISTS idx_command_log_instance ON command_log(instance_id, created_at);
    CREATE INDEX IF NOT EXISTS idx_command_log_type ON command_log(command_type);
    """

    def __init__(self, db_path: str | Path = ".continuity/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema and enable WAL mode for better concurrency."""
        with self._connect() as conn:
            # WAL lets readers proceed while one instance process writes
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Uses a 30-second busy timeout to handle concurrent access gracefully
        instead of immediately failing with "database is locked".
        """
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 30000")
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            if "database is locked" in str(e):
                raise sqlite3.OperationalError(
                    f"Database locked after 30s timeout. Check for long-running transactions: {e}"
                ) from e
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Write transaction that takes the database write lock up front.

        BEGIN IMMEDIATE serializes writers, so a read made inside the block
        cannot be invalidated by another writer before the block commits.
        """
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            yield conn

    def instance_exists(self, conn: sqlite3.Connection, instance_id: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM instances WHERE instance_id = ?", (instance_id,)
        ).fetchone()
        return row is not None

    def table_counts(self) -> dict[str, int]:
        """Row counts per table, for status displays."""
        with self._connect() as conn:
            return {
                table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for table in ("instances", "events", "checkpoints", "command_log")
            }
