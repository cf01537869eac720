"""Instance registry: identity, progress markers and heartbeat time per instance.

Instance IDs have the form {project}-{code}-{hash}, e.g. "odin-PS-8f4a2b".
The hash is the first 6 hex chars of SHA256(time + random + project + type),
about 16 million combinations per project and type.
"""

import hashlib
import logging
import os
import re
import secrets
import socket
import sqlite3
import time
from datetime import datetime

from continuity.core.clock import Clock, SystemClock
from continuity.core.errors import InvalidInstanceIdError, NotFoundError
from continuity.core.models import Instance, InstanceStatus, InstanceType
from continuity.core.state import Database, format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

STALE_THRESHOLD_SECONDS = 120.0

INSTANCE_ID_PATTERN = re.compile(
    r"^(?P<project>[a-z0-9][a-z0-9-]*)-(?P<code>PS|MS)-(?P<hash>[0-9a-f]{6})$",
    re.IGNORECASE,
)
_PROJECT_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]*$")
_MAX_PROJECT_LENGTH = 64
_MAX_ID_ATTEMPTS = 5
_MIN_FRAGMENT_LENGTH = 4


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def validate_project(project: str) -> None:
    if not project or not isinstance(project, str):
        raise ValueError("Project must be a non-empty string")
    if len(project) > _MAX_PROJECT_LENGTH:
        raise ValueError(f"Project name too long (max {_MAX_PROJECT_LENGTH} characters)")
    if not _PROJECT_PATTERN.match(project):
        raise ValueError("Project name must contain only lowercase letters, numbers, and hyphens")


def generate_instance_id(project: str, instance_type: InstanceType) -> str:
    """Generate a new instance ID for a project.

    Example:
        generate_instance_id("odin", InstanceType.WORKER)  # "odin-PS-8f4a2b"
    """
    validate_project(project)
    source = f"{time.time_ns()}{secrets.token_hex(16)}{project}{instance_type.code}"
    digest = hashlib.sha256(source.encode("utf-8")).hexdigest()[:6]
    return f"{project}-{instance_type.code}-{digest}"


def validate_instance_id(instance_id: str) -> bool:
    return bool(INSTANCE_ID_PATTERN.match(instance_id or ""))


def parse_instance_id(instance_id: str) -> tuple[str, InstanceType, str]:
    """Split an instance ID into (project, type, hash).

    Projects may contain hyphens, so the ID is split from the right.
    """
    match = INSTANCE_ID_PATTERN.match(instance_id or "")
    if not match:
        raise InvalidInstanceIdError(f"Invalid instance ID format: {instance_id}")
    return (
        match.group("project").lower(),
        InstanceType.from_code(match.group("code")),
        match.group("hash").lower(),
    )


def default_host_machine() -> str:
    return os.environ.get("CONTINUITY_HOST") or socket.gethostname()


class InstanceRegistry:
    """Canonical record of every instance.

    Status is never stored as 'stale': it is derived on every read from
    last_heartbeat and the staleness threshold.
    """

    _COLUMNS = (
        "instance_id, project, instance_type, status, context_percent, current_epic, "
        "project_path, host_machine, created_at, last_heartbeat, closed_at"
    )

    def __init__(
        self,
        db: Database,
        clock: Clock | None = None,
        stale_after_seconds: float = STALE_THRESHOLD_SECONDS,
    ):
        self.db = db
        self.clock = clock or SystemClock()
        self.stale_after_seconds = stale_after_seconds

    # --- Status derivation ---

    def derive_status(self, stored_status: str, last_heartbeat: datetime) -> InstanceStatus:
        if stored_status == InstanceStatus.CLOSED.value:
            return InstanceStatus.CLOSED
        age = (self.clock.now() - last_heartbeat).total_seconds()
        if age < self.stale_after_seconds:
            return InstanceStatus.ACTIVE
        return InstanceStatus.STALE

    def is_stale(self, instance: Instance) -> bool:
        return self.derive_status(instance.status.value, instance.last_heartbeat) == (
            InstanceStatus.STALE
        )

    def _row_to_instance(self, row: sqlite3.Row) -> Instance:
        last_heartbeat = parse_timestamp(row["last_heartbeat"])
        return Instance(
            instance_id=row["instance_id"],
            project=row["project"],
            type=InstanceType(row["instance_type"]),
            status=self.derive_status(row["status"], last_heartbeat),
            context_percent=row["context_percent"],
            current_epic=row["current_epic"],
            project_path=row["project_path"],
            host_machine=row["host_machine"],
            created_at=parse_timestamp(row["created_at"]),
            last_heartbeat=last_heartbeat,
            closed_at=parse_timestamp(row["closed_at"]) if row["closed_at"] else None,
        )

    # --- Writes ---

    def register(
        self,
        project: str,
        instance_type: InstanceType | str,
        project_path: str | None = None,
        host_machine: str | None = None,
    ) -> Instance:
        """Register a new instance (status active, context 0)."""
        instance_type = InstanceType(instance_type)
        validate_project(project)
        now = format_timestamp(self.clock.now())
        machine = host_machine or default_host_machine()

        for attempt in range(1, _MAX_ID_ATTEMPTS + 1):
            instance_id = generate_instance_id(project, instance_type)
            try:
                with self.db._connect() as conn:
                    conn.execute(
                        f"""
                        INSERT INTO instances ({self._COLUMNS})
                        VALUES (?, ?, ?, 'active', 0, NULL, ?, ?, ?, ?, NULL)
                        """,
                        (
                            instance_id,
                            project,
                            instance_type.value,
                            project_path,
                            machine,
                            now,
                            now,
                        ),
                    )
                break
            except sqlite3.IntegrityError:
                logger.warning(
                    f"Instance ID collision on {instance_id} (attempt {attempt}/{_MAX_ID_ATTEMPTS})"
                )
        else:
            raise RuntimeError(
                f"Could not allocate a unique instance ID for project '{project}' "
                f"after {_MAX_ID_ATTEMPTS} attempts"
            )

        logger.info(f"Registered instance {instance_id} ({instance_type.value}) on {machine}")
        return self.require(instance_id)

    def heartbeat(
        self,
        instance_id: str,
        context_percent: int,
        current_epic: str | None = None,
    ) -> Instance:
        """Record a heartbeat. current_epic=None keeps the previous epic."""
        if isinstance(context_percent, bool) or not isinstance(context_percent, int):
            raise ValueError("context_percent must be an integer between 0 and 100")
        if not 0 <= context_percent <= 100:
            raise ValueError("context_percent must be an integer between 0 and 100")

        with self.db._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE instances
                SET context_percent = ?,
                    current_epic = COALESCE(?, current_epic),
                    last_heartbeat = ?
                WHERE instance_id = ?
                """,
                (
                    context_percent,
                    current_epic,
                    format_timestamp(self.clock.now()),
                    instance_id,
                ),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("Instance", instance_id)

        return self.require(instance_id)

    def close(self, instance_id: str) -> Instance:
        """Close an instance permanently. Closing twice is a no-op."""
        with self.db._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE instances SET status = 'closed', closed_at = ?
                WHERE instance_id = ? AND status != 'closed'
                """,
                (format_timestamp(self.clock.now()), instance_id),
            )
            if cursor.rowcount == 0 and not self.db.instance_exists(conn, instance_id):
                raise NotFoundError("Instance", instance_id)
            if cursor.rowcount:
                logger.info(f"Closed instance {instance_id}")

        return self.require(instance_id)

    # --- Reads ---

    def get(self, instance_id: str) -> Instance | None:
        """Exact (case-insensitive) lookup. Always reads the store."""
        with self.db._connect() as conn:
            row = conn.execute(
                f"SELECT {self._COLUMNS} FROM instances WHERE LOWER(instance_id) = LOWER(?)",
                (instance_id,),
            ).fetchone()
        return self._row_to_instance(row) if row else None

    def require(self, instance_id: str) -> Instance:
        instance = self.get(instance_id)
        if instance is None:
            raise NotFoundError("Instance", instance_id)
        return instance

    def get_details(self, id_or_fragment: str) -> Instance | None:
        """Look up by full ID, unique ID prefix, or unique hash fragment."""
        hint = (id_or_fragment or "").strip()
        if not hint:
            return None

        exact = self.get(hint)
        if exact is not None:
            return exact

        pattern = _escape_like(hint)

        with self.db._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {self._COLUMNS} FROM instances
                WHERE LOWER(instance_id) LIKE LOWER(?) || '%' ESCAPE '\\'
                LIMIT 2
                """,
                (pattern,),
            ).fetchall()
        if len(rows) == 1:
            return self._row_to_instance(rows[0])
        if len(rows) > 1:
            return None

        if len(hint) < _MIN_FRAGMENT_LENGTH:
            return None
        matches = self.match_hash_fragment(hint)
        return matches[0] if len(matches) == 1 else None

    def match_hash_fragment(
        self, fragment: str, stale_only: bool = False
    ) -> list[Instance]:
        """Instances whose hash segment starts or ends with fragment, newest first."""
        fragment = fragment.lower()
        candidates = self.list_stale() if stale_only else self.list_instances(include_closed=True)
        matches = [
            instance
            for instance in candidates
            if instance.hash_segment.lower().startswith(fragment)
            or instance.hash_segment.lower().endswith(fragment)
        ]
        return sorted(matches, key=lambda i: i.last_heartbeat, reverse=True)

    def list_instances(
        self, project: str | None = None, include_closed: bool = False
    ) -> list[Instance]:
        """List instances sorted by project, then most recent heartbeat first."""
        query = f"SELECT {self._COLUMNS} FROM instances WHERE 1=1"
        params: list[str] = []
        if project:
            query += " AND LOWER(project) = LOWER(?)"
            params.append(project)
        if not include_closed:
            query += " AND status != 'closed'"
        query += " ORDER BY project ASC, last_heartbeat DESC"

        with self.db._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_instance(row) for row in rows]

    def list_stale(self, project: str | None = None) -> list[Instance]:
        """Stale (resumable) instances, most recent heartbeat first."""
        stale = [
            i for i in self.list_instances(project=project) if i.status == InstanceStatus.STALE
        ]
        return sorted(stale, key=lambda i: i.last_heartbeat, reverse=True)

    def projects(self) -> list[str]:
        with self.db._connect() as conn:
            rows = conn.execute(
                "SELECT DISTINCT project FROM instances ORDER BY project"
            ).fetchall()
        return [row["project"] for row in rows]
