"""Data models for session continuity.

Uses Pydantic for schema-enforced records and snapshots.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

# --- Instances ---


class InstanceType(str, Enum):
    """Kind of session being tracked."""

    WORKER = "worker"  # project-scoped
    COORDINATOR = "coordinator"  # meta-scoped

    @property
    def code(self) -> str:
        """Short code embedded in instance IDs."""
        return _TYPE_CODES[self]

    @classmethod
    def from_code(cls, code: str) -> "InstanceType":
        for member, member_code in _TYPE_CODES.items():
            if member_code == code.upper():
                return member
        raise ValueError(f"Unknown instance type code: {code}")


_TYPE_CODES = {
    InstanceType.WORKER: "PS",
    InstanceType.COORDINATOR: "MS",
}


class InstanceStatus(str, Enum):
    """Derived status of an instance."""

    ACTIVE = "active"
    STALE = "stale"
    CLOSED = "closed"


class Instance(BaseModel):
    """One tracked worker or coordinator session."""

    instance_id: str  # e.g., "odin-PS-8f4a2b"
    project: str
    type: InstanceType
    status: InstanceStatus = InstanceStatus.ACTIVE
    context_percent: int = Field(default=0, ge=0, le=100)
    current_epic: str | None = None
    project_path: str | None = None
    host_machine: str | None = None
    created_at: datetime
    last_heartbeat: datetime
    closed_at: datetime | None = None

    @property
    def hash_segment(self) -> str:
        return self.instance_id.rsplit("-", 1)[-1]

    def heartbeat_age_seconds(self, now: datetime) -> float:
        return max(0.0, (now - self.last_heartbeat).total_seconds())

    def work_snapshot(self) -> "WorkSnapshot":
        """Work snapshot built from registry fields alone."""
        return WorkSnapshot(
            project=self.project,
            project_path=self.project_path,
            epic=EpicState(epic_id=self.current_epic) if self.current_epic else None,
        )


class HeartbeatResult(BaseModel):
    """Outcome of a heartbeat.

    stale and age_seconds describe the gap this heartbeat closed: stale is
    True when the instance had gone stale before it arrived.
    """

    instance: Instance
    stale: bool
    age_seconds: float
    auto_checkpoint_id: str | None = None


# --- Events ---


class EventCategory(str, Enum):
    INSTANCE = "instance"
    EPIC = "epic"
    TESTING = "testing"
    GIT = "git"
    DEPLOYMENT = "deployment"
    WORK_STATE = "work_state"
    PLANNING = "planning"


class EventType(str, Enum):
    """Types of events in the per-instance event log."""

    # Instance lifecycle
    INSTANCE_REGISTERED = "instance_registered"
    INSTANCE_HEARTBEAT = "instance_heartbeat"
    INSTANCE_STALE = "instance_stale"

    # Epic lifecycle
    EPIC_PLANNED = "epic_planned"
    EPIC_STARTED = "epic_started"
    EPIC_COMPLETED = "epic_completed"
    EPIC_FAILED = "epic_failed"

    # Testing
    TEST_STARTED = "test_started"
    TEST_PASSED = "test_passed"
    TEST_FAILED = "test_failed"
    VALIDATION_PASSED = "validation_passed"
    VALIDATION_FAILED = "validation_failed"

    # Git
    COMMIT_CREATED = "commit_created"
    PR_CREATED = "pr_created"
    PR_MERGED = "pr_merged"

    # Deployment
    DEPLOYMENT_STARTED = "deployment_started"
    DEPLOYMENT_COMPLETED = "deployment_completed"
    DEPLOYMENT_FAILED = "deployment_failed"

    # Work state
    CONTEXT_WINDOW_UPDATED = "context_window_updated"
    CHECKPOINT_CREATED = "checkpoint_created"
    CHECKPOINT_LOADED = "checkpoint_loaded"

    # Planning
    FEATURE_REQUESTED = "feature_requested"
    TASK_SPAWNED = "task_spawned"

    @property
    def category(self) -> EventCategory:
        return _EVENT_CATEGORIES[self]

    @property
    def is_lifecycle(self) -> bool:
        """Lifecycle events carry no work content."""
        return self.category == EventCategory.INSTANCE


_EVENT_CATEGORIES = {
    EventType.INSTANCE_REGISTERED: EventCategory.INSTANCE,
    EventType.INSTANCE_HEARTBEAT: EventCategory.INSTANCE,
    EventType.INSTANCE_STALE: EventCategory.INSTANCE,
    EventType.EPIC_PLANNED: EventCategory.PLANNING,
    EventType.EPIC_STARTED: EventCategory.EPIC,
    EventType.EPIC_COMPLETED: EventCategory.EPIC,
    EventType.EPIC_FAILED: EventCategory.EPIC,
    EventType.TEST_STARTED: EventCategory.TESTING,
    EventType.TEST_PASSED: EventCategory.TESTING,
    EventType.TEST_FAILED: EventCategory.TESTING,
    EventType.VALIDATION_PASSED: EventCategory.TESTING,
    EventType.VALIDATION_FAILED: EventCategory.TESTING,
    EventType.COMMIT_CREATED: EventCategory.GIT,
    EventType.PR_CREATED: EventCategory.GIT,
    EventType.PR_MERGED: EventCategory.GIT,
    EventType.DEPLOYMENT_STARTED: EventCategory.DEPLOYMENT,
    EventType.DEPLOYMENT_COMPLETED: EventCategory.DEPLOYMENT,
    EventType.DEPLOYMENT_FAILED: EventCategory.DEPLOYMENT,
    EventType.CONTEXT_WINDOW_UPDATED: EventCategory.WORK_STATE,
    EventType.CHECKPOINT_CREATED: EventCategory.WORK_STATE,
    EventType.CHECKPOINT_LOADED: EventCategory.WORK_STATE,
    EventType.FEATURE_REQUESTED: EventCategory.PLANNING,
    EventType.TASK_SPAWNED: EventCategory.PLANNING,
}


class Event(BaseModel):
    """Immutable fact in an instance's history."""

    event_id: str
    instance_id: str
    event_type: EventType
    sequence_num: int = Field(..., ge=1)
    timestamp: datetime
    event_data: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] | None = None


# --- Work state snapshots ---


class EpicStatus(str, Enum):
    PLANNED = "planned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class EpicState(BaseModel):
    model_config = {"validate_assignment": True}

    epic_id: str
    name: str | None = None
    status: EpicStatus = EpicStatus.IN_PROGRESS


class GitState(BaseModel):
    model_config = {"validate_assignment": True}

    branch: str | None = None
    commits_ahead: int = Field(default=0, ge=0)
    staged_files: int = Field(default=0, ge=0)
    changed_files: int = Field(default=0, ge=0)
    last_commit: str | None = None

    @property
    def uncommitted(self) -> int:
        return self.staged_files + self.changed_files


class SuiteResults(BaseModel):
    """Latest known test-suite outcome."""

    model_config = {"validate_assignment": True}

    passed: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    skipped: int = Field(default=0, ge=0)
    coverage_percent: float | None = None

    @property
    def total(self) -> int:
        return self.passed + self.failed


class WorkSnapshot(BaseModel):
    """Structured snapshot of what an instance was doing."""

    model_config = {"validate_assignment": True}

    project: str | None = None
    project_path: str | None = None
    epic: EpicState | None = None
    git: GitState | None = None
    tests: SuiteResults | None = None
    modified_files: list[str] = Field(default_factory=list)
    pr_number: int | None = None
    pr_url: str | None = None
    pending_tasks: list[str] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)


# --- Checkpoints ---


class CheckpointType(str, Enum):
    MANUAL = "manual"
    AUTO = "auto"


class Checkpoint(BaseModel):
    """Point-in-time snapshot of an instance's work state."""

    checkpoint_id: str
    instance_id: str
    checkpoint_type: CheckpointType
    sequence_num: int = Field(default=0, ge=0)  # event-log position at capture
    context_window_percent: int | None = Field(default=None, ge=0, le=100)
    work_state: WorkSnapshot
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


class RetentionPolicy(BaseModel):
    """Bounds for checkpoint cleanup. Unset bounds are not applied."""

    max_age_days: float | None = Field(default=30, gt=0)
    max_per_instance: int | None = Field(default=None, ge=1)


# --- Command log ---


class CommandType(str, Enum):
    SPAWN = "spawn"
    COMMIT = "commit"
    PUSH = "push"
    PR = "pr"
    DEPLOY = "deploy"
    TEST = "test"
    GIT = "git"
    TOOL = "tool"
    EXPLICIT = "explicit"
    OTHER = "other"


class CommandSource(str, Enum):
    EXPLICIT = "explicit"
    INFERRED = "inferred"


class CommandInput(BaseModel):
    """Caller-supplied fields for a command log entry."""

    command_type: CommandType
    action: str
    tool_name: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    result: dict[str, Any] | None = None
    success: bool = True
    execution_time_ms: int | None = Field(default=None, ge=0)
    tags: list[str] = Field(default_factory=list)
    source: CommandSource = CommandSource.EXPLICIT


class CommandLogEntry(CommandInput):
    """Stored command log entry."""

    id: int
    instance_id: str
    created_at: datetime


class CommandFilters(BaseModel):
    instance_id: str | None = None
    command_type: CommandType | None = None
    action: str | None = None
    tool_name: str | None = None
    text: str | None = None
    tags: list[str] = Field(default_factory=list)
    since: datetime | None = None
    until: datetime | None = None
    success_only: bool = False
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)


class CommandStats(BaseModel):
    total: int
    successful: int
    failed: int
    by_type: dict[str, int] = Field(default_factory=dict)
    tools_used: list[str] = Field(default_factory=list)


# --- Reconstruction ---


class ReconstructionSource(str, Enum):
    CHECKPOINT = "checkpoint"
    EVENTS = "events"
    COMMANDS = "commands"
    BASIC = "basic"


class CheckpointWorkState(WorkSnapshot):
    source: Literal["checkpoint"] = "checkpoint"
    checkpoint_id: str
    checkpoint_type: CheckpointType


class EventWorkState(WorkSnapshot):
    source: Literal["events"] = "events"
    event_count: int = 0
    last_sequence_num: int = 0
    last_error: str | None = None
    context_percent: int | None = None


class CommandWorkState(WorkSnapshot):
    source: Literal["commands"] = "commands"
    command_count: int = 0
    failed_commands: int = 0


class BasicWorkState(WorkSnapshot):
    source: Literal["basic"] = "basic"
    context_percent: int = 0


WorkState = Annotated[
    CheckpointWorkState | EventWorkState | CommandWorkState | BasicWorkState,
    Field(discriminator="source"),
]


class ValidationIssueKind(str, Enum):
    PROJECT_MISSING = "project_missing"
    BRANCH_MISSING = "branch_missing"
    FILES_MISSING = "files_missing"


class ValidationIssue(BaseModel):
    kind: ValidationIssueKind
    detail: str


class ConfidenceLevel(str, Enum):
    HIGH = "high"
    MODERATE = "moderate"
    LOW = "low"
    VERY_LOW = "very-low"

    @property
    def guidance(self) -> str:
        return _LEVEL_GUIDANCE[self]


_LEVEL_GUIDANCE = {
    ConfidenceLevel.HIGH: "safe to auto-resume",
    ConfidenceLevel.MODERATE: "verify manually",
    ConfidenceLevel.LOW: "manual verification required",
    ConfidenceLevel.VERY_LOW: "risky, consider starting fresh",
}


class ConfidenceAssessment(BaseModel):
    score: int = Field(..., ge=0, le=100)
    level: ConfidenceLevel
    reason: str
    warnings: list[str] = Field(default_factory=list)


class ReconstructedState(BaseModel):
    """Rebuilt picture of an instance's work. Derived, never persisted."""

    instance_id: str
    source: ReconstructionSource
    age_minutes: int = Field(..., ge=0)
    work_state: WorkState
    recent_actions: list[str] = Field(default_factory=list)
    validation_issues: list[ValidationIssue] = Field(default_factory=list)
    confidence: ConfidenceAssessment | None = None
