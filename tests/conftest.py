# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the continuity test suite.

This module provides foundational fixtures used across all test modules:
- A temporary database and the stores built on it
- A manual clock, so staleness and ages are deterministic
- A fake filesystem/VCS probe for resume validation
- Helpers that seed instances with fixed IDs and heartbeat times

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    All fixtures in this file are automatically available in test modules.
"""

from __future__ import annotations

import subprocess
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

import pytest

from continuity.config import ContinuityConfig
from continuity.core.checkpoints import CheckpointStore
from continuity.core.clock import ManualClock
from continuity.core.command_log import CommandLog
from continuity.core.errors import ProbeError
from continuity.core.events import EventStore
from continuity.core.models import Instance
from continuity.core.registry import InstanceRegistry
from continuity.core.state import Database, format_timestamp
from continuity.service import ContinuityService

T0 = datetime(2026, 3, 2, 9, 0, 0, tzinfo=UTC)


# =============================================================================
# Clock and Probe Fixtures
# =============================================================================


@pytest.fixture
def clock() -> ManualClock:
    """Manual clock starting at T0 (2026-03-02 09:00 UTC).

    Example:
        def test_goes_stale(registry, clock):
            instance = registry.register("odin", "worker")
            clock.advance(seconds=121)
            assert registry.require(instance.instance_id).status == "stale"
    """
    return ManualClock(T0)


class FakeProbe:
    """In-memory StateProbe.

    directories and branches are what "exists"; fail makes branch checks
    raise ProbeError like an unrunnable git would.
    """

    def __init__(
        self,
        directories: set[str] | None = None,
        branches: set[tuple[str, str]] | None = None,
        fail: bool = False,
    ):
        self.directories = directories or set()
        self.branches = branches or set()
        self.fail = fail
        self.calls: list[tuple[str, ...]] = []

    def directory_exists(self, path: str) -> bool:
        self.calls.append(("directory_exists", path))
        return path in self.directories

    def branch_exists(self, repo: str, branch: str) -> bool:
        self.calls.append(("branch_exists", repo, branch))
        if self.fail:
            raise ProbeError("git unavailable")
        return (repo, branch) in self.branches


@pytest.fixture
def probe() -> FakeProbe:
    return FakeProbe()


# =============================================================================
# Database and Store Fixtures
# =============================================================================


@pytest.fixture
def test_db(tmp_path: Path) -> Database:
    """Create a fresh SQLite database in a temporary directory.

    Returns:
        Initialized Database instance.
    """
    return Database(tmp_path / "test.db")


@pytest.fixture
def registry(test_db: Database, clock: ManualClock) -> InstanceRegistry:
    return InstanceRegistry(test_db, clock)


@pytest.fixture
def events(test_db: Database, clock: ManualClock) -> EventStore:
    return EventStore(test_db, clock)


@pytest.fixture
def checkpoints(test_db: Database, clock: ManualClock) -> CheckpointStore:
    return CheckpointStore(test_db, clock)


@pytest.fixture
def commands(test_db: Database, clock: ManualClock) -> CommandLog:
    return CommandLog(test_db, clock)


@pytest.fixture
def config() -> ContinuityConfig:
    return ContinuityConfig()


@pytest.fixture
def service(
    test_db: Database, config: ContinuityConfig, clock: ManualClock, probe: FakeProbe
) -> ContinuityService:
    """Fully wired service over the temporary database."""
    return ContinuityService(test_db, config=config, clock=clock, probe=probe)


# =============================================================================
# Instance Seeding Fixtures
# =============================================================================


@pytest.fixture
def add_instance(test_db: Database, clock: ManualClock) -> Callable[..., Instance]:
    """Insert an instance with a fixed ID.

    register() always generates a random hash, so tests that need a known
    ID (e.g. "odin-PS-8f4a2b") seed the row directly.

    Example:
        def test_resume(add_instance, clock):
            add_instance("odin-PS-8f4a2b", last_heartbeat=clock.now())
    """

    def _add(
        instance_id: str,
        project: str | None = None,
        last_heartbeat: datetime | None = None,
        current_epic: str | None = None,
        project_path: str | None = None,
        context_percent: int = 0,
        instance_type: str = "worker",
        closed: bool = False,
    ) -> Instance:
        heartbeat_at = last_heartbeat or clock.now()
        with test_db._connect() as conn:
            conn.execute(
                """
                INSERT INTO instances (instance_id, project, instance_type, status,
                                       context_percent, current_epic, project_path,
                                       host_machine, created_at, last_heartbeat, closed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 'test-host', ?, ?, ?)
                """,
                (
                    instance_id,
                    project or instance_id.split("-")[0],
                    instance_type,
                    "closed" if closed else "active",
                    context_percent,
                    current_epic,
                    project_path,
                    format_timestamp(heartbeat_at),
                    format_timestamp(heartbeat_at),
                    format_timestamp(heartbeat_at) if closed else None,
                ),
            )
        return InstanceRegistry(test_db, clock).require(instance_id)

    return _add


# =============================================================================
# Repository Fixtures
# =============================================================================


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Create a git repository with one commit on main and a feature branch.

    WARNING: Runs actual git commands. Skips the test when git is missing.
    """
    repo = tmp_path / "repo"
    repo.mkdir()
    (repo / "README.md").write_text("# Test Project\n")
    (repo / "src").mkdir()
    (repo / "src" / "auth.py").write_text("def login():\n    pass\n")

    try:
        for args in (
            ["git", "init", "-b", "main"],
            ["git", "config", "user.email", "test@example.com"],
            ["git", "config", "user.name", "Test User"],
            ["git", "add", "."],
            ["git", "commit", "-m", "Initial commit"],
            ["git", "branch", "feature/auth"],
        ):
            subprocess.run(args, cwd=repo, check=True, capture_output=True)
    except (OSError, subprocess.CalledProcessError):
        pytest.skip("Git not available")
    return repo


# =============================================================================
# Pytest Configuration
# =============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line("markers", "git: marks tests requiring git")
