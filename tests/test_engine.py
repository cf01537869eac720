"""Tests for the resume engine.

Tests cover:
- End-to-end resume scenarios (checkpoint, events, basic fallback)
- Disambiguation and user choice
- Refusing to resume active or closed instances
- The resume phase state machine
- Instance details payload
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from continuity.config import ContinuityConfig
from continuity.core.errors import ActiveInstanceError, InvalidChoiceError, NotFoundError
from continuity.core.models import (
    CommandInput,
    CommandType,
    ConfidenceLevel,
    EpicState,
    EventType,
    GitState,
    InstanceStatus,
    ReconstructionSource,
    WorkSnapshot,
)
from continuity.resume.engine import ResumeAttempt, ResumeEngine, ResumePhase, Resumed
from continuity.resume.resolver import Disambiguation, NotFound, ResolutionStrategy


@pytest.fixture
def build_engine(registry, events, checkpoints, commands, probe, config):
    """Factory for engines over the shared stores, optionally with another config."""

    def _build(engine_config: ContinuityConfig | None = None) -> ResumeEngine:
        return ResumeEngine(
            registry, events, checkpoints, commands, probe=probe, config=engine_config or config
        )

    return _build


@pytest.fixture
def engine(build_engine) -> ResumeEngine:
    return build_engine()


# =============================================================================
# Scenario Tests
# =============================================================================


class TestScenarios:
    """End-to-end resume behavior."""

    def test_stale_instance_with_recent_checkpoint(
        self, engine, registry, checkpoints, add_instance, clock
    ):
        """Heartbeat at T, checkpoint at T-3min, resume by hash at T+121s: high confidence."""
        heartbeat_at = clock.now()
        clock.set(heartbeat_at - timedelta(minutes=3))
        add_instance("odin-PS-8f4a2b", last_heartbeat=clock.now())
        checkpoints.create(
            "odin-PS-8f4a2b",
            "manual",
            40,
            WorkSnapshot(epic=EpicState(epic_id="auth-jwt")),
        )
        clock.set(heartbeat_at)
        registry.heartbeat("odin-PS-8f4a2b", 45)
        clock.advance(seconds=121)

        assert [i.instance_id for i in engine.list_stale()] == ["odin-PS-8f4a2b"]

        result = engine.resume("8f4a2b")
        assert isinstance(result, Resumed)
        assert result.strategy == ResolutionStrategy.PARTIAL
        assert result.reconstruction.source == ReconstructionSource.CHECKPOINT
        assert result.confidence.score == 90
        assert result.confidence.level == ConfidenceLevel.HIGH
        assert result.summary.next_steps[0] == "Continue work on auth-jwt"
        assert engine.last_attempt.phase == ResumePhase.READY

    def test_two_stale_instances_disambiguate(self, engine, add_instance, clock):
        start = clock.now()
        add_instance("odin-PS-8f4a2b", last_heartbeat=start)
        add_instance("odin-PS-3c7d1e", last_heartbeat=start + timedelta(minutes=1))
        clock.advance(minutes=10)

        result = engine.resume("odin")
        assert isinstance(result, Disambiguation)
        assert [c.instance_id for c in result.candidates] == ["odin-PS-3c7d1e", "odin-PS-8f4a2b"]
        assert engine.last_attempt.phase == ResumePhase.DISAMBIGUATING

    def test_active_instance_refused(self, engine, add_instance, clock):
        add_instance("odin-PS-8f4a2b", last_heartbeat=clock.now())
        clock.advance(seconds=60)
        with pytest.raises(ActiveInstanceError):
            engine.resume("odin-PS-8f4a2b")

    def test_events_only(self, engine, events, add_instance, clock):
        """40 events over 20 minutes and no checkpoint: events source, score 85."""
        add_instance("odin-PS-8f4a2b", last_heartbeat=clock.now())
        events.append("odin-PS-8f4a2b", EventType.EPIC_STARTED, {"epic_id": "auth-jwt"})
        for n in range(39):
            clock.advance(seconds=30)
            events.append("odin-PS-8f4a2b", EventType.TEST_PASSED, {"name": f"t{n}"})
        clock.advance(minutes=3)

        result = engine.resume("odin-PS-8f4a2b")
        assert result.reconstruction.source == ReconstructionSource.EVENTS
        assert result.reconstruction.work_state.event_count == 40
        assert result.confidence.score == 85
        assert result.confidence.level == ConfidenceLevel.MODERATE

    def test_registry_only(self, engine, add_instance, clock):
        add_instance("odin-PS-8f4a2b", last_heartbeat=clock.now())
        clock.advance(minutes=5)

        result = engine.resume()
        assert result.strategy == ResolutionStrategy.NEWEST
        assert result.reconstruction.source == ReconstructionSource.BASIC
        assert result.confidence.score == 40
        assert result.confidence.level == ConfidenceLevel.VERY_LOW

    def test_partial_base_score_override(self, build_engine, events, add_instance, clock):
        engine = build_engine(
            ContinuityConfig.from_dict({"confidence": {"base_scores": {"events": 80}}})
        )
        add_instance("odin-PS-8f4a2b", last_heartbeat=clock.now())
        add_instance("odin-PS-3c7d1e", last_heartbeat=clock.now())
        events.append("odin-PS-3c7d1e", EventType.EPIC_STARTED, {"epic_id": "auth-jwt"})
        clock.advance(minutes=5)

        basic = engine.resume("odin-PS-8f4a2b")
        assert basic.reconstruction.source == ReconstructionSource.BASIC
        assert basic.confidence.score == 40

        from_events = engine.resume("odin-PS-3c7d1e")
        assert from_events.reconstruction.source == ReconstructionSource.EVENTS
        assert from_events.confidence.score == 80

    def test_unreadable_checkpoint_falls_back_to_events(
        self, engine, events, checkpoints, add_instance, clock, test_db
    ):
        add_instance("odin-PS-8f4a2b", last_heartbeat=clock.now())
        events.append("odin-PS-8f4a2b", EventType.EPIC_STARTED, {"epic_id": "auth-jwt"})
        created = checkpoints.create("odin-PS-8f4a2b", "manual", 30, WorkSnapshot())
        with test_db._connect() as conn:
            conn.execute(
                "UPDATE checkpoints SET work_state = ? WHERE checkpoint_id = ?",
                ('{"tests": 5}', created.checkpoint_id),
            )
        clock.advance(minutes=3)

        result = engine.resume("odin-PS-8f4a2b")
        assert isinstance(result, Resumed)
        assert result.reconstruction.source == ReconstructionSource.EVENTS
        assert result.summary.checkpoint is None

        details = engine.instance_details("odin-PS-8f4a2b")
        assert details.checkpoint is None
        assert details.recovery_instructions is None


# =============================================================================
# Choice and Failure Tests
# =============================================================================


class TestChoices:
    """Tests for resolving ambiguity with a choice."""

    @pytest.fixture
    def two_stale(self, add_instance, clock):
        start = clock.now()
        add_instance("odin-PS-8f4a2b", last_heartbeat=start)
        add_instance("odin-PS-3c7d1e", last_heartbeat=start + timedelta(minutes=1))
        clock.advance(minutes=10)

    def test_choice_picks_candidate(self, engine, two_stale):
        result = engine.resume("odin", choice=2)
        assert isinstance(result, Resumed)
        assert result.instance_id == "odin-PS-8f4a2b"
        assert result.strategy is None

    @pytest.mark.parametrize("choice", [0, 3, -1])
    def test_out_of_range_choice(self, engine, two_stale, choice):
        with pytest.raises(InvalidChoiceError) as exc:
            engine.resume("odin", choice=choice)
        assert "between 1 and 2" in str(exc.value)

    def test_choice_ignored_for_unique_match(self, engine, two_stale):
        result = engine.resume("8f4a2b", choice=2)
        assert result.instance_id == "odin-PS-8f4a2b"

    def test_not_found(self, engine, two_stale):
        result = engine.resume("loki")
        assert isinstance(result, NotFound)
        assert engine.last_attempt.phase == ResumePhase.NOT_FOUND

    def test_revived_instance_refused(self, engine, registry, two_stale):
        """Status is re-read on every resume; a fresh heartbeat blocks it."""
        registry.heartbeat("odin-PS-8f4a2b", 30)
        with pytest.raises(ActiveInstanceError):
            engine.resume("odin-PS-8f4a2b")

    def test_closed_between_resolve_and_reconstruct(
        self, engine, registry, two_stale, monkeypatch
    ):
        original = engine.resolver.resolve

        def resolve_then_close(hint=None):
            result = original(hint)
            registry.close("odin-PS-3c7d1e")
            return result

        monkeypatch.setattr(engine.resolver, "resolve", resolve_then_close)
        with pytest.raises(NotFoundError):
            engine.resume("3c7d1e")


# =============================================================================
# Handoff Tests
# =============================================================================


class TestHandoff:
    """Tests for the summary and handoff document."""

    def test_handoff_document(self, engine, events, commands, add_instance, clock, probe):
        add_instance(
            "odin-PS-8f4a2b",
            last_heartbeat=clock.now(),
            project_path="/work/odin",
            current_epic="auth-jwt",
        )
        probe.directories.add("/work/odin")
        events.append("odin-PS-8f4a2b", EventType.EPIC_STARTED, {"epic_id": "auth-jwt"})
        events.append(
            "odin-PS-8f4a2b", EventType.COMMIT_CREATED, {"branch": "feature/auth", "sha": "a1"}
        )
        events.append(
            "odin-PS-8f4a2b", EventType.TEST_FAILED, {"error": "test_login failed"}
        )
        clock.advance(minutes=4)

        result = engine.resume("odin-PS-8f4a2b")
        doc = result.handoff_document

        assert doc.startswith("# Resume Handoff: odin-PS-8f4a2b")
        assert "**Reconstructed From**: events (age: 4 min)" in doc
        assert "**Epic**: auth-jwt" in doc
        assert "**Branch**: feature/auth" in doc
        assert "## Last Error" in doc
        assert "test_login failed" in doc
        assert "## Warnings" in doc
        assert "Git branch not found: feature/auth" in doc
        assert "1. Continue work on auth-jwt" in doc
        assert "Push 1 unpushed commit(s): git push origin feature/auth" in doc
        assert doc.rstrip().endswith("The instance stays stale until its next heartbeat.")

        assert result.summary.last_error == "test_login failed"
        assert result.warnings == ["Git branch not found: feature/auth"]
        assert result.confidence.score == 80

    def test_resume_does_not_change_status(self, engine, registry, add_instance, clock):
        add_instance("odin-PS-8f4a2b", last_heartbeat=clock.now())
        clock.advance(minutes=5)
        engine.resume("odin-PS-8f4a2b")
        assert registry.require("odin-PS-8f4a2b").status == InstanceStatus.STALE

    def test_summary_includes_latest_checkpoint(
        self, engine, checkpoints, add_instance, clock
    ):
        add_instance("odin-PS-8f4a2b", last_heartbeat=clock.now())
        created = checkpoints.create(
            "odin-PS-8f4a2b",
            "manual",
            50,
            WorkSnapshot(git=GitState(branch="main", changed_files=2)),
        )
        clock.advance(minutes=3)

        result = engine.resume("odin-PS-8f4a2b")
        assert result.summary.checkpoint.checkpoint_id == created.checkpoint_id
        assert f"**ID**: {created.checkpoint_id} (manual)" in result.handoff_document
        assert any(step.startswith("Commit 2 uncommitted") for step in result.summary.next_steps)


# =============================================================================
# State Machine Tests
# =============================================================================


class TestResumeAttempt:
    """Tests for the resume phase tracker."""

    def test_happy_path(self):
        attempt = ResumeAttempt()
        for phase in (
            ResumePhase.RESOLVING,
            ResumePhase.RECONSTRUCTING,
            ResumePhase.SCORING,
            ResumePhase.READY,
        ):
            attempt.advance(phase)
        assert attempt.terminal
        assert attempt.history[0] == ResumePhase.IDLE
        assert attempt.history[-1] == ResumePhase.READY

    def test_illegal_transition(self):
        attempt = ResumeAttempt()
        with pytest.raises(RuntimeError, match="idle -> scoring"):
            attempt.advance(ResumePhase.SCORING)

    def test_terminal_phases_are_final(self):
        attempt = ResumeAttempt()
        attempt.advance(ResumePhase.RESOLVING)
        attempt.advance(ResumePhase.NOT_FOUND)
        assert attempt.terminal
        with pytest.raises(RuntimeError):
            attempt.advance(ResumePhase.RESOLVING)


# =============================================================================
# Details Tests
# =============================================================================


class TestInstanceDetails:
    """Tests for ResumeEngine.instance_details."""

    def test_details_payload(self, engine, checkpoints, commands, events, add_instance, clock):
        add_instance("odin-PS-8f4a2b", last_heartbeat=clock.now())
        events.append("odin-PS-8f4a2b", EventType.EPIC_STARTED, {"epic_id": "auth-jwt"})
        checkpoints.create("odin-PS-8f4a2b", "manual", 30, WorkSnapshot())
        for n in range(12):
            commands.log(
                "odin-PS-8f4a2b",
                CommandInput(command_type=CommandType.TEST, action=f"pytest {n}"),
            )
        clock.advance(minutes=7)

        details = engine.instance_details("8f4a")
        assert details.instance.instance_id == "odin-PS-8f4a2b"
        assert details.age_minutes == 7
        assert details.staleness == "Instance is stale (no heartbeat for 7 minutes)"
        assert details.checkpoint is not None
        assert details.recovery_instructions.startswith("# Recovery Instructions")
        assert len(details.recent_commands) == 10
        assert details.recent_commands[0].action == "pytest 11"
        assert details.command_stats.total == 12
        assert details.event_counts == {"epic_started": 1}

    def test_details_without_checkpoint(self, engine, add_instance):
        add_instance("odin-PS-8f4a2b")
        details = engine.instance_details("odin-PS-8f4a2b")
        assert details.checkpoint is None
        assert details.recovery_instructions is None

    def test_details_unknown(self, engine):
        with pytest.raises(NotFoundError):
            engine.instance_details("ffff")
