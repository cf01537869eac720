"""Tests for heartbeat handling and stale detection."""

from __future__ import annotations

import logging

import pytest

from continuity.core.heartbeat import HeartbeatMonitor, format_staleness_message
from continuity.core.models import CheckpointType, EventType, InstanceStatus


@pytest.fixture
def monitor(registry, events, checkpoints) -> HeartbeatMonitor:
    return HeartbeatMonitor(registry, events, checkpoints, auto_checkpoint_threshold=80)


class TestStalenessMessage:
    """Tests for format_staleness_message."""

    def test_closed(self):
        assert format_staleness_message(9999, "closed") == "Instance is closed"

    def test_stale(self):
        assert (
            format_staleness_message(600, InstanceStatus.STALE)
            == "Instance is stale (no heartbeat for 10 minutes)"
        )

    def test_active_seconds(self):
        assert (
            format_staleness_message(42.7, InstanceStatus.ACTIVE)
            == "Instance active (42s since last heartbeat)"
        )

    def test_active_minutes(self):
        assert (
            format_staleness_message(90, InstanceStatus.ACTIVE)
            == "Instance active (1m since last heartbeat)"
        )


class TestHeartbeat:
    """Tests for HeartbeatMonitor.heartbeat."""

    def test_fresh_heartbeat(self, monitor, registry, clock):
        instance = registry.register("odin", "worker")
        clock.advance(seconds=30)

        result = monitor.heartbeat(instance.instance_id, 20, "auth-jwt")
        assert result.stale is False
        assert result.age_seconds == 30
        assert result.instance.current_epic == "auth-jwt"
        assert result.auto_checkpoint_id is None

    def test_heartbeat_after_gap_reports_stale(self, monitor, registry, clock):
        instance = registry.register("odin", "worker")
        clock.advance(minutes=5)

        result = monitor.heartbeat(instance.instance_id, 20)
        assert result.stale is True
        assert result.age_seconds == 300
        assert result.instance.status == InstanceStatus.ACTIVE

    def test_crossing_threshold_takes_auto_checkpoint(
        self, monitor, registry, events, checkpoints
    ):
        instance = registry.register("odin", "worker", project_path="/work/odin")
        events.append(instance.instance_id, EventType.EPIC_STARTED, {"epic_id": "auth-jwt"})
        monitor.heartbeat(instance.instance_id, 70)

        result = monitor.heartbeat(instance.instance_id, 85)
        assert result.auto_checkpoint_id is not None

        checkpoint = checkpoints.require(result.auto_checkpoint_id)
        assert checkpoint.checkpoint_type == CheckpointType.AUTO
        assert checkpoint.context_window_percent == 85
        assert checkpoint.metadata["trigger"] == "context_threshold"
        assert checkpoint.work_state.epic.epic_id == "auth-jwt"
        assert checkpoint.work_state.project_path == "/work/odin"

    def test_no_second_checkpoint_above_threshold(self, monitor, registry, checkpoints):
        instance = registry.register("odin", "worker")
        monitor.heartbeat(instance.instance_id, 82)
        result = monitor.heartbeat(instance.instance_id, 90)

        assert result.auto_checkpoint_id is None
        assert len(checkpoints.list_for_instance(instance.instance_id)) == 1

    def test_threshold_disabled(self, registry, events, checkpoints):
        monitor = HeartbeatMonitor(
            registry, events, checkpoints, auto_checkpoint_threshold=None
        )
        instance = registry.register("odin", "worker")
        assert monitor.heartbeat(instance.instance_id, 100).auto_checkpoint_id is None

    def test_malformed_event_does_not_block_auto_checkpoint(
        self, monitor, registry, events, checkpoints
    ):
        instance = registry.register("odin", "worker")
        events.append(instance.instance_id, EventType.EPIC_STARTED, {"epic_id": "auth-jwt"})
        events.append(instance.instance_id, EventType.TEST_PASSED, {"passed_count": "many"})
        monitor.heartbeat(instance.instance_id, 70)

        result = monitor.heartbeat(instance.instance_id, 85)
        assert result.auto_checkpoint_id is not None
        checkpoint = checkpoints.require(result.auto_checkpoint_id)
        assert checkpoint.work_state.epic.epic_id == "auth-jwt"
        assert checkpoint.work_state.tests is None

    def test_failed_auto_checkpoint_keeps_heartbeat(
        self, monitor, registry, checkpoints, monkeypatch, caplog
    ):
        instance = registry.register("odin", "worker")
        monitor.heartbeat(instance.instance_id, 70)

        def broken_create(*args, **kwargs):
            raise ValueError("disk full")

        monkeypatch.setattr(checkpoints, "create", broken_create)
        with caplog.at_level(logging.WARNING, logger="continuity.core.heartbeat"):
            result = monitor.heartbeat(instance.instance_id, 85)

        assert result.auto_checkpoint_id is None
        assert result.instance.context_percent == 85
        assert registry.require(instance.instance_id).context_percent == 85
        assert "disk full" in caplog.text


class TestDetectStale:
    """Tests for HeartbeatMonitor.detect_stale."""

    def test_records_one_event_per_gap(self, monitor, events, add_instance, clock):
        add_instance("odin-PS-8f4a2b", last_heartbeat=clock.now())
        clock.advance(minutes=3)

        assert [i.instance_id for i in monitor.detect_stale()] == ["odin-PS-8f4a2b"]
        assert monitor.detect_stale() == []

        marked = events.query(
            instance_id="odin-PS-8f4a2b", event_types=[EventType.INSTANCE_STALE]
        )
        assert len(marked) == 1
        assert marked[0].event_data["age_seconds"] == 180

    def test_new_gap_is_recorded_again(self, monitor, events, add_instance, clock):
        add_instance("odin-PS-8f4a2b", last_heartbeat=clock.now())
        clock.advance(minutes=3)
        monitor.detect_stale()

        monitor.heartbeat("odin-PS-8f4a2b", 10)
        clock.advance(minutes=3)
        assert len(monitor.detect_stale()) == 1

    def test_active_and_closed_ignored(self, monitor, add_instance, clock):
        add_instance("odin-PS-8f4a2b", last_heartbeat=clock.now(), closed=True)
        clock.advance(minutes=3)
        add_instance("odin-PS-3c7d1e", last_heartbeat=clock.now())
        assert monitor.detect_stale() == []

    def test_project_filter(self, monitor, add_instance, clock):
        add_instance("odin-PS-8f4a2b", last_heartbeat=clock.now())
        add_instance("thor-PS-3c7d1e", last_heartbeat=clock.now())
        clock.advance(minutes=3)
        assert [i.project for i in monitor.detect_stale(project="thor")] == ["thor"]
