"""Tests for configuration loading."""

from __future__ import annotations

import logging

import pytest
import yaml

from continuity.config import (
    CONFIG_DIR,
    CONFIG_FILENAME,
    DEFAULT_CONFIG_YAML,
    ContinuityConfig,
    load_config,
)


def _write_config(repo, text: str) -> None:
    (repo / CONFIG_DIR).mkdir(exist_ok=True)
    (repo / CONFIG_DIR / CONFIG_FILENAME).write_text(text)


class TestFromDict:
    """Tests for ContinuityConfig.from_dict."""

    def test_defaults(self):
        config = ContinuityConfig.from_dict(None)
        assert config.staleness.threshold_seconds == 120
        assert config.reconstruction.checkpoint_max_age_minutes == 60
        assert config.confidence.base_scores["events"] == 85
        assert config.heartbeat.auto_checkpoint_threshold == 80
        assert config.retention.max_per_instance is None
        assert config.next_steps.max_steps == 5

    def test_partial_section_keeps_other_defaults(self):
        config = ContinuityConfig.from_dict({"reconstruction": {"files_to_check": 2}})
        assert config.reconstruction.files_to_check == 2
        assert config.reconstruction.event_window == 200

    def test_brackets_from_lists(self):
        config = ContinuityConfig.from_dict(
            {"confidence": {"checkpoint_age_brackets": [[10, 0], [60, 15]]}}
        )
        assert config.confidence.checkpoint_age_brackets == [(10, 0), (60, 15)]

    def test_unknown_keys_warn(self, caplog):
        with caplog.at_level(logging.WARNING, logger="continuity.config"):
            config = ContinuityConfig.from_dict(
                {"staleness": {"threshold_seconds": 30, "grace": 5}, "plugins": {}}
            )
        assert config.staleness.threshold_seconds == 30
        assert "staleness.grace" in caplog.text
        assert "plugins" in caplog.text

    def test_section_must_be_mapping(self):
        with pytest.raises(ValueError, match="staleness"):
            ContinuityConfig.from_dict({"staleness": 30})

    def test_bad_thresholds(self):
        with pytest.raises(ValueError):
            ContinuityConfig.from_dict({"confidence": {"low_threshold": 95}})

    def test_partial_base_scores_keep_defaults(self):
        config = ContinuityConfig.from_dict({"confidence": {"base_scores": {"events": 80}}})
        assert config.confidence.base_scores == {
            "checkpoint": 100,
            "events": 80,
            "commands": 70,
            "basic": 40,
        }

    def test_unknown_base_score_source(self):
        with pytest.raises(ValueError, match="memory"):
            ContinuityConfig.from_dict({"confidence": {"base_scores": {"memory": 50}}})


class TestLoadConfig:
    """Tests for load_config."""

    def test_missing_file(self, tmp_path):
        assert load_config(tmp_path) == ContinuityConfig()

    def test_empty_file(self, tmp_path):
        _write_config(tmp_path, "")
        assert load_config(tmp_path) == ContinuityConfig()

    def test_yaml_file(self, tmp_path):
        _write_config(tmp_path, "heartbeat:\n  auto_checkpoint_threshold: null\n")
        assert load_config(tmp_path).heartbeat.auto_checkpoint_threshold is None

    def test_non_mapping_file(self, tmp_path):
        _write_config(tmp_path, "- staleness\n")
        with pytest.raises(ValueError, match="must contain a mapping"):
            load_config(tmp_path)

    def test_default_yaml_matches_defaults(self):
        assert ContinuityConfig.from_dict(yaml.safe_load(DEFAULT_CONFIG_YAML)) == ContinuityConfig()
