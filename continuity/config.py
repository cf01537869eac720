"""Configuration loading for continuity.

Settings live in `.continuity/config.yaml`. Every key is optional; missing
keys fall back to the defaults below.
"""

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from continuity.core.models import ConfidenceLevel, ReconstructionSource

logger = logging.getLogger(__name__)

CONFIG_DIR = ".continuity"
CONFIG_FILENAME = "config.yaml"
DB_FILENAME = "state.db"


@dataclass
class StalenessConfig:
    threshold_seconds: float = 120.0


@dataclass
class ReconstructionConfig:
    checkpoint_max_age_minutes: int = 60
    event_window: int = 200  # most recent events folded during replay
    command_window: int = 20
    files_to_check: int = 5
    recent_actions: int = 10


_DEFAULT_BASE_SCORES = {
    ReconstructionSource.CHECKPOINT.value: 100,
    ReconstructionSource.EVENTS.value: 85,
    ReconstructionSource.COMMANDS.value: 70,
    ReconstructionSource.BASIC.value: 40,
}


@dataclass
class ConfidenceConfig:
    """Scoring constants for resume confidence."""

    base_scores: dict[str, int] = field(default_factory=lambda: dict(_DEFAULT_BASE_SCORES))
    # (upper bound in minutes, penalty) for checkpoint age, checked in order
    checkpoint_age_brackets: list[tuple[int, int]] = field(
        default_factory=lambda: [(5, 0), (30, 10), (60, 20)]
    )
    log_age_interval_minutes: int = 30
    log_age_penalty: int = 5
    project_missing_penalty: int = 10
    branch_missing_penalty: int = 5
    files_missing_penalty: int = 5
    high_threshold: int = 90
    moderate_threshold: int = 70
    low_threshold: int = 50

    def __post_init__(self) -> None:
        unknown = set(self.base_scores) - {source.value for source in ReconstructionSource}
        if unknown:
            raise ValueError(f"Unknown reconstruction source(s) in base_scores: {sorted(unknown)}")
        # Partial overrides keep the defaults for the sources they leave out
        self.base_scores = {
            **_DEFAULT_BASE_SCORES,
            **{source: int(score) for source, score in self.base_scores.items()},
        }
        self.checkpoint_age_brackets = [
            (int(limit), int(penalty)) for limit, penalty in self.checkpoint_age_brackets
        ]
        if not self.high_threshold > self.moderate_threshold > self.low_threshold:
            raise ValueError(
                "Confidence thresholds must satisfy high > moderate > low, got "
                f"{self.high_threshold}/{self.moderate_threshold}/{self.low_threshold}"
            )

    def level_for(self, score: int) -> ConfidenceLevel:
        if score >= self.high_threshold:
            return ConfidenceLevel.HIGH
        if score >= self.moderate_threshold:
            return ConfidenceLevel.MODERATE
        if score >= self.low_threshold:
            return ConfidenceLevel.LOW
        return ConfidenceLevel.VERY_LOW


@dataclass
class HeartbeatConfig:
    auto_checkpoint_threshold: int | None = 80  # context percent; None disables


@dataclass
class RetentionConfig:
    max_age_days: float | None = 30
    max_per_instance: int | None = None


@dataclass
class NextStepsConfig:
    max_steps: int = 5


@dataclass
class ContinuityConfig:
    """Top-level configuration."""

    staleness: StalenessConfig = field(default_factory=StalenessConfig)
    reconstruction: ReconstructionConfig = field(default_factory=ReconstructionConfig)
    confidence: ConfidenceConfig = field(default_factory=ConfidenceConfig)
    heartbeat: HeartbeatConfig = field(default_factory=HeartbeatConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    next_steps: NextStepsConfig = field(default_factory=NextStepsConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ContinuityConfig":
        data = data or {}
        sections: dict[str, Any] = {}
        for section in fields(cls):
            raw = data.get(section.name)
            if raw is None:
                continue
            if not isinstance(raw, dict):
                raise ValueError(f"Config section '{section.name}' must be a mapping")
            section_cls = section.default_factory  # type: ignore[misc]
            sections[section.name] = _build_section(section_cls, section.name, raw)

        for key in data:
            if key not in {f.name for f in fields(cls)}:
                logger.warning(f"Ignoring unknown config section '{key}'")
        return cls(**sections)


def _build_section(section_cls: Any, name: str, raw: dict[str, Any]) -> Any:
    known = {f.name for f in fields(section_cls)}
    kwargs = {}
    for key, value in raw.items():
        if key in known:
            kwargs[key] = value
        else:
            logger.warning(f"Ignoring unknown config key '{name}.{key}'")
    return section_cls(**kwargs)


def load_config(repo_path: Path) -> ContinuityConfig:
    """Load configuration from <repo_path>/.continuity/config.yaml."""
    config_path = Path(repo_path) / CONFIG_DIR / CONFIG_FILENAME
    if not config_path.exists():
        return ContinuityConfig()

    with open(config_path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is not None and not isinstance(data, dict):
        raise ValueError(f"{config_path} must contain a mapping")
    return ContinuityConfig.from_dict(data)


DEFAULT_CONFIG_YAML = """# Continuity configuration

staleness:
  threshold_seconds: 120

reconstruction:
  checkpoint_max_age_minutes: 60
  event_window: 200
  command_window: 20
  files_to_check: 5

confidence:
  base_scores:
    checkpoint: 100
    events: 85
    commands: 70
    basic: 40
  # [max age in minutes, penalty]
  checkpoint_age_brackets:
    - [5, 0]
    - [30, 10]
    - [60, 20]
  log_age_interval_minutes: 30
  log_age_penalty: 5
  project_missing_penalty: 10
  branch_missing_penalty: 5
  files_missing_penalty: 5
  high_threshold: 90
  moderate_threshold: 70
  low_threshold: 50

heartbeat:
  auto_checkpoint_threshold: 80

retention:
  max_age_days: 30

next_steps:
  max_steps: 5
"""
