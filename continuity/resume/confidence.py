"""Confidence scoring for a reconstructed state.

score = base(source) - age penalty - validation penalties, clamped to [0, 100].
All constants come from ConfidenceConfig.
"""

import logging

from continuity.config import ConfidenceConfig
from continuity.core.models import (
    ConfidenceAssessment,
    ConfidenceLevel,
    ReconstructedState,
    ReconstructionSource,
    ValidationIssueKind,
)

logger = logging.getLogger(__name__)

_SOURCE_DESCRIPTIONS = {
    ReconstructionSource.CHECKPOINT: "Checkpoint loaded",
    ReconstructionSource.EVENTS: "Reconstructed from events",
    ReconstructionSource.COMMANDS: "Inferred from commands",
    ReconstructionSource.BASIC: "Basic state only",
}


class ConfidenceScorer:
    def __init__(self, config: ConfidenceConfig | None = None):
        self.config = config or ConfidenceConfig()

    def age_penalty(
        self, source: ReconstructionSource, age_minutes: int
    ) -> tuple[int, str | None]:
        """Penalty for the age of the source, with an optional warning."""
        if source == ReconstructionSource.CHECKPOINT:
            brackets = self.config.checkpoint_age_brackets
            for upper, penalty in brackets:
                if age_minutes < upper:
                    break
            else:
                penalty = brackets[-1][1]
            if penalty and penalty == brackets[-1][1]:
                return penalty, f"Checkpoint is {age_minutes} minutes old"
            return penalty, None

        if source in (ReconstructionSource.EVENTS, ReconstructionSource.COMMANDS):
            periods = age_minutes // self.config.log_age_interval_minutes
            penalty = periods * self.config.log_age_penalty
            if periods > 2:
                return penalty, f"Last {source.value} are {age_minutes} minutes old"
            return penalty, None

        return 0, None

    def validation_penalty(self, kind: ValidationIssueKind) -> int:
        return {
            ValidationIssueKind.PROJECT_MISSING: self.config.project_missing_penalty,
            ValidationIssueKind.BRANCH_MISSING: self.config.branch_missing_penalty,
            ValidationIssueKind.FILES_MISSING: self.config.files_missing_penalty,
        }[kind]

    def score(self, reconstruction: ReconstructedState) -> ConfidenceAssessment:
        source = reconstruction.source
        warnings: list[str] = []

        score = self.config.base_scores[source.value]
        penalty, warning = self.age_penalty(source, reconstruction.age_minutes)
        score -= penalty
        if warning:
            warnings.append(warning)

        # Each kind of issue is penalized once
        for kind in dict.fromkeys(issue.kind for issue in reconstruction.validation_issues):
            score -= self.validation_penalty(kind)
        warnings.extend(issue.detail for issue in reconstruction.validation_issues)

        score = max(0, min(100, score))
        level = self.config.level_for(score)
        assessment = ConfidenceAssessment(
            score=score,
            level=level,
            reason=self._reason(reconstruction, level, warnings),
            warnings=warnings,
        )
        logger.debug(f"Confidence for {reconstruction.instance_id}: {score} ({level.value})")
        return assessment

    def _reason(
        self,
        reconstruction: ReconstructedState,
        level: ConfidenceLevel,
        warnings: list[str],
    ) -> str:
        parts = [
            f"{_SOURCE_DESCRIPTIONS[reconstruction.source]} "
            f"(age: {reconstruction.age_minutes} min)",
            "all state valid" if not reconstruction.validation_issues
            else f"{len(reconstruction.validation_issues)} validation warning(s)",
            f"{level.value.upper().replace('-', ' ')} confidence - {level.guidance}",
        ]
        return ", ".join(parts)
