"""Cup scoring configuration.

Runtime knobs for activation, corrections and late submissions. Values come
from environment settings, optionally overridden by the ``cup`` section of
defaults.yaml.
"""

from dataclasses import dataclass, fields
from enum import Enum
from typing import Any

from lastround.config.settings import Settings, get_settings


class LateSubmissionPenalty(str, Enum):
    """How a late bet is penalised."""
    FORFEIT = "forfeit"  # Remove the late bet's points from the round
    ZERO = "zero"        # Clear the user's whole round


@dataclass
class CupConfig:
    """Cup behaviour configuration."""

    activation_threshold: float = 60.0
    conflict_window_seconds: int = 300
    manual_review_point_threshold: int = 10
    late_submission_grace_minutes: int = 0
    process_late_submissions: bool = True
    late_submission_penalty: LateSubmissionPenalty = LateSubmissionPenalty.FORFEIT
    integrity_sample_size: int = 10

    def __post_init__(self) -> None:
        self.late_submission_penalty = LateSubmissionPenalty(self.late_submission_penalty)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "CupConfig":
        """Build config from settings, applying defaults.yaml overrides."""
        if settings is None:
            settings = get_settings()

        values: dict[str, Any] = {
            "activation_threshold": settings.cup_activation_threshold,
            "conflict_window_seconds": settings.cup_conflict_window_seconds,
            "manual_review_point_threshold": settings.cup_manual_review_point_threshold,
            "late_submission_grace_minutes": settings.cup_late_submission_grace_minutes,
            "process_late_submissions": settings.cup_process_late_submissions,
            "late_submission_penalty": settings.cup_late_submission_penalty,
            "integrity_sample_size": settings.cup_integrity_sample_size,
        }

        # Explicit environment values win over defaults.yaml
        overrides = settings.load_defaults_config().get("cup", {})
        known = {f.name for f in fields(cls)}
        for key, value in overrides.items():
            if key in known and f"cup_{key}" not in settings.model_fields_set:
                values[key] = value

        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        return {
            "activation_threshold": self.activation_threshold,
            "conflict_window_seconds": self.conflict_window_seconds,
            "manual_review_point_threshold": self.manual_review_point_threshold,
            "late_submission_grace_minutes": self.late_submission_grace_minutes,
            "process_late_submissions": self.process_late_submissions,
            "late_submission_penalty": self.late_submission_penalty.value,
            "integrity_sample_size": self.integrity_sample_size,
        }
