"""Last Round cup scoring, corrections and winner determination."""

from lastround.services.cup.activation import (
    ActivationAttemptResult,
    ActivationDetails,
    CupActivationStatus,
    CupActivationStatusChecker,
    IdempotentActivationService,
)
from lastround.services.cup.activation_condition import CupActivationDetectionService
from lastround.services.cup.corrections import (
    CorrectionOptions,
    CorrectionRequest,
    CorrectionResult,
    CupCorrectionService,
)
from lastround.services.cup.late_submissions import LateSubmissionDetector
from lastround.services.cup.repository import CupRepository
from lastround.services.cup.scoring import CupScoringResult, CupScoringService
from lastround.services.cup.standings import CupWinnerDeterminationService
from lastround.services.cup.storage import BatchStorageEngine

__all__ = [
    "ActivationAttemptResult",
    "ActivationDetails",
    "BatchStorageEngine",
    "CorrectionOptions",
    "CorrectionRequest",
    "CorrectionResult",
    "CupActivationDetectionService",
    "CupActivationStatus",
    "CupActivationStatusChecker",
    "CupCorrectionService",
    "CupRepository",
    "CupScoringResult",
    "CupScoringService",
    "CupWinnerDeterminationService",
    "IdempotentActivationService",
    "LateSubmissionDetector",
]
