"""Cup point corrections and conflict resolution.

Corrections overwrite a user's stored round total, either because results
were re-graded or because an admin set a value by hand. Before writing, the
stored value is compared with the value the correction assumed. If they
differ and the stored row was written very recently, another writer is
probably mid-flight; the correction is classified as a conflict and routed
through the resolution policy.

This is best effort. Two writers can still interleave between the read and
the upsert; the recency window only catches the common case.

Corrected rows are written with source "correction"; round scoring never
replaces them, so an override or late penalty survives later rescores.
"""

from collections import defaultdict
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

import structlog

from lastround.config.cup import CupConfig, LateSubmissionPenalty
from lastround.models.domain import POINTS_SOURCE_CORRECTION
from lastround.services.cup.errors import (
    ConflictError,
    CupError,
    CupValidationError,
    NotFoundError,
)
from lastround.services.cup.late_submissions import LateSubmission, LateSubmissionDetector
from lastround.services.cup.notifications import (
    CupNotification,
    CupNotifier,
    LoggingNotifier,
    NotificationSeverity,
    notify_safely,
)
from lastround.services.cup.repository import (
    CupPointsInput,
    CupRepository,
    StoredCupPoints,
)
from lastround.services.cup.storage import BatchStorageEngine

logger = structlog.get_logger(__name__)


class CorrectionType(str, Enum):
    RESULT_UPDATE = "result_update"
    MANUAL_OVERRIDE = "manual_override"


class ConflictType(str, Enum):
    CONCURRENT_UPDATE = "concurrent_update"
    MANUAL_OVERRIDE_CONFLICT = "manual_override_conflict"


class ConflictResolution(str, Enum):
    LATEST_WINS = "latest_wins"
    ADMIN_OVERRIDE = "admin_override"
    MANUAL_REVIEW_REQUIRED = "manual_review_required"


@dataclass
class CorrectionRequest:
    user_id: str
    betting_round_id: int
    old_points: int
    new_points: int
    reason: str
    correction_type: CorrectionType = CorrectionType.RESULT_UPDATE
    admin_user_id: str | None = None

    def __post_init__(self) -> None:
        self.correction_type = CorrectionType(self.correction_type)


@dataclass
class ConflictRecord:
    user_id: str
    betting_round_id: int
    conflict_type: ConflictType
    existing_value: int
    attempted_value: int
    resolution: ConflictResolution
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["conflict_type"] = self.conflict_type.value
        data["resolution"] = self.resolution.value
        return data


@dataclass
class CorrectionOptions:
    enable_conflict_resolution: bool = True
    notify_on_point_changes: bool = True
    require_admin_approval_for_overrides: bool = False


@dataclass
class CorrectionResult:
    success: bool
    message: str
    corrections_applied: int = 0
    points_changed: int = 0
    users_affected: int = 0
    conflicts: list[ConflictRecord] = field(default_factory=list)
    pending_review: list[CorrectionRequest] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "corrections_applied": self.corrections_applied,
            "points_changed": self.points_changed,
            "users_affected": self.users_affected,
            "conflicts": [c.to_dict() for c in self.conflicts],
            "pending_review": [asdict(r) for r in self.pending_review],
            "errors": list(self.errors),
        }


def is_recent_write(
    last_updated: datetime | None, now: datetime, window_seconds: int
) -> bool:
    """Whether a row was written inside the conflict-likely window."""
    if last_updated is None:
        return False
    if last_updated.tzinfo is None:
        last_updated = last_updated.replace(tzinfo=timezone.utc)
    return now - last_updated <= timedelta(seconds=window_seconds)


def classify_conflict(correction: CorrectionRequest) -> ConflictType:
    if (
        correction.correction_type == CorrectionType.MANUAL_OVERRIDE
        and correction.admin_user_id
    ):
        return ConflictType.MANUAL_OVERRIDE_CONFLICT
    return ConflictType.CONCURRENT_UPDATE


def resolve_conflict(
    correction: CorrectionRequest, manual_review_point_threshold: int
) -> ConflictResolution:
    """
    Resolution policy for a detected conflict.

    Large swings always go to a human. Otherwise an admin-sourced correction
    wins as requested, and anything else is applied as the latest write.
    """
    if abs(correction.new_points - correction.old_points) > manual_review_point_threshold:
        return ConflictResolution.MANUAL_REVIEW_REQUIRED
    if correction.admin_user_id:
        return ConflictResolution.ADMIN_OVERRIDE
    return ConflictResolution.LATEST_WINS


def late_submission_corrections(
    submissions: list[LateSubmission],
    stored: dict[str, StoredCupPoints],
    betting_round_id: int,
    penalty: LateSubmissionPenalty,
) -> list[CorrectionRequest]:
    """
    Turn a round's late bets into corrections, one per affected user.

    The penalised total is rebuilt from the round's bets, not subtracted
    from the stored value, so a repeat run finds nothing left to change.
    Forfeit keeps the points of the user's on-time bets; zero clears the
    round. A penalty never raises a stored total, and users without stored
    cup points for the round have nothing to correct.
    """
    by_user: dict[str, list[LateSubmission]] = defaultdict(list)
    for submission in submissions:
        by_user[submission.user_id].append(submission)

    corrections = []
    for user_id in sorted(by_user):
        late = [s for s in by_user[user_id] if s.is_late]
        record = stored.get(user_id)
        if not late or record is None:
            continue

        if penalty == LateSubmissionPenalty.ZERO:
            penalised = 0
        else:
            penalised = sum(s.points_awarded or 0 for s in by_user[user_id] if not s.is_late)
        new_points = min(penalised, record.points)

        if new_points == record.points:
            continue

        corrections.append(
            CorrectionRequest(
                user_id=user_id,
                betting_round_id=betting_round_id,
                old_points=record.points,
                new_points=new_points,
                reason=(
                    f"Late submission: {len(late)} bet(s) placed after kickoff "
                    f"(up to {max(s.minutes_late for s in late)} min late)"
                ),
                correction_type=CorrectionType.RESULT_UPDATE,
            )
        )
    return corrections


class CupCorrectionService:
    """Applies point corrections with conflict detection."""

    def __init__(
        self,
        repository: CupRepository,
        config: CupConfig | None = None,
        storage_engine: BatchStorageEngine | None = None,
        notifier: CupNotifier | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.repository = repository
        self.config = config or CupConfig()
        self.storage_engine = storage_engine or BatchStorageEngine(
            repository, integrity_sample_size=self.config.integrity_sample_size
        )
        self.notifier = notifier or LoggingNotifier()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def apply_corrections(
        self,
        corrections: list[CorrectionRequest],
        options: CorrectionOptions | None = None,
    ) -> CorrectionResult:
        """
        Apply a list of corrections one at a time.

        Returns:
            CorrectionResult; never raises
        """
        options = options or CorrectionOptions()
        result = CorrectionResult(success=True, message="")
        affected: set[str] = set()

        for correction in corrections:
            try:
                await self._apply_one(correction, options, result, affected)
            except Exception as e:
                message = (
                    f"Correction for user {correction.user_id} in round "
                    f"{correction.betting_round_id} failed: {e}"
                )
                if isinstance(e, CupError):
                    logger.error("cup_correction_failed", error=str(e))
                else:
                    logger.exception("cup_correction_unexpected_error", error=str(e))
                result.errors.append(message)
                await self._notify(
                    options,
                    NotificationSeverity.ERROR,
                    "cup_correction_failed",
                    message,
                    correction,
                )

        result.users_affected = len(affected)
        result.success = not result.errors
        result.message = (
            f"Applied {result.corrections_applied}/{len(corrections)} corrections, "
            f"{len(result.conflicts)} conflicts, {len(result.pending_review)} pending review"
        )
        if result.errors:
            result.message += f"; errors: {'; '.join(result.errors)}"

        logger.info(
            "cup_corrections_complete",
            corrections=len(corrections),
            applied=result.corrections_applied,
            conflicts=len(result.conflicts),
            pending_review=len(result.pending_review),
            points_changed=result.points_changed,
            users_affected=result.users_affected,
        )
        return result

    async def apply_manual_override(
        self,
        user_id: str,
        betting_round_id: int,
        new_points: int,
        reason: str,
        admin_user_id: str | None = None,
        old_points: int | None = None,
        options: CorrectionOptions | None = None,
    ) -> CorrectionResult:
        """
        Set a user's round points by hand.

        If old_points is not given, the currently stored value is assumed.
        """
        if old_points is None:
            try:
                stored = await self.repository.get_stored_cup_points(user_id, betting_round_id)
            except CupError as e:
                logger.error(
                    "cup_manual_override_failed",
                    user_id=user_id,
                    betting_round_id=betting_round_id,
                    error=str(e),
                )
                return CorrectionResult(success=False, message=str(e), errors=[str(e)])
            old_points = stored.points if stored else 0

        correction = CorrectionRequest(
            user_id=user_id,
            betting_round_id=betting_round_id,
            old_points=old_points,
            new_points=new_points,
            reason=reason,
            correction_type=CorrectionType.MANUAL_OVERRIDE,
            admin_user_id=admin_user_id,
        )
        return await self.apply_corrections([correction], options)

    async def process_late_submissions(
        self,
        betting_round_id: int,
        options: CorrectionOptions | None = None,
    ) -> CorrectionResult:
        """Detect late bets in a round and apply the configured penalty."""
        if not self.config.process_late_submissions:
            logger.info("late_submission_processing_disabled", betting_round_id=betting_round_id)
            return CorrectionResult(
                success=True, message="Late submission processing is disabled"
            )

        detector = LateSubmissionDetector(
            self.repository, self.config.late_submission_grace_minutes
        )
        try:
            submissions = await detector.detect(betting_round_id)
            late_bets = [s for s in submissions if s.is_late]
            if not late_bets:
                return CorrectionResult(
                    success=True,
                    message=f"No late submissions in betting round {betting_round_id}",
                )

            stored: dict[str, StoredCupPoints] = {}
            for user_id in {b.user_id for b in late_bets}:
                record = await self.repository.get_stored_cup_points(user_id, betting_round_id)
                if record is not None:
                    stored[user_id] = record
        except CupError as e:
            logger.error(
                "late_submission_processing_failed",
                betting_round_id=betting_round_id,
                error=str(e),
            )
            return CorrectionResult(success=False, message=str(e), errors=[str(e)])

        corrections = late_submission_corrections(
            submissions, stored, betting_round_id, self.config.late_submission_penalty
        )
        if not corrections:
            return CorrectionResult(
                success=True,
                message=(
                    f"{len(late_bets)} late submissions in betting round "
                    f"{betting_round_id}, no cup points to correct"
                ),
            )

        return await self.apply_corrections(corrections, options)

    async def _apply_one(
        self,
        correction: CorrectionRequest,
        options: CorrectionOptions,
        result: CorrectionResult,
        affected: set[str],
    ) -> None:
        log = logger.bind(
            user_id=correction.user_id,
            betting_round_id=correction.betting_round_id,
            correction_type=correction.correction_type.value,
        )

        if correction.new_points < 0:
            raise CupValidationError(
                f"new_points must be non-negative, got {correction.new_points}"
            )

        if (
            options.require_admin_approval_for_overrides
            and correction.correction_type == CorrectionType.MANUAL_OVERRIDE
            and not correction.admin_user_id
        ):
            log.warning("cup_override_requires_admin")
            result.pending_review.append(correction)
            await self._notify(
                options,
                NotificationSeverity.ERROR,
                "cup_override_requires_admin",
                "Manual override without an admin user needs approval",
                correction,
            )
            return

        stored = await self.repository.get_stored_cup_points(
            correction.user_id, correction.betting_round_id
        )
        if stored is not None:
            season_id = stored.season_id
            current_points = stored.points
        else:
            betting_round = await self.repository.get_betting_round(correction.betting_round_id)
            if betting_round is None:
                raise NotFoundError(f"Betting round {correction.betting_round_id} not found")
            season_id = betting_round.season_id
            current_points = 0

        conflict: ConflictRecord | None = None
        try:
            if options.enable_conflict_resolution:
                self._check_for_conflict(correction, stored)
        except ConflictError as e:
            conflict = ConflictRecord(
                user_id=correction.user_id,
                betting_round_id=correction.betting_round_id,
                conflict_type=classify_conflict(correction),
                existing_value=e.existing_value,
                attempted_value=e.attempted_value,
                resolution=resolve_conflict(
                    correction, self.config.manual_review_point_threshold
                ),
                timestamp=self.clock(),
            )
            result.conflicts.append(conflict)
            log.warning(
                "cup_correction_conflict",
                conflict_type=conflict.conflict_type.value,
                resolution=conflict.resolution.value,
                existing_value=conflict.existing_value,
                assumed_value=correction.old_points,
                attempted_value=correction.new_points,
            )

            if conflict.resolution == ConflictResolution.MANUAL_REVIEW_REQUIRED:
                result.pending_review.append(correction)
                await self._notify(
                    options,
                    NotificationSeverity.ERROR,
                    "cup_correction_needs_review",
                    f"Conflicting correction held for manual review: {correction.reason}",
                    correction,
                    conflict,
                )
                return

        storage = await self.storage_engine.store(
            [
                CupPointsInput(
                    user_id=correction.user_id,
                    betting_round_id=correction.betting_round_id,
                    season_id=season_id,
                    points=correction.new_points,
                    source=POINTS_SOURCE_CORRECTION,
                )
            ]
        )
        if not storage.success:
            raise CupError(storage.message)

        result.corrections_applied += 1
        result.points_changed += abs(correction.new_points - current_points)
        affected.add(correction.user_id)

        log.info(
            "cup_correction_applied",
            previous_points=current_points,
            new_points=correction.new_points,
            reason=correction.reason,
            admin_user_id=correction.admin_user_id,
        )

        if conflict is not None:
            await self._notify(
                options,
                NotificationSeverity.WARNING,
                "cup_correction_conflict_resolved",
                f"Conflict resolved as {conflict.resolution.value}: {correction.reason}",
                correction,
                conflict,
            )
        else:
            await self._notify(
                options,
                NotificationSeverity.INFO,
                "cup_correction_applied",
                correction.reason,
                correction,
            )

    def _check_for_conflict(
        self, correction: CorrectionRequest, stored: StoredCupPoints | None
    ) -> None:
        """Raise ConflictError if the stored row moved recently under this correction."""
        if stored is None or stored.points == correction.old_points:
            return
        if not is_recent_write(
            stored.last_updated, self.clock(), self.config.conflict_window_seconds
        ):
            return
        raise ConflictError(
            f"Stored points for user {correction.user_id} in round "
            f"{correction.betting_round_id} changed from {correction.old_points} "
            f"to {stored.points}",
            existing_value=stored.points,
            attempted_value=correction.new_points,
        )

    async def _notify(
        self,
        options: CorrectionOptions,
        severity: NotificationSeverity,
        event: str,
        message: str,
        correction: CorrectionRequest,
        conflict: ConflictRecord | None = None,
    ) -> None:
        if not options.notify_on_point_changes:
            return
        context: dict[str, Any] = {
            "user_id": correction.user_id,
            "betting_round_id": correction.betting_round_id,
            "old_points": correction.old_points,
            "new_points": correction.new_points,
            "correction_type": correction.correction_type.value,
            "admin_user_id": correction.admin_user_id,
        }
        if conflict is not None:
            context["conflict"] = conflict.to_dict()
        await notify_safely(
            self.notifier,
            CupNotification(severity=severity, event=event, message=message, context=context),
        )
