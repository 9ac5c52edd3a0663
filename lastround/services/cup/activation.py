"""Cup activation status and idempotent activation.

Activation is a one-way switch per season. The status reader answers "is the
cup on?"; the activation service turns it on exactly once, however many
callers (cron runs, admin clicks) race to do so.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

from lastround.services.cup.errors import (
    CupValidationError,
    NotAccessibleError,
    StorageError,
)
from lastround.services.cup.repository import CupRepository, SeasonInfo

logger = structlog.get_logger(__name__)


@dataclass
class CupActivationStatus:
    """Activation state of one season; all-empty when no season matched."""

    is_activated: bool
    activated_at: datetime | None
    season_id: int | None
    season_name: str | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ActivationDetails:
    """Audit context supplied by whoever triggers activation."""

    activated_by: str | None = None
    reason: str | None = None


@dataclass
class ActivationAttemptResult:
    """Outcome of one activation call."""

    success: bool
    was_already_activated: bool
    activated_at: datetime | None
    season_id: int | None
    season_name: str | None
    error: str | None
    attempted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _status_from_season(season: SeasonInfo) -> CupActivationStatus:
    return CupActivationStatus(
        is_activated=season.cup_activated,
        activated_at=season.cup_activated_at,
        season_id=season.id,
        season_name=season.name,
    )


class CupActivationStatusChecker:
    """Reads whether the cup is active for a season."""

    def __init__(self, repository: CupRepository):
        self.repository = repository

    async def check_current_season(self) -> CupActivationStatus:
        """
        Activation status of the current season.

        Raises:
            NotAccessibleError: the seasons table could not be read
        """
        season = await self.repository.get_current_season()
        if season is None:
            logger.info("cup_status_no_current_season")
            return CupActivationStatus(
                is_activated=False, activated_at=None, season_id=None, season_name=None
            )

        status = _status_from_season(season)
        logger.info(
            "cup_status_checked",
            season_id=season.id,
            season_name=season.name,
            is_activated=status.is_activated,
            activated_at=status.activated_at.isoformat() if status.activated_at else None,
        )
        return status

    async def check_season(self, season_id: int) -> CupActivationStatus:
        """
        Activation status of a specific season.

        Raises:
            CupValidationError: season_id is not a positive integer
            NotAccessibleError: the seasons table could not be read
        """
        if not isinstance(season_id, int) or season_id <= 0:
            raise CupValidationError("Valid season ID is required")

        season = await self.repository.get_season(season_id)
        if season is None:
            logger.info("cup_status_season_not_found", season_id=season_id)
            return CupActivationStatus(
                is_activated=False, activated_at=None, season_id=season_id, season_name=None
            )

        status = _status_from_season(season)
        logger.info(
            "cup_status_checked",
            season_id=season.id,
            season_name=season.name,
            is_activated=status.is_activated,
        )
        return status

    async def is_current_season_activated(self) -> bool:
        return (await self.check_current_season()).is_activated

    async def is_season_activated(self, season_id: int) -> bool:
        return (await self.check_season(season_id)).is_activated


class IdempotentActivationService:
    """
    Activates the cup for a season exactly once.

    A cheap status read short-circuits the common already-active case. The
    actual flip is a single conditional UPDATE in the store, so the gap
    between that read and the write cannot produce two winners. Losing the
    race is reported as success with was_already_activated=True.
    """

    def __init__(
        self,
        repository: CupRepository,
        status_checker: CupActivationStatusChecker | None = None,
    ):
        self.repository = repository
        self.status_checker = status_checker or CupActivationStatusChecker(repository)

    async def activate_current_season(
        self, details: ActivationDetails | None = None
    ) -> ActivationAttemptResult:
        """Activate the cup for whichever season is current."""
        attempted_at = datetime.now(timezone.utc)
        details = details or ActivationDetails()
        status: CupActivationStatus | None = None

        try:
            status = await self.status_checker.check_current_season()

            if status.is_activated:
                logger.info(
                    "cup_already_activated",
                    season_id=status.season_id,
                    activated_at=status.activated_at.isoformat() if status.activated_at else None,
                )
                return ActivationAttemptResult(
                    success=True,
                    was_already_activated=True,
                    activated_at=status.activated_at,
                    season_id=status.season_id,
                    season_name=status.season_name,
                    error=None,
                    attempted_at=attempted_at,
                )

            if status.season_id is None:
                logger.info("cup_activation_no_current_season")
                return ActivationAttemptResult(
                    success=False,
                    was_already_activated=False,
                    activated_at=None,
                    season_id=None,
                    season_name=None,
                    error="No current season found",
                    attempted_at=attempted_at,
                )

            return await self._perform_activation(
                status.season_id, status.season_name, details, attempted_at
            )

        except Exception as e:
            return self._failure(e, status, status.season_id if status else None, attempted_at)

    async def activate_season(
        self, season_id: int, details: ActivationDetails | None = None
    ) -> ActivationAttemptResult:
        """Activate the cup for a specific season."""
        attempted_at = datetime.now(timezone.utc)
        details = details or ActivationDetails()
        status: CupActivationStatus | None = None

        try:
            status = await self.status_checker.check_season(season_id)

            if status.is_activated:
                logger.info(
                    "cup_already_activated",
                    season_id=season_id,
                    activated_at=status.activated_at.isoformat() if status.activated_at else None,
                )
                return ActivationAttemptResult(
                    success=True,
                    was_already_activated=True,
                    activated_at=status.activated_at,
                    season_id=status.season_id,
                    season_name=status.season_name,
                    error=None,
                    attempted_at=attempted_at,
                )

            if status.season_name is None:
                logger.info("cup_activation_season_not_found", season_id=season_id)
                return ActivationAttemptResult(
                    success=False,
                    was_already_activated=False,
                    activated_at=None,
                    season_id=season_id,
                    season_name=None,
                    error=f"Season {season_id} not found",
                    attempted_at=attempted_at,
                )

            return await self._perform_activation(
                season_id, status.season_name, details, attempted_at
            )

        except Exception as e:
            return self._failure(e, status, season_id, attempted_at)

    async def attempt_activation(
        self, season_id: int | None = None, details: ActivationDetails | None = None
    ) -> bool:
        """Activate and return only whether the cup is now on."""
        if season_id:
            result = await self.activate_season(season_id, details)
        else:
            result = await self.activate_current_season(details)
        return result.success

    async def _perform_activation(
        self,
        season_id: int,
        season_name: str | None,
        details: ActivationDetails,
        attempted_at: datetime,
    ) -> ActivationAttemptResult:
        outcome = await self.repository.activate_season_atomically(
            season_id, datetime.now(timezone.utc)
        )

        if not outcome.found:
            logger.warning("cup_activation_season_vanished", season_id=season_id)
            return ActivationAttemptResult(
                success=False,
                was_already_activated=False,
                activated_at=None,
                season_id=season_id,
                season_name=season_name,
                error="Season not found",
                attempted_at=attempted_at,
            )

        if not outcome.won:
            logger.info(
                "cup_activated_in_parallel",
                season_id=season_id,
                activated_at=outcome.activated_at.isoformat() if outcome.activated_at else None,
            )
            return ActivationAttemptResult(
                success=True,
                was_already_activated=True,
                activated_at=outcome.activated_at,
                season_id=season_id,
                season_name=outcome.season_name or season_name,
                error=None,
                attempted_at=attempted_at,
            )

        logger.info(
            "cup_activated",
            season_id=season_id,
            season_name=season_name,
            activated_at=outcome.activated_at.isoformat() if outcome.activated_at else None,
            activated_by=details.activated_by,
            reason=details.reason,
        )
        return ActivationAttemptResult(
            success=True,
            was_already_activated=False,
            activated_at=outcome.activated_at,
            season_id=season_id,
            season_name=outcome.season_name or season_name,
            error=None,
            attempted_at=attempted_at,
        )

    def _failure(
        self,
        error: Exception,
        status: CupActivationStatus | None,
        season_id: int | None,
        attempted_at: datetime,
    ) -> ActivationAttemptResult:
        if isinstance(error, (CupValidationError, NotAccessibleError, StorageError)):
            message = str(error)
            logger.error("cup_activation_failed", season_id=season_id, error=message)
        else:
            message = "Unexpected error during activation"
            logger.exception("cup_activation_unexpected_error", season_id=season_id, error=str(error))

        return ActivationAttemptResult(
            success=False,
            was_already_activated=False,
            activated_at=None,
            season_id=season_id,
            season_name=status.season_name if status else None,
            error=message,
            attempted_at=attempted_at,
        )
