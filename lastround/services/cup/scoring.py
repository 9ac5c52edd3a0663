"""Cup points calculation per betting round.

For each round in an activated season, sums every user's graded points and
hands the totals to the batch storage engine. Rounds in a season whose cup is
not active (or, optionally, created before activation) are a no-op rather
than an error, so the main scoring flow can call this unconditionally.
"""

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import asdict, dataclass, field
from typing import Any

import structlog

from lastround.services.cup.errors import CupError, CupValidationError, NotFoundError
from lastround.services.cup.repository import CupPointsInput, CupRepository, GradedBet
from lastround.services.cup.storage import BatchStorageEngine

logger = structlog.get_logger(__name__)


@dataclass
class CupScoringDetails:
    users_processed: int = 0
    rounds_processed: int = 0
    total_points_awarded: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class CupScoringResult:
    success: bool
    message: str
    details: CupScoringDetails = field(default_factory=CupScoringDetails)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def aggregate_user_points(
    bets: Iterable[GradedBet], betting_round_id: int, season_id: int
) -> list[CupPointsInput]:
    """
    Sum points_awarded per user.

    Ungraded bets (points_awarded None) are skipped. Output is ordered by
    user_id so repeated runs write batches in the same order.
    """
    totals: dict[str, int] = defaultdict(int)
    for bet in bets:
        if bet.points_awarded is None:
            continue
        totals[bet.user_id] += bet.points_awarded

    return [
        CupPointsInput(
            user_id=user_id,
            betting_round_id=betting_round_id,
            season_id=season_id,
            points=points,
        )
        for user_id, points in sorted(totals.items())
    ]


class CupScoringService:
    """Computes and stores cup points for betting rounds."""

    def __init__(
        self,
        repository: CupRepository,
        storage_engine: BatchStorageEngine | None = None,
    ):
        self.repository = repository
        self.storage_engine = storage_engine or BatchStorageEngine(repository)

    async def calculate_round_cup_points(
        self,
        betting_round_id: int,
        only_after_activation: bool = False,
        season_id: int | None = None,
    ) -> CupScoringResult:
        """
        Calculate and store cup points for one betting round.

        Args:
            betting_round_id: Round to score
            only_after_activation: Skip rounds created before the cup was activated
            season_id: Season to score against; defaults to the round's own season

        Returns:
            CupScoringResult; never raises
        """
        log = logger.bind(betting_round_id=betting_round_id)

        try:
            betting_round = await self.repository.get_betting_round(betting_round_id)
            if betting_round is None:
                raise NotFoundError(f"Betting round {betting_round_id} not found")

            target_season_id = season_id or betting_round.season_id
            season = await self.repository.get_season(target_season_id)
            if season is None:
                raise NotFoundError(f"Season {target_season_id} not found")

            if not season.cup_activated:
                log.info("cup_scoring_skipped_not_activated", season_id=season.id)
                return CupScoringResult(
                    success=True,
                    message=f"Cup not activated for season {season.id}, no points calculated",
                )

            if (
                only_after_activation
                and season.cup_activated_at is not None
                and betting_round.created_at < season.cup_activated_at
            ):
                log.info(
                    "cup_scoring_skipped_before_activation",
                    season_id=season.id,
                    round_created_at=betting_round.created_at.isoformat(),
                    activated_at=season.cup_activated_at.isoformat(),
                )
                return CupScoringResult(
                    success=True,
                    message=(
                        f"Betting round {betting_round_id} was created before cup "
                        f"activation, no points calculated"
                    ),
                )

            bets = await self.repository.get_graded_bets(betting_round_id)
            if not bets:
                log.info("cup_scoring_no_graded_bets", season_id=season.id)
                return CupScoringResult(
                    success=True,
                    message=f"No graded bets found for betting round {betting_round_id}",
                )

            records = aggregate_user_points(bets, betting_round_id, season.id)
            total_points = sum(r.points for r in records)

            storage = await self.storage_engine.store(records)
            details = CupScoringDetails(
                users_processed=len(records) if storage.success else storage.records_stored,
                rounds_processed=1 if storage.success else 0,
                total_points_awarded=total_points if storage.success else 0,
                errors=list(storage.errors),
            )

            if not storage.success:
                log.error(
                    "cup_scoring_storage_failed",
                    season_id=season.id,
                    message=storage.message,
                )
                return CupScoringResult(success=False, message=storage.message, details=details)

            log.info(
                "cup_scoring_round_complete",
                season_id=season.id,
                users_processed=details.users_processed,
                total_points_awarded=total_points,
            )
            return CupScoringResult(
                success=True,
                message=(
                    f"Cup points calculated for betting round {betting_round_id}: "
                    f"{len(records)} users, {total_points} points"
                ),
                details=details,
            )

        except CupValidationError as e:
            log.error("cup_scoring_validation_failed", error=str(e), indices=e.indices)
            return CupScoringResult(
                success=False, message=str(e), details=CupScoringDetails(errors=[str(e)])
            )
        except CupError as e:
            log.error("cup_scoring_failed", error=str(e))
            return CupScoringResult(
                success=False, message=str(e), details=CupScoringDetails(errors=[str(e)])
            )
        except Exception as e:
            log.exception("cup_scoring_unexpected_error", error=str(e))
            message = f"Unexpected error calculating cup points: {e}"
            return CupScoringResult(
                success=False, message=message, details=CupScoringDetails(errors=[message])
            )

    async def calculate_multiple_rounds_cup_points(
        self,
        betting_round_ids: list[int],
        only_after_activation: bool = False,
        season_id: int | None = None,
    ) -> CupScoringResult:
        """Score rounds one after another and sum the outcomes."""
        combined = CupScoringDetails()
        failed_rounds: list[int] = []

        for betting_round_id in betting_round_ids:
            result = await self.calculate_round_cup_points(
                betting_round_id,
                only_after_activation=only_after_activation,
                season_id=season_id,
            )
            combined.users_processed += result.details.users_processed
            combined.rounds_processed += result.details.rounds_processed
            combined.total_points_awarded += result.details.total_points_awarded
            combined.errors.extend(
                f"Round {betting_round_id}: {error}" for error in result.details.errors
            )
            if not result.success:
                failed_rounds.append(betting_round_id)

        if failed_rounds:
            message = (
                f"Processed {len(betting_round_ids)} rounds with failures in rounds "
                f"{failed_rounds}"
            )
        else:
            message = (
                f"Processed {len(betting_round_ids)} rounds: "
                f"{combined.rounds_processed} scored, {combined.total_points_awarded} points"
            )

        logger.info(
            "cup_scoring_multiple_rounds_complete",
            rounds_requested=len(betting_round_ids),
            rounds_processed=combined.rounds_processed,
            failed_rounds=failed_rounds,
        )
        return CupScoringResult(success=not failed_rounds, message=message, details=combined)

    async def calculate_season_cup_points(self, season_id: int) -> CupScoringResult:
        """Score every round created at or after the season's cup activation."""
        try:
            season = await self.repository.get_season(season_id)
            if season is None:
                raise NotFoundError(f"Season {season_id} not found")

            if not season.cup_activated or season.cup_activated_at is None:
                logger.info("cup_season_scoring_skipped_not_activated", season_id=season_id)
                return CupScoringResult(
                    success=True,
                    message=f"Cup not activated for season {season_id}, no points calculated",
                )

            round_ids = await self.repository.get_round_ids_since(
                season_id, season.cup_activated_at
            )
        except CupError as e:
            logger.error("cup_season_scoring_failed", season_id=season_id, error=str(e))
            return CupScoringResult(
                success=False, message=str(e), details=CupScoringDetails(errors=[str(e)])
            )

        if not round_ids:
            return CupScoringResult(
                success=True,
                message=f"No betting rounds since cup activation for season {season_id}",
            )

        logger.info("cup_season_scoring_started", season_id=season_id, rounds=len(round_ids))
        return await self.calculate_multiple_rounds_cup_points(
            round_ids, only_after_activation=True, season_id=season_id
        )
