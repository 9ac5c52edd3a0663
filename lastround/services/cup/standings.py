"""Cup standings and winner determination.

Standings are derived on demand from stored cup points. Winners are
determined once per season: if cup winners are already recorded for the
season they are returned as-is and nothing is recomputed.

Ranking: totals descending, ties broken by username for a stable order.
Tied totals share a rank and the next total takes its 1-based position, so
[30, 25, 25, 10] ranks as [1, 2, 2, 4].
"""

from collections.abc import Iterable
from dataclasses import asdict, dataclass, field
from typing import Any

import structlog

from lastround.services.cup.errors import CupError
from lastround.services.cup.repository import CupPointsRow, CupRepository, WinnerRow

logger = structlog.get_logger(__name__)


@dataclass
class CupStandingsEntry:
    user_id: str
    username: str | None
    total_points: int
    rounds_participated: int
    rank: int
    is_tied: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CupStandingsCalculationResult:
    standings: list[CupStandingsEntry] = field(default_factory=list)
    total_participants: int = 0
    max_points: int = 0
    average_points: float = 0.0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CupWinnerDeterminationResult:
    season_id: int | None
    winners: list[CupStandingsEntry] = field(default_factory=list)
    total_participants: int = 0
    is_already_determined: bool = False
    max_points: int = 0
    average_points: float = 0.0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class _UserTotal:
    user_id: str
    username: str | None
    total_points: int = 0
    rounds_participated: int = 0


def aggregate_user_totals(rows: Iterable[CupPointsRow]) -> list[_UserTotal]:
    totals: dict[str, _UserTotal] = {}
    for row in rows:
        entry = totals.get(row.user_id)
        if entry is None:
            entry = totals[row.user_id] = _UserTotal(user_id=row.user_id, username=row.username)
        elif entry.username is None and row.username:
            entry.username = row.username
        entry.total_points += row.points or 0
        entry.rounds_participated += 1
    return list(totals.values())


def rank_standings(totals: Iterable[_UserTotal]) -> list[CupStandingsEntry]:
    """Sort and rank aggregated totals."""
    ordered = sorted(totals, key=lambda t: (-t.total_points, t.username or "", t.user_id))

    counts: dict[int, int] = {}
    for total in ordered:
        counts[total.total_points] = counts.get(total.total_points, 0) + 1

    standings: list[CupStandingsEntry] = []
    rank = 1
    for position, total in enumerate(ordered, start=1):
        if standings and total.total_points < standings[-1].total_points:
            rank = position
        standings.append(
            CupStandingsEntry(
                user_id=total.user_id,
                username=total.username,
                total_points=total.total_points,
                rounds_participated=total.rounds_participated,
                rank=rank,
                is_tied=counts[total.total_points] > 1,
            )
        )
    return standings


def summarise_standings(standings: list[CupStandingsEntry]) -> CupStandingsCalculationResult:
    if not standings:
        return CupStandingsCalculationResult()
    total = sum(s.total_points for s in standings)
    return CupStandingsCalculationResult(
        standings=standings,
        total_participants=len(standings),
        max_points=standings[0].total_points,
        average_points=round(total / len(standings), 2),
    )


def identify_winners(
    standings: list[CupStandingsEntry], number_of_winners: int | None = None
) -> list[CupStandingsEntry]:
    """
    Every participant ranked first.

    number_of_winners never cuts a tie; with a tie for first place all tied
    users win regardless of the requested count.
    """
    winners = [s for s in standings if s.rank == 1]
    if number_of_winners is not None and number_of_winners < len(winners):
        logger.warning(
            "cup_winners_tie_exceeds_requested",
            tied_users=len(winners),
            requested_winners=number_of_winners,
        )
    return winners


def _winner_from_row(row: WinnerRow, tied: bool) -> CupStandingsEntry:
    return CupStandingsEntry(
        user_id=row.user_id,
        username=row.username,
        total_points=row.total_points,
        rounds_participated=row.rounds_participated,
        rank=1,
        is_tied=tied,
    )


class CupWinnerDeterminationService:
    """Calculates cup standings and records cup winners in the Hall of Fame."""

    def __init__(self, repository: CupRepository):
        self.repository = repository

    async def calculate_standings(self, season_id: int) -> CupStandingsCalculationResult:
        """Standings for a season; read failures land in ``errors``."""
        try:
            rows = await self.repository.get_season_cup_points(season_id)
        except CupError as e:
            logger.error("cup_standings_failed", season_id=season_id, error=str(e))
            return CupStandingsCalculationResult(errors=[str(e)])

        if not rows:
            logger.info("cup_standings_no_participants", season_id=season_id)
            return CupStandingsCalculationResult()

        result = summarise_standings(rank_standings(aggregate_user_totals(rows)))
        logger.info(
            "cup_standings_calculated",
            season_id=season_id,
            total_participants=result.total_participants,
            max_points=result.max_points,
            average_points=result.average_points,
        )
        return result

    async def determine_winners(self, season_id: int) -> CupWinnerDeterminationResult:
        """
        Determine and record cup winners for a season, once.

        Returns existing winners with is_already_determined=True when the
        season already has them.
        """
        log = logger.bind(season_id=season_id)
        result = CupWinnerDeterminationResult(season_id=season_id)

        try:
            existing = await self.repository.get_cup_winners(season_id)
            if existing:
                log.info("cup_winners_already_determined", winner_count=len(existing))
                result.is_already_determined = True
                result.winners = [_winner_from_row(w, len(existing) > 1) for w in existing]
                return result

            standings = await self.calculate_standings(season_id)
            if standings.errors:
                result.errors.extend(standings.errors)
                return result

            if not standings.standings:
                log.info("cup_winners_no_participants")
                return result

            result.total_participants = standings.total_participants
            result.max_points = standings.max_points
            result.average_points = standings.average_points

            winners = identify_winners(standings.standings)
            await self.repository.record_cup_winners(
                season_id,
                [
                    WinnerRow(
                        user_id=w.user_id,
                        total_points=w.total_points,
                        username=w.username,
                        rounds_participated=w.rounds_participated,
                    )
                    for w in winners
                ],
            )
            result.winners = winners

            log.info(
                "cup_winners_recorded",
                winner_count=len(winners),
                is_tied=len(winners) > 1,
                winning_points=winners[0].total_points if winners else None,
                total_participants=result.total_participants,
            )
            return result

        except CupError as e:
            log.error("cup_winner_determination_failed", error=str(e))
            result.errors.append(str(e))
            return result
        except Exception as e:
            log.exception("cup_winner_determination_unexpected_error", error=str(e))
            result.errors.append(f"Unexpected error determining cup winners: {e}")
            return result

    async def determine_winners_for_completed_seasons(self) -> list[CupWinnerDeterminationResult]:
        """
        Determine winners for every completed, cup-activated season that has none.

        A failing season is reported in its own result and does not stop the
        others. If the eligible seasons cannot be listed, a single result with
        season_id None carries the error.
        """
        try:
            seasons = await self.repository.get_seasons_pending_cup_winners()
        except CupError as e:
            logger.error("cup_winners_season_listing_failed", error=str(e))
            return [CupWinnerDeterminationResult(season_id=None, errors=[str(e)])]
        if not seasons:
            logger.info("cup_winners_no_eligible_seasons")
            return []

        logger.info("cup_winners_eligible_seasons", count=len(seasons))
        results = []
        for season in seasons:
            try:
                result = await self.determine_winners(season.id)
            except Exception as e:
                logger.exception("cup_winner_season_failed", season_id=season.id, error=str(e))
                result = CupWinnerDeterminationResult(season_id=season.id, errors=[str(e)])
            if result.errors:
                logger.warning(
                    "cup_winner_season_errors", season_id=season.id, errors=result.errors
                )
            results.append(result)

        logger.info(
            "cup_winners_completed_seasons_done",
            processed=len(results),
            failed=sum(1 for r in results if r.errors),
        )
        return results
