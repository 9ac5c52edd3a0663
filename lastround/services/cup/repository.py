"""Data access for the cup services.

Every query the cup needs goes through ``CupRepository`` so services can be
built per request around a session, and tested against an in-memory stand-in
that implements the same methods. Rows come back as plain dataclasses, never
ORM instances, so nothing leaks session state into the services.

Reads that fail raise NotAccessibleError. Writes that fail raise StorageError
carrying the driver message, which the storage engine classifies.
"""

from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import and_, exists, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from lastround.models.domain import (
    CUP_COMPETITION_TYPE,
    POINTS_SOURCE_CALCULATED,
    POINTS_SOURCE_CORRECTION,
    BettingRound,
    CupPointsRecord,
    Fixture,
    Profile,
    Season,
    SeasonWinner,
    Team,
    UserBet,
)
from lastround.services.cup.errors import NotAccessibleError, NotFoundError, StorageError

logger = structlog.get_logger(__name__)

CupPointsKey = tuple[str, int, int]


@dataclass(frozen=True)
class SeasonInfo:
    id: int
    name: str
    is_current: bool
    cup_activated: bool
    cup_activated_at: datetime | None
    completed_at: datetime | None
    competition_id: int | None = None


@dataclass(frozen=True)
class RoundInfo:
    id: int
    season_id: int
    created_at: datetime


@dataclass(frozen=True)
class GradedBet:
    user_id: str
    fixture_id: int
    betting_round_id: int
    points_awarded: int | None
    submitted_at: datetime


@dataclass(frozen=True)
class BetTiming:
    """A bet paired with its fixture's kickoff."""

    user_id: str
    fixture_id: int
    submitted_at: datetime
    kickoff: datetime
    points_awarded: int | None = None


@dataclass(frozen=True)
class CupPointsInput:
    """
    One row to be written to cup_points.

    Rows from round scoring never replace a row a correction wrote.
    """

    user_id: str
    betting_round_id: int
    season_id: int
    points: int
    source: str = POINTS_SOURCE_CALCULATED

    @property
    def key(self) -> CupPointsKey:
        return (self.user_id, self.betting_round_id, self.season_id)


@dataclass(frozen=True)
class StoredCupPoints:
    user_id: str
    betting_round_id: int
    season_id: int
    points: int
    last_updated: datetime | None
    source: str = POINTS_SOURCE_CALCULATED


@dataclass(frozen=True)
class CupPointsRow:
    """Stored cup points joined with the user's display name."""

    user_id: str
    betting_round_id: int
    points: int
    username: str | None


@dataclass(frozen=True)
class WinnerRow:
    user_id: str
    total_points: int
    username: str | None
    rounds_participated: int = 0


@dataclass(frozen=True)
class FixtureSummary:
    home_team_id: int
    home_team_name: str
    away_team_id: int
    away_team_name: str
    kickoff: datetime
    status_short: str | None
    result: str | None


@dataclass(frozen=True)
class AtomicActivationOutcome:
    """
    Result of the conditional activation write.

    won is True only for the caller whose UPDATE flipped the flag;
    activated_at is the winning timestamp either way.
    """

    found: bool
    won: bool
    activated_at: datetime | None
    season_name: str | None


_SEASON_COLUMNS = (
    Season.id,
    Season.name,
    Season.is_current,
    Season.cup_activated,
    Season.cup_activated_at,
    Season.completed_at,
    Season.competition_id,
)


def _season_from_row(row) -> SeasonInfo:
    return SeasonInfo(
        id=row.id,
        name=row.name,
        is_current=row.is_current,
        cup_activated=bool(row.cup_activated),
        cup_activated_at=row.cup_activated_at,
        completed_at=row.completed_at,
        competition_id=row.competition_id,
    )


class CupRepository:
    """SQLAlchemy-backed data access for the cup."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ------------------------------------------------------------------
    # Seasons and activation
    # ------------------------------------------------------------------

    async def get_current_season(self) -> SeasonInfo | None:
        try:
            result = await self.session.execute(
                select(*_SEASON_COLUMNS).where(Season.is_current == True).limit(1)
            )
            row = result.first()
        except SQLAlchemyError as e:
            raise NotAccessibleError(f"Unable to fetch current season: {e}") from e
        return _season_from_row(row) if row else None

    async def get_season(self, season_id: int) -> SeasonInfo | None:
        try:
            result = await self.session.execute(
                select(*_SEASON_COLUMNS).where(Season.id == season_id)
            )
            row = result.first()
        except SQLAlchemyError as e:
            raise NotAccessibleError(f"Unable to fetch season {season_id}: {e}") from e
        return _season_from_row(row) if row else None

    async def activate_season_atomically(
        self, season_id: int, activated_at: datetime
    ) -> AtomicActivationOutcome:
        """
        Flip cup_activated for a season if and only if it is still false.

        The WHERE clause is re-checked by Postgres after any concurrent
        writer commits, so of N racing callers exactly one gets a row back.
        """
        stmt = (
            update(Season)
            .where(Season.id == season_id, Season.cup_activated == False)
            .values(cup_activated=True, cup_activated_at=activated_at)
            .returning(Season.cup_activated_at, Season.name)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.session.execute(stmt)
            row = result.first()
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise StorageError(f"Failed to activate cup: {e}") from e

        if row is not None:
            return AtomicActivationOutcome(
                found=True,
                won=True,
                activated_at=row.cup_activated_at,
                season_name=row.name,
            )

        # Lost the race, or the season does not exist
        season = await self.get_season(season_id)
        if season is None:
            return AtomicActivationOutcome(
                found=False, won=False, activated_at=None, season_name=None
            )
        return AtomicActivationOutcome(
            found=True,
            won=False,
            activated_at=season.cup_activated_at,
            season_name=season.name,
        )

    async def get_seasons_pending_cup_winners(self) -> list[SeasonInfo]:
        """Completed, cup-activated seasons with no cup winners recorded yet."""
        has_winners = exists().where(
            SeasonWinner.season_id == Season.id,
            SeasonWinner.competition_type == CUP_COMPETITION_TYPE,
        )
        try:
            result = await self.session.execute(
                select(*_SEASON_COLUMNS)
                .where(
                    Season.completed_at.isnot(None),
                    Season.cup_activated == True,
                    ~has_winners,
                )
                .order_by(Season.completed_at.asc())
            )
            rows = result.all()
        except SQLAlchemyError as e:
            raise NotAccessibleError(f"Error fetching eligible seasons: {e}") from e
        return [_season_from_row(row) for row in rows]

    async def get_season_fixtures(self, season_id: int) -> list[FixtureSummary]:
        home = aliased(Team)
        away = aliased(Team)
        try:
            result = await self.session.execute(
                select(
                    Fixture.home_team_id,
                    home.name.label("home_team_name"),
                    Fixture.away_team_id,
                    away.name.label("away_team_name"),
                    Fixture.kickoff,
                    Fixture.status_short,
                    Fixture.result,
                )
                .join(home, Fixture.home_team_id == home.id)
                .join(away, Fixture.away_team_id == away.id)
                .where(Fixture.season_id == season_id)
                .order_by(Fixture.kickoff.asc())
            )
            rows = result.all()
        except SQLAlchemyError as e:
            raise NotAccessibleError(f"Unable to fetch fixtures for season {season_id}: {e}") from e

        return [
            FixtureSummary(
                home_team_id=row.home_team_id,
                home_team_name=row.home_team_name,
                away_team_id=row.away_team_id,
                away_team_name=row.away_team_name,
                kickoff=row.kickoff,
                status_short=row.status_short,
                result=row.result,
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Rounds and bets
    # ------------------------------------------------------------------

    async def get_betting_round(self, betting_round_id: int) -> RoundInfo | None:
        try:
            result = await self.session.execute(
                select(
                    BettingRound.id, BettingRound.season_id, BettingRound.created_at
                ).where(BettingRound.id == betting_round_id)
            )
            row = result.first()
        except SQLAlchemyError as e:
            raise NotAccessibleError(
                f"Unable to fetch betting round {betting_round_id}: {e}"
            ) from e
        if row is None:
            return None
        return RoundInfo(id=row.id, season_id=row.season_id, created_at=row.created_at)

    async def get_round_ids_since(self, season_id: int, since: datetime) -> list[int]:
        """Rounds of a season created at or after ``since``, oldest first."""
        try:
            result = await self.session.execute(
                select(BettingRound.id)
                .where(
                    BettingRound.season_id == season_id,
                    BettingRound.created_at >= since,
                )
                .order_by(BettingRound.created_at.asc())
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise NotAccessibleError(f"Unable to fetch rounds for season {season_id}: {e}") from e

    async def get_graded_bets(self, betting_round_id: int) -> list[GradedBet]:
        """Bets of a round that the grading pipeline has already scored."""
        try:
            result = await self.session.execute(
                select(
                    UserBet.user_id,
                    UserBet.fixture_id,
                    UserBet.betting_round_id,
                    UserBet.points_awarded,
                    UserBet.submitted_at,
                ).where(
                    UserBet.betting_round_id == betting_round_id,
                    UserBet.points_awarded.isnot(None),
                )
            )
            rows = result.all()
        except SQLAlchemyError as e:
            raise NotAccessibleError(
                f"Failed to fetch user bets for round {betting_round_id}: {e}"
            ) from e
        return [
            GradedBet(
                user_id=row.user_id,
                fixture_id=row.fixture_id,
                betting_round_id=row.betting_round_id,
                points_awarded=row.points_awarded,
                submitted_at=row.submitted_at,
            )
            for row in rows
        ]

    async def get_round_bet_timings(self, betting_round_id: int) -> list[BetTiming]:
        try:
            result = await self.session.execute(
                select(
                    UserBet.user_id,
                    UserBet.fixture_id,
                    UserBet.submitted_at,
                    UserBet.points_awarded,
                    Fixture.kickoff,
                )
                .join(Fixture, UserBet.fixture_id == Fixture.id)
                .where(UserBet.betting_round_id == betting_round_id)
            )
            rows = result.all()
        except SQLAlchemyError as e:
            raise NotAccessibleError(
                f"Failed to fetch bet timings for round {betting_round_id}: {e}"
            ) from e
        return [
            BetTiming(
                user_id=row.user_id,
                fixture_id=row.fixture_id,
                submitted_at=row.submitted_at,
                kickoff=row.kickoff,
                points_awarded=row.points_awarded,
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Cup points
    # ------------------------------------------------------------------

    async def upsert_cup_points(self, records: list[CupPointsInput]) -> None:
        """
        Insert-or-replace one batch in a single transaction.

        A calculated row never replaces a corrected one, and a row whose
        value and source are unchanged is left alone so updated_at only
        moves on a real change.
        """
        if not records:
            return

        stmt = insert(CupPointsRecord).values(
            [
                {
                    "user_id": r.user_id,
                    "betting_round_id": r.betting_round_id,
                    "season_id": r.season_id,
                    "points": r.points,
                    "source": r.source,
                }
                for r in records
            ]
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "betting_round_id", "season_id"],
            set_={
                "points": stmt.excluded.points,
                "source": stmt.excluded.source,
                "updated_at": func.now(),
            },
            where=and_(
                or_(
                    CupPointsRecord.source != POINTS_SOURCE_CORRECTION,
                    stmt.excluded.source == POINTS_SOURCE_CORRECTION,
                ),
                or_(
                    CupPointsRecord.points != stmt.excluded.points,
                    CupPointsRecord.source != stmt.excluded.source,
                ),
            ),
        )
        try:
            await self.session.execute(stmt)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            message = str(getattr(e, "orig", None) or e)
            raise StorageError(message) from e
        logger.debug("cup_points_batch_upserted", records=len(records))

    async def get_cup_points(
        self, keys: list[CupPointsKey]
    ) -> dict[CupPointsKey, StoredCupPoints]:
        """Stored rows for the given keys; missing keys are absent."""
        if not keys:
            return {}
        conditions = [
            and_(
                CupPointsRecord.user_id == user_id,
                CupPointsRecord.betting_round_id == round_id,
                CupPointsRecord.season_id == season_id,
            )
            for user_id, round_id, season_id in keys
        ]
        try:
            result = await self.session.execute(
                select(
                    CupPointsRecord.user_id,
                    CupPointsRecord.betting_round_id,
                    CupPointsRecord.season_id,
                    CupPointsRecord.points,
                    CupPointsRecord.source,
                    CupPointsRecord.updated_at,
                ).where(or_(*conditions))
            )
            rows = result.all()
        except SQLAlchemyError as e:
            raise NotAccessibleError(f"Unable to read back cup points: {e}") from e
        return {
            (row.user_id, row.betting_round_id, row.season_id): StoredCupPoints(
                user_id=row.user_id,
                betting_round_id=row.betting_round_id,
                season_id=row.season_id,
                points=row.points,
                last_updated=row.updated_at,
                source=row.source,
            )
            for row in rows
        }

    async def get_stored_cup_points(
        self, user_id: str, betting_round_id: int
    ) -> StoredCupPoints | None:
        try:
            result = await self.session.execute(
                select(
                    CupPointsRecord.user_id,
                    CupPointsRecord.betting_round_id,
                    CupPointsRecord.season_id,
                    CupPointsRecord.points,
                    CupPointsRecord.updated_at,
                    CupPointsRecord.source,
                )
                .where(
                    CupPointsRecord.user_id == user_id,
                    CupPointsRecord.betting_round_id == betting_round_id,
                )
                .limit(1)
            )
            row = result.first()
        except SQLAlchemyError as e:
            raise NotAccessibleError(
                f"Unable to read cup points for user {user_id}: {e}"
            ) from e
        if row is None:
            return None
        return StoredCupPoints(
            user_id=row.user_id,
            betting_round_id=row.betting_round_id,
            season_id=row.season_id,
            points=row.points,
            last_updated=row.updated_at,
            source=row.source,
        )

    async def get_season_cup_points(self, season_id: int) -> list[CupPointsRow]:
        try:
            result = await self.session.execute(
                select(
                    CupPointsRecord.user_id,
                    CupPointsRecord.betting_round_id,
                    CupPointsRecord.points,
                    Profile.full_name,
                )
                .outerjoin(Profile, CupPointsRecord.user_id == Profile.id)
                .where(CupPointsRecord.season_id == season_id)
            )
            rows = result.all()
        except SQLAlchemyError as e:
            raise NotAccessibleError(f"Failed to fetch cup points data: {e}") from e
        return [
            CupPointsRow(
                user_id=row.user_id,
                betting_round_id=row.betting_round_id,
                points=row.points,
                username=row.full_name,
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Winners
    # ------------------------------------------------------------------

    async def get_cup_winners(self, season_id: int) -> list[WinnerRow]:
        try:
            result = await self.session.execute(
                select(
                    SeasonWinner.user_id,
                    SeasonWinner.total_points,
                    SeasonWinner.rounds_participated,
                    Profile.full_name,
                )
                .outerjoin(Profile, SeasonWinner.user_id == Profile.id)
                .where(
                    SeasonWinner.season_id == season_id,
                    SeasonWinner.competition_type == CUP_COMPETITION_TYPE,
                )
                .order_by(
                    SeasonWinner.total_points.desc(),
                    Profile.full_name.asc().nulls_first(),
                    SeasonWinner.user_id,
                )
            )
            rows = result.all()
        except SQLAlchemyError as e:
            raise NotAccessibleError(f"Error checking existing cup winners: {e}") from e
        return [
            WinnerRow(
                user_id=row.user_id,
                total_points=row.total_points,
                username=row.full_name,
                rounds_participated=row.rounds_participated,
            )
            for row in rows
        ]

    async def record_cup_winners(self, season_id: int, winners: list[WinnerRow]) -> None:
        """Persist cup winners against the season's outer competition."""
        season = await self.get_season(season_id)
        if season is None:
            raise NotFoundError(f"Season {season_id} not found")

        stmt = insert(SeasonWinner).values(
            [
                {
                    "season_id": season_id,
                    "league_id": season.competition_id,
                    "user_id": w.user_id,
                    "game_points": 0,
                    "dynamic_points": 0,
                    "total_points": w.total_points,
                    "rounds_participated": w.rounds_participated,
                    "competition_type": CUP_COMPETITION_TYPE,
                }
                for w in winners
            ]
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["season_id", "user_id", "competition_type"],
            set_={
                "total_points": stmt.excluded.total_points,
                "rounds_participated": stmt.excluded.rounds_participated,
            },
        )
        try:
            await self.session.execute(stmt)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise StorageError(f"Error recording cup winners: {e}") from e
