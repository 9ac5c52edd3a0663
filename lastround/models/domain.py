"""Domain models for the Last Round cup.

Seasons, rounds, fixtures and graded bets are owned by the wider prediction
platform; this service reads them. It writes only the cup activation flag on
``seasons``, the per-round ``cup_points`` rows, ``season_winners`` rows for
the cup and its own ``job_runs`` audit trail.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from lastround.models.base import Base, TimestampMixin

CUP_COMPETITION_TYPE = "last_round_special"
LEAGUE_COMPETITION_TYPE = "league"

# cup_points.source: rows written by round scoring versus by a correction
POINTS_SOURCE_CALCULATED = "calculated"
POINTS_SOURCE_CORRECTION = "correction"


class Competition(Base, TimestampMixin):
    """Outer competition (league) that seasons belong to."""

    __tablename__ = "competitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    seasons: Mapped[list["Season"]] = relationship("Season", back_populates="competition")

    def __repr__(self) -> str:
        return f"<Competition {self.name}>"


class Season(Base, TimestampMixin):
    """
    A season of the prediction game.

    cup_activated only ever moves from false to true. The flip is done by a
    single conditional UPDATE so concurrent activations cannot both win.
    """

    __tablename__ = "seasons"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    competition_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("competitions.id"), nullable=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_current: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    cup_activated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    cup_activated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    competition: Mapped["Competition | None"] = relationship(
        "Competition", back_populates="seasons"
    )
    betting_rounds: Mapped[list["BettingRound"]] = relationship(
        "BettingRound", back_populates="season"
    )

    __table_args__ = (
        Index("idx_seasons_current", "is_current", postgresql_where=(is_current == True)),
    )

    def __repr__(self) -> str:
        return f"<Season {self.name} (cup_activated={self.cup_activated})>"


class Team(Base):
    """Real-world team playing fixtures."""

    __tablename__ = "teams"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    def __repr__(self) -> str:
        return f"<Team {self.name}>"


class BettingRound(Base):
    """Batch of fixtures users bet on together."""

    __tablename__ = "betting_rounds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    season_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("seasons.id"), nullable=False
    )
    name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="open")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    season: Mapped["Season"] = relationship("Season", back_populates="betting_rounds")
    fixtures: Mapped[list["Fixture"]] = relationship(
        "Fixture", back_populates="betting_round"
    )

    __table_args__ = (Index("idx_betting_rounds_season", "season_id", "created_at"),)

    def __repr__(self) -> str:
        return f"<BettingRound {self.id} season={self.season_id}>"


class Fixture(Base):
    """Single match within a season."""

    __tablename__ = "fixtures"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    season_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("seasons.id"), nullable=False
    )
    betting_round_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("betting_rounds.id"), nullable=True
    )
    home_team_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("teams.id"), nullable=False
    )
    away_team_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("teams.id"), nullable=False
    )
    kickoff: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status_short: Mapped[str | None] = mapped_column(
        String(10), nullable=True, doc="NS, TBD, FT, ..."
    )
    result: Mapped[str | None] = mapped_column(
        String(10), nullable=True, doc="'1', 'X', '2' once settled"
    )

    betting_round: Mapped["BettingRound | None"] = relationship(
        "BettingRound", back_populates="fixtures"
    )
    home_team: Mapped["Team"] = relationship("Team", foreign_keys=[home_team_id])
    away_team: Mapped["Team"] = relationship("Team", foreign_keys=[away_team_id])

    __table_args__ = (Index("idx_fixtures_season_kickoff", "season_id", "kickoff"),)

    def __repr__(self) -> str:
        return f"<Fixture {self.id} kickoff={self.kickoff}>"


class Profile(Base):
    """Player account profile; full_name is the display name in standings."""

    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    full_name: Mapped[str | None] = mapped_column(String(200), nullable=True)

    def __repr__(self) -> str:
        return f"<Profile {self.id}>"


class UserBet(Base):
    """
    A user's prediction on one fixture.

    points_awarded is written by the grading pipeline and stays NULL until
    the fixture is graded. This service never changes it.
    """

    __tablename__ = "user_bets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("profiles.id"), nullable=False
    )
    fixture_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("fixtures.id"), nullable=False
    )
    betting_round_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("betting_rounds.id"), nullable=False
    )
    prediction: Mapped[str] = mapped_column(String(10), nullable=False)
    points_awarded: Mapped[int | None] = mapped_column(Integer, nullable=True)
    submitted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    fixture: Mapped["Fixture"] = relationship("Fixture")

    __table_args__ = (
        UniqueConstraint("user_id", "fixture_id", name="uq_user_bet_fixture"),
        Index("idx_user_bets_round", "betting_round_id"),
    )

    def __repr__(self) -> str:
        return f"<UserBet user={self.user_id} fixture={self.fixture_id}>"


class CupPointsRecord(Base, TimestampMixin):
    """
    Cup points a user earned in one betting round.

    Exactly one row per (user, round, season); writes are upserts on that key
    so replaying a batch is harmless. updated_at doubles as the last-updated
    marker used for conflict detection.
    """

    __tablename__ = "cup_points"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    betting_round_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("betting_rounds.id", ondelete="CASCADE"), nullable=False
    )
    season_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("seasons.id", ondelete="CASCADE"), nullable=False
    )
    points: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    source: Mapped[str] = mapped_column(
        String(20),
        default=POINTS_SOURCE_CALCULATED,
        server_default=POINTS_SOURCE_CALCULATED,
        nullable=False,
        doc="'calculated' by round scoring or 'correction'; scoring never overwrites corrections",
    )

    profile: Mapped["Profile"] = relationship("Profile")

    __table_args__ = (
        UniqueConstraint(
            "user_id", "betting_round_id", "season_id", name="uq_cup_points_user_round_season"
        ),
        CheckConstraint("points >= 0", name="ck_cup_points_non_negative"),
        CheckConstraint(
            "source IN ('calculated', 'correction')", name="ck_cup_points_source"
        ),
        Index("idx_cup_points_user_season", "user_id", "season_id"),
        Index("idx_cup_points_season", "season_id"),
        Index("idx_cup_points_round", "betting_round_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<CupPointsRecord user={self.user_id} round={self.betting_round_id} "
            f"points={self.points}>"
        )


class SeasonWinner(Base):
    """Hall of Fame entry for a league or cup winner."""

    __tablename__ = "season_winners"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    season_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("seasons.id"), nullable=False
    )
    league_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("competitions.id"), nullable=True
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("profiles.id"), nullable=False
    )
    game_points: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    dynamic_points: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_points: Mapped[int] = mapped_column(Integer, nullable=False)
    rounds_participated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    competition_type: Mapped[str] = mapped_column(
        String(50),
        default=LEAGUE_COMPETITION_TYPE,
        nullable=False,
        doc="'league' or 'last_round_special'",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    profile: Mapped["Profile"] = relationship("Profile")

    __table_args__ = (
        UniqueConstraint(
            "season_id", "user_id", "competition_type", name="uq_season_winner_type"
        ),
        CheckConstraint(
            "competition_type IN ('league', 'last_round_special')",
            name="ck_season_winners_competition_type",
        ),
        Index("idx_season_winners_season_competition", "season_id", "competition_type"),
    )

    def __repr__(self) -> str:
        return f"<SeasonWinner season={self.season_id} user={self.user_id} ({self.competition_type})>"


class JobRun(Base):
    """
    Task execution audit log.

    Every scheduled cup task run is logged here for monitoring and for
    debugging failed activations or scoring runs.
    """

    __tablename__ = "job_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    job_name: Mapped[str] = mapped_column(String(100), nullable=False)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, doc="'running', 'success', 'failed'"
    )
    records_processed: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    job_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSONB, nullable=True
    )

    def __repr__(self) -> str:
        return f"<JobRun {self.job_name} status={self.status}>"
