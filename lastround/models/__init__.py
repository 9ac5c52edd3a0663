"""Database models for the Last Round cup."""

from lastround.models.base import Base, get_db, get_task_session
from lastround.models.domain import (
    CUP_COMPETITION_TYPE,
    BettingRound,
    Competition,
    CupPointsRecord,
    Fixture,
    JobRun,
    Profile,
    Season,
    SeasonWinner,
    Team,
    UserBet,
)

__all__ = [
    # Base
    "Base",
    "get_db",
    "get_task_session",
    # Domain models
    "CUP_COMPETITION_TYPE",
    "Competition",
    "Season",
    "Team",
    "BettingRound",
    "Fixture",
    "Profile",
    "UserBet",
    "CupPointsRecord",
    "SeasonWinner",
    "JobRun",
]
