"""Late submission detection.

A bet is late when it was submitted more than the grace period after its
fixture kicked off.
"""

import math
from collections.abc import Iterable
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any

import structlog

from lastround.services.cup.repository import BetTiming, CupRepository

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class LateSubmission:
    user_id: str
    fixture_id: int
    bet_timestamp: datetime
    match_start_time: datetime
    minutes_late: int
    is_late: bool
    points_awarded: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def minutes_after_kickoff(submitted_at: datetime, kickoff: datetime) -> int:
    """Whole minutes between kickoff and submission; 0 if submitted in time."""
    delta = (_aware(submitted_at) - _aware(kickoff)).total_seconds()
    if delta <= 0:
        return 0
    return math.floor(delta / 60)


def detect_late_submissions(
    bets: Iterable[BetTiming], grace_period_minutes: int = 0
) -> list[LateSubmission]:
    """One LateSubmission per bet, flagged when past the grace period."""
    submissions = []
    for bet in bets:
        minutes_late = minutes_after_kickoff(bet.submitted_at, bet.kickoff)
        submissions.append(
            LateSubmission(
                user_id=bet.user_id,
                fixture_id=bet.fixture_id,
                bet_timestamp=bet.submitted_at,
                match_start_time=bet.kickoff,
                minutes_late=minutes_late,
                is_late=minutes_late > grace_period_minutes,
                points_awarded=bet.points_awarded,
            )
        )
    return submissions


class LateSubmissionDetector:
    """Loads a round's bets and flags the late ones."""

    def __init__(self, repository: CupRepository, grace_period_minutes: int = 0):
        self.repository = repository
        self.grace_period_minutes = grace_period_minutes

    async def detect(
        self, betting_round_id: int, grace_period_minutes: int | None = None
    ) -> list[LateSubmission]:
        grace = self.grace_period_minutes if grace_period_minutes is None else grace_period_minutes
        bets = await self.repository.get_round_bet_timings(betting_round_id)
        submissions = detect_late_submissions(bets, grace)

        late_count = sum(1 for s in submissions if s.is_late)
        if late_count:
            logger.warning(
                "late_submissions_detected",
                betting_round_id=betting_round_id,
                late_count=late_count,
                bets_checked=len(submissions),
                grace_period_minutes=grace,
            )
        else:
            logger.debug(
                "late_submissions_none",
                betting_round_id=betting_round_id,
                bets_checked=len(submissions),
            )
        return submissions
