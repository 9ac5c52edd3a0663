"""Cup activation condition and detection.

The cup switches on near the end of a season: once at least ``threshold``
percent of teams have five or fewer games left. Detection reads fixtures,
evaluates the condition and, when met, hands off to the idempotent
activation service.
"""

import time
import uuid
from collections.abc import Iterable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

from lastround.services.cup.activation import (
    ActivationAttemptResult,
    ActivationDetails,
    CupActivationStatus,
    CupActivationStatusChecker,
    IdempotentActivationService,
)
from lastround.services.cup.errors import CupValidationError
from lastround.services.cup.repository import CupRepository, FixtureSummary

logger = structlog.get_logger(__name__)

DEFAULT_ACTIVATION_THRESHOLD = 60.0
REMAINING_GAMES_LIMIT = 5
UNPLAYED_STATUSES = {"NS", "TBD"}


@dataclass(frozen=True)
class TeamRemainingGames:
    team_id: int
    team_name: str
    remaining_games: int


@dataclass
class ActivationConditionResult:
    condition_met: bool
    total_teams: int
    teams_with_five_or_fewer_games: int
    percentage_with_five_or_fewer_games: float
    threshold: float
    reasoning: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CupActivationDetectionResult:
    """Everything one detection run saw and decided."""

    should_activate: bool
    action_taken: str
    success: bool
    session_id: str
    season_id: int | None
    season_name: str | None
    duration_ms: int
    reasoning: str
    summary: str
    condition: ActivationConditionResult | None = None
    status: CupActivationStatus | None = None
    activation_result: ActivationAttemptResult | None = None
    errors: list[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def is_fixture_remaining(fixture: FixtureSummary, now: datetime) -> bool:
    """A fixture still counts as remaining until it is played and settled."""
    kickoff = fixture.kickoff
    if kickoff.tzinfo is None:
        kickoff = kickoff.replace(tzinfo=timezone.utc)
    return (
        kickoff > now
        or not fixture.result
        or fixture.status_short in UNPLAYED_STATUSES
    )


def count_remaining_games(
    fixtures: Iterable[FixtureSummary], now: datetime | None = None
) -> list[TeamRemainingGames]:
    """Remaining games per team; teams with none left are included at 0."""
    if now is None:
        now = datetime.now(timezone.utc)

    names: dict[int, str] = {}
    remaining: dict[int, int] = {}

    for fixture in fixtures:
        for team_id, team_name in (
            (fixture.home_team_id, fixture.home_team_name),
            (fixture.away_team_id, fixture.away_team_name),
        ):
            names.setdefault(team_id, team_name)
            remaining.setdefault(team_id, 0)
            if is_fixture_remaining(fixture, now):
                remaining[team_id] += 1

    return [
        TeamRemainingGames(team_id=team_id, team_name=names[team_id], remaining_games=count)
        for team_id, count in remaining.items()
    ]


def calculate_activation_condition(
    teams: list[TeamRemainingGames],
    threshold: float = DEFAULT_ACTIVATION_THRESHOLD,
) -> ActivationConditionResult:
    """
    Decide whether enough teams are near the end of their season.

    Raises:
        CupValidationError: threshold outside 0..100
    """
    if threshold < 0 or threshold > 100:
        raise CupValidationError("Threshold must be between 0 and 100")

    if not teams:
        return ActivationConditionResult(
            condition_met=False,
            total_teams=0,
            teams_with_five_or_fewer_games=0,
            percentage_with_five_or_fewer_games=0.0,
            threshold=threshold,
            reasoning="No teams found in the season",
        )

    total = len(teams)
    near_end = sum(1 for t in teams if t.remaining_games <= REMAINING_GAMES_LIMIT)
    percentage = near_end / total * 100
    met = percentage >= threshold

    reasoning = (
        f"{near_end}/{total} teams ({percentage:.1f}%) have <={REMAINING_GAMES_LIMIT} "
        f"games remaining, which {'meets' if met else 'does not meet'} the "
        f"{threshold:g}% threshold for cup activation"
    )
    return ActivationConditionResult(
        condition_met=met,
        total_teams=total,
        teams_with_five_or_fewer_games=near_end,
        percentage_with_five_or_fewer_games=round(percentage, 2),
        threshold=threshold,
        reasoning=reasoning,
    )


class CupActivationDetectionService:
    """Checks the end-of-season condition and activates the cup when it holds."""

    def __init__(
        self,
        repository: CupRepository,
        threshold: float = DEFAULT_ACTIVATION_THRESHOLD,
        activation_service: IdempotentActivationService | None = None,
    ):
        self.repository = repository
        self.threshold = threshold
        self.status_checker = CupActivationStatusChecker(repository)
        self.activation_service = activation_service or IdempotentActivationService(
            repository, self.status_checker
        )

    async def detect_and_activate(
        self, details: ActivationDetails | None = None
    ) -> CupActivationDetectionResult:
        """
        Run one detection pass for the current season.

        Steps:
        1. Read the current season's activation status
        2. Count remaining games per team
        3. Evaluate the threshold condition
        4. Activate if the condition holds and the cup is not yet on

        Never raises; failures are folded into ``errors``.
        """
        return await self._detect(details, dry_run=False)

    async def check_activation_conditions(self) -> CupActivationDetectionResult:
        """Evaluate the condition for the current season without activating."""
        return await self._detect(None, dry_run=True)

    async def should_activate_cup(self) -> bool:
        """Whether a detection pass would activate the cup right now."""
        result = await self.check_activation_conditions()
        return result.should_activate

    async def _detect(
        self, details: ActivationDetails | None, dry_run: bool
    ) -> CupActivationDetectionResult:
        session_id = uuid.uuid4().hex[:12]
        started = time.monotonic()
        errors: list[str] = []
        log = logger.bind(session_id=session_id, threshold=self.threshold, dry_run=dry_run)
        log.info("cup_detection_started")

        status: CupActivationStatus | None = None
        condition: ActivationConditionResult | None = None
        activation_result: ActivationAttemptResult | None = None
        should_activate = False

        try:
            status = await self.status_checker.check_current_season()

            if status.season_id is None:
                errors.append("No current season found")
            else:
                fixtures = await self.repository.get_season_fixtures(status.season_id)
                teams = count_remaining_games(fixtures)
                condition = calculate_activation_condition(teams, self.threshold)

                should_activate = condition.condition_met and not status.is_activated
                if should_activate and not dry_run:
                    activation_result = await self.activation_service.activate_season(
                        status.season_id,
                        details
                        or ActivationDetails(
                            activated_by="activation_detection", reason=condition.reasoning
                        ),
                    )
                    if activation_result.error:
                        errors.append(activation_result.error)

        except Exception as e:
            log.exception("cup_detection_failed", error=str(e))
            errors.append(str(e))

        action_taken, reasoning = self._describe(status, condition, activation_result, dry_run)
        success = not errors
        duration_ms = int((time.monotonic() - started) * 1000)

        result = CupActivationDetectionResult(
            should_activate=should_activate,
            action_taken=action_taken,
            success=success,
            session_id=session_id,
            season_id=status.season_id if status else None,
            season_name=status.season_name if status else None,
            duration_ms=duration_ms,
            reasoning=reasoning,
            summary=f"{action_taken}: {reasoning}",
            condition=condition,
            status=status,
            activation_result=activation_result,
            errors=errors,
        )

        log.info(
            "cup_detection_complete",
            season_id=result.season_id,
            should_activate=should_activate,
            action_taken=action_taken,
            success=success,
            duration_ms=duration_ms,
        )
        return result

    def _describe(
        self,
        status: CupActivationStatus | None,
        condition: ActivationConditionResult | None,
        activation_result: ActivationAttemptResult | None,
        dry_run: bool = False,
    ) -> tuple[str, str]:
        if status is None or status.season_id is None:
            return "no_action", "No current season available"
        if condition is None:
            return "error", "Activation condition could not be evaluated"
        if status.is_activated:
            return "already_activated", f"Cup already activated for {status.season_name}"
        if not condition.condition_met:
            return "condition_not_met", condition.reasoning
        if dry_run:
            return "would_activate", condition.reasoning
        if activation_result is None or not activation_result.success:
            return "activation_failed", condition.reasoning
        if activation_result.was_already_activated:
            return "activated_concurrently", condition.reasoning
        return "activated", condition.reasoning
