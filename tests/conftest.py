"""Pytest configuration and fixtures for Last Round tests."""

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from lastround.models.domain import POINTS_SOURCE_CALCULATED, POINTS_SOURCE_CORRECTION
from lastround.services.cup.errors import NotAccessibleError, NotFoundError, StorageError
from lastround.services.cup.repository import (
    AtomicActivationOutcome,
    BetTiming,
    CupPointsInput,
    CupPointsRow,
    FixtureSummary,
    GradedBet,
    RoundInfo,
    SeasonInfo,
    StoredCupPoints,
    WinnerRow,
)

NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeCupRepository:
    """
    In-memory stand-in for CupRepository.

    Read methods yield to the event loop once so concurrent callers
    interleave the way they would against a real database.
    """

    def __init__(self):
        self.seasons: dict[int, SeasonInfo] = {}
        self.rounds: dict[int, RoundInfo] = {}
        self.bets: list[GradedBet] = []
        self.bet_timings: dict[int, list[BetTiming]] = {}
        self.fixtures: dict[int, list[FixtureSummary]] = {}
        self.profiles: dict[str, str] = {}
        self.cup_points: dict[tuple[str, int, int], StoredCupPoints] = {}
        self.winners: dict[int, list[WinnerRow]] = {}

        self.now = NOW
        self.upsert_calls: list[list[CupPointsInput]] = []
        self.activation_writes = 0
        # upsert call index -> driver error message
        self.upsert_failures: dict[int, str] = {}
        self.failing_reads: set[str] = set()
        self.failing_winner_seasons: set[int] = set()
        # key -> points the store reports back regardless of what was written
        self.read_back_overrides: dict[tuple[str, int, int], int] = {}

    # -- setup helpers --------------------------------------------------

    def add_season(self, season_id=1, name="2025/26", is_current=True, cup_activated=False,
                   cup_activated_at=None, completed_at=None, competition_id=10):
        self.seasons[season_id] = SeasonInfo(
            id=season_id,
            name=name,
            is_current=is_current,
            cup_activated=cup_activated,
            cup_activated_at=cup_activated_at,
            completed_at=completed_at,
            competition_id=competition_id,
        )
        return self.seasons[season_id]

    def add_round(self, round_id, season_id=1, created_at=None):
        self.rounds[round_id] = RoundInfo(
            id=round_id, season_id=season_id, created_at=created_at or self.now
        )
        return self.rounds[round_id]

    def add_bet(self, user_id, round_id, points, fixture_id=None, submitted_at=None):
        self.bets.append(
            GradedBet(
                user_id=user_id,
                fixture_id=fixture_id or len(self.bets) + 1,
                betting_round_id=round_id,
                points_awarded=points,
                submitted_at=submitted_at or self.now,
            )
        )

    def add_bet_timing(self, round_id, user_id, fixture_id, kickoff, submitted_at, points=None):
        self.bet_timings.setdefault(round_id, []).append(
            BetTiming(
                user_id=user_id,
                fixture_id=fixture_id,
                submitted_at=submitted_at,
                kickoff=kickoff,
                points_awarded=points,
            )
        )

    def set_cup_points(self, user_id, round_id, season_id, points, updated_at=None,
                       source=POINTS_SOURCE_CALCULATED):
        self.cup_points[(user_id, round_id, season_id)] = StoredCupPoints(
            user_id=user_id,
            betting_round_id=round_id,
            season_id=season_id,
            points=points,
            last_updated=updated_at or self.now,
            source=source,
        )

    def points(self, user_id, round_id, season_id=1):
        entry = self.cup_points.get((user_id, round_id, season_id))
        return entry.points if entry else None

    def source(self, user_id, round_id, season_id=1):
        return self.cup_points[(user_id, round_id, season_id)].source

    def _check_read(self, name):
        if name in self.failing_reads:
            raise NotAccessibleError(f"{name} unavailable: connection refused")

    # -- seasons and activation -----------------------------------------

    async def get_current_season(self):
        await asyncio.sleep(0)
        self._check_read("get_current_season")
        for season in self.seasons.values():
            if season.is_current:
                return season
        return None

    async def get_season(self, season_id):
        await asyncio.sleep(0)
        self._check_read("get_season")
        return self.seasons.get(season_id)

    async def activate_season_atomically(self, season_id, activated_at):
        # No await between the check and the write, so this is atomic on one loop
        season = self.seasons.get(season_id)
        if season is None:
            return AtomicActivationOutcome(
                found=False, won=False, activated_at=None, season_name=None
            )
        if season.cup_activated:
            return AtomicActivationOutcome(
                found=True,
                won=False,
                activated_at=season.cup_activated_at,
                season_name=season.name,
            )
        self.activation_writes += 1
        self.seasons[season_id] = replace(
            season, cup_activated=True, cup_activated_at=activated_at
        )
        return AtomicActivationOutcome(
            found=True, won=True, activated_at=activated_at, season_name=season.name
        )

    async def get_seasons_pending_cup_winners(self):
        self._check_read("get_seasons_pending_cup_winners")
        pending = [
            s for s in self.seasons.values()
            if s.completed_at is not None and s.cup_activated and not self.winners.get(s.id)
        ]
        return sorted(pending, key=lambda s: s.completed_at)

    async def get_season_fixtures(self, season_id):
        self._check_read("get_season_fixtures")
        return list(self.fixtures.get(season_id, []))

    # -- rounds and bets --------------------------------------------------

    async def get_betting_round(self, betting_round_id):
        self._check_read("get_betting_round")
        return self.rounds.get(betting_round_id)

    async def get_round_ids_since(self, season_id, since):
        self._check_read("get_round_ids_since")
        rounds = [
            r for r in self.rounds.values() if r.season_id == season_id and r.created_at >= since
        ]
        return [r.id for r in sorted(rounds, key=lambda r: r.created_at)]

    async def get_graded_bets(self, betting_round_id):
        self._check_read("get_graded_bets")
        return [
            b for b in self.bets
            if b.betting_round_id == betting_round_id and b.points_awarded is not None
        ]

    async def get_round_bet_timings(self, betting_round_id):
        self._check_read("get_round_bet_timings")
        return list(self.bet_timings.get(betting_round_id, []))

    # -- cup points -------------------------------------------------------

    async def upsert_cup_points(self, records):
        call_index = len(self.upsert_calls)
        self.upsert_calls.append(list(records))
        if call_index in self.upsert_failures:
            raise StorageError(self.upsert_failures[call_index])
        for record in records:
            existing = self.cup_points.get(record.key)
            if existing is not None:
                # same rules as the ON CONFLICT ... WHERE clause
                if (
                    existing.source == POINTS_SOURCE_CORRECTION
                    and record.source != POINTS_SOURCE_CORRECTION
                ):
                    continue
                if existing.points == record.points and existing.source == record.source:
                    continue
            self.set_cup_points(*record.key, record.points, source=record.source)

    async def get_cup_points(self, keys):
        self._check_read("get_cup_points")
        stored = {}
        for key in keys:
            if key not in self.cup_points:
                continue
            stored[key] = self.cup_points[key]
            if key in self.read_back_overrides:
                stored[key] = replace(stored[key], points=self.read_back_overrides[key])
        return stored

    async def get_stored_cup_points(self, user_id, betting_round_id):
        self._check_read("get_stored_cup_points")
        for (uid, round_id, _), record in self.cup_points.items():
            if uid == user_id and round_id == betting_round_id:
                return record
        return None

    async def get_season_cup_points(self, season_id):
        self._check_read("get_season_cup_points")
        return [
            CupPointsRow(
                user_id=uid,
                betting_round_id=round_id,
                points=record.points,
                username=self.profiles.get(uid),
            )
            for (uid, round_id, sid), record in self.cup_points.items()
            if sid == season_id
        ]

    # -- winners ----------------------------------------------------------

    async def get_cup_winners(self, season_id):
        self._check_read("get_cup_winners")
        return list(self.winners.get(season_id, []))

    async def record_cup_winners(self, season_id, winners):
        if season_id in self.failing_winner_seasons:
            raise StorageError("connection reset by peer")
        if season_id not in self.seasons:
            raise NotFoundError(f"Season {season_id} not found")
        self.winners[season_id] = list(winners)


class RecordingNotifier:
    """Notifier that keeps every notification it is sent."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.notifications = []

    async def notify(self, notification):
        if self.fail:
            raise ConnectionError("notification channel down")
        self.notifications.append(notification)

    @property
    def events(self):
        return [n.event for n in self.notifications]


@pytest.fixture
def repository():
    """Empty in-memory cup repository."""
    return FakeCupRepository()


@pytest.fixture
def active_repository():
    """Repository with a current season whose cup was activated a day ago."""
    repo = FakeCupRepository()
    repo.add_season(
        season_id=1,
        cup_activated=True,
        cup_activated_at=NOW - timedelta(days=1),
    )
    repo.profiles.update({"u-alice": "Alice", "u-bob": "Bob", "u-zoe": "Zoe"})
    return repo


@pytest.fixture
def notifier():
    return RecordingNotifier()


def make_fixture(home_id, away_id, kickoff, status_short="FT", result="1"):
    """Fixture summary between two numbered teams."""
    return FixtureSummary(
        home_team_id=home_id,
        home_team_name=f"Team {home_id}",
        away_team_id=away_id,
        away_team_name=f"Team {away_id}",
        kickoff=kickoff,
        status_short=status_short,
        result=result,
    )


@pytest.fixture
def now():
    """Fixed clock used by the fake repository."""
    return NOW


@pytest.fixture
def fixture_factory():
    return make_fixture


@pytest.fixture
def failing_notifier():
    """Notifier whose channel is down."""
    return RecordingNotifier(fail=True)
