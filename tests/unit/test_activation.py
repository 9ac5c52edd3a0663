"""Unit tests for cup activation status and idempotent activation.

CRITICAL TESTS:
- Concurrent activations MUST produce exactly one winner
- Every caller MUST see the same activation timestamp
"""

import asyncio
from datetime import timedelta

import pytest

from lastround.services.cup.activation import (
    ActivationDetails,
    CupActivationStatusChecker,
    IdempotentActivationService,
)
from lastround.services.cup.errors import CupValidationError


class TestStatusChecker:
    """Reading activation state."""

    async def test_no_current_season_is_all_empty(self, repository):
        status = await CupActivationStatusChecker(repository).check_current_season()

        assert not status.is_activated
        assert status.activated_at is None
        assert status.season_id is None
        assert status.season_name is None

    async def test_current_season_status(self, repository, now):
        repository.add_season(season_id=4, name="2024/25", cup_activated=True, cup_activated_at=now)

        status = await CupActivationStatusChecker(repository).check_current_season()

        assert status.is_activated
        assert status.activated_at == now
        assert status.season_id == 4
        assert status.season_name == "2024/25"

    @pytest.mark.parametrize("season_id", [0, -3, "7", None])
    async def test_invalid_season_id_rejected(self, repository, season_id):
        with pytest.raises(CupValidationError):
            await CupActivationStatusChecker(repository).check_season(season_id)

    async def test_unknown_season_is_not_activated(self, repository):
        status = await CupActivationStatusChecker(repository).check_season(42)

        assert not status.is_activated
        assert status.season_id == 42
        assert status.season_name is None

    async def test_boolean_helpers(self, repository, now):
        repository.add_season(season_id=1, cup_activated=False)
        repository.add_season(
            season_id=2, is_current=False, cup_activated=True, cup_activated_at=now
        )
        checker = CupActivationStatusChecker(repository)

        assert not await checker.is_current_season_activated()
        assert await checker.is_season_activated(2)


class TestIdempotentActivation:
    """Activating the cup exactly once."""

    def setup_method(self):
        """Set up test fixtures."""
        self.details = ActivationDetails(activated_by="admin-1", reason="test")

    async def test_first_activation_wins(self, repository):
        repository.add_season(season_id=1)
        service = IdempotentActivationService(repository)

        result = await service.activate_current_season(self.details)

        assert result.success
        assert not result.was_already_activated
        assert result.activated_at is not None
        assert result.season_id == 1
        assert result.error is None
        assert repository.seasons[1].cup_activated
        assert repository.seasons[1].cup_activated_at == result.activated_at

    async def test_second_activation_reports_existing_timestamp(self, repository):
        repository.add_season(season_id=1)
        service = IdempotentActivationService(repository)

        first = await service.activate_current_season()
        second = await service.activate_current_season()

        assert second.success
        assert second.was_already_activated
        assert second.activated_at == first.activated_at
        assert repository.activation_writes == 1

    async def test_concurrent_activations_have_single_winner(self, repository):
        """
        Ten callers race. All read the season as inactive first, then all try
        the conditional write.
        """
        repository.add_season(season_id=1)
        service = IdempotentActivationService(repository)

        results = await asyncio.gather(
            *(service.activate_current_season(self.details) for _ in range(10))
        )

        assert all(r.success for r in results)
        winners = [r for r in results if not r.was_already_activated]
        assert len(winners) == 1
        assert len({r.activated_at for r in results}) == 1
        assert repository.activation_writes == 1

    async def test_concurrent_activations_of_specific_season(self, repository):
        repository.add_season(season_id=3, is_current=False)
        service = IdempotentActivationService(repository)

        results = await asyncio.gather(*(service.activate_season(3) for _ in range(5)))

        assert sum(1 for r in results if not r.was_already_activated) == 1
        assert len({r.activated_at for r in results}) == 1

    async def test_already_activated_season_is_not_rewritten(self, repository, now):
        activated_at = now - timedelta(days=2)
        repository.add_season(season_id=1, cup_activated=True, cup_activated_at=activated_at)

        result = await IdempotentActivationService(repository).activate_season(1)

        assert result.success
        assert result.was_already_activated
        assert result.activated_at == activated_at
        assert repository.activation_writes == 0

    async def test_no_current_season(self, repository):
        result = await IdempotentActivationService(repository).activate_current_season()

        assert not result.success
        assert result.error == "No current season found"

    async def test_unknown_season(self, repository):
        result = await IdempotentActivationService(repository).activate_season(99)

        assert not result.success
        assert not result.was_already_activated
        assert result.error == "Season 99 not found"

    async def test_invalid_season_id_is_reported_not_raised(self, repository):
        result = await IdempotentActivationService(repository).activate_season(0)

        assert not result.success
        assert result.error == "Valid season ID is required"

    async def test_read_failure_is_reported(self, repository):
        repository.add_season(season_id=1)
        repository.failing_reads.add("get_current_season")

        result = await IdempotentActivationService(repository).activate_current_season()

        assert not result.success
        assert "connection refused" in result.error
        assert not repository.seasons[1].cup_activated

    async def test_attempt_activation_returns_bool(self, repository):
        repository.add_season(season_id=1)
        service = IdempotentActivationService(repository)

        assert await service.attempt_activation()
        assert await service.attempt_activation(1)
        assert not await service.attempt_activation(55)

    async def test_result_serialises(self, repository):
        repository.add_season(season_id=1)

        result = await IdempotentActivationService(repository).activate_current_season()
        data = result.to_dict()

        assert data["success"] is True
        assert data["season_id"] == 1
        assert "attempted_at" in data
