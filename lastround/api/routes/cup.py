"""Cup read endpoints: activation status, standings and winners."""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Path
from pydantic import BaseModel

from lastround.api.dependencies import get_repository
from lastround.services.cup.activation import CupActivationStatusChecker
from lastround.services.cup.errors import CupError, CupValidationError
from lastround.services.cup.repository import CupRepository
from lastround.services.cup.standings import CupWinnerDeterminationService

router = APIRouter(prefix="/api/cup", tags=["cup"])


class CupStatusResponse(BaseModel):
    """Cup activation status of a season."""

    is_activated: bool
    activated_at: datetime | None
    season_id: int | None
    season_name: str | None


class StandingsEntryResponse(BaseModel):
    user_id: str
    username: str | None
    total_points: int
    rounds_participated: int
    rank: int
    is_tied: bool


class StandingsResponse(BaseModel):
    """Cup standings for a season."""

    season_id: int
    standings: list[StandingsEntryResponse]
    total_participants: int
    max_points: int
    average_points: float


class WinnerResponse(BaseModel):
    user_id: str
    username: str | None
    total_points: int


@router.get("/status", response_model=CupStatusResponse)
async def get_current_status(repository: CupRepository = Depends(get_repository)):
    """
    Activation status of the current season.

    Returns an all-empty status when there is no current season.
    """
    try:
        status = await CupActivationStatusChecker(repository).check_current_season()
    except CupError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return CupStatusResponse(**status.to_dict())


@router.get("/seasons/{season_id}/status", response_model=CupStatusResponse)
async def get_season_status(
    season_id: int = Path(..., ge=1),
    repository: CupRepository = Depends(get_repository),
):
    """Activation status of one season."""
    try:
        status = await CupActivationStatusChecker(repository).check_season(season_id)
    except CupValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except CupError as e:
        raise HTTPException(status_code=503, detail=str(e))

    if status.season_id is None:
        raise HTTPException(status_code=404, detail=f"Season {season_id} not found")
    return CupStatusResponse(**status.to_dict())


@router.get("/seasons/{season_id}/standings", response_model=StandingsResponse)
async def get_standings(
    season_id: int = Path(..., ge=1),
    repository: CupRepository = Depends(get_repository),
):
    """
    Cup standings, totals descending.

    Tied users share a rank; users without a profile name sort first among
    equal totals.
    """
    result = await CupWinnerDeterminationService(repository).calculate_standings(season_id)
    if result.errors:
        raise HTTPException(status_code=503, detail="; ".join(result.errors))

    return StandingsResponse(
        season_id=season_id,
        standings=[StandingsEntryResponse(**s.to_dict()) for s in result.standings],
        total_participants=result.total_participants,
        max_points=result.max_points,
        average_points=result.average_points,
    )


@router.get("/seasons/{season_id}/winners", response_model=list[WinnerResponse])
async def get_winners(
    season_id: int = Path(..., ge=1),
    repository: CupRepository = Depends(get_repository),
):
    """Recorded cup winners; empty until winners have been determined."""
    try:
        winners = await repository.get_cup_winners(season_id)
    except CupError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return [
        WinnerResponse(user_id=w.user_id, username=w.username, total_points=w.total_points)
        for w in winners
    ]
