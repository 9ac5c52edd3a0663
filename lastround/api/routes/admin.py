"""Admin API endpoints.

Cup activation, scoring, corrections and winner determination, plus manual
task triggers. These endpoints should be protected in production (not
implemented here).
"""

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Path, Query
from pydantic import BaseModel, Field

from lastround.api.dependencies import get_cup_config, get_notifier, get_repository
from lastround.config import CupConfig
from lastround.services.cup.activation import ActivationDetails, IdempotentActivationService
from lastround.services.cup.activation_condition import CupActivationDetectionService
from lastround.services.cup.corrections import (
    CorrectionOptions,
    CorrectionRequest,
    CorrectionType,
    CupCorrectionService,
)
from lastround.services.cup.errors import CupError
from lastround.services.cup.late_submissions import LateSubmissionDetector
from lastround.services.cup.notifications import RedisNotifier
from lastround.services.cup.repository import CupRepository
from lastround.services.cup.scoring import CupScoringService
from lastround.services.cup.standings import CupWinnerDeterminationService
from lastround.services.cup.storage import BatchStorageEngine

router = APIRouter(prefix="/api/admin", tags=["admin"])
logger = structlog.get_logger(__name__)


class TaskTriggerResponse(BaseModel):
    """Response from task trigger."""

    task_name: str
    task_id: str
    status: str
    message: str


class ActivationRequest(BaseModel):
    season_id: int | None = Field(None, ge=1, description="Defaults to the current season")
    activated_by: str | None = None
    reason: str | None = None


class CorrectionOptionsModel(BaseModel):
    enable_conflict_resolution: bool = True
    notify_on_point_changes: bool = True
    require_admin_approval_for_overrides: bool = False


class CorrectionModel(BaseModel):
    user_id: str
    betting_round_id: int = Field(..., ge=1)
    old_points: int
    new_points: int
    reason: str
    correction_type: CorrectionType = CorrectionType.RESULT_UPDATE
    admin_user_id: str | None = None


class CorrectionBatchRequest(BaseModel):
    corrections: list[CorrectionModel]
    options: CorrectionOptionsModel = Field(default_factory=CorrectionOptionsModel)


class ManualOverrideRequest(BaseModel):
    user_id: str
    betting_round_id: int = Field(..., ge=1)
    new_points: int
    reason: str
    admin_user_id: str | None = None
    old_points: int | None = None
    options: CorrectionOptionsModel = Field(default_factory=CorrectionOptionsModel)


# Map of friendly names to actual Celery task names
TASK_MAP = {
    "detect-cup-activation": "lastround.tasks.cup.detect_cup_activation",
    "calculate-season-cup-points": "lastround.tasks.cup.calculate_current_season_cup_points",
    "determine-cup-winners": "lastround.tasks.cup.determine_cup_winners",
}


def _correction_service(
    repository: CupRepository, config: CupConfig, notifier: RedisNotifier
) -> CupCorrectionService:
    storage = BatchStorageEngine(repository, integrity_sample_size=config.integrity_sample_size)
    return CupCorrectionService(
        repository, config=config, storage_engine=storage, notifier=notifier
    )


@router.post("/cup/activate")
async def activate_cup(
    request: ActivationRequest,
    repository: CupRepository = Depends(get_repository),
) -> dict[str, Any]:
    """
    Activate the cup for a season.

    Idempotent: activating an already-active season succeeds with
    was_already_activated=true and the original activation time.
    """
    service = IdempotentActivationService(repository)
    details = ActivationDetails(activated_by=request.activated_by, reason=request.reason)
    if request.season_id is None:
        result = await service.activate_current_season(details)
    else:
        result = await service.activate_season(request.season_id, details)

    logger.info(
        "cup_activation_requested",
        season_id=result.season_id,
        success=result.success,
        was_already_activated=result.was_already_activated,
        activated_by=request.activated_by,
    )
    return result.to_dict()


@router.post("/cup/detect")
async def detect_activation(
    dry_run: bool = Query(False, description="Evaluate the condition without activating"),
    repository: CupRepository = Depends(get_repository),
    config: CupConfig = Depends(get_cup_config),
) -> dict[str, Any]:
    """Run one activation detection pass for the current season."""
    service = CupActivationDetectionService(repository, threshold=config.activation_threshold)
    if dry_run:
        result = await service.check_activation_conditions()
        return result.to_dict()
    result = await service.detect_and_activate(
        ActivationDetails(activated_by="admin", reason="Manual detection run")
    )
    return result.to_dict()


@router.post("/cup/rounds/{betting_round_id}/score")
async def score_round(
    betting_round_id: int = Path(..., ge=1),
    only_after_activation: bool = Query(True),
    repository: CupRepository = Depends(get_repository),
    config: CupConfig = Depends(get_cup_config),
) -> dict[str, Any]:
    """Calculate and store cup points for one betting round."""
    storage = BatchStorageEngine(repository, integrity_sample_size=config.integrity_sample_size)
    result = await CupScoringService(repository, storage).calculate_round_cup_points(
        betting_round_id, only_after_activation=only_after_activation
    )
    return result.to_dict()


@router.post("/cup/seasons/{season_id}/score")
async def score_season(
    season_id: int = Path(..., ge=1),
    repository: CupRepository = Depends(get_repository),
    config: CupConfig = Depends(get_cup_config),
) -> dict[str, Any]:
    """Recalculate cup points for every round since the season's activation."""
    storage = BatchStorageEngine(repository, integrity_sample_size=config.integrity_sample_size)
    result = await CupScoringService(repository, storage).calculate_season_cup_points(season_id)
    return result.to_dict()


@router.post("/cup/corrections")
async def apply_corrections(
    request: CorrectionBatchRequest,
    repository: CupRepository = Depends(get_repository),
    config: CupConfig = Depends(get_cup_config),
    notifier: RedisNotifier = Depends(get_notifier),
) -> dict[str, Any]:
    """Apply point corrections with conflict detection."""
    service = _correction_service(repository, config, notifier)
    result = await service.apply_corrections(
        [CorrectionRequest(**c.model_dump()) for c in request.corrections],
        CorrectionOptions(**request.options.model_dump()),
    )
    return result.to_dict()


@router.post("/cup/override")
async def manual_override(
    request: ManualOverrideRequest,
    repository: CupRepository = Depends(get_repository),
    config: CupConfig = Depends(get_cup_config),
    notifier: RedisNotifier = Depends(get_notifier),
) -> dict[str, Any]:
    """Set a user's cup points for one round by hand."""
    service = _correction_service(repository, config, notifier)
    try:
        result = await service.apply_manual_override(
            user_id=request.user_id,
            betting_round_id=request.betting_round_id,
            new_points=request.new_points,
            reason=request.reason,
            admin_user_id=request.admin_user_id,
            old_points=request.old_points,
            options=CorrectionOptions(**request.options.model_dump()),
        )
    except CupError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return result.to_dict()


@router.get("/cup/rounds/{betting_round_id}/late-submissions")
async def list_late_submissions(
    betting_round_id: int = Path(..., ge=1),
    grace_period_minutes: int | None = Query(None, ge=0),
    repository: CupRepository = Depends(get_repository),
    config: CupConfig = Depends(get_cup_config),
) -> list[dict[str, Any]]:
    """Bets in a round placed after their fixture kicked off."""
    detector = LateSubmissionDetector(repository, config.late_submission_grace_minutes)
    try:
        submissions = await detector.detect(betting_round_id, grace_period_minutes)
    except CupError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return [s.to_dict() for s in submissions if s.is_late]


@router.post("/cup/rounds/{betting_round_id}/late-submissions")
async def process_late_submissions(
    betting_round_id: int = Path(..., ge=1),
    repository: CupRepository = Depends(get_repository),
    config: CupConfig = Depends(get_cup_config),
    notifier: RedisNotifier = Depends(get_notifier),
) -> dict[str, Any]:
    """Apply the configured late-submission penalty to a round."""
    service = _correction_service(repository, config, notifier)
    result = await service.process_late_submissions(betting_round_id)
    return result.to_dict()


@router.post("/cup/seasons/{season_id}/winners")
async def determine_winners(
    season_id: int = Path(..., ge=1),
    repository: CupRepository = Depends(get_repository),
) -> dict[str, Any]:
    """Determine and record cup winners for a season (once)."""
    result = await CupWinnerDeterminationService(repository).determine_winners(season_id)
    return result.to_dict()


@router.post("/trigger-task/{task_name}", response_model=TaskTriggerResponse)
async def trigger_task(task_name: str) -> TaskTriggerResponse:
    """
    Manually trigger a background task.

    Available tasks:
    - detect-cup-activation: Check the end-of-season condition and activate
    - calculate-season-cup-points: Recalculate the current season's cup points
    - determine-cup-winners: Record winners for completed seasons
    """
    if task_name not in TASK_MAP:
        raise HTTPException(
            status_code=404,
            detail=f"Unknown task: {task_name}. Available: {list(TASK_MAP.keys())}",
        )

    celery_task_name = TASK_MAP[task_name]

    try:
        from lastround.tasks import celery_app

        result = celery_app.send_task(celery_task_name)

        logger.info(
            "task_triggered_manually",
            task_name=task_name,
            celery_task=celery_task_name,
            task_id=result.id,
        )

        return TaskTriggerResponse(
            task_name=task_name,
            task_id=result.id,
            status="submitted",
            message=f"Task {task_name} submitted successfully. Check Celery logs for progress.",
        )

    except Exception as e:
        logger.error("task_trigger_failed", task_name=task_name, error=str(e))
        raise HTTPException(status_code=500, detail=f"Failed to trigger task: {str(e)}")


@router.post("/trigger-task/process-round-cup-points/{betting_round_id}", response_model=TaskTriggerResponse)
async def trigger_round_task(betting_round_id: int = Path(..., ge=1)) -> TaskTriggerResponse:
    """Queue cup scoring and late-submission processing for one round."""
    from lastround.tasks import celery_app

    result = celery_app.send_task(
        "lastround.tasks.cup.process_round_cup_points", args=[betting_round_id]
    )
    logger.info(
        "task_triggered_manually",
        task_name="process-round-cup-points",
        betting_round_id=betting_round_id,
        task_id=result.id,
    )
    return TaskTriggerResponse(
        task_name="process-round-cup-points",
        task_id=result.id,
        status="submitted",
        message=f"Round {betting_round_id} queued for cup scoring.",
    )


@router.get("/tasks", response_model=dict[str, str])
async def list_tasks() -> dict[str, str]:
    """List all available tasks that can be triggered manually."""
    return TASK_MAP
