"""Scheduled and on-demand cup tasks.

Each task runs its async body in a fresh event loop with its own engine,
records a JobRun row, and returns a JSON-serialisable summary.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from lastround.config import CupConfig
from lastround.models.base import get_task_session
from lastround.models.domain import JobRun
from lastround.services.cup import (
    CupActivationDetectionService,
    CupCorrectionService,
    CupRepository,
    CupScoringService,
    CupWinnerDeterminationService,
)
from lastround.services.cup.storage import BatchStorageEngine
from lastround.tasks import celery_app

logger = structlog.get_logger(__name__)


def _run(coro: Awaitable[dict[str, Any]]) -> dict[str, Any]:
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def _run_job(
    job_name: str,
    body: Callable[[AsyncSession], Awaitable[dict[str, Any]]],
    task_id: str | None = None,
) -> dict[str, Any]:
    """Run ``body`` inside a task session, bracketed by a JobRun record."""
    started_at = datetime.now(timezone.utc)
    stats: dict[str, Any] = {}
    job_status = "running"
    error_message = None

    async with get_task_session() as session:
        job_run = JobRun(job_name=job_name, started_at=started_at, status="running")
        session.add(job_run)
        await session.commit()

        try:
            stats = await body(session)
            job_status = "success" if stats.get("success", True) else "failed"
            logger.info(
                f"{job_name}_complete",
                duration_seconds=(datetime.now(timezone.utc) - started_at).total_seconds(),
                **{k: v for k, v in stats.items() if isinstance(v, (int, float, str, bool))},
            )

        except Exception as e:
            job_status = "failed"
            error_message = str(e)
            logger.error(f"{job_name}_failed", error=str(e), task_id=task_id)
            stats = {"success": False, "error": str(e)}

        finally:
            job_run.completed_at = datetime.now(timezone.utc)
            job_run.status = job_status
            job_run.error_message = error_message
            job_run.records_processed = int(stats.get("records_processed", 0) or 0)
            job_run.job_metadata = stats
            session.add(job_run)
            await session.commit()

    return stats


def _build_storage(repository: CupRepository, config: CupConfig) -> BatchStorageEngine:
    return BatchStorageEngine(repository, integrity_sample_size=config.integrity_sample_size)


@celery_app.task(bind=True, soft_time_limit=120, time_limit=150)
def detect_cup_activation(self):
    """
    Scheduled: Daily at 06:00

    1. Count remaining games per team in the current season
    2. Activate the cup once the configured share of teams has <=5 left
    """

    async def body(session: AsyncSession) -> dict[str, Any]:
        config = CupConfig.from_settings()
        service = CupActivationDetectionService(
            CupRepository(session), threshold=config.activation_threshold
        )
        result = await service.detect_and_activate()
        return {
            "success": result.success,
            "action_taken": result.action_taken,
            "season_id": result.season_id,
            "summary": result.summary,
            "errors": result.errors,
        }

    return _run(_run_job("detect_cup_activation", body, self.request.id))


@celery_app.task(bind=True, soft_time_limit=540, time_limit=600)
def calculate_current_season_cup_points(self):
    """
    Scheduled: Hourly at :15

    Recalculate cup points for every round of the current season created
    since activation. Safe to repeat; writes are keyed upserts, and rows
    written by a correction (manual override, late penalty) are kept.
    """

    async def body(session: AsyncSession) -> dict[str, Any]:
        repository = CupRepository(session)
        season = await repository.get_current_season()
        if season is None:
            return {"success": True, "message": "No current season"}

        config = CupConfig.from_settings()
        service = CupScoringService(repository, _build_storage(repository, config))
        result = await service.calculate_season_cup_points(season.id)
        return {
            "success": result.success,
            "message": result.message,
            "season_id": season.id,
            "records_processed": result.details.users_processed,
            "rounds_processed": result.details.rounds_processed,
            "total_points_awarded": result.details.total_points_awarded,
            "errors": result.details.errors,
        }

    return _run(_run_job("calculate_current_season_cup_points", body, self.request.id))


@celery_app.task(bind=True, soft_time_limit=240, time_limit=300)
def process_round_cup_points(self, betting_round_id: int):
    """
    On demand: after a round has been graded.

    1. Recalculate the round's cup points
    2. Apply late-submission penalties to the freshly stored totals
    """

    async def body(session: AsyncSession) -> dict[str, Any]:
        repository = CupRepository(session)
        config = CupConfig.from_settings()
        storage = _build_storage(repository, config)

        scoring = await CupScoringService(repository, storage).calculate_round_cup_points(
            betting_round_id, only_after_activation=True
        )
        late = await CupCorrectionService(
            repository, config=config, storage_engine=storage
        ).process_late_submissions(betting_round_id)

        return {
            "success": scoring.success and late.success,
            "betting_round_id": betting_round_id,
            "message": scoring.message,
            "records_processed": scoring.details.users_processed,
            "total_points_awarded": scoring.details.total_points_awarded,
            "late_corrections_applied": late.corrections_applied,
            "errors": scoring.details.errors + late.errors,
        }

    return _run(_run_job("process_round_cup_points", body, self.request.id))


@celery_app.task(bind=True, soft_time_limit=300, time_limit=360)
def determine_cup_winners(self):
    """
    Scheduled: Daily at 03:30

    Record cup winners for completed, activated seasons that have none yet.
    """

    async def body(session: AsyncSession) -> dict[str, Any]:
        service = CupWinnerDeterminationService(CupRepository(session))
        results = await service.determine_winners_for_completed_seasons()
        failed = [r.season_id for r in results if r.errors]
        return {
            "success": not failed,
            "seasons_processed": len(results),
            "records_processed": sum(len(r.winners) for r in results),
            "failed_seasons": failed,
            "seasons": [
                {
                    "season_id": r.season_id,
                    "winners": [w.user_id for w in r.winners],
                    "errors": r.errors,
                }
                for r in results
            ],
        }

    return _run(_run_job("determine_cup_winners", body, self.request.id))
