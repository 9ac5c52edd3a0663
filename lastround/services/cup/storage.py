"""Batch storage engine for cup points.

Validates the full record list, splits it into size-tiered batches and
upserts each batch in its own transaction. A critical failure stops the run;
anything else is recorded and the next batch is tried. After writing, a small
sample is read back and compared, purely for observability.
"""

import random
import time
from dataclasses import asdict, dataclass, field
from typing import Any

import structlog

from lastround.services.cup.batching import (
    calculate_batch_size,
    chunk_records,
    is_critical_storage_error,
    validate_cup_points_records,
)
from lastround.services.cup.errors import (
    CriticalStorageError,
    NonCriticalStorageError,
    StorageError,
)
from lastround.models.domain import POINTS_SOURCE_CORRECTION
from lastround.services.cup.repository import CupPointsInput, CupRepository

logger = structlog.get_logger(__name__)

DEFAULT_INTEGRITY_SAMPLE_SIZE = 10


@dataclass
class StorageResult:
    success: bool
    message: str
    records_stored: int = 0
    total_records: int = 0
    batches_total: int = 0
    batches_failed: int = 0
    critical: bool = False
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class BatchStorageEngine:
    """Writes aggregated cup points with partial-failure semantics."""

    def __init__(
        self,
        repository: CupRepository,
        integrity_sample_size: int = DEFAULT_INTEGRITY_SAMPLE_SIZE,
        rng: random.Random | None = None,
    ):
        self.repository = repository
        self.integrity_sample_size = integrity_sample_size
        self.rng = rng or random.Random()

    async def store(self, records: list[CupPointsInput]) -> StorageResult:
        """
        Persist records in batches.

        Raises:
            CupValidationError: any record is malformed or duplicated; nothing
                is written in that case
        """
        if not records:
            return StorageResult(success=True, message="No cup points records to store")

        validate_cup_points_records(records)

        started = time.monotonic()
        total = len(records)
        batch_size = calculate_batch_size(total)
        batches = list(chunk_records(records, batch_size))

        log = logger.bind(total_records=total, batch_size=batch_size, batch_count=len(batches))
        log.info("cup_points_storage_started")

        stored = 0
        written: list[CupPointsInput] = []
        failures: list[StorageError] = []
        critical = False

        for batch_index, batch in enumerate(batches):
            try:
                await self.repository.upsert_cup_points(batch)
            except StorageError as e:
                failure = self._classify(str(e), batch_index)
                failures.append(failure)
                if isinstance(failure, CriticalStorageError):
                    log.error(
                        "cup_points_batch_critical_failure",
                        batch_index=batch_index,
                        error=str(e),
                        records_stored=stored,
                    )
                    critical = True
                    break
                log.warning(
                    "cup_points_batch_failed",
                    batch_index=batch_index,
                    error=str(e),
                )
                continue

            stored += len(batch)
            written.extend(batch)
            log.debug("cup_points_batch_stored", batch_index=batch_index, records=len(batch))

        await self._verify_integrity(written)

        duration_ms = int((time.monotonic() - started) * 1000)
        if failures:
            errors = [f"Batch {f.batch_index}: {f}" for f in failures]
            prefix = "Critical storage error, aborted" if critical else "Partial success"
            message = (
                f"{prefix}: {stored}/{total} records stored; errors: " + "; ".join(errors)
            )
            log.error(
                "cup_points_storage_incomplete",
                records_stored=stored,
                batches_failed=len(failures),
                critical=critical,
                duration_ms=duration_ms,
            )
            return StorageResult(
                success=False,
                message=message,
                records_stored=stored,
                total_records=total,
                batches_total=len(batches),
                batches_failed=len(failures),
                critical=critical,
                errors=errors,
            )

        log.info("cup_points_storage_complete", records_stored=stored, duration_ms=duration_ms)
        return StorageResult(
            success=True,
            message=f"Successfully stored {stored} cup points records",
            records_stored=stored,
            total_records=total,
            batches_total=len(batches),
        )

    def _classify(self, message: str, batch_index: int) -> StorageError:
        if is_critical_storage_error(message):
            return CriticalStorageError(message, batch_index=batch_index)
        return NonCriticalStorageError(message, batch_index=batch_index)

    async def _verify_integrity(self, written: list[CupPointsInput]) -> int:
        """
        Read back a sample of written records and log mismatches.

        Returns the number of mismatches. Never raises and never changes the
        outcome of the write.
        """
        if not written or self.integrity_sample_size <= 0:
            return 0

        sample_size = min(self.integrity_sample_size, len(written))
        sample = self.rng.sample(written, sample_size)

        try:
            stored = await self.repository.get_cup_points([r.key for r in sample])
        except Exception as e:
            logger.warning("cup_points_integrity_check_failed", error=str(e))
            return 0

        mismatches = 0
        for record in sample:
            row = stored.get(record.key)
            if (
                row is not None
                and row.source == POINTS_SOURCE_CORRECTION
                and record.source != POINTS_SOURCE_CORRECTION
            ):
                # the upsert keeps corrected rows
                continue
            actual = row.points if row is not None else None
            if actual != record.points:
                mismatches += 1
                logger.warning(
                    "cup_points_integrity_mismatch",
                    user_id=record.user_id,
                    betting_round_id=record.betting_round_id,
                    season_id=record.season_id,
                    expected_points=record.points,
                    stored_points=actual,
                )

        if not mismatches:
            logger.debug("cup_points_integrity_verified", sample_size=sample_size)
        return mismatches
