"""Validation, batch sizing and failure classification for cup point writes.

Pure functions; the storage engine composes them around the repository.
"""

from collections.abc import Iterator, Sequence
from typing import Any

from lastround.models.domain import POINTS_SOURCE_CALCULATED, POINTS_SOURCE_CORRECTION
from lastround.services.cup.errors import CupValidationError
from lastround.services.cup.repository import CupPointsInput

# (max records, batch size); above the last tier batches are capped
BATCH_SIZE_TIERS: tuple[tuple[int, int], ...] = (
    (500, 100),
    (2000, 200),
)
SMALL_BATCH_LIMIT = 100
MAX_BATCH_SIZE = 250

CRITICAL_ERROR_MARKERS = (
    "foreign key",
    "constraint",
    "connection",
    "timeout",
    "timed out",
    "permission",
)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_cup_points_records(records: Sequence[CupPointsInput]) -> None:
    """
    Check every record before anything is written.

    Rules:
    - user_id is a non-empty string
    - betting_round_id and season_id are positive integers
    - points is a non-negative integer
    - source is calculated or correction
    - (user_id, betting_round_id, season_id) is unique within the list

    Raises:
        CupValidationError: listing every offending index
    """
    problems: list[tuple[int | None, str]] = []
    seen: dict[tuple, int] = {}

    for index, record in enumerate(records):
        if not isinstance(record.user_id, str) or not record.user_id.strip():
            problems.append((index, "user_id must be a non-empty string"))
        if not _is_int(record.betting_round_id) or record.betting_round_id <= 0:
            problems.append((index, "betting_round_id must be a positive integer"))
        if not _is_int(record.season_id) or record.season_id <= 0:
            problems.append((index, "season_id must be a positive integer"))
        if not _is_int(record.points) or record.points < 0:
            problems.append((index, "points must be a non-negative integer"))
        if record.source not in (POINTS_SOURCE_CALCULATED, POINTS_SOURCE_CORRECTION):
            problems.append((index, f"unknown source {record.source!r}"))

        key = (record.user_id, record.betting_round_id, record.season_id)
        if key in seen:
            problems.append(
                (index, f"duplicate of record {seen[key]} for user {record.user_id}")
            )
        else:
            seen[key] = index

    if problems:
        offending = sorted({index for index, _ in problems if index is not None})
        details = "; ".join(f"[{index}] {reason}" for index, reason in problems)
        raise CupValidationError(
            f"Invalid cup points records at indices {offending}: {details}",
            errors=problems,
        )


def calculate_batch_size(total_records: int) -> int:
    """
    Batch size for a write of ``total_records`` rows.

    <=100 rows go in one batch; <=500 in batches of 100; <=2000 in batches
    of 200; anything larger in batches of 250.
    """
    if total_records <= SMALL_BATCH_LIMIT:
        return max(total_records, 1)
    for limit, size in BATCH_SIZE_TIERS:
        if total_records <= limit:
            return size
    return MAX_BATCH_SIZE


def chunk_records(
    records: Sequence[CupPointsInput], batch_size: int
) -> Iterator[list[CupPointsInput]]:
    for start in range(0, len(records), batch_size):
        yield list(records[start:start + batch_size])


def is_critical_storage_error(message: str) -> bool:
    """Failures that make further batches pointless or dangerous."""
    lowered = (message or "").lower()
    return any(marker in lowered for marker in CRITICAL_ERROR_MARKERS)
