"""Conversion of source records into bulk items for the target project."""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

import structlog

from qase_migrate.models import BulkItem, SourceRecord

logger = structlog.get_logger(__name__)

# One year; the bulk endpoint rejects longer elapsed times.
MAX_TIME_SECONDS = 31_536_000


@dataclass(slots=True)
class TransformResult:
    """Bulk items built from a batch of records, plus the unmapped count."""

    items: list[BulkItem] = field(default_factory=list)
    skipped: int = 0


def clamp_seconds(seconds: int) -> int:
    """Clamp an elapsed time in seconds to the accepted maximum."""
    if seconds > MAX_TIME_SECONDS:
        logger.warning(
            "Clamping elapsed time",
            seconds=seconds,
            clamped_to=MAX_TIME_SECONDS,
        )
        return MAX_TIME_SECONDS
    return seconds


def normalize_elapsed(elapsed_ms: int | None) -> int | None:
    """Convert milliseconds to whole seconds; ``None`` when there is nothing to send."""
    if not elapsed_ms:
        return None
    seconds = elapsed_ms // 1000
    if seconds <= 0:
        return None
    return clamp_seconds(seconds)


def transform_records(
    records: Iterable[SourceRecord],
    mapping: Mapping[int, int],
    status_map: Mapping[str, str] | None = None,
) -> TransformResult:
    """Map case ids and statuses; records with unmapped cases are skipped."""
    status_map = status_map or {}
    result = TransformResult()

    for record in records:
        target_case_id = mapping.get(record.case_id)
        if target_case_id is None:
            result.skipped += 1
            continue

        result.items.append(
            BulkItem(
                case_id=target_case_id,
                status=status_map.get(record.status, record.status),
                time=normalize_elapsed(record.elapsed_ms),
                comment=record.comment or None,
            )
        )

    if result.skipped:
        logger.debug("Skipped unmapped records", skipped=result.skipped)
    return result
