"""Grouping of source records by their originating run."""

from collections.abc import Iterable
from datetime import datetime

from qase_migrate.models import RunGroup, SourceRecord

END_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S%z"
TITLE_TIME_FORMAT = "%Y-%m-%d %H:%M"


def group_by_run(records: Iterable[SourceRecord]) -> list[RunGroup]:
    """Partition records by run id, keeping first-appearance order.

    Every record lands in exactly one group and duplicates are kept.
    """
    buckets: dict[int, list[SourceRecord]] = {}
    for record in records:
        buckets.setdefault(record.run_id, []).append(record)

    return [
        RunGroup(
            run_id=run_id,
            records=tuple(run_records),
            title=run_title(run_id, run_records[0].end_time),
            description=run_description(len(run_records)),
        )
        for run_id, run_records in buckets.items()
    ]


def run_title(run_id: int, end_time: str | None) -> str:
    """Title used to create, and later find, the target run."""
    if end_time:
        try:
            finished = datetime.strptime(end_time, END_TIME_FORMAT)
        except ValueError:
            pass
        else:
            return f"Migrated Run {run_id} ({finished.strftime(TITLE_TIME_FORMAT)})"
    return f"Migrated Run {run_id}"


def run_description(result_count: int) -> str:
    return f"Migrated run with {result_count} results from source workspace"
