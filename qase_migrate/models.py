"""Data model for the migration pipeline.

Entities read from the Qase API are frozen pydantic models; values derived by
the pipeline itself are plain dataclasses, in the same way migration results
were modelled before.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator


class SourceRecord(BaseModel):
    """One executed test result as reported by the source project."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    run_id: int
    case_id: int
    status: str
    comment: str | None = None
    time_spent_ms: int | None = None
    time: int | None = None
    end_time: str | None = None
    hash: str | None = None

    @property
    def elapsed_ms(self) -> int | None:
        """Elapsed time in milliseconds, preferring ``time_spent_ms``."""
        if self.time_spent_ms:
            return self.time_spent_ms
        if self.time:
            return self.time * 1000
        return None


class CustomFieldValue(BaseModel):
    """A custom field value attached to a case."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: int
    value: str | None = None

    @field_validator("value", mode="before")
    def coerce_value(cls, v: Any) -> str | None:
        """Custom field values arrive as strings or numbers."""
        if v is None:
            return None
        return str(v)


class Case(BaseModel):
    """A test case definition."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: int
    title: str = ""
    custom_fields: list[CustomFieldValue] = []

    @field_validator("custom_fields", mode="before")
    def default_custom_fields(cls, v: Any) -> Any:
        """The API sends ``null`` for cases without custom fields."""
        return v or []


class Run(BaseModel):
    """A test run.

    In the target project ``id`` is ``None`` only for runs whose creation was
    simulated in a dry run.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: int | None
    title: str
    description: str | None = None
    status_text: str | None = None
    start_time: str | None = None
    end_time: str | None = None


class CustomField(BaseModel):
    """A custom field definition, as listed by the custom field endpoint."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: int
    title: str
    type: str | None = None


@dataclass(frozen=True, slots=True)
class BulkItem:
    """A result ready for the bulk create endpoint."""

    case_id: int
    status: str
    time: int | None = None
    comment: str | None = None

    def to_payload(self) -> dict[str, Any]:
        """Serialize, omitting absent members."""
        payload: dict[str, Any] = {"case_id": self.case_id, "status": self.status}
        if self.time is not None:
            payload["time"] = self.time
        if self.comment:
            payload["comment"] = self.comment
        return payload


@dataclass(frozen=True, slots=True)
class RunGroup:
    """Source records sharing one originating run."""

    run_id: int
    records: tuple[SourceRecord, ...]
    title: str
    description: str

    def __len__(self) -> int:
        return len(self.records)


class ResolverState(str, Enum):
    """States a run group passes through while its target run is resolved."""

    START = "start"
    FOUND_OR_CREATED_TARGET_RUN = "found_or_created_target_run"
    HAS_NO_PRIOR_RESULTS = "has_no_prior_results"
    HAS_PRIOR_RESULTS = "has_prior_results"
    FILTERED = "filtered"
    READY_TO_POST_ALL = "ready_to_post_all"
    READY_TO_POST_SUBSET = "ready_to_post_subset"
    ERROR = "error"


@dataclass(slots=True)
class MigrationOutcome:
    """Result of migrating one run group."""

    source_run_id: int
    title: str
    success: bool
    target_run_id: int | None = None
    state: ResolverState = ResolverState.START
    posted: int = 0
    skipped_unmapped: int = 0
    already_present: int = 0
    failed: int = 0
    created_run: bool = False
    error: str | None = None
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "source_run_id": self.source_run_id,
            "title": self.title,
            "success": self.success,
            "target_run_id": self.target_run_id,
            "state": self.state.value,
            "posted": self.posted,
            "skipped_unmapped": self.skipped_unmapped,
            "already_present": self.already_present,
            "failed": self.failed,
            "created_run": self.created_run,
            "error": self.error,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass(slots=True)
class MigrationReport:
    """Aggregate report for one invocation of the pipeline."""

    source_project: str
    target_project: str
    after: datetime
    dry_run: bool
    idempotent: bool
    start_time: datetime
    fast_mode: bool = False
    end_time: datetime | None = None
    total_results: int = 0
    results_truncated: bool = False
    cases_truncated: bool = False
    mapping_mode: str | None = None
    mapping_size: int = 0
    outcomes: list[MigrationOutcome] = field(default_factory=list)
    timed_out_runs: list[int] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    phase_durations: dict[str, float] = field(default_factory=dict)

    @property
    def total_runs(self) -> int:
        return len(self.outcomes) + len(self.timed_out_runs)

    @property
    def successful_runs(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.success)

    @property
    def failed_runs(self) -> int:
        return sum(1 for outcome in self.outcomes if not outcome.success)

    @property
    def total_posted(self) -> int:
        return sum(outcome.posted for outcome in self.outcomes)

    @property
    def total_skipped(self) -> int:
        return sum(outcome.skipped_unmapped for outcome in self.outcomes)

    @property
    def total_already_present(self) -> int:
        return sum(outcome.already_present for outcome in self.outcomes)

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return (
            self.failed_runs == 0
            and not self.timed_out_runs
            and not self.errors
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "source_project": self.source_project,
            "target_project": self.target_project,
            "after_date": self.after.isoformat(),
            "dry_run": self.dry_run,
            "idempotent": self.idempotent,
            "fast_mode": self.fast_mode,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": round(self.duration_seconds, 3),
            "phase_durations": {
                name: round(seconds, 3) for name, seconds in self.phase_durations.items()
            },
            "success": self.success,
            "summary": {
                "total_results": self.total_results,
                "results_truncated": self.results_truncated,
                "cases_truncated": self.cases_truncated,
                "mapping_mode": self.mapping_mode,
                "mapping_size": self.mapping_size,
                "total_runs": self.total_runs,
                "successful_runs": self.successful_runs,
                "failed_runs": self.failed_runs,
                "timed_out_runs": len(self.timed_out_runs),
                "total_posted": self.total_posted,
                "total_skipped": self.total_skipped,
                "total_already_present": self.total_already_present,
            },
            "runs": [
                outcome.to_dict()
                for outcome in sorted(self.outcomes, key=lambda o: o.source_run_id)
            ],
            "timed_out": sorted(self.timed_out_runs),
            "errors": self.errors,
        }
