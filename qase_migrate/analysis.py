"""Read-only sizing of a source project before migrating it."""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog

from qase_migrate.client import QaseClient
from qase_migrate.models import Run, SourceRecord
from qase_migrate.pagination import PaginatedFetcher

logger = structlog.get_logger(__name__)

LARGE_RESULT_COUNT = 10_000
LARGE_RUN_COUNT = 1_000
LARGE_CASE_COUNT = 50_000


@dataclass(slots=True)
class ProjectAnalysis:
    """Counts describing how much a migration would move."""

    project: str
    after: datetime
    total_cases: int = 0
    total_runs: int = 0
    filtered_runs: int = 0
    filtered_results: int = 0
    truncated: bool = False
    recommendations: list[str] = field(default_factory=list)
    analysis_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "source_project": self.project,
            "after_date": self.after.isoformat(),
            "analysis_time": self.analysis_time.isoformat(),
            "source_stats": {
                "total_cases": self.total_cases,
                "total_runs": self.total_runs,
            },
            "filtered_runs": self.filtered_runs,
            "filtered_results": self.filtered_results,
            "truncated": self.truncated,
            "recommendations": self.recommendations,
        }


def generate_recommendations(analysis: ProjectAnalysis) -> list[str]:
    recommendations = []

    if analysis.filtered_results > LARGE_RESULT_COUNT:
        recommendations.append(
            "Large dataset detected - consider lowering QASE_CONCURRENCY or migrating in smaller date windows"
        )
    if analysis.filtered_runs > LARGE_RUN_COUNT:
        recommendations.append("Many runs detected - migration may take significant time")
    if analysis.total_cases > LARGE_CASE_COUNT:
        recommendations.append("Very large case database - case mapping may be slow")
    if analysis.filtered_results == 0:
        recommendations.append(
            "No results found after the specified date - check QASE_AFTER_DATE and project data"
        )
    if analysis.filtered_runs == 0:
        recommendations.append(
            "No runs found after the specified date - check QASE_AFTER_DATE and project data"
        )
    if analysis.truncated:
        recommendations.append(
            "Page limit reached while counting - raise QASE_MAX_PAGES for exact figures"
        )

    recommendations.append("Use dry run mode first to validate the migration approach")
    return recommendations


async def analyze_project(
    client: QaseClient,
    after: datetime,
    *,
    fetcher: PaginatedFetcher | None = None,
    page_size: int = 100,
) -> ProjectAnalysis:
    """Count cases, runs and results of the client's project."""
    fetcher = fetcher or PaginatedFetcher()
    log = logger.bind(project=client.project, after=after.isoformat())
    log.info("Analyzing project")

    async def runs_after(offset: int, limit: int) -> list[Run]:
        return await client.list_runs(limit, offset, from_start_time=after)

    async def results_after(offset: int, limit: int) -> list[SourceRecord]:
        return await client.list_results(limit, offset, from_end_time=after)

    cases, runs, filtered_runs, results = await asyncio.gather(
        fetcher.fetch(
            client.list_cases, page_size=page_size, dedup_key=lambda c: c.id, label="cases"
        ),
        fetcher.fetch(
            client.list_runs, page_size=page_size, dedup_key=lambda r: r.id, label="runs"
        ),
        fetcher.fetch(
            runs_after, page_size=page_size, dedup_key=lambda r: r.id, label="runs_after"
        ),
        fetcher.fetch(results_after, page_size=page_size, label="results_after"),
    )

    analysis = ProjectAnalysis(
        project=client.project,
        after=after,
        total_cases=len(cases.items),
        total_runs=len(runs.items),
        filtered_runs=len(filtered_runs.items),
        filtered_results=len(results.items),
        truncated=any(f.truncated for f in (cases, runs, filtered_runs, results)),
    )
    analysis.recommendations = generate_recommendations(analysis)

    log.info(
        "Analysis complete",
        total_cases=analysis.total_cases,
        total_runs=analysis.total_runs,
        filtered_runs=analysis.filtered_runs,
        filtered_results=analysis.filtered_results,
    )
    return analysis


def write_analysis(analysis: ProjectAnalysis, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(analysis.to_dict(), f, indent=2)
    return path
