"""Migration orchestrator for replaying Qase results into another project."""

import asyncio
import json
import time
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

import httpx
import structlog

from qase_migrate.cancellation import CancellationToken
from qase_migrate.client import QaseClient, create_client_pair
from qase_migrate.config import Config, MatchMode
from qase_migrate.exceptions import ConfigurationError, MigrationCancelledError
from qase_migrate.grouping import group_by_run
from qase_migrate.idempotency import RunResolver
from qase_migrate.mapping import CaseMapping, build_case_mapping, write_mapping_artifact
from qase_migrate.models import (
    Case,
    MigrationOutcome,
    MigrationReport,
    ResolverState,
    RunGroup,
    SourceRecord,
)
from qase_migrate.pagination import FetchResult, PaginatedFetcher
from qase_migrate.poster import BulkPoster
from qase_migrate.transform import transform_records

logger = structlog.get_logger(__name__)

REPORT_FILENAME = "migration-results.json"
SUMMARY_FILENAME = "migration-summary.txt"

OutcomeCallback = Callable[[MigrationOutcome, int, int], None]


class MigrationOrchestrator:
    """Runs the whole migration pipeline for one configuration.

    Handles:
    - Fetching source results and building the case mapping concurrently
    - Grouping results by source run
    - Migrating run groups concurrently under a bound
    - Enforcing the wall-clock limit with cooperative cancellation
    - Writing the mapping artifact and the JSON report
    """

    def __init__(
        self,
        config: Config,
        transport: httpx.AsyncBaseTransport | None = None,
        on_outcome: OutcomeCallback | None = None,
    ) -> None:
        """Initialize the migration orchestrator.

        Args:
            config: Migration configuration.
            transport: Optional httpx transport handed to both clients.
            on_outcome: Called with (outcome, completed, total) as groups finish.
        """
        self.config = config
        self.transport = transport
        self.on_outcome = on_outcome
        self._logger = logger.bind(
            source_project=config.source.project,
            target_project=config.target.project,
        )

    def preflight(self) -> None:
        """Check settings that can be verified without the network.

        Raises:
            ConfigurationError: If the mapping table is configured but missing.
        """
        mapping = self.config.mapping
        if self.config.same_workspace:
            return
        if mapping.mode == MatchMode.CSV and mapping.csv_path is not None:
            if not mapping.csv_path.exists():
                raise ConfigurationError(f"mapping table not found: {mapping.csv_path}")

    async def migrate(self) -> MigrationReport:
        """Migrate all results completed after the configured date.

        Returns:
            The migration report, also written to the output directory.

        Raises:
            ConfigurationError: Before any network call, if settings are unusable.
        """
        self.preflight()

        migration = self.config.migration
        report = MigrationReport(
            source_project=self.config.source.project,
            target_project=self.config.target.project,
            after=migration.after,
            dry_run=migration.dry_run,
            idempotent=migration.idempotent,
            start_time=datetime.now(timezone.utc),
        )
        self._logger.info(
            "Starting migration",
            after=migration.after.isoformat(),
            dry_run=migration.dry_run,
            idempotent=migration.idempotent,
            concurrency=migration.concurrency,
        )

        try:
            async with create_client_pair(
                self.config.source,
                self.config.target,
                migration,
                transport=self.transport,
            ) as (source_client, target_client):
                await self.run_pipeline(source_client, target_client, report)

        except Exception as e:
            self._logger.error("Migration failed", error=str(e))
            report.errors.append(
                {
                    "type": "orchestrator_error",
                    "error": str(e),
                }
            )

        report.end_time = datetime.now(timezone.utc)
        report_path = self._generate_migration_report(report)

        self._logger.info(
            "Migration completed",
            duration_seconds=report.duration_seconds,
            total_runs=report.total_runs,
            successful_runs=report.successful_runs,
            failed_runs=report.failed_runs,
            timed_out_runs=len(report.timed_out_runs),
            posted=report.total_posted,
            skipped=report.total_skipped,
            report_path=str(report_path),
        )
        return report

    async def run_pipeline(
        self,
        source_client: QaseClient,
        target_client: QaseClient,
        report: MigrationReport,
    ) -> None:
        """Fetch, map, group and migrate, filling in ``report``."""
        migration = self.config.migration

        phase_start = time.monotonic()
        fetch_task = asyncio.create_task(self._fetch_results(source_client))
        mapping_task = asyncio.create_task(self._build_mapping(source_client, target_client))
        try:
            fetched, (mapping, cases_truncated) = await asyncio.gather(fetch_task, mapping_task)
        finally:
            # The clients close when we leave; neither fetch may outlive them.
            for task in (fetch_task, mapping_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(fetch_task, mapping_task, return_exceptions=True)
        report.phase_durations["fetch"] = time.monotonic() - phase_start

        report.total_results = len(fetched.items)
        report.results_truncated = fetched.truncated
        report.cases_truncated = cases_truncated
        report.mapping_mode = mapping.mode
        report.mapping_size = len(mapping)

        write_mapping_artifact(
            mapping, self.config.ensure_output_dir() / self.config.mapping.artifact_name
        )

        groups = group_by_run(fetched.items)
        threshold = migration.fast_mode_threshold
        report.fast_mode = (
            migration.idempotent and threshold is not None and len(groups) > threshold
        )
        self._logger.info(
            "Grouped results by run",
            results=len(fetched.items),
            runs=len(groups),
            fast_mode=report.fast_mode,
        )

        if not groups:
            self._logger.info("No results to migrate")
            return

        phase_start = time.monotonic()
        await self._migrate_groups(groups, mapping, target_client, report)
        report.phase_durations["migrate"] = time.monotonic() - phase_start

    async def _fetch_results(self, source_client: QaseClient) -> FetchResult[SourceRecord]:
        migration = self.config.migration
        fetcher = PaginatedFetcher(
            max_pages=migration.max_pages, page_delay=migration.page_delay
        )

        async def fetch_page(offset: int, limit: int) -> list[SourceRecord]:
            return await source_client.list_results(
                limit, offset, from_end_time=migration.after
            )

        return await fetcher.fetch(
            fetch_page, page_size=migration.page_size, label="source_results"
        )

    async def _fetch_cases(self, client: QaseClient, label: str) -> FetchResult[Case]:
        fetcher = PaginatedFetcher(max_pages=self.config.migration.max_pages)
        return await fetcher.fetch(
            client.list_cases,
            page_size=self.config.migration.page_size,
            dedup_key=lambda case: case.id,
            label=label,
        )

    async def _build_mapping(
        self, source_client: QaseClient, target_client: QaseClient
    ) -> tuple[CaseMapping, bool]:
        """Build the case mapping.

        Returns:
            Tuple of (mapping, whether the case listing hit the page limit).
        """
        mapping_config = self.config.mapping
        cases: FetchResult[Case] = FetchResult()
        source_cases: list[Case] = []
        target_cases: list[Case] = []

        if self.config.same_workspace:
            cases = await self._fetch_cases(source_client, "source_cases")
            source_cases = cases.items
        elif mapping_config.mode == MatchMode.CUSTOM_FIELD:
            cases = await self._fetch_cases(target_client, "target_cases")
            target_cases = cases.items

        if cases.truncated:
            self._logger.warning(
                "Case listing hit the page limit, some results will count as unmapped",
                cases=len(cases.items),
            )

        mapping = build_case_mapping(
            mapping_config.mode,
            source_cases,
            target_cases,
            field_id=mapping_config.custom_field_id,
            table_path=mapping_config.csv_path,
            same_workspace=self.config.same_workspace,
        )
        return mapping, cases.truncated

    async def _migrate_groups(
        self,
        groups: list[RunGroup],
        mapping: CaseMapping,
        target_client: QaseClient,
        report: MigrationReport,
    ) -> None:
        migration = self.config.migration
        token = CancellationToken()
        resolver = RunResolver(
            target_client,
            PaginatedFetcher(max_pages=migration.max_pages),
            dry_run=migration.dry_run,
            cancel_token=token,
        )
        poster = BulkPoster(
            target_client,
            chunk_size=migration.bulk_size,
            retry_delays=migration.retry_delays,
            dry_run=migration.dry_run,
            cancel_token=token,
        )
        semaphore = asyncio.Semaphore(migration.concurrency)
        outcomes: asyncio.Queue[MigrationOutcome] = asyncio.Queue()

        async def worker(group: RunGroup) -> None:
            async with semaphore:
                outcome = await self._migrate_group(
                    group, mapping, resolver, poster, token, report.fast_mode
                )
            await outcomes.put(outcome)

        tasks = {group.run_id: asyncio.create_task(worker(group)) for group in groups}
        pending = set(tasks)
        loop = asyncio.get_running_loop()

        async def collect(deadline: float) -> None:
            while pending:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return
                try:
                    outcome = await asyncio.wait_for(outcomes.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    return
                pending.discard(outcome.source_run_id)
                report.outcomes.append(outcome)
                self._notify_outcome(outcome, len(report.outcomes), len(groups))

        try:
            await collect(loop.time() + migration.timeout_seconds)

            if pending:
                self._logger.warning(
                    "Migration timed out, cancelling remaining runs",
                    timeout_seconds=migration.timeout_seconds,
                    pending_runs=len(pending),
                )
                token.cancel("timeout")
                await collect(loop.time() + migration.cancel_grace_seconds)

            if pending:
                report.timed_out_runs.extend(sorted(pending))
                self._logger.error("Runs did not finish", run_ids=sorted(pending))
        finally:
            unfinished = [task for task in tasks.values() if not task.done()]
            for task in unfinished:
                task.cancel()
            await asyncio.gather(*unfinished, return_exceptions=True)

    def _notify_outcome(self, outcome: MigrationOutcome, completed: int, total: int) -> None:
        if self.on_outcome is None:
            return
        try:
            self.on_outcome(outcome, completed, total)
        except Exception as e:
            self._logger.warning(
                "Outcome callback failed",
                source_run_id=outcome.source_run_id,
                error=str(e),
            )

    async def _migrate_group(
        self,
        group: RunGroup,
        mapping: CaseMapping,
        resolver: RunResolver,
        poster: BulkPoster,
        token: CancellationToken,
        fast_mode: bool,
    ) -> MigrationOutcome:
        """Migrate one run group; failures are captured in the outcome."""
        started = time.monotonic()
        migration = self.config.migration
        outcome = MigrationOutcome(
            source_run_id=group.run_id, title=group.title, success=False
        )
        log = self._logger.bind(source_run_id=group.run_id, title=group.title)

        transformed = transform_records(group.records, mapping, migration.status_map)
        outcome.skipped_unmapped = transformed.skipped
        log.info(
            "Migrating run",
            results=len(group),
            mapped=len(transformed.items),
            skipped=transformed.skipped,
        )

        try:
            token.raise_if_cancelled()
            if not transformed.items:
                log.info("No mapped results, not creating a target run")
                outcome.success = True
                return outcome

            resolution = await resolver.resolve(
                group,
                transformed.items,
                idempotent=migration.idempotent,
                fast_mode=fast_mode,
            )
            outcome.state = resolution.state
            outcome.target_run_id = resolution.run.id if resolution.run else None
            outcome.created_run = resolution.created
            outcome.already_present = resolution.already_present

            summary = await poster.post(outcome.target_run_id, resolution.items)
            outcome.posted = summary.posted
            outcome.failed = summary.failed
            outcome.success = summary.failed == 0

        except MigrationCancelledError as e:
            outcome.state = ResolverState.ERROR
            outcome.error = f"cancelled: {e}"
            log.warning("Run cancelled", reason=str(e))
        except Exception as e:
            outcome.state = ResolverState.ERROR
            outcome.error = str(e)
            outcome.posted = getattr(e, "posted", outcome.posted)
            log.error("Run migration failed", error=str(e))
        finally:
            outcome.duration_seconds = time.monotonic() - started

        log.info(
            "Run finished",
            success=outcome.success,
            target_run_id=outcome.target_run_id,
            posted=outcome.posted,
            already_present=outcome.already_present,
            failed=outcome.failed,
        )
        return outcome

    def _generate_migration_report(self, report: MigrationReport) -> Path:
        """Write the JSON report and a short human-readable summary.

        Returns:
            Path to the JSON report.
        """
        output_dir = self.config.ensure_output_dir()
        report_path = output_dir / REPORT_FILENAME

        with open(report_path, "w") as f:
            json.dump(report.to_dict(), f, indent=2, default=str)

        self._write_human_readable_summary(report, output_dir / SUMMARY_FILENAME)
        return report_path

    def _write_human_readable_summary(self, report: MigrationReport, summary_path: Path) -> None:
        with open(summary_path, "w") as f:
            f.write("# Qase Migration Summary\n")
            f.write("=" * 50 + "\n\n")

            f.write(f"Migration Status: {'SUCCESS' if report.success else 'FAILED'}\n")
            f.write(f"Source Project: {report.source_project}\n")
            f.write(f"Target Project: {report.target_project}\n")
            f.write(f"After: {report.after.isoformat()}\n")
            f.write(f"Dry Run: {report.dry_run}\n")
            f.write(f"Duration: {report.duration_seconds:.2f} seconds\n\n")

            f.write("## Overall Results\n")
            f.write(f"Results fetched: {report.total_results}")
            f.write(" (truncated)\n" if report.results_truncated else "\n")
            if report.cases_truncated:
                f.write("Case listing truncated: some results counted as unmapped\n")
            f.write(f"Runs: {report.total_runs}\n")
            f.write(f"Successful runs: {report.successful_runs}\n")
            f.write(f"Failed runs: {report.failed_runs}\n")
            f.write(f"Timed out runs: {len(report.timed_out_runs)}\n")
            f.write(f"Posted: {report.total_posted}\n")
            f.write(f"Skipped (unmapped): {report.total_skipped}\n")
            f.write(f"Already present: {report.total_already_present}\n")

            failed = [outcome for outcome in report.outcomes if not outcome.success]
            if failed:
                f.write(f"\n## Failed Runs ({len(failed)} total)\n")
                for outcome in sorted(failed, key=lambda o: o.source_run_id):
                    f.write(f"- {outcome.source_run_id} '{outcome.title}'\n")
                    f.write(f"  Error: {outcome.error}\n")

            if report.errors:
                f.write("\n## Errors\n")
                for error in report.errors:
                    f.write(f"- {error['type']}: {error['error']}\n")
