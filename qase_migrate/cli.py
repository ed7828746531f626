"""Command-line interface for the Qase migration tool."""

import asyncio
import json
import logging
import sys
from enum import Enum
from pathlib import Path
from typing import Annotated, Any

import structlog
import typer
from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
)
from rich.table import Table

from qase_migrate.analysis import ProjectAnalysis, analyze_project, write_analysis
from qase_migrate.client import QaseClient, create_client_pair
from qase_migrate.config import Config, mask_token, parse_unix_timestamp
from qase_migrate.models import (
    CustomField,
    MigrationOutcome,
    MigrationReport,
    Run,
    SourceRecord,
)
from qase_migrate.orchestration import REPORT_FILENAME, MigrationOrchestrator
from qase_migrate.pagination import PaginatedFetcher

# Constants
MAX_ERRORS_TO_DISPLAY = 10
MAX_FAILED_RUNS_TO_DISPLAY = 20

# Create Typer app
app = typer.Typer(
    name="qase-migrate",
    help="Migrate Qase test results between workspaces without duplicates",
    add_completion=False,
)

console = Console()


class Workspace(str, Enum):
    SOURCE = "source"
    TARGET = "target"


LogLevelOption = Annotated[
    str,
    typer.Option(
        "--log-level",
        "-l",
        help="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    ),
]
LogFormatOption = Annotated[
    str,
    typer.Option(
        "--log-format",
        "-f",
        help="Log format (json or text)",
    ),
]
ConfigOption = Annotated[
    Path | None,
    typer.Option(
        "--config",
        "-c",
        help="Path to configuration file (optional, uses environment variables by default)",
    ),
]
AfterOption = Annotated[
    str | None,
    typer.Option(
        "--after",
        help="Unix timestamp; only data after it is considered (defaults to QASE_AFTER_DATE)",
    ),
]
OutputDirOption = Annotated[
    Path | None,
    typer.Option(
        "--output-dir",
        "-o",
        help="Directory for reports and artifacts (defaults to QASE_OUTPUT_DIR)",
    ),
]


def setup_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Setup structured logging.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_format: Log format (json or text).
    """
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=log_level.upper())

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format.lower() == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def load_config(
    config_file: Path | None = None,
    after: str | None = None,
    output_dir: Path | None = None,
) -> Config:
    """Load configuration from a file or the environment and apply CLI overrides."""
    if config_file is not None:
        config = Config.from_file(config_file)
    else:
        config = Config.from_env()

    if after is not None:
        config.migration.after = parse_unix_timestamp(after, "--after")
    if output_dir is not None:
        config.output_dir = output_dir
    return config


@app.command()
def migrate(
    config_file: ConfigOption = None,
    dry_run: Annotated[
        bool | None,
        typer.Option(
            "--dry-run/--live",
            help="Read only and simulate writes, or write to the target (defaults to QASE_DRY_RUN)",
        ),
    ] = None,
    idempotent: Annotated[
        bool | None,
        typer.Option(
            "--idempotent/--no-idempotent",
            help="Reuse target runs by title and skip results already present (defaults to QASE_IDEMPOTENT)",
        ),
    ] = None,
    concurrency: Annotated[
        int | None,
        typer.Option("--concurrency", "-j", help="Runs migrated at once"),
    ] = None,
    bulk_size: Annotated[
        int | None,
        typer.Option("--bulk-size", "-b", help="Results per bulk request"),
    ] = None,
    after: AfterOption = None,
    output_dir: OutputDirOption = None,
    log_level: LogLevelOption = "INFO",
    log_format: LogFormatOption = "json",
) -> None:
    """Migrate results from the source project into the target project.

    Results completed after the configured date are fetched, grouped by their
    source run and replayed into runs of the target project. Re-running with
    idempotent mode on posts only what is missing.

    Examples:
        qase-migrate migrate --dry-run
        qase-migrate migrate --live --concurrency 4
        qase-migrate migrate --live --after 1755500400 --output-dir ./out
    """
    setup_logging(log_level, log_format)
    logger = structlog.get_logger(__name__)

    try:
        config = load_config(config_file, after, output_dir)

        if dry_run is not None:
            config.migration.dry_run = dry_run
        if idempotent is not None:
            config.migration.idempotent = idempotent
        if concurrency is not None:
            config.migration.concurrency = concurrency
        if bulk_size is not None:
            config.migration.bulk_size = bulk_size

        config.logging.level = log_level
        config.logging.format = log_format

        logger.info(
            "Starting migration",
            source_url=config.source.base_url,
            source_project=config.source.project,
            target_url=config.target.base_url,
            target_project=config.target.project,
            match_mode=config.mapping.mode.value,
            output_dir=str(config.output_dir),
            dry_run=config.migration.dry_run,
        )

        if config.migration.dry_run:
            console.print("[yellow]DRY RUN MODE - No changes will be made[/yellow]")

        report = asyncio.run(_run_migration(config))

    except KeyboardInterrupt:
        console.print("\n[red]Migration interrupted by user[/red]")
        logger.info("Migration interrupted by user")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Migration failed: {e}[/red]")
        logger.error("Migration failed", error=str(e), exc_info=True)
        sys.exit(1)

    _display_results(report)
    console.print(f"Results saved to: {config.output_dir / REPORT_FILENAME}")

    if report.success:
        console.print("\n[green]Migration completed successfully![/green]")
    else:
        console.print("\n[red]Migration failed![/red]")
        sys.exit(1)


async def _run_migration(config: Config) -> MigrationReport:
    """Run the migration process with progress reporting.

    Args:
        config: Migration configuration.
    """
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
        transient=False,
    ) as progress:
        migration_task = progress.add_task(
            "Fetching results and building case mapping...",
            total=None,
        )

        def on_outcome(outcome: MigrationOutcome, completed: int, total: int) -> None:
            status = "migrated" if outcome.success else "failed"
            progress.update(
                migration_task,
                total=total,
                completed=completed,
                description=f"Run {outcome.source_run_id} {status} ({completed}/{total})",
            )

        orchestrator = MigrationOrchestrator(config, on_outcome=on_outcome)
        try:
            report = await orchestrator.migrate()
        except Exception:
            progress.update(migration_task, description="Migration failed")
            raise

        progress.update(migration_task, description="Migration finished")
        return report


def _display_results(report: MigrationReport) -> None:
    """Display migration results in a formatted table.

    Args:
        report: Migration report.
    """
    summary_table = Table(title="Migration Summary")
    summary_table.add_column("Metric", style="cyan")
    summary_table.add_column("Count", style="magenta", justify="right")

    summary_table.add_row("Results Fetched", str(report.total_results))
    summary_table.add_row("Case Mapping Entries", str(report.mapping_size))
    summary_table.add_row("Runs", str(report.total_runs))
    summary_table.add_row("Successful Runs", str(report.successful_runs))
    summary_table.add_row("Failed Runs", str(report.failed_runs))
    summary_table.add_row("Timed Out Runs", str(len(report.timed_out_runs)))
    summary_table.add_row("Posted", str(report.total_posted))
    summary_table.add_row("Skipped (unmapped)", str(report.total_skipped))
    summary_table.add_row("Already Present", str(report.total_already_present))

    console.print("\n")
    console.print(summary_table)

    if report.results_truncated:
        console.print(
            "[yellow]Warning: result fetch hit the page limit, some results were not migrated[/yellow]"
        )
    if report.cases_truncated:
        console.print(
            "[yellow]Warning: case listing hit the page limit, some results were counted as unmapped[/yellow]"
        )
    if report.fast_mode:
        console.print("[yellow]Fast mode: existing results were not checked[/yellow]")

    failed = [outcome for outcome in report.outcomes if not outcome.success]
    if failed:
        runs_table = Table(title="Failed Runs")
        runs_table.add_column("Source Run", style="cyan", justify="right")
        runs_table.add_column("Title")
        runs_table.add_column("Posted", justify="right", style="green")
        runs_table.add_column("Error", style="red")

        for outcome in sorted(failed, key=lambda o: o.source_run_id)[:MAX_FAILED_RUNS_TO_DISPLAY]:
            runs_table.add_row(
                str(outcome.source_run_id),
                outcome.title,
                str(outcome.posted),
                outcome.error or "",
            )

        console.print("\n")
        console.print(runs_table)

    if report.timed_out_runs:
        console.print(
            f"[red]Runs not finished before the time limit: {', '.join(map(str, report.timed_out_runs))}[/red]"
        )

    if report.errors:
        console.print("\n[red]Errors encountered:[/red]")
        for i, error in enumerate(report.errors[:MAX_ERRORS_TO_DISPLAY], 1):
            console.print(f"  {i}. {error['type']}: {error['error']}")

        if len(report.errors) > MAX_ERRORS_TO_DISPLAY:
            console.print(
                f"  ... and {len(report.errors) - MAX_ERRORS_TO_DISPLAY} more errors"
            )


@app.command()
def validate(
    config_file: ConfigOption = None,
    log_level: LogLevelOption = "INFO",
) -> None:
    """Validate configuration and test connectivity to both workspaces.

    This command will validate your configuration and test connectivity to both
    the source and target Qase projects without performing any migration.
    """
    setup_logging(log_level, "text")
    logger = structlog.get_logger(__name__)

    try:
        console.print("[blue]Validating configuration...[/blue]")

        config = load_config(config_file)
        console.print("[green]✓[/green] Configuration loaded successfully")
        _display_config(config)

        console.print("[blue]Testing connectivity...[/blue]")
        asyncio.run(_test_connectivity(config))

        console.print("[green]✓[/green] All validation checks passed!")

    except Exception as e:
        console.print(f"[red]✗ Validation failed: {e}[/red]")
        logger.error("Validation failed", error=str(e))
        sys.exit(1)


def _display_config(config: Config) -> None:
    table = Table(title="Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")

    table.add_row("Source", f"{config.source.base_url} / {config.source.project}")
    table.add_row("Source token", mask_token(config.source.api_token))
    table.add_row("Target", f"{config.target.base_url} / {config.target.project}")
    table.add_row("Target token", mask_token(config.target.api_token))
    if config.same_workspace:
        table.add_row("Case mapping", "identity (same workspace)")
    else:
        table.add_row("Case mapping", config.mapping.mode.value)
    table.add_row("After", config.migration.after.isoformat())
    table.add_row("Dry run", str(config.migration.dry_run))
    table.add_row("Idempotent", str(config.migration.idempotent))
    table.add_row("Concurrency", str(config.migration.concurrency))
    table.add_row("Bulk size", str(config.migration.bulk_size))
    table.add_row("Output dir", str(config.output_dir))

    console.print(table)


async def _test_connectivity(config: Config) -> None:
    """Test connectivity to both source and target projects.

    Args:
        config: Migration configuration.
    """
    async with create_client_pair(
        config.source,
        config.target,
        config.migration,
    ) as (source_client, target_client):
        source_health = await source_client.health_check()
        console.print(
            f"[green]✓[/green] Source project: {source_health['project']} ({source_health['url']})"
        )

        target_health = await target_client.health_check()
        console.print(
            f"[green]✓[/green] Target project: {target_health['project']} ({target_health['url']})"
        )


@app.command()
def analyze(
    config_file: ConfigOption = None,
    after: AfterOption = None,
    output_dir: OutputDirOption = None,
    log_level: LogLevelOption = "WARNING",
) -> None:
    """Count what a migration of the source project would move."""
    setup_logging(log_level, "text")
    logger = structlog.get_logger(__name__)

    try:
        config = load_config(config_file, after, output_dir)
        analysis = asyncio.run(_analyze(config))
        path = write_analysis(analysis, config.ensure_output_dir() / "analysis-results.json")
    except Exception as e:
        console.print(f"[red]✗ Analysis failed: {e}[/red]")
        logger.error("Analysis failed", error=str(e))
        sys.exit(1)

    table = Table(title=f"Project Analysis: {analysis.project}")
    table.add_column("Metric", style="cyan")
    table.add_column("Count", style="magenta", justify="right")
    table.add_row("Total Cases", str(analysis.total_cases))
    table.add_row("Total Runs", str(analysis.total_runs))
    table.add_row(f"Runs after {analysis.after:%Y-%m-%d}", str(analysis.filtered_runs))
    table.add_row(f"Results after {analysis.after:%Y-%m-%d}", str(analysis.filtered_results))
    console.print(table)

    console.print("\n[blue]Recommendations:[/blue]")
    for i, recommendation in enumerate(analysis.recommendations, 1):
        console.print(f"  {i}. {recommendation}")
    console.print(f"\nAnalysis saved to: {path}")


async def _analyze(config: Config) -> ProjectAnalysis:
    async with QaseClient(config.source, config.migration, "source") as client:
        return await analyze_project(
            client,
            config.migration.after,
            fetcher=PaginatedFetcher(max_pages=config.migration.max_pages),
            page_size=config.migration.page_size,
        )


@app.command("fetch-results")
def fetch_results(
    run_ids: Annotated[
        list[int] | None,
        typer.Option("--run-id", help="Only results of this source run (repeatable)"),
    ] = None,
    config_file: ConfigOption = None,
    after: AfterOption = None,
    output_dir: OutputDirOption = None,
    log_level: LogLevelOption = "WARNING",
) -> None:
    """Fetch source results after the configured date into results.json."""
    setup_logging(log_level, "text")
    logger = structlog.get_logger(__name__)

    try:
        config = load_config(config_file, after, output_dir)
        records, truncated = asyncio.run(_fetch_results(config, run_ids or []))
        path = _write_json(
            config.ensure_output_dir() / "results.json",
            [record.model_dump() for record in records],
        )
    except Exception as e:
        console.print(f"[red]✗ Fetching results failed: {e}[/red]")
        logger.error("Fetching results failed", error=str(e))
        sys.exit(1)

    runs = {record.run_id for record in records}
    console.print(f"[green]✓[/green] {len(records)} results across {len(runs)} runs saved to {path}")
    if truncated:
        console.print("[yellow]Warning: page limit reached, output is incomplete[/yellow]")


async def _fetch_results(
    config: Config, run_ids: list[int]
) -> tuple[list[SourceRecord], bool]:
    migration = config.migration
    fetcher = PaginatedFetcher(max_pages=migration.max_pages, page_delay=migration.page_delay)

    async with QaseClient(config.source, migration, "source") as client:

        async def fetch_page(offset: int, limit: int) -> list[SourceRecord]:
            return await client.list_results(
                limit, offset, from_end_time=migration.after, run_ids=run_ids
            )

        fetched = await fetcher.fetch(fetch_page, page_size=migration.page_size, label="results")
        return fetched.items, fetched.truncated


@app.command("fetch-runs")
def fetch_runs(
    config_file: ConfigOption = None,
    after: AfterOption = None,
    output_dir: OutputDirOption = None,
    log_level: LogLevelOption = "WARNING",
) -> None:
    """Fetch source runs started after the configured date into runs.json."""
    setup_logging(log_level, "text")
    logger = structlog.get_logger(__name__)

    try:
        config = load_config(config_file, after, output_dir)
        runs = asyncio.run(_fetch_runs(config))
        path = _write_json(
            config.ensure_output_dir() / "runs.json", [run.model_dump() for run in runs]
        )
    except Exception as e:
        console.print(f"[red]✗ Fetching runs failed: {e}[/red]")
        logger.error("Fetching runs failed", error=str(e))
        sys.exit(1)

    console.print(f"[green]✓[/green] {len(runs)} runs saved to {path}")


async def _fetch_runs(config: Config) -> list[Run]:
    migration = config.migration
    fetcher = PaginatedFetcher(max_pages=migration.max_pages)

    async with QaseClient(config.source, migration, "source") as client:

        async def fetch_page(offset: int, limit: int) -> list[Run]:
            return await client.list_runs(limit, offset, from_start_time=migration.after)

        fetched = await fetcher.fetch(
            fetch_page, page_size=migration.page_size, dedup_key=lambda run: run.id, label="runs"
        )
        return fetched.items


@app.command("custom-fields")
def custom_fields(
    workspace: Annotated[
        Workspace,
        typer.Option("--workspace", "-w", help="Which workspace to list"),
    ] = Workspace.TARGET,
    config_file: ConfigOption = None,
    log_level: LogLevelOption = "WARNING",
) -> None:
    """List custom field definitions, e.g. to find the value for QASE_CF_ID."""
    setup_logging(log_level, "text")
    logger = structlog.get_logger(__name__)

    try:
        config = load_config(config_file)
        fields = asyncio.run(_list_custom_fields(config, workspace))
    except Exception as e:
        console.print(f"[red]✗ Listing custom fields failed: {e}[/red]")
        logger.error("Listing custom fields failed", error=str(e))
        sys.exit(1)

    table = Table(title=f"Custom Fields ({workspace.value})")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Title")
    table.add_column("Type")
    for field in fields:
        table.add_row(str(field.id), field.title, field.type or "")
    console.print(table)


async def _list_custom_fields(config: Config, workspace: Workspace) -> list[CustomField]:
    workspace_config = config.source if workspace == Workspace.SOURCE else config.target
    async with QaseClient(workspace_config, config.migration, workspace.value) as client:
        fetched = await PaginatedFetcher(max_pages=config.migration.max_pages).fetch(
            client.list_custom_fields,
            page_size=config.migration.page_size,
            dedup_key=lambda field: field.id,
            label="custom_fields",
        )
        return fetched.items


@app.command("create-custom-field")
def create_custom_field(
    title: Annotated[
        str,
        typer.Option("--title", "-t", help="Field title"),
    ] = "Source Case ID",
    field_type: Annotated[
        str,
        typer.Option("--type", help="Field type"),
    ] = "number",
    config_file: ConfigOption = None,
    log_level: LogLevelOption = "WARNING",
) -> None:
    """Create a case custom field in the target project to hold source case ids."""
    setup_logging(log_level, "text")
    logger = structlog.get_logger(__name__)

    try:
        config = load_config(config_file)
        field_id = asyncio.run(_create_custom_field(config, title, field_type))
    except Exception as e:
        console.print(f"[red]✗ Creating custom field failed: {e}[/red]")
        logger.error("Creating custom field failed", error=str(e))
        sys.exit(1)

    console.print(f"[green]✓[/green] Created custom field '{title}' with id {field_id}")
    console.print(f"Set QASE_CF_ID={field_id} to use it for case mapping")


async def _create_custom_field(config: Config, title: str, field_type: str) -> int:
    async with QaseClient(config.target, config.migration, "target") as client:
        return await client.create_custom_field(
            title,
            field_type,
            placeholder="Source workspace case id",
        )


def _write_json(path: Path, data: Any) -> Path:
    with open(path, "w") as f:
        json.dump(data, f, indent=2, default=str)
    return path


@app.command()
def version() -> None:
    """Show version information."""
    from qase_migrate import __version__

    console.print(f"qase-migrate version {__version__}")

