"""Tests for CLI commands."""

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from typer.testing import CliRunner

from qase_migrate import __version__
from qase_migrate.analysis import ProjectAnalysis
from qase_migrate.cli import app, load_config
from qase_migrate.exceptions import QaseConnectionError
from qase_migrate.models import MigrationOutcome, MigrationReport

TEST_CONFIG_CONTENT = """
source:
  api_token: "source-token-1234"
  project: "SRC"
  url: "https://source.qase.test"

target:
  api_token: "target-token-5678"
  project: "TGT"
  url: "https://target.qase.test"

mapping:
  mode: custom_field
  custom_field_id: 7

migration:
  dry_run: true
  page_delay: 0
"""


@pytest.fixture
def cli_runner():
    """Create CLI runner instance."""
    return CliRunner()


@pytest.fixture
def config_file(tmp_path):
    """Create temporary config file."""
    path = tmp_path / "config.yaml"
    path.write_text(TEST_CONFIG_CONTENT)
    return path


@pytest.fixture(autouse=True)
def no_logging_setup():
    """Keep commands from reconfiguring logging for the whole test session."""
    with patch("qase_migrate.cli.setup_logging"):
        yield


def make_report(success: bool = True) -> MigrationReport:
    report = MigrationReport(
        source_project="SRC",
        target_project="TGT",
        after=datetime(2025, 8, 18, tzinfo=timezone.utc),
        dry_run=False,
        idempotent=True,
        start_time=datetime.now(timezone.utc),
    )
    report.outcomes.append(
        MigrationOutcome(source_run_id=10, title="Migrated Run 10", success=True, posted=3)
    )
    if not success:
        report.outcomes.append(
            MigrationOutcome(
                source_run_id=11, title="Migrated Run 11", success=False, error="bad request"
            )
        )
    report.end_time = datetime.now(timezone.utc)
    return report


@pytest.fixture
def mock_orchestrator():
    """Patch the orchestrator class used by the migrate command."""
    with patch("qase_migrate.cli.MigrationOrchestrator") as orchestrator_cls:
        orchestrator_cls.return_value.migrate = AsyncMock(return_value=make_report())
        yield orchestrator_cls


class TestLoadConfig:
    """Test configuration loading with CLI overrides."""

    def test_file_with_overrides(self, config_file, tmp_path):
        config = load_config(config_file, after="1755500400", output_dir=tmp_path / "out")

        assert config.source.project == "SRC"
        assert config.migration.after == datetime.fromtimestamp(1755500400, tz=timezone.utc)
        assert config.output_dir == tmp_path / "out"

    def test_invalid_after(self, config_file):
        with pytest.raises(Exception, match="--after"):
            load_config(config_file, after="yesterday")


class TestMigrateCommand:
    """Test the migrate command."""

    def test_success(self, cli_runner, config_file, tmp_path, mock_orchestrator):
        result = cli_runner.invoke(
            app, ["migrate", "-c", str(config_file), "-o", str(tmp_path / "out")]
        )

        assert result.exit_code == 0
        assert "Migration completed successfully" in result.stdout
        assert "DRY RUN MODE" in result.stdout

    def test_flags_override_config(self, cli_runner, config_file, mock_orchestrator):
        result = cli_runner.invoke(
            app,
            [
                "migrate",
                "-c",
                str(config_file),
                "--live",
                "--no-idempotent",
                "-j",
                "4",
                "-b",
                "50",
            ],
        )

        assert result.exit_code == 0
        config = mock_orchestrator.call_args.args[0]
        assert config.migration.dry_run is False
        assert config.migration.idempotent is False
        assert config.migration.concurrency == 4
        assert config.migration.bulk_size == 50

    def test_failed_runs_exit_nonzero(self, cli_runner, config_file, mock_orchestrator):
        mock_orchestrator.return_value.migrate = AsyncMock(return_value=make_report(success=False))

        result = cli_runner.invoke(app, ["migrate", "-c", str(config_file)])

        assert result.exit_code == 1
        assert "Failed Runs" in result.stdout
        assert "Migration failed!" in result.stdout

    def test_invalid_concurrency_rejected(self, cli_runner, config_file, mock_orchestrator):
        result = cli_runner.invoke(app, ["migrate", "-c", str(config_file), "-j", "0"])

        assert result.exit_code == 1
        mock_orchestrator.assert_not_called()

    def test_missing_config_file(self, cli_runner, tmp_path, mock_orchestrator):
        result = cli_runner.invoke(app, ["migrate", "-c", str(tmp_path / "nope.yaml")])

        assert result.exit_code == 1
        assert "Configuration file not found" in result.stdout


class TestValidateCommand:
    """Test the validate command."""

    def test_success_masks_tokens(self, cli_runner, config_file):
        with patch("qase_migrate.cli._test_connectivity", AsyncMock()):
            result = cli_runner.invoke(app, ["validate", "-c", str(config_file)])

        assert result.exit_code == 0
        assert "All validation checks passed" in result.stdout
        assert "source-token-1234" not in result.stdout

    def test_connection_failure(self, cli_runner, config_file):
        failing = AsyncMock(side_effect=QaseConnectionError("Failed to connect to source"))
        with patch("qase_migrate.cli._test_connectivity", failing):
            result = cli_runner.invoke(app, ["validate", "-c", str(config_file)])

        assert result.exit_code == 1
        assert "Validation failed" in result.stdout


class TestAnalyzeCommand:
    """Test the analyze command."""

    def test_writes_analysis(self, cli_runner, config_file, tmp_path):
        analysis = ProjectAnalysis(
            project="SRC",
            after=datetime(2025, 8, 18, tzinfo=timezone.utc),
            total_cases=12,
            filtered_results=40,
            recommendations=["Use dry run mode first to validate the migration approach"],
        )
        with patch("qase_migrate.cli._analyze", AsyncMock(return_value=analysis)):
            result = cli_runner.invoke(
                app, ["analyze", "-c", str(config_file), "-o", str(tmp_path / "out")]
            )

        assert result.exit_code == 0
        data = json.loads((tmp_path / "out" / "analysis-results.json").read_text())
        assert data["source_stats"]["total_cases"] == 12
        assert data["filtered_results"] == 40


class TestCustomFieldCommands:
    """Test custom field helpers."""

    def test_create_custom_field(self, cli_runner, config_file):
        create = AsyncMock(return_value=9)
        with patch("qase_migrate.cli._create_custom_field", create):
            result = cli_runner.invoke(
                app, ["create-custom-field", "-c", str(config_file), "--title", "Origin"]
            )

        assert result.exit_code == 0
        assert "QASE_CF_ID=9" in result.stdout
        assert create.await_args.args[1:] == ("Origin", "number")

    def test_list_custom_fields(self, cli_runner, config_file):
        fields = [MagicMock(id=7, title="Source Case ID", type="number")]
        with patch("qase_migrate.cli._list_custom_fields", AsyncMock(return_value=fields)):
            result = cli_runner.invoke(app, ["custom-fields", "-c", str(config_file)])

        assert result.exit_code == 0
        assert "Source Case ID" in result.stdout


def test_version(cli_runner):
    result = cli_runner.invoke(app, ["version"])

    assert result.exit_code == 0
    assert __version__ in result.stdout
