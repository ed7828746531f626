"""Configuration models and environment variable parsing for the Qase migration tool."""

import json
import os
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, HttpUrl, ValidationError, field_validator, model_validator

from qase_migrate.exceptions import ConfigurationError

# Load environment variables from .env file if it exists
load_dotenv()

DEFAULT_API_BASE = "https://api.qase.io"
# 2025-08-18 07:00:00 UTC
DEFAULT_AFTER_TIMESTAMP = 1755500400


class MatchMode(str, Enum):
    """How source case ids are translated into target case ids."""

    CUSTOM_FIELD = "custom_field"
    CSV = "csv"


class WorkspaceConfig(BaseModel):
    """Configuration for one Qase workspace project."""

    api_token: str = Field(..., description="Qase API token")
    project: str = Field(..., description="Project code, e.g. DEMO")
    url: HttpUrl = Field(default=DEFAULT_API_BASE, description="Qase API base URL")

    @field_validator("api_token")
    def validate_api_token(cls, v: str) -> str:
        """Validate that API token is not empty."""
        if not v or v.strip() == "":
            raise ValueError("API token cannot be empty")
        return v.strip()

    @field_validator("project")
    def validate_project(cls, v: str) -> str:
        """Validate that project code is not empty."""
        if not v or v.strip() == "":
            raise ValueError("Project code cannot be empty")
        return v.strip()

    @property
    def base_url(self) -> str:
        """Base URL without a trailing slash."""
        return str(self.url).rstrip("/")


class MappingConfig(BaseModel):
    """Configuration for building the case mapping."""

    mode: MatchMode = Field(default=MatchMode.CUSTOM_FIELD)
    custom_field_id: int | None = Field(
        default=None, ge=1, description="Target custom field holding the source case id"
    )
    csv_path: Path | None = Field(
        default=None, description="Two-column CSV of source_case_id,target_case_id"
    )
    artifact_name: str = Field(default="case_map.out.csv")

    def missing_parameter(self) -> str | None:
        """Name of the setting the selected mode needs but lacks, if any."""
        if self.mode == MatchMode.CUSTOM_FIELD and self.custom_field_id is None:
            return "custom_field_id"
        if self.mode == MatchMode.CSV and self.csv_path is None:
            return "csv_path"
        return None


class MigrationConfig(BaseModel):
    """Configuration for migration behavior."""

    after: datetime = Field(
        default_factory=lambda: datetime.fromtimestamp(DEFAULT_AFTER_TIMESTAMP, tz=timezone.utc),
        description="Only results completed after this instant are migrated",
    )
    dry_run: bool = Field(default=True, description="Perform reads only")
    idempotent: bool = Field(
        default=True, description="Reuse target runs by title and skip present results"
    )
    bulk_size: int = Field(
        default=200,
        ge=1,
        le=2000,
        description="Number of results per bulk request",
    )
    concurrency: int = Field(
        default=2, ge=1, le=50, description="Maximum run groups migrated at once"
    )
    fast_mode_threshold: int | None = Field(
        default=20,
        ge=1,
        description="Above this many run groups, skip existence probes (None disables)",
    )
    timeout_seconds: float = Field(
        default=30 * 60, gt=0, description="Wall-clock limit for the whole batch"
    )
    cancel_grace_seconds: float = Field(
        default=10.0, ge=0, description="Time given to workers to stop after timeout"
    )
    page_size: int = Field(default=100, ge=1, le=100)
    max_pages: int = Field(default=1000, ge=1)
    page_delay: float = Field(
        default=0.1, ge=0, description="Pause between result pages in seconds"
    )
    retry_delays: list[float] = Field(
        default=[0.2, 1.0, 3.0, 5.0],
        description="Backoff delays between bulk post attempts in seconds",
    )
    status_map: dict[str, str] = Field(default_factory=dict)
    request_timeout: float = Field(default=30.0, gt=0)

    model_config = {"validate_assignment": True}

    @field_validator("after")
    def ensure_timezone(cls, v: datetime) -> datetime:
        """Naive datetimes are taken as UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @field_validator("retry_delays")
    def validate_retry_delays(cls, v: list[float]) -> list[float]:
        """Delays must be non-negative."""
        if any(delay < 0 for delay in v):
            raise ValueError("retry delays must be non-negative")
        return v


class LoggingConfig(BaseModel):
    """Configuration for structured logging."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="json", description="Log format (json or text)")

    @field_validator("level")
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(valid_levels)}")
        return v.upper()

    @field_validator("format")
    def validate_log_format(cls, v: str) -> str:
        """Validate log format."""
        if v.lower() not in {"json", "text"}:
            raise ValueError("Log format must be 'json' or 'text'")
        return v.lower()


class Config(BaseModel):
    """Main configuration class for the Qase migration tool."""

    source: WorkspaceConfig
    target: WorkspaceConfig
    mapping: MappingConfig = Field(default_factory=MappingConfig)
    migration: MigrationConfig = Field(default_factory=MigrationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    output_dir: Path = Field(
        default=Path("./migration-output"),
        description="Directory for the mapping artifact and the migration report",
    )

    model_config = {"validate_assignment": True}

    @model_validator(mode="after")
    def check_mapping_parameter(self) -> "Config":
        """Cross-workspace migrations need the parameter of their match mode."""
        missing = self.mapping.missing_parameter()
        if missing and not self.same_workspace:
            raise ValueError(f"{missing} is required for {self.mapping.mode.value} mode")
        return self

    @property
    def same_workspace(self) -> bool:
        """True when source and target address the very same project."""
        return (
            self.source.base_url == self.target.base_url
            and self.source.api_token == self.target.api_token
            and self.source.project == self.target.project
        )

    @classmethod
    def from_env(cls) -> "Config":
        """Create configuration from environment variables.

        Returns:
            Config instance populated from environment variables.

        Raises:
            ConfigurationError: If required environment variables are missing
                or malformed.
        """
        source_token = _require_env("QASE_SOURCE_API_TOKEN")
        source_project = _require_env("QASE_SOURCE_PROJECT")
        target_token = _require_env("QASE_TARGET_API_TOKEN")
        target_project = _require_env("QASE_TARGET_PROJECT")

        mode = os.getenv("QASE_MATCH_MODE", MatchMode.CUSTOM_FIELD.value)
        try:
            match_mode = MatchMode(mode)
        except ValueError:
            raise ConfigurationError(f"unsupported QASE_MATCH_MODE: {mode}") from None

        custom_field_id = _int_env("QASE_CF_ID", 0) or None
        csv_env = os.getenv("QASE_MAPPING_CSV")
        csv_path = Path(csv_env) if csv_env else None

        after = parse_unix_timestamp(
            os.getenv("QASE_AFTER_DATE", str(DEFAULT_AFTER_TIMESTAMP)), "QASE_AFTER_DATE"
        )

        fast_mode_threshold: int | None = _int_env("QASE_FAST_MODE_THRESHOLD", 20)
        if fast_mode_threshold == 0:
            fast_mode_threshold = None

        try:
            return cls(
                source=WorkspaceConfig(
                    api_token=source_token,
                    project=source_project,
                    url=os.getenv("QASE_SOURCE_API_BASE", DEFAULT_API_BASE),
                ),
                target=WorkspaceConfig(
                    api_token=target_token,
                    project=target_project,
                    url=os.getenv("QASE_TARGET_API_BASE", DEFAULT_API_BASE),
                ),
                mapping=MappingConfig(
                    mode=match_mode,
                    custom_field_id=custom_field_id,
                    csv_path=csv_path,
                ),
                migration=MigrationConfig(
                    after=after,
                    dry_run=_bool_env("QASE_DRY_RUN", True),
                    idempotent=_bool_env("QASE_IDEMPOTENT", True),
                    bulk_size=_int_env("QASE_BULK_SIZE", 200),
                    concurrency=_int_env("QASE_CONCURRENCY", 2),
                    fast_mode_threshold=fast_mode_threshold,
                    timeout_seconds=_int_env("QASE_TIMEOUT_MINUTES", 30) * 60,
                    page_size=_int_env("QASE_PAGE_SIZE", 100),
                    max_pages=_int_env("QASE_MAX_PAGES", 1000),
                    status_map=parse_status_map(os.getenv("QASE_STATUS_MAP", "")),
                ),
                logging=LoggingConfig(
                    level=os.getenv("LOG_LEVEL", "INFO"),
                    format=os.getenv("LOG_FORMAT", "json"),
                ),
                output_dir=Path(os.getenv("QASE_OUTPUT_DIR", "./migration-output")),
            )
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    @classmethod
    def from_file(cls, config_path: Path) -> "Config":
        """Create configuration from a YAML or JSON file.

        Args:
            config_path: Path to the configuration file

        Returns:
            Config instance populated from the file

        Raises:
            ConfigurationError: If the file is missing, has an unsupported
                format, or fails validation
        """
        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        file_extension = config_path.suffix.lower()

        try:
            if file_extension == ".json":
                with open(config_path) as f:
                    config_data = json.load(f)
            elif file_extension in [".yaml", ".yml"]:
                import yaml

                with open(config_path) as f:
                    config_data = yaml.safe_load(f)
            else:
                raise ConfigurationError(
                    f"Unsupported configuration file format: {file_extension}. Supported formats: .json, .yaml, .yml"
                )

            return cls(**config_data)

        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in configuration file: {e}") from e
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration file: {e}") from e

    def ensure_output_dir(self) -> Path:
        """Ensure the output directory exists and return it."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        return self.output_dir


def parse_status_map(raw: str) -> dict[str, str]:
    """Parse ``"failed:blocked,skipped:passed"`` into a status translation table.

    Raises:
        ConfigurationError: If a pair is not of the form ``from:to``.
    """
    status_map: dict[str, str] = {}
    if not raw.strip():
        return status_map

    for pair in raw.split(","):
        parts = pair.split(":", 1)
        if len(parts) != 2:
            raise ConfigurationError(f"invalid status mapping pair: {pair}")
        status_map[parts[0].strip()] = parts[1].strip()
    return status_map


def parse_unix_timestamp(raw: str, name: str = "timestamp") -> datetime:
    """Parse a unix timestamp in seconds into an aware UTC datetime."""
    try:
        return datetime.fromtimestamp(int(raw.strip()), tz=timezone.utc)
    except (ValueError, OverflowError, OSError) as e:
        raise ConfigurationError(
            f"invalid {name} format (must be Unix timestamp): {raw!r}"
        ) from e


def mask_token(token: str) -> str:
    """Mask a token for display, keeping the first 8 and last 4 characters."""
    if not token:
        return "<not set>"
    if len(token) <= 12:
        return "***"
    return f"{token[:8]}...{token[-4:]}"


def _require_env(key: str) -> str:
    value = os.getenv(key)
    if not value:
        raise ConfigurationError(f"{key} environment variable is required")
    return value


def _int_env(key: str, default: int) -> int:
    value = os.getenv(key)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got: {value}") from None


def _bool_env(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if not value:
        return default
    return value.strip().lower() == "true"
