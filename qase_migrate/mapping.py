"""Translation of source case ids into target case ids."""

import csv
from collections.abc import Iterable, Iterator, Mapping
from pathlib import Path

import structlog

from qase_migrate.config import MatchMode
from qase_migrate.exceptions import ConfigurationError
from qase_migrate.models import Case

logger = structlog.get_logger(__name__)

IDENTITY_MODE = "identity"
ARTIFACT_HEADER = ("source_case_id", "target_case_id")


class CaseMapping(Mapping[int, int]):
    """Read-only source case id to target case id table.

    Several source ids may point at the same target case.
    """

    def __init__(self, entries: Mapping[int, int], mode: str) -> None:
        self._entries = dict(entries)
        self.mode = mode

    def __getitem__(self, source_case_id: int) -> int:
        return self._entries[source_case_id]

    def __iter__(self) -> Iterator[int]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"CaseMapping(mode={self.mode!r}, size={len(self)})"


def build_case_mapping(
    mode: MatchMode,
    source_cases: Iterable[Case],
    target_cases: Iterable[Case],
    *,
    field_id: int | None = None,
    table_path: Path | None = None,
    same_workspace: bool = False,
) -> CaseMapping:
    """Build the case mapping for a migration.

    Args:
        mode: Strategy used when the workspaces differ.
        source_cases: Cases of the source project.
        target_cases: Cases of the target project.
        field_id: Target custom field holding source case ids (custom_field mode).
        table_path: Mapping table (csv mode).
        same_workspace: Source and target are the same project; every known
            source case maps to itself and ``mode`` is ignored.

    Raises:
        ConfigurationError: If the selected mode lacks its parameter or the
            table file does not exist.
    """
    if same_workspace:
        mapping = CaseMapping({case.id: case.id for case in source_cases}, IDENTITY_MODE)
    elif mode == MatchMode.CUSTOM_FIELD:
        if field_id is None:
            raise ConfigurationError("custom field id is required for custom_field mode")
        mapping = CaseMapping(
            _custom_field_entries(target_cases, field_id), MatchMode.CUSTOM_FIELD.value
        )
    elif mode == MatchMode.CSV:
        if table_path is None:
            raise ConfigurationError("mapping table path is required for csv mode")
        mapping = CaseMapping(read_mapping_table(table_path), MatchMode.CSV.value)
    else:
        raise ConfigurationError(f"unsupported match mode: {mode}")

    logger.info("Built case mapping", mode=mapping.mode, entries=len(mapping))
    return mapping


def _custom_field_entries(target_cases: Iterable[Case], field_id: int) -> dict[int, int]:
    entries: dict[int, int] = {}
    for case in target_cases:
        for custom_field in case.custom_fields:
            if custom_field.id != field_id:
                continue
            try:
                source_id = int((custom_field.value or "").strip())
            except ValueError:
                logger.warning(
                    "Skipping case with invalid custom field value",
                    case_id=case.id,
                    value=custom_field.value,
                )
                break
            entries[source_id] = case.id
            break
    return entries


def read_mapping_table(path: Path) -> dict[int, int]:
    """Read a two-column ``source,target`` table; the first row is a header.

    Raises:
        ConfigurationError: If the file does not exist or cannot be read.
    """
    if not path.exists():
        raise ConfigurationError(f"mapping table not found: {path}")

    entries: dict[int, int] = {}
    try:
        with open(path, newline="") as f:
            rows = csv.reader(f)
            next(rows, None)
            for line_number, row in enumerate(rows, start=2):
                if len(row) < 2:
                    logger.warning("Skipping row with too few columns", row=line_number)
                    continue
                try:
                    source_id = int(row[0].strip())
                    target_id = int(row[1].strip())
                except ValueError:
                    logger.warning(
                        "Skipping row with non-integer case id",
                        row=line_number,
                        values=row[:2],
                    )
                    continue
                entries[source_id] = target_id
    except (OSError, csv.Error) as e:
        raise ConfigurationError(f"failed to read mapping table {path}: {e}") from e

    if not entries:
        logger.warning("Mapping table has no usable rows", path=str(path))
    return entries


def write_mapping_artifact(mapping: Mapping[int, int], path: Path) -> Path:
    """Write the mapping as a CSV sorted by source case id."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(ARTIFACT_HEADER)
        for source_id in sorted(mapping):
            writer.writerow((source_id, mapping[source_id]))

    logger.info("Wrote mapping artifact", path=str(path), entries=len(mapping))
    return path
