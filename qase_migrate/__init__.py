"""Qase Migration Tool.

A Python CLI & library for replaying Qase test results from one workspace
project into another without duplicating them on re-runs.
"""

__version__ = "0.1.0"

from qase_migrate.config import Config, MigrationConfig
from qase_migrate.orchestration import MigrationOrchestrator

__all__ = [
    "Config",
    "MigrationConfig",
    "MigrationOrchestrator",
    "__version__",
]
