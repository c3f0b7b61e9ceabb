from tourvault.migration.engine import (
    InvalidMigrationStateError,
    MigrationConflictError,
    MigrationCriticalError,
    MigrationEngine,
    MigrationNotFoundError,
    split_statements,
)
from tourvault.migration.types import MigrationRequest, MigrationResult, migration_result_to_dict

__all__ = [
    "MigrationEngine",
    "MigrationRequest",
    "MigrationResult",
    "MigrationConflictError",
    "MigrationCriticalError",
    "MigrationNotFoundError",
    "InvalidMigrationStateError",
    "migration_result_to_dict",
    "split_statements",
]
