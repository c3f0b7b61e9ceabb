from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from tourvault.db.models import MigrationState


@dataclass(frozen=True)
class MigrationRequest:
    target_url: str
    statement_batch: str
    target_credential: str | None = None
    create_backup: bool = True


@dataclass(slots=True)
class TargetSnapshot:
    tables: dict[str, list[dict[str, Any]]]
    taken_at: datetime

    @property
    def total_records(self) -> int:
        return sum(len(rows) for rows in self.tables.values())


@dataclass(slots=True)
class MigrationStats:
    total_statements: int = 0
    successful: int = 0
    errors: int = 0
    error_details: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class RollbackReport:
    performed: bool = False
    tables_restored: int = 0
    records_restored: int = 0
    reason: str | None = None
    failed_tables: list[str] = field(default_factory=list)


@dataclass(slots=True)
class MigrationResult:
    run_id: str
    success: bool
    state: MigrationState
    message: str
    stats: MigrationStats
    error: str | None = None
    rollback: RollbackReport | None = None
    critical_failure: bool = False
    rollback_error: str | None = None
    log: list[str] = field(default_factory=list)


def migration_result_to_dict(result: MigrationResult) -> dict[str, Any]:
    rollback = result.rollback
    return {
        "run_id": result.run_id,
        "success": result.success,
        "state": result.state.value,
        "message": result.message,
        "error": result.error,
        "stats": {
            "total_statements": result.stats.total_statements,
            "successful": result.stats.successful,
            "errors": result.stats.errors,
            "error_details": list(result.stats.error_details),
        },
        "rollback": None
        if rollback is None
        else {
            "performed": rollback.performed,
            "tables_restored": rollback.tables_restored,
            "records_restored": rollback.records_restored,
            "reason": rollback.reason,
            "failed_tables": list(rollback.failed_tables),
        },
        "critical_failure": result.critical_failure,
        "rollback_error": result.rollback_error,
        "log": list(result.log),
    }


@dataclass(slots=True)
class MigrationRunSnapshot:
    id: str
    target: str
    state: MigrationState
    success: bool
    create_backup: bool
    stats: dict[str, Any]
    rollback: dict[str, Any] | None
    log: list[str]
    error_message: str | None
    started_at: datetime
    finished_at: datetime | None


def run_snapshot_to_dict(snapshot: MigrationRunSnapshot) -> dict[str, Any]:
    return {
        "id": snapshot.id,
        "target": snapshot.target,
        "state": snapshot.state.value,
        "success": snapshot.success,
        "create_backup": snapshot.create_backup,
        "stats": snapshot.stats,
        "rollback": snapshot.rollback,
        "log": snapshot.log,
        "error_message": snapshot.error_message,
        "started_at": snapshot.started_at,
        "finished_at": snapshot.finished_at,
    }
