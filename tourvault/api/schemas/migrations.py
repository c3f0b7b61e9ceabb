from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class SafeMigrationRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    target_url: str = Field(min_length=1, max_length=2048)
    target_credential: str | None = Field(default=None, max_length=1024)
    statement_batch: str
    create_backup: bool = True


class MigrationStatsResponse(BaseModel):
    total_statements: int
    successful: int
    errors: int
    error_details: list[dict[str, Any]]


class RollbackResponse(BaseModel):
    performed: bool
    tables_restored: int
    records_restored: int
    reason: str | None
    failed_tables: list[str]


class SafeMigrationResponse(BaseModel):
    run_id: str
    success: bool
    state: str
    message: str
    error: str | None
    stats: MigrationStatsResponse
    rollback: RollbackResponse | None
    critical_failure: bool
    rollback_error: str | None
    log: list[str]


class MigrationRunResponse(BaseModel):
    id: str
    target: str
    state: str
    success: bool
    create_backup: bool
    stats: dict[str, Any]
    rollback: dict[str, Any] | None
    log: list[str]
    error_message: str | None
    started_at: datetime
    finished_at: datetime | None
