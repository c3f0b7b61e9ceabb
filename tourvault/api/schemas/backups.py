from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from tourvault.db.models import BackupKind


class CreateBackupRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tour_id: str = Field(min_length=1, max_length=36)
    kind: BackupKind = BackupKind.FULL
    destination_id: str | None = Field(default=None, max_length=64)
    priority: int | None = Field(default=None, ge=0, le=100)


class ProcessQueueRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_jobs: int = Field(default=1, ge=1, le=50)


class QueueEntryResponse(BaseModel):
    id: int
    status: str
    attempts: int
    max_attempts: int
    priority: int
    scheduled_at: datetime
    started_at: datetime | None
    heartbeat_at: datetime | None
    error_message: str | None
    completed_at: datetime | None


class BackupJobResponse(BaseModel):
    id: str
    tour_id: str
    owner_id: str
    tenant_id: str | None
    destination_id: str | None
    kind: str
    status: str
    total_items: int
    processed_items: int
    progress_percentage: float
    retry_count: int
    last_error: str | None
    storage_path: str | None
    file_size: int | None
    metadata: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None
    queue: QueueEntryResponse | None


class BackupPartResponse(BaseModel):
    id: int
    part_number: int
    storage_path: str
    file_url: str | None
    file_size: int
    file_hash: str
    items_count: int
    status: str
    created_at: datetime
    completed_at: datetime | None


class BackupPartListResponse(BaseModel):
    items: list[BackupPartResponse]


class BackupLogResponse(BaseModel):
    id: int
    event_type: str
    message: str
    is_error: bool
    details: dict[str, Any]
    created_at: datetime


class BackupLogListResponse(BaseModel):
    items: list[BackupLogResponse]


class DispatchDetailResponse(BaseModel):
    queue_id: int
    job_id: str
    outcome: str
    error: str | None


class ProcessQueueResponse(BaseModel):
    processed: int
    failed: int
    skipped: int
    details: list[DispatchDetailResponse]


class ProcessJobResponse(BaseModel):
    job_id: str
    success: bool
    in_progress: bool
    part_number: int | None
    parts_count: int
    total_parts: int
    total_size: int
    total_items: int


class CleanupStuckResponse(BaseModel):
    cleaned: int
