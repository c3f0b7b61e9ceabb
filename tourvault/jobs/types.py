from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from tourvault.db.models import BackupJobStatus, BackupKind, PartStatus, QueueStatus


@dataclass(slots=True)
class QueueEntrySnapshot:
    id: int
    status: QueueStatus
    attempts: int
    max_attempts: int
    priority: int
    scheduled_at: datetime
    started_at: datetime | None
    heartbeat_at: datetime | None
    error_message: str | None
    completed_at: datetime | None


@dataclass(slots=True)
class BackupJobSnapshot:
    id: str
    tour_id: str
    owner_id: str
    tenant_id: str | None
    destination_id: str | None
    kind: BackupKind
    status: BackupJobStatus
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
    queue: QueueEntrySnapshot | None


@dataclass(slots=True)
class BackupPartSnapshot:
    id: int
    part_number: int
    storage_path: str
    file_url: str | None
    file_size: int
    file_hash: str
    items_count: int
    status: PartStatus
    created_at: datetime
    completed_at: datetime | None


@dataclass(slots=True)
class BackupLogSnapshot:
    id: int
    event_type: str
    message: str
    is_error: bool
    details: dict[str, Any]
    created_at: datetime
