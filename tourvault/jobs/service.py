from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from tourvault.backup.items import flatten_items
from tourvault.core.config import Settings
from tourvault.db.models import (
    BackupJob,
    BackupJobStatus,
    BackupKind,
    BackupLog,
    BackupPart,
    BackupQueueEntry,
    QueueStatus,
)
from tourvault.jobs.types import BackupJobSnapshot, BackupLogSnapshot, BackupPartSnapshot, QueueEntrySnapshot
from tourvault.tours.source import TourSource


class JobNotFoundError(RuntimeError):
    pass


class JobConflictError(RuntimeError):
    pass


class InvalidJobStateError(RuntimeError):
    pass


class JobPolicyError(RuntimeError):
    pass


TERMINAL_JOB_STATUSES = frozenset({BackupJobStatus.COMPLETED, BackupJobStatus.FAILED})
ACTIVE_JOB_STATUSES = (BackupJobStatus.PENDING, BackupJobStatus.PROCESSING)


def add_backup_log(
    session: Session,
    job_id: str,
    event_type: str,
    message: str,
    *,
    is_error: bool = False,
    details: dict[str, Any] | None = None,
) -> BackupLog:
    entry = BackupLog(
        backup_job_id=job_id,
        event_type=event_type,
        message=message,
        is_error=is_error,
        details=details or {},
    )
    session.add(entry)
    return entry


class BackupJobService:
    def __init__(self, settings: Settings, session_factory: sessionmaker[Session], tour_source: TourSource):
        self._settings = settings
        self._session_factory = session_factory
        self._tour_source = tour_source

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def create_backup(
        self,
        tour_id: str,
        *,
        kind: BackupKind = BackupKind.FULL,
        destination_id: str | None = None,
        priority: int | None = None,
        max_attempts: int | None = None,
    ) -> BackupJobSnapshot:
        tree = self._tour_source.load_tree(tour_id)
        total_items = len(flatten_items(tree, kind))
        if total_items == 0:
            raise JobPolicyError(f"Tour {tour_id} has no images to back up")

        job_id = str(uuid4())
        now = self._now()
        with self._session_factory() as session:
            active = session.scalar(
                select(BackupJob.id).where(
                    BackupJob.tour_id == tour_id,
                    BackupJob.kind == kind,
                    BackupJob.status.in_(ACTIVE_JOB_STATUSES),
                )
            )
            if active is not None:
                raise JobConflictError(f"A {kind.value} backup of tour {tour_id} is already active: {active}")

            job = BackupJob(
                id=job_id,
                tour_id=tour_id,
                owner_id=tree.owner_id,
                tenant_id=tree.tenant_id,
                destination_id=destination_id,
                kind=kind,
                status=BackupJobStatus.PENDING,
                total_items=total_items,
                processed_items=0,
                progress_percentage=0.0,
                job_metadata={},
            )
            session.add(job)
            session.flush()
            session.add(
                BackupQueueEntry(
                    backup_job_id=job_id,
                    status=QueueStatus.PENDING,
                    attempts=0,
                    max_attempts=max_attempts or self._settings.queue_max_attempts,
                    priority=self._settings.queue_default_priority if priority is None else priority,
                    scheduled_at=now,
                )
            )
            add_backup_log(
                session,
                job_id,
                "queued",
                f"Backup queued with {total_items} items",
                details={"kind": kind.value, "tour_title": tree.title},
            )
            session.commit()
            return self._load_snapshot(session, job_id)

    def get_job(self, job_id: str) -> BackupJobSnapshot:
        with self._session_factory() as session:
            return self._load_snapshot(session, job_id)

    def list_parts(self, job_id: str) -> list[BackupPartSnapshot]:
        with self._session_factory() as session:
            self._require_job(session, job_id)
            rows = session.scalars(
                select(BackupPart).where(BackupPart.backup_job_id == job_id).order_by(BackupPart.part_number.asc())
            ).all()
            return [
                BackupPartSnapshot(
                    id=row.id,
                    part_number=row.part_number,
                    storage_path=row.storage_path,
                    file_url=row.file_url,
                    file_size=row.file_size,
                    file_hash=row.file_hash,
                    items_count=row.items_count,
                    status=row.status,
                    created_at=row.created_at,
                    completed_at=row.completed_at,
                )
                for row in rows
            ]

    def list_logs(self, job_id: str, *, limit: int = 200) -> list[BackupLogSnapshot]:
        bounded_limit = max(1, min(limit, 1000))
        with self._session_factory() as session:
            self._require_job(session, job_id)
            rows = session.scalars(
                select(BackupLog)
                .where(BackupLog.backup_job_id == job_id)
                .order_by(BackupLog.created_at.asc(), BackupLog.id.asc())
                .limit(bounded_limit)
            ).all()
            return [
                BackupLogSnapshot(
                    id=row.id,
                    event_type=row.event_type,
                    message=row.message,
                    is_error=row.is_error,
                    details=row.details or {},
                    created_at=row.created_at,
                )
                for row in rows
            ]

    def _require_job(self, session: Session, job_id: str) -> BackupJob:
        job = session.get(BackupJob, job_id)
        if job is None:
            raise JobNotFoundError(f"Backup job not found: {job_id}")
        return job

    def _load_snapshot(self, session: Session, job_id: str) -> BackupJobSnapshot:
        job = self._require_job(session, job_id)
        entry = session.scalar(select(BackupQueueEntry).where(BackupQueueEntry.backup_job_id == job_id))
        return to_job_snapshot(job, entry)


def to_job_snapshot(job: BackupJob, entry: BackupQueueEntry | None) -> BackupJobSnapshot:
    queue = None
    if entry is not None:
        queue = QueueEntrySnapshot(
            id=entry.id,
            status=entry.status,
            attempts=entry.attempts,
            max_attempts=entry.max_attempts,
            priority=entry.priority,
            scheduled_at=entry.scheduled_at,
            started_at=entry.started_at,
            heartbeat_at=entry.heartbeat_at,
            error_message=entry.error_message,
            completed_at=entry.completed_at,
        )
    return BackupJobSnapshot(
        id=job.id,
        tour_id=job.tour_id,
        owner_id=job.owner_id,
        tenant_id=job.tenant_id,
        destination_id=job.destination_id,
        kind=job.kind,
        status=job.status,
        total_items=job.total_items,
        processed_items=job.processed_items,
        progress_percentage=job.progress_percentage,
        retry_count=job.retry_count,
        last_error=job.last_error,
        storage_path=job.storage_path,
        file_size=job.file_size,
        metadata=dict(job.job_metadata or {}),
        created_at=job.created_at,
        updated_at=job.updated_at,
        completed_at=job.completed_at,
        queue=queue,
    )


def job_snapshot_to_dict(snapshot: BackupJobSnapshot) -> dict[str, Any]:
    queue = snapshot.queue
    return {
        "id": snapshot.id,
        "tour_id": snapshot.tour_id,
        "owner_id": snapshot.owner_id,
        "tenant_id": snapshot.tenant_id,
        "destination_id": snapshot.destination_id,
        "kind": snapshot.kind.value,
        "status": snapshot.status.value,
        "total_items": snapshot.total_items,
        "processed_items": snapshot.processed_items,
        "progress_percentage": snapshot.progress_percentage,
        "retry_count": snapshot.retry_count,
        "last_error": snapshot.last_error,
        "storage_path": snapshot.storage_path,
        "file_size": snapshot.file_size,
        "metadata": snapshot.metadata,
        "created_at": snapshot.created_at,
        "updated_at": snapshot.updated_at,
        "completed_at": snapshot.completed_at,
        "queue": None
        if queue is None
        else {
            "id": queue.id,
            "status": queue.status.value,
            "attempts": queue.attempts,
            "max_attempts": queue.max_attempts,
            "priority": queue.priority,
            "scheduled_at": queue.scheduled_at,
            "started_at": queue.started_at,
            "heartbeat_at": queue.heartbeat_at,
            "error_message": queue.error_message,
            "completed_at": queue.completed_at,
        },
    }


def part_snapshot_to_dict(snapshot: BackupPartSnapshot) -> dict[str, Any]:
    return {
        "id": snapshot.id,
        "part_number": snapshot.part_number,
        "storage_path": snapshot.storage_path,
        "file_url": snapshot.file_url,
        "file_size": snapshot.file_size,
        "file_hash": snapshot.file_hash,
        "items_count": snapshot.items_count,
        "status": snapshot.status.value,
        "created_at": snapshot.created_at,
        "completed_at": snapshot.completed_at,
    }


def log_snapshot_to_dict(snapshot: BackupLogSnapshot) -> dict[str, Any]:
    return {
        "id": snapshot.id,
        "event_type": snapshot.event_type,
        "message": snapshot.message,
        "is_error": snapshot.is_error,
        "details": snapshot.details,
        "created_at": snapshot.created_at,
    }
