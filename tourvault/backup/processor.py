from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Protocol

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from tourvault.backup.builder import PartBuilder, PartBuildError
from tourvault.backup.items import compute_total_parts, part_bounds
from tourvault.backup.sync import CloudSyncError, SyncTrigger
from tourvault.backup.uploader import PartUploader
from tourvault.core.config import Settings
from tourvault.db.models import (
    BackupJob,
    BackupJobStatus,
    BackupPart,
    BackupQueueEntry,
    PartStatus,
    QueueStatus,
)
from tourvault.jobs.service import (
    TERMINAL_JOB_STATUSES,
    InvalidJobStateError,
    JobConflictError,
    JobNotFoundError,
    add_backup_log,
)
from tourvault.queue.claims import claim_queue_entry, compute_backoff
from tourvault.tours.source import TourSource

logger = logging.getLogger(__name__)


class BackupProcessingError(RuntimeError):
    def __init__(self, job_id: str, message: str, *, permanent: bool):
        super().__init__(message)
        self.job_id = job_id
        self.permanent = permanent


class ContinuationScheduler(Protocol):
    def schedule(self, job_id: str, callback: Callable[[str], Any]) -> None:
        ...


class ThreadPoolContinuation:
    def __init__(self, max_workers: int = 4):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="backup-continuation")

    def schedule(self, job_id: str, callback: Callable[[str], Any]) -> None:
        future = self._executor.submit(callback, job_id)
        future.add_done_callback(lambda done: self._report(job_id, done))

    def _report(self, job_id: str, future: Future[Any]) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("Continuation for job %s failed: %s", job_id, exc)

    def shutdown(self, *, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


@dataclass(frozen=True)
class ChunkResult:
    job_id: str
    success: bool
    in_progress: bool
    part_number: int | None
    parts_count: int
    total_parts: int
    total_size: int
    total_items: int


def chunk_result_to_dict(result: ChunkResult) -> dict[str, Any]:
    return {
        "job_id": result.job_id,
        "success": result.success,
        "in_progress": result.in_progress,
        "part_number": result.part_number,
        "parts_count": result.parts_count,
        "total_parts": result.total_parts,
        "total_size": result.total_size,
        "total_items": result.total_items,
    }


class JobProcessor:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        *,
        tour_source: TourSource,
        builder: PartBuilder,
        uploader: PartUploader,
        scheduler: ContinuationScheduler,
        sync_trigger: SyncTrigger | None = None,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._tour_source = tour_source
        self._builder = builder
        self._uploader = uploader
        self._scheduler = scheduler
        self._sync_trigger = sync_trigger

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _backoff(self, attempts: int) -> int:
        return compute_backoff(
            attempts,
            base_seconds=self._settings.retry_base_seconds,
            max_seconds=self._settings.retry_max_seconds,
        )

    def process_job(self, job_id: str) -> ChunkResult:
        with self._session_factory() as session:
            job = session.get(BackupJob, job_id)
            if job is None:
                raise JobNotFoundError(f"Backup job not found: {job_id}")
            if job.status in TERMINAL_JOB_STATUSES:
                raise InvalidJobStateError(f"Backup job {job_id} is already {job.status.value}")
            entry = session.scalar(select(BackupQueueEntry).where(BackupQueueEntry.backup_job_id == job_id))
            if entry is None:
                raise JobNotFoundError(f"Queue entry not found for job: {job_id}")
            if not claim_queue_entry(session, entry.id, now=self._now()):
                raise JobConflictError(f"Queue entry for job {job_id} is already processing or exhausted")
        return self.advance_job(job_id)

    def continue_job(self, job_id: str) -> ChunkResult | None:
        try:
            return self.advance_job(job_id)
        except BackupProcessingError as exc:
            logger.warning("Backup job %s stopped after chunk failure: %s", job_id, exc)
            return None
        except InvalidJobStateError as exc:
            logger.info("Dropping continuation for backup job %s: %s", job_id, exc)
            return None

    def advance_job(self, job_id: str) -> ChunkResult:
        try:
            with self._session_factory() as session:
                job, _entry = self._load_claimed(session, job_id)
                progress = dict(job.job_metadata or {})
                if progress.get("current_part") is None:
                    progress = self._start_progress(session, job, progress)
                part_number = int(progress["current_part"])
                total_parts = int(progress["total_parts"])
                items_per_part = int(progress["items_per_part"])
                already_written = session.scalar(
                    select(BackupPart.id).where(
                        BackupPart.backup_job_id == job_id,
                        BackupPart.part_number == part_number,
                    )
                )
        except SQLAlchemyError as exc:
            raise self.record_failure(job_id, exc) from exc

        if part_number > total_parts:
            return self._finalize(job_id)

        if already_written is not None:
            logger.info("Part %s of job %s already stored; advancing cursor", part_number, job_id)
            self._advance_cursor(job_id, part_number)
        else:
            try:
                self._write_part(job_id, part_number=part_number, total_parts=total_parts, items_per_part=items_per_part)
            except Exception as exc:
                raise self.record_failure(job_id, exc) from exc

        if part_number < total_parts:
            self._scheduler.schedule(job_id, self.continue_job)
            with self._session_factory() as session:
                parts_count, total_size = self._part_totals(session, job_id)
                job = session.get(BackupJob, job_id)
                total_items = job.total_items if job is not None else 0
            return ChunkResult(
                job_id=job_id,
                success=True,
                in_progress=True,
                part_number=part_number,
                parts_count=parts_count,
                total_parts=total_parts,
                total_size=total_size,
                total_items=total_items,
            )
        return self._finalize(job_id)

    def _load_claimed(self, session: Session, job_id: str) -> tuple[BackupJob, BackupQueueEntry]:
        job = session.get(BackupJob, job_id)
        if job is None:
            raise JobNotFoundError(f"Backup job not found: {job_id}")
        entry = session.scalar(select(BackupQueueEntry).where(BackupQueueEntry.backup_job_id == job_id))
        if entry is None:
            raise JobNotFoundError(f"Queue entry not found for job: {job_id}")
        if job.status in TERMINAL_JOB_STATUSES:
            if entry.status == QueueStatus.PROCESSING:
                entry.status = QueueStatus.COMPLETED if job.status == BackupJobStatus.COMPLETED else QueueStatus.FAILED
                entry.completed_at = self._now()
                session.commit()
            raise InvalidJobStateError(f"Backup job {job_id} is already {job.status.value}")
        if entry.status != QueueStatus.PROCESSING:
            raise InvalidJobStateError(f"Queue entry for job {job_id} is {entry.status.value}, not processing")
        return job, entry

    def _start_progress(self, session: Session, job: BackupJob, progress: dict[str, Any]) -> dict[str, Any]:
        now = self._now()
        items_per_part = self._settings.items_per_part
        total_parts = compute_total_parts(job.total_items, items_per_part)
        progress.update(
            {
                "current_part": 1,
                "total_parts": total_parts,
                "items_per_part": items_per_part,
                "started_at": now.isoformat(),
            }
        )
        job.job_metadata = progress
        job.status = BackupJobStatus.PROCESSING
        job.updated_at = now
        add_backup_log(
            session,
            job.id,
            "started",
            f"Backup started: {job.total_items} items in {total_parts} parts",
            details={"total_parts": total_parts, "items_per_part": items_per_part},
        )
        session.commit()
        logger.info("Backup job %s started: %s items, %s parts", job.id, job.total_items, total_parts)
        return progress

    def _write_part(self, job_id: str, *, part_number: int, total_parts: int, items_per_part: int) -> None:
        with self._session_factory() as session:
            job = session.get(BackupJob, job_id)
            if job is None:
                raise JobNotFoundError(f"Backup job not found: {job_id}")
            tour_id, kind, owner_id, total_items = job.tour_id, job.kind, job.owner_id, job.total_items

        tree = self._tour_source.load_tree(tour_id)
        start, stop = part_bounds(part_number, items_per_part, total_items)
        if start >= stop:
            raise PartBuildError(f"Part {part_number} of job {job_id} has no items")
        built = self._builder.build(
            tree,
            job_id=job_id,
            kind=kind,
            part_number=part_number,
            total_parts=total_parts,
            start=start,
            stop=stop,
        )
        uploaded = self._uploader.upload_part(
            owner_id=owner_id,
            job_id=job_id,
            tour_title=tree.title,
            part_number=part_number,
            total_parts=total_parts,
            data=built.data,
        )

        now = self._now()
        with self._session_factory() as session:
            job = session.get(BackupJob, job_id)
            entry = session.scalar(select(BackupQueueEntry).where(BackupQueueEntry.backup_job_id == job_id))
            if job is None or entry is None:
                raise JobNotFoundError(f"Backup job vanished while writing part {part_number}: {job_id}")

            session.add(
                BackupPart(
                    backup_job_id=job_id,
                    part_number=part_number,
                    storage_path=uploaded.storage_path,
                    file_url=uploaded.file_url,
                    file_size=uploaded.file_size,
                    file_hash=uploaded.file_hash,
                    items_count=built.items_count,
                    status=PartStatus.COMPLETED,
                    completed_at=now,
                )
            )
            stored_items = session.scalar(
                select(func.coalesce(func.sum(BackupPart.items_count), 0)).where(
                    BackupPart.backup_job_id == job_id,
                    BackupPart.status == PartStatus.COMPLETED,
                    BackupPart.part_number != part_number,
                )
            )
            job.processed_items = int(stored_items or 0) + built.items_count
            job.progress_percentage = float(round(part_number / total_parts * 100))
            progress = dict(job.job_metadata or {})
            progress["current_part"] = part_number + 1
            progress["last_part_at"] = now.isoformat()
            job.job_metadata = progress
            job.updated_at = now
            entry.heartbeat_at = now
            add_backup_log(
                session,
                job_id,
                "part_completed",
                f"Part {part_number}/{total_parts} stored ({uploaded.file_size} bytes)",
                details={
                    "part_number": part_number,
                    "storage_path": uploaded.storage_path,
                    "items_count": built.items_count,
                    "file_hash": uploaded.file_hash,
                },
            )
            if built.skipped or built.missing:
                add_backup_log(
                    session,
                    job_id,
                    "items_skipped",
                    f"{len(built.skipped) + built.missing} images could not be archived for part {part_number}",
                    is_error=True,
                    details={
                        "part_number": part_number,
                        "missing_from_tour": built.missing,
                        "skipped": [
                            {"image_url": item.image_url, "archive_path": item.archive_path, "reason": item.reason}
                            for item in built.skipped
                        ],
                    },
                )
            session.commit()

    def _advance_cursor(self, job_id: str, part_number: int) -> None:
        with self._session_factory() as session:
            job = session.get(BackupJob, job_id)
            if job is None:
                raise JobNotFoundError(f"Backup job not found: {job_id}")
            progress = dict(job.job_metadata or {})
            progress["current_part"] = part_number + 1
            job.job_metadata = progress
            job.updated_at = self._now()
            session.commit()

    def _part_totals(self, session: Session, job_id: str) -> tuple[int, int]:
        parts = session.scalars(
            select(BackupPart).where(BackupPart.backup_job_id == job_id, BackupPart.status == PartStatus.COMPLETED)
        ).all()
        return len(parts), sum(part.file_size for part in parts)

    def _finalize(self, job_id: str) -> ChunkResult:
        try:
            result = self._complete(job_id)
        except Exception as exc:
            raise self.record_failure(job_id, exc) from exc
        if self._sync_trigger is not None:
            self._scheduler.schedule(job_id, self._trigger_sync)
        return result

    def _complete(self, job_id: str) -> ChunkResult:
        now = self._now()
        with self._session_factory() as session:
            job = session.get(BackupJob, job_id)
            entry = session.scalar(select(BackupQueueEntry).where(BackupQueueEntry.backup_job_id == job_id))
            if job is None or entry is None:
                raise JobNotFoundError(f"Backup job not found: {job_id}")
            progress = dict(job.job_metadata or {})
            total_parts = int(progress.get("total_parts") or 0)

            parts = list(
                session.scalars(
                    select(BackupPart)
                    .where(BackupPart.backup_job_id == job_id, BackupPart.status == PartStatus.COMPLETED)
                    .order_by(BackupPart.part_number.asc())
                ).all()
            )
            numbers = [part.part_number for part in parts]
            if numbers != list(range(1, total_parts + 1)):
                raise PartBuildError(f"Parts for job {job_id} are not contiguous: have {numbers}, expected 1..{total_parts}")

            total_size = sum(part.file_size for part in parts)
            embedded_items = sum(part.items_count for part in parts)
            progress["completed_at"] = now.isoformat()
            job.job_metadata = progress
            job.status = BackupJobStatus.COMPLETED
            job.processed_items = embedded_items
            job.progress_percentage = 100.0
            job.file_size = total_size
            job.storage_path = self._uploader.job_folder(job.owner_id, job.id)
            job.last_error = None
            job.completed_at = now
            job.updated_at = now
            entry.status = QueueStatus.COMPLETED
            entry.completed_at = now
            entry.heartbeat_at = now
            entry.error_message = None
            add_backup_log(
                session,
                job_id,
                "completed",
                f"Backup completed: {total_parts} parts, {total_size} bytes",
                details={"total_parts": total_parts, "total_size": total_size, "embedded_items": embedded_items},
            )
            session.commit()
            total_items = job.total_items

        logger.info("Backup job %s completed: %s parts, %s bytes", job_id, total_parts, total_size)
        return ChunkResult(
            job_id=job_id,
            success=True,
            in_progress=False,
            part_number=None,
            parts_count=total_parts,
            total_parts=total_parts,
            total_size=total_size,
            total_items=total_items,
        )

    def _trigger_sync(self, job_id: str) -> None:
        if self._sync_trigger is None:
            return
        with self._session_factory() as session:
            job = session.get(BackupJob, job_id)
            destination_id = job.destination_id if job is not None else None
        try:
            triggered = self._sync_trigger.trigger(job_id=job_id, destination_id=destination_id)
        except CloudSyncError as exc:
            logger.warning("Cloud sync for job %s failed: %s", job_id, exc)
            with self._session_factory() as session:
                add_backup_log(session, job_id, "cloud_sync_failed", str(exc), is_error=True)
                session.commit()
            return
        if triggered:
            with self._session_factory() as session:
                add_backup_log(
                    session,
                    job_id,
                    "cloud_sync_triggered",
                    "Cloud sync requested",
                    details={"destination_id": destination_id},
                )
                session.commit()

    def record_failure(self, job_id: str, exc: Exception) -> BackupProcessingError:
        message = str(exc) or exc.__class__.__name__
        now = self._now()
        with self._session_factory() as session:
            job = session.get(BackupJob, job_id)
            entry = session.scalar(select(BackupQueueEntry).where(BackupQueueEntry.backup_job_id == job_id))
            if job is None or entry is None:
                return BackupProcessingError(job_id, message, permanent=True)

            job.last_error = message
            job.retry_count += 1
            job.updated_at = now
            entry.error_message = message
            permanent = entry.attempts >= entry.max_attempts
            if permanent:
                entry.status = QueueStatus.FAILED
                entry.completed_at = now
                job.status = BackupJobStatus.FAILED
                add_backup_log(
                    session,
                    job_id,
                    "failed",
                    f"Backup failed after {entry.attempts} attempts: {message}",
                    is_error=True,
                    details={"attempts": entry.attempts, "error_type": exc.__class__.__name__},
                )
            else:
                delay = self._backoff(entry.attempts)
                entry.status = QueueStatus.RETRY
                entry.scheduled_at = now + timedelta(seconds=delay)
                job.status = BackupJobStatus.PENDING
                add_backup_log(
                    session,
                    job_id,
                    "retry_scheduled",
                    f"Attempt {entry.attempts}/{entry.max_attempts} failed, retrying in {delay}s: {message}",
                    is_error=True,
                    details={"attempts": entry.attempts, "delay_seconds": delay, "error_type": exc.__class__.__name__},
                )
            session.commit()

        if permanent:
            logger.error("Backup job %s failed permanently: %s", job_id, message)
        else:
            logger.warning("Backup job %s chunk failed, scheduled for retry: %s", job_id, message)
        return BackupProcessingError(job_id, message, permanent=permanent)
