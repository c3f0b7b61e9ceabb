from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, sessionmaker

from tourvault.backup.processor import BackupProcessingError, JobProcessor
from tourvault.core.config import Settings
from tourvault.db.models import BackupJob, BackupJobStatus, BackupQueueEntry, QueueStatus
from tourvault.jobs.service import InvalidJobStateError, JobNotFoundError, add_backup_log
from tourvault.queue.claims import CLAIMABLE_STATUSES, claim_queue_entry, compute_backoff
from tourvault.queue.types import DispatchDetail, DispatchOutcome, DispatchResult

logger = logging.getLogger(__name__)

STUCK_MESSAGE = "Reset by stuck-job cleanup after {minutes} minutes without progress"


class QueueService:
    def __init__(self, settings: Settings, session_factory: sessionmaker[Session], processor: JobProcessor):
        self._settings = settings
        self._session_factory = session_factory
        self._processor = processor

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def compute_backoff(self, attempts: int) -> int:
        return compute_backoff(
            attempts,
            base_seconds=self._settings.retry_base_seconds,
            max_seconds=self._settings.retry_max_seconds,
        )

    def process_queue(self, max_jobs: int | None = None) -> DispatchResult:
        limit = max_jobs if max_jobs is not None else self._settings.dispatch_max_jobs
        if limit < 1:
            raise ValueError("max_jobs must be >= 1")

        now = self._now()
        with self._session_factory() as session:
            candidates = [
                (entry.id, entry.backup_job_id, entry.attempts, entry.max_attempts)
                for entry in session.scalars(
                    select(BackupQueueEntry)
                    .where(
                        BackupQueueEntry.status.in_(CLAIMABLE_STATUSES),
                        BackupQueueEntry.scheduled_at <= now,
                    )
                    .order_by(
                        BackupQueueEntry.priority.desc(),
                        BackupQueueEntry.scheduled_at.asc(),
                        BackupQueueEntry.id.asc(),
                    )
                    .limit(limit)
                ).all()
            ]

        result = DispatchResult()
        for entry_id, job_id, attempts, max_attempts in candidates:
            if attempts >= max_attempts:
                result.skipped += 1
                result.details.append(
                    DispatchDetail(
                        queue_id=entry_id,
                        job_id=job_id,
                        outcome=DispatchOutcome.SKIPPED,
                        error=f"Attempts exhausted ({attempts}/{max_attempts})",
                    )
                )
                continue

            with self._session_factory() as session:
                claimed = claim_queue_entry(session, entry_id, now=self._now())
            if not claimed:
                result.skipped += 1
                result.details.append(
                    DispatchDetail(
                        queue_id=entry_id,
                        job_id=job_id,
                        outcome=DispatchOutcome.SKIPPED,
                        error="Claimed by another dispatcher",
                    )
                )
                continue

            try:
                chunk = self._processor.advance_job(job_id)
            except (BackupProcessingError, JobNotFoundError, InvalidJobStateError) as exc:
                result.failed += 1
                result.details.append(
                    DispatchDetail(queue_id=entry_id, job_id=job_id, outcome=DispatchOutcome.FAILED, error=str(exc))
                )
                continue
            except Exception as exc:
                logger.exception("Unexpected error advancing backup job %s", job_id)
                failure = self._processor.record_failure(job_id, exc)
                result.failed += 1
                result.details.append(
                    DispatchDetail(queue_id=entry_id, job_id=job_id, outcome=DispatchOutcome.FAILED, error=str(failure))
                )
                continue

            result.processed += 1
            result.details.append(
                DispatchDetail(
                    queue_id=entry_id,
                    job_id=job_id,
                    outcome=DispatchOutcome.IN_PROGRESS if chunk.in_progress else DispatchOutcome.PROCESSED,
                )
            )

        if candidates:
            logger.info(
                "Dispatch pass: processed=%s failed=%s skipped=%s",
                result.processed,
                result.failed,
                result.skipped,
            )
        return result

    def cleanup_stuck_jobs(self) -> int:
        now = self._now()
        timeout = self._settings.stuck_job_timeout_seconds
        cutoff = now - timedelta(seconds=timeout)
        last_progress = func.coalesce(BackupQueueEntry.heartbeat_at, BackupQueueEntry.started_at)
        message = STUCK_MESSAGE.format(minutes=timeout // 60)

        with self._session_factory() as session:
            stuck = list(
                session.scalars(
                    select(BackupQueueEntry).where(
                        BackupQueueEntry.status == QueueStatus.PROCESSING,
                        last_progress < cutoff,
                    )
                ).all()
            )
            if not stuck:
                return 0

            cleaned = 0
            for entry in stuck:
                exhausted = entry.attempts >= entry.max_attempts
                reset = session.execute(
                    update(BackupQueueEntry)
                    .where(BackupQueueEntry.id == entry.id, BackupQueueEntry.status == QueueStatus.PROCESSING)
                    .values(
                        status=QueueStatus.FAILED if exhausted else QueueStatus.RETRY,
                        scheduled_at=now,
                        error_message=message,
                        completed_at=now if exhausted else None,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if reset.rowcount != 1:
                    continue
                cleaned += 1
                details = {"queue_id": entry.id, "attempts": entry.attempts, "max_attempts": entry.max_attempts}
                if exhausted:
                    job = session.get(BackupJob, entry.backup_job_id)
                    if job is not None:
                        job.status = BackupJobStatus.FAILED
                        job.last_error = message
                        job.updated_at = now
                    add_backup_log(
                        session,
                        entry.backup_job_id,
                        "failed",
                        f"Backup failed after {entry.attempts} attempts: {message}",
                        is_error=True,
                        details=details,
                    )
                    continue
                add_backup_log(session, entry.backup_job_id, "stuck_reset", message, is_error=True, details=details)
            session.commit()

        if cleaned:
            logger.warning("Reset %s stuck backup queue entries", cleaned)
        return cleaned
