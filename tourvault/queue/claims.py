from __future__ import annotations

from datetime import datetime

from sqlalchemy import update
from sqlalchemy.orm import Session

from tourvault.db.models import BackupQueueEntry, QueueStatus

CLAIMABLE_STATUSES = (QueueStatus.PENDING, QueueStatus.RETRY)


def compute_backoff(attempts: int, *, base_seconds: int, max_seconds: int) -> int:
    if attempts < 0:
        raise ValueError("attempts must be >= 0")
    exponent = min(attempts, 32)
    return min(base_seconds * (2**exponent), max_seconds)


def claim_queue_entry(session: Session, entry_id: int, *, now: datetime) -> bool:
    result = session.execute(
        update(BackupQueueEntry)
        .where(
            BackupQueueEntry.id == entry_id,
            BackupQueueEntry.status.in_(CLAIMABLE_STATUSES),
            BackupQueueEntry.attempts < BackupQueueEntry.max_attempts,
        )
        .values(
            status=QueueStatus.PROCESSING,
            attempts=BackupQueueEntry.attempts + 1,
            started_at=now,
            heartbeat_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        session.rollback()
        return False
    session.commit()
    return True
