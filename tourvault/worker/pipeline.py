from __future__ import annotations

import threading

from tourvault.backup.builder import PartBuilder
from tourvault.backup.fetch import HttpImageFetcher, ImageFetcher
from tourvault.backup.processor import ContinuationScheduler, JobProcessor, ThreadPoolContinuation
from tourvault.backup.sync import CloudSyncTrigger, SyncTrigger
from tourvault.backup.uploader import PartUploader
from tourvault.core.config import Settings, get_settings
from tourvault.db.models import BackupKind
from tourvault.db.session import get_session_factory
from tourvault.jobs.service import BackupJobService
from tourvault.queue.service import QueueService
from tourvault.queue.types import DispatchResult
from tourvault.storage.blob import LocalBlobStore
from tourvault.tours.source import SqlTourSource

_continuation: ThreadPoolContinuation | None = None
_continuation_guard = threading.Lock()


def get_continuation(settings: Settings | None = None) -> ThreadPoolContinuation:
    global _continuation
    with _continuation_guard:
        if _continuation is None:
            effective = settings or get_settings()
            _continuation = ThreadPoolContinuation(max_workers=effective.continuation_workers)
        return _continuation


def shutdown_continuations(*, wait: bool = True) -> None:
    global _continuation
    with _continuation_guard:
        if _continuation is not None:
            _continuation.shutdown(wait=wait)
        _continuation = None


def build_blob_store(settings: Settings | None = None) -> LocalBlobStore:
    effective = settings or get_settings()
    return LocalBlobStore(
        effective.blob_root,
        signing_key=effective.blob_signing_key,
        public_base_url=effective.public_base_url,
    )


def build_job_service(settings: Settings | None = None) -> BackupJobService:
    effective = settings or get_settings()
    session_factory = get_session_factory()
    return BackupJobService(effective, session_factory, SqlTourSource(session_factory))


def build_processor(
    settings: Settings | None = None,
    *,
    scheduler: ContinuationScheduler | None = None,
    fetcher: ImageFetcher | None = None,
    sync_trigger: SyncTrigger | None = None,
) -> JobProcessor:
    effective = settings or get_settings()
    session_factory = get_session_factory()
    return JobProcessor(
        effective,
        session_factory,
        tour_source=SqlTourSource(session_factory),
        builder=PartBuilder(
            fetcher or HttpImageFetcher(timeout_seconds=effective.image_fetch_timeout_seconds),
            compression_level=effective.archive_compression_level,
        ),
        uploader=PartUploader(build_blob_store(effective), url_ttl_seconds=effective.signed_url_ttl_seconds),
        scheduler=scheduler or get_continuation(effective),
        sync_trigger=sync_trigger
        or CloudSyncTrigger(
            effective.cloud_sync_url,
            token=effective.cloud_sync_token,
            timeout_seconds=effective.cloud_sync_timeout_seconds,
        ),
    )


def build_queue_service(settings: Settings | None = None, *, processor: JobProcessor | None = None) -> QueueService:
    effective = settings or get_settings()
    return QueueService(effective, get_session_factory(), processor or build_processor(effective))


def enqueue_backup(
    tour_id: str,
    *,
    kind: BackupKind = BackupKind.FULL,
    destination_id: str | None = None,
    priority: int | None = None,
) -> str:
    snapshot = build_job_service().create_backup(
        tour_id,
        kind=kind,
        destination_id=destination_id,
        priority=priority,
    )
    return snapshot.id


def run_dispatch_once(max_jobs: int | None = None) -> DispatchResult:
    return build_queue_service().process_queue(max_jobs)


def cleanup_stuck_jobs() -> int:
    return build_queue_service().cleanup_stuck_jobs()
