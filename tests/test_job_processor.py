from __future__ import annotations

import io
import os
import threading
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import pytest
from sqlalchemy import select

from tourvault.backup.builder import PartBuilder
from tourvault.backup.fetch import ImageFetchError
from tourvault.backup.items import flatten_items
from tourvault.backup.processor import BackupProcessingError, ChunkResult, JobProcessor, ThreadPoolContinuation
from tourvault.backup.sync import CloudSyncError
from tourvault.backup.uploader import PartUploader
from tourvault.core.config import Settings, get_settings
from tourvault.db.init_db import initialize_database
from tourvault.db.models import (
    BackupJob,
    BackupJobStatus,
    BackupKind,
    BackupLog,
    BackupPart,
    BackupQueueEntry,
    FloorPlan,
    Hotspot,
    PanoramaPhoto,
    QueueStatus,
    Tour,
)
from tourvault.db.session import get_session_factory, reset_engine
from tourvault.jobs.service import (
    BackupJobService,
    InvalidJobStateError,
    JobConflictError,
    JobNotFoundError,
    JobPolicyError,
)
from tourvault.queue.service import QueueService
from tourvault.queue.types import DispatchOutcome
from tourvault.storage.blob import LocalBlobStore
from tourvault.tours.source import SqlTourSource, TourNotFoundError


class RecordingFetcher:
    def __init__(self, missing: set[str] | None = None):
        self.missing = missing or set()
        self.calls: list[str] = []

    def fetch(self, url: str) -> bytes:
        self.calls.append(url)
        if url in self.missing:
            raise ImageFetchError(f"404 for {url}")
        return f"image:{url}".encode()


class DeferredScheduler:
    def __init__(self) -> None:
        self.pending: list[tuple[str, Callable[[str], Any]]] = []

    def schedule(self, job_id: str, callback: Callable[[str], Any]) -> None:
        self.pending.append((job_id, callback))

    def run_next(self) -> Any:
        job_id, callback = self.pending.pop(0)
        return callback(job_id)

    def drain(self) -> None:
        while self.pending:
            self.run_next()


class RecordingSync:
    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.calls: list[tuple[str, str | None]] = []

    def trigger(self, *, job_id: str, destination_id: str | None) -> bool:
        self.calls.append((job_id, destination_id))
        if self.fail:
            raise CloudSyncError("sync endpoint unavailable")
        return destination_id is not None


class BlockingSync(RecordingSync):
    def __init__(self) -> None:
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()

    def trigger(self, *, job_id: str, destination_id: str | None) -> bool:
        self.started.set()
        self.release.wait(timeout=10)
        return super().trigger(job_id=job_id, destination_id=destination_id)


class ExplodingProcessor(JobProcessor):
    def __init__(self, *args: Any, explode_on: set[str], **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.explode_on = explode_on

    def advance_job(self, job_id: str) -> ChunkResult:
        if job_id in self.explode_on:
            raise RuntimeError("boom")
        return super().advance_job(job_id)


class FlakyUploader(PartUploader):
    def __init__(self, *args: Any, failures: int, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.failures = failures

    def upload_part(self, **kwargs: Any):  # type: ignore[override]
        if self.failures > 0:
            self.failures -= 1
            raise OSError("storage temporarily unavailable")
        return super().upload_part(**kwargs)


def make_settings(tmp_path: Path, *, items_per_part: int = 10, max_attempts: int = 3) -> Settings:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)

    os.environ["TOURVAULT_STATE_ROOT"] = state_root.as_posix()
    os.environ["TOURVAULT_ITEMS_PER_PART"] = str(items_per_part)
    os.environ["TOURVAULT_QUEUE_MAX_ATTEMPTS"] = str(max_attempts)
    os.environ["TOURVAULT_BLOB_SIGNING_KEY"] = "test-signing-key"
    os.environ["TOURVAULT_PUBLIC_BASE_URL"] = "http://testserver"
    os.environ.pop("TOURVAULT_CLOUD_SYNC_URL", None)
    os.environ.pop("TOURVAULT_DATABASE_URL", None)

    get_settings.cache_clear()
    reset_engine()
    initialize_database()
    return get_settings()


def seed_tour(tour_id: str, photo_count: int, *, floor_image: bool = False, title: str = "Beach House") -> None:
    with get_session_factory()() as session:
        session.add(Tour(id=tour_id, owner_id="owner-1", title=title))
        session.flush()
        session.add(
            FloorPlan(
                id=f"{tour_id}-floor",
                tour_id=tour_id,
                name="Main",
                image_url=f"https://cdn.test/{tour_id}/floor.png" if floor_image else None,
                display_order=0,
            )
        )
        session.flush()
        for point in range((photo_count + 4) // 5):
            session.add(Hotspot(id=f"{tour_id}-point-{point:03d}", floor_plan_id=f"{tour_id}-floor", title=f"Point {point:03d}"))
        session.flush()
        for index in range(photo_count):
            point_id = f"{tour_id}-point-{index // 5:03d}"
            session.add(
                PanoramaPhoto(
                    id=f"{tour_id}-photo-{index:04d}",
                    hotspot_id=point_id,
                    photo_url=f"https://cdn.test/{tour_id}/{index:04d}.jpg",
                    capture_date=f"2026-01-{(index % 5) + 1:02d}",
                )
            )
        session.commit()


def make_processor(
    settings: Settings,
    *,
    scheduler: Any,
    fetcher: RecordingFetcher | None = None,
    sync: RecordingSync | None = None,
    upload_failures: int = 0,
    explode_on: set[str] | None = None,
) -> JobProcessor:
    session_factory = get_session_factory()
    store = LocalBlobStore(settings.blob_root, signing_key=settings.blob_signing_key, public_base_url=settings.public_base_url)
    extra: dict[str, Any] = {"explode_on": explode_on} if explode_on is not None else {}
    processor_cls = ExplodingProcessor if explode_on is not None else JobProcessor
    return processor_cls(
        settings,
        session_factory,
        tour_source=SqlTourSource(session_factory),
        builder=PartBuilder(fetcher or RecordingFetcher()),
        uploader=FlakyUploader(store, url_ttl_seconds=settings.signed_url_ttl_seconds, failures=upload_failures),
        scheduler=scheduler,
        sync_trigger=sync,
        **extra,
    )


def job_service(settings: Settings) -> BackupJobService:
    session_factory = get_session_factory()
    return BackupJobService(settings, session_factory, SqlTourSource(session_factory))


def load_job(job_id: str) -> tuple[BackupJob, BackupQueueEntry, list[BackupPart]]:
    with get_session_factory()() as session:
        job = session.get(BackupJob, job_id)
        entry = session.scalar(select(BackupQueueEntry).where(BackupQueueEntry.backup_job_id == job_id))
        parts = list(
            session.scalars(
                select(BackupPart).where(BackupPart.backup_job_id == job_id).order_by(BackupPart.part_number)
            ).all()
        )
    assert job is not None and entry is not None
    return job, entry, parts


def log_events(job_id: str) -> list[str]:
    with get_session_factory()() as session:
        rows = session.scalars(
            select(BackupLog).where(BackupLog.backup_job_id == job_id).order_by(BackupLog.id)
        ).all()
        return [row.event_type for row in rows]


def _utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def test_95_items_in_parts_of_10_produces_ten_contiguous_parts(tmp_path: Path) -> None:
    settings = make_settings(tmp_path, items_per_part=10)
    seed_tour("tour-1", 95)
    scheduler = DeferredScheduler()
    processor = make_processor(settings, scheduler=scheduler)
    job = job_service(settings).create_backup("tour-1")
    assert job.total_items == 95

    result = QueueService(settings, get_session_factory(), processor).process_queue(max_jobs=1)
    assert result.processed == 1
    assert result.details[0].outcome == DispatchOutcome.IN_PROGRESS
    assert len(scheduler.pending) == 1

    scheduler.drain()

    stored, entry, parts = load_job(job.id)
    assert stored.status == BackupJobStatus.COMPLETED
    assert stored.processed_items == 95
    assert stored.progress_percentage == 100.0
    assert stored.job_metadata["total_parts"] == 10
    assert stored.job_metadata["current_part"] == 11
    assert stored.job_metadata["items_per_part"] == 10
    assert "completed_at" in stored.job_metadata
    assert stored.file_size == sum(part.file_size for part in parts)
    assert stored.storage_path == "owner-1/" + job.id
    assert [part.part_number for part in parts] == list(range(1, 11))
    assert [part.items_count for part in parts] == [10] * 9 + [5]
    assert all(part.file_hash.startswith("crc32:") for part in parts)
    assert entry.status == QueueStatus.COMPLETED
    assert entry.attempts == 1

    last = parts[-1]
    archive_bytes = (settings.blob_root / last.storage_path).read_bytes()
    with zipfile.ZipFile(io.BytesIO(archive_bytes)) as archive:
        images = [name for name in archive.namelist() if name.endswith(".jpg")]
    assert len(images) == 5

    events = log_events(job.id)
    assert events[0] == "queued"
    assert events.count("part_completed") == 10
    assert events[-1] == "completed"


def test_resume_processes_only_the_current_chunk(tmp_path: Path) -> None:
    settings = make_settings(tmp_path, items_per_part=10)
    seed_tour("tour-1", 35, floor_image=True)
    scheduler = DeferredScheduler()
    fetcher = RecordingFetcher()
    processor = make_processor(settings, scheduler=scheduler, fetcher=fetcher)
    job = job_service(settings).create_backup("tour-1")

    first = processor.process_job(job.id)
    assert first.in_progress is True
    assert first.part_number == 1
    assert first.total_parts == 4

    items = flatten_items(SqlTourSource(get_session_factory()).load_tree("tour-1"), BackupKind.FULL)
    assert fetcher.calls == [item.image_url for item in items[0:10]]

    fetcher.calls.clear()
    second = scheduler.run_next()
    assert second.part_number == 2
    assert fetcher.calls == [item.image_url for item in items[10:20]]

    stored, _entry, parts = load_job(job.id)
    assert stored.status == BackupJobStatus.PROCESSING
    assert stored.job_metadata["current_part"] == 3
    assert stored.processed_items == 20
    assert stored.progress_percentage == 50.0
    assert [part.part_number for part in parts] == [1, 2]


def test_chunk_failure_schedules_retry_with_backoff(tmp_path: Path) -> None:
    settings = make_settings(tmp_path, items_per_part=10)
    seed_tour("tour-1", 25)
    scheduler = DeferredScheduler()
    processor = make_processor(settings, scheduler=scheduler, upload_failures=1)
    job = job_service(settings).create_backup("tour-1")
    before = datetime.now(tz=timezone.utc)

    result = QueueService(settings, get_session_factory(), processor).process_queue(max_jobs=1)

    assert result.failed == 1
    assert result.details[0].outcome == DispatchOutcome.FAILED
    assert "storage temporarily unavailable" in (result.details[0].error or "")
    stored, entry, parts = load_job(job.id)
    assert parts == []
    assert stored.status == BackupJobStatus.PENDING
    assert stored.retry_count == 1
    assert stored.last_error == "storage temporarily unavailable"
    assert entry.status == QueueStatus.RETRY
    assert entry.attempts == 1
    delay = (_utc(entry.scheduled_at) - before).total_seconds()
    assert 590 <= delay <= 610
    assert "retry_scheduled" in log_events(job.id)
    assert scheduler.pending == []


def test_retry_resumes_from_checkpoint_after_mid_job_failure(tmp_path: Path) -> None:
    settings = make_settings(tmp_path, items_per_part=10)
    seed_tour("tour-1", 30)
    scheduler = DeferredScheduler()
    processor = make_processor(settings, scheduler=scheduler)
    job = job_service(settings).create_backup("tour-1")

    processor.process_job(job.id)
    processor._uploader.failures = 1  # type: ignore[attr-defined]
    assert scheduler.run_next() is None

    stored, entry, parts = load_job(job.id)
    assert [part.part_number for part in parts] == [1]
    assert stored.job_metadata["current_part"] == 2
    assert entry.status == QueueStatus.RETRY

    resumed = processor.process_job(job.id)
    assert resumed.part_number == 2
    scheduler.drain()

    stored, entry, parts = load_job(job.id)
    assert stored.status == BackupJobStatus.COMPLETED
    assert [part.part_number for part in parts] == [1, 2, 3]
    assert entry.attempts == 2


def test_exhausted_attempts_mark_job_and_entry_failed(tmp_path: Path) -> None:
    settings = make_settings(tmp_path, items_per_part=10, max_attempts=3)
    seed_tour("tour-1", 12)
    scheduler = DeferredScheduler()
    processor = make_processor(settings, scheduler=scheduler, upload_failures=100)
    job = job_service(settings).create_backup("tour-1")

    for attempt in range(1, 4):
        with pytest.raises(BackupProcessingError) as exc_info:
            processor.process_job(job.id)
        assert exc_info.value.permanent is (attempt == 3)

    stored, entry, _parts = load_job(job.id)
    assert entry.status == QueueStatus.FAILED
    assert entry.attempts == 3
    assert entry.completed_at is not None
    assert stored.status == BackupJobStatus.FAILED
    assert stored.retry_count == 3
    assert stored.last_error == "storage temporarily unavailable"
    assert log_events(job.id)[-1] == "failed"

    with pytest.raises(InvalidJobStateError):
        processor.process_job(job.id)


def test_manual_process_conflicts_while_entry_is_processing(tmp_path: Path) -> None:
    settings = make_settings(tmp_path, items_per_part=10)
    seed_tour("tour-1", 20)
    scheduler = DeferredScheduler()
    processor = make_processor(settings, scheduler=scheduler)
    job = job_service(settings).create_backup("tour-1")

    processor.process_job(job.id)
    with pytest.raises(JobConflictError):
        processor.process_job(job.id)

    scheduler.drain()
    with pytest.raises(InvalidJobStateError):
        processor.process_job(job.id)
    with pytest.raises(JobNotFoundError):
        processor.process_job("missing-job")


def test_missing_images_are_logged_but_job_completes(tmp_path: Path) -> None:
    settings = make_settings(tmp_path, items_per_part=10)
    seed_tour("tour-1", 8)
    fetcher = RecordingFetcher(missing={"https://cdn.test/tour-1/0003.jpg"})
    processor = make_processor(settings, scheduler=DeferredScheduler(), fetcher=fetcher)
    job = job_service(settings).create_backup("tour-1")

    result = processor.process_job(job.id)

    assert result.success is True
    assert result.in_progress is False
    stored, _entry, parts = load_job(job.id)
    assert stored.status == BackupJobStatus.COMPLETED
    assert parts[0].items_count == 7
    assert stored.total_items == 8
    assert stored.processed_items == 7
    assert "items_skipped" in log_events(job.id)


def test_cloud_sync_failure_does_not_fail_backup(tmp_path: Path) -> None:
    settings = make_settings(tmp_path, items_per_part=10)
    seed_tour("tour-1", 4)
    sync = RecordingSync(fail=True)
    scheduler = DeferredScheduler()
    processor = make_processor(settings, scheduler=scheduler, sync=sync)
    job = job_service(settings).create_backup("tour-1", destination_id="drive-1")

    result = processor.process_job(job.id)
    assert sync.calls == []
    scheduler.drain()

    assert result.success is True
    assert sync.calls == [(job.id, "drive-1")]
    stored, entry, _parts = load_job(job.id)
    assert stored.status == BackupJobStatus.COMPLETED
    assert entry.status == QueueStatus.COMPLETED
    assert log_events(job.id)[-1] == "cloud_sync_failed"


def test_cloud_sync_is_recorded_on_completion(tmp_path: Path) -> None:
    settings = make_settings(tmp_path, items_per_part=10)
    seed_tour("tour-1", 4)
    sync = RecordingSync()
    scheduler = DeferredScheduler()
    processor = make_processor(settings, scheduler=scheduler, sync=sync)
    job = job_service(settings).create_backup("tour-1", destination_id="drive-1")

    processor.process_job(job.id)
    scheduler.drain()

    assert log_events(job.id)[-2:] == ["completed", "cloud_sync_triggered"]


def test_enqueue_rejects_empty_missing_and_duplicate_tours(tmp_path: Path) -> None:
    settings = make_settings(tmp_path)
    seed_tour("empty", 0)
    seed_tour("tour-1", 3)
    service = job_service(settings)

    with pytest.raises(JobPolicyError):
        service.create_backup("empty")
    with pytest.raises(TourNotFoundError):
        service.create_backup("nope")

    created = service.create_backup("tour-1", priority=8)
    assert created.queue is not None
    assert created.queue.priority == 8
    assert created.queue.max_attempts == 3
    assert created.queue.status == QueueStatus.PENDING
    with pytest.raises(JobConflictError):
        service.create_backup("tour-1")
    media_only = service.create_backup("tour-1", kind=BackupKind.MEDIA_ONLY)
    assert media_only.kind == BackupKind.MEDIA_ONLY


def test_sync_runs_after_process_job_returns(tmp_path: Path) -> None:
    settings = make_settings(tmp_path, items_per_part=10)
    seed_tour("tour-1", 4)
    sync = BlockingSync()
    pool = ThreadPoolContinuation(max_workers=1)
    processor = make_processor(settings, scheduler=pool, sync=sync)
    job = job_service(settings).create_backup("tour-1", destination_id="drive-1")

    try:
        result = processor.process_job(job.id)
        assert result.in_progress is False
        stored, _entry, _parts = load_job(job.id)
        assert stored.status == BackupJobStatus.COMPLETED
        assert "cloud_sync_triggered" not in log_events(job.id)
    finally:
        sync.release.set()
        pool.shutdown(wait=True)

    assert sync.started.is_set()
    assert sync.calls == [(job.id, "drive-1")]
    assert log_events(job.id)[-1] == "cloud_sync_triggered"


def test_tour_shrinking_between_parts_still_completes(tmp_path: Path) -> None:
    settings = make_settings(tmp_path, items_per_part=10)
    seed_tour("tour-1", 12)
    scheduler = DeferredScheduler()
    processor = make_processor(settings, scheduler=scheduler)
    job = job_service(settings).create_backup("tour-1")

    first = processor.process_job(job.id)
    assert first.total_parts == 2
    with get_session_factory()() as session:
        for index in (10, 11):
            photo = session.get(PanoramaPhoto, f"tour-1-photo-{index:04d}")
            assert photo is not None
            session.delete(photo)
        session.commit()

    final = scheduler.run_next()

    assert final.in_progress is False
    stored, entry, parts = load_job(job.id)
    assert stored.status == BackupJobStatus.COMPLETED
    assert entry.status == QueueStatus.COMPLETED
    assert [part.items_count for part in parts] == [10, 0]
    assert stored.total_items == 12
    assert stored.processed_items == 10
    assert "items_skipped" in log_events(job.id)


def test_unexpected_error_in_one_job_does_not_abort_dispatch(tmp_path: Path) -> None:
    settings = make_settings(tmp_path, items_per_part=10)
    seed_tour("tour-1", 3)
    seed_tour("tour-2", 3)
    service = job_service(settings)
    broken = service.create_backup("tour-1", priority=9)
    healthy = service.create_backup("tour-2", priority=1)
    processor = make_processor(settings, scheduler=DeferredScheduler(), explode_on={broken.id})

    result = QueueService(settings, get_session_factory(), processor).process_queue(max_jobs=5)

    assert [detail.job_id for detail in result.details] == [broken.id, healthy.id]
    assert result.failed == 1
    assert result.processed == 1
    assert result.details[0].outcome == DispatchOutcome.FAILED
    assert result.details[0].error == "boom"

    stored, entry, _parts = load_job(broken.id)
    assert entry.status == QueueStatus.RETRY
    assert entry.attempts == 1
    assert entry.error_message == "boom"
    assert stored.last_error == "boom"
    assert "retry_scheduled" in log_events(broken.id)
    assert load_job(healthy.id)[0].status == BackupJobStatus.COMPLETED
