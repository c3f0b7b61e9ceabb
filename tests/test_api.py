from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable
from urllib.parse import parse_qs, urlparse

from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select, text

from tourvault.api.app import create_app
from tourvault.api.routes.backups import get_job_processor
from tourvault.backup.processor import JobProcessor
from tourvault.core.config import get_settings
from tourvault.db.init_db import initialize_database
from tourvault.db.models import BackupQueueEntry, FloorPlan, Hotspot, PanoramaPhoto, QueueStatus, Tour
from tourvault.db.session import get_session_factory, reset_engine
from tourvault.worker.pipeline import build_processor


class StaticFetcher:
    def fetch(self, url: str) -> bytes:
        return b"image:" + url.encode()


class DeferredScheduler:
    def __init__(self) -> None:
        self.pending: list[tuple[str, Callable[[str], Any]]] = []

    def schedule(self, job_id: str, callback: Callable[[str], Any]) -> None:
        self.pending.append((job_id, callback))


class DisabledSync:
    def trigger(self, *, job_id: str, destination_id: str | None) -> bool:
        return False


def _prepare_env(tmp_path: Path) -> None:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)

    os.environ["TOURVAULT_STATE_ROOT"] = state_root.as_posix()
    os.environ["TOURVAULT_ITEMS_PER_PART"] = "2"
    os.environ["TOURVAULT_BLOB_SIGNING_KEY"] = "api-test-key"
    os.environ["TOURVAULT_PUBLIC_BASE_URL"] = "http://testserver"
    os.environ.pop("TOURVAULT_DATABASE_URL", None)
    os.environ.pop("TOURVAULT_CLOUD_SYNC_URL", None)

    get_settings.cache_clear()
    reset_engine()
    initialize_database()


def _seed_tour(tour_id: str = "tour-1", photos: int = 3) -> None:
    with get_session_factory()() as session:
        session.add(Tour(id=tour_id, owner_id="owner-1", title="Harbor Loft"))
        session.flush()
        session.add(FloorPlan(id=f"{tour_id}-floor", tour_id=tour_id, name="Ground", image_url=None))
        session.flush()
        session.add(Hotspot(id=f"{tour_id}-spot", floor_plan_id=f"{tour_id}-floor", title="Entrance"))
        session.flush()
        for index in range(photos):
            session.add(
                PanoramaPhoto(
                    id=f"{tour_id}-photo-{index}",
                    hotspot_id=f"{tour_id}-spot",
                    photo_url=f"https://cdn.test/{tour_id}/{index}.jpg",
                    capture_date="2026-05-01",
                )
            )
        session.commit()


def _client(scheduler: DeferredScheduler) -> TestClient:
    app = create_app()

    def _processor() -> JobProcessor:
        return build_processor(scheduler=scheduler, fetcher=StaticFetcher(), sync_trigger=DisabledSync())

    app.dependency_overrides[get_job_processor] = _processor
    return TestClient(app)


def test_health_reports_service_settings(tmp_path: Path) -> None:
    _prepare_env(tmp_path)
    client = _client(DeferredScheduler())

    response = client.get("/api/v1/health")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["items_per_part"] == 2
    assert payload["cloud_sync_enabled"] is False


def test_create_backup_validates_tour(tmp_path: Path) -> None:
    _prepare_env(tmp_path)
    _seed_tour()
    _seed_tour("empty-tour", photos=0)
    client = _client(DeferredScheduler())

    created = client.post("/api/v1/backups", json={"tour_id": "tour-1", "priority": 7})
    assert created.status_code == 201
    body = created.json()
    assert body["status"] == "pending"
    assert body["total_items"] == 3
    assert body["queue"]["status"] == "pending"
    assert body["queue"]["priority"] == 7

    assert client.post("/api/v1/backups", json={"tour_id": "tour-1"}).status_code == 409
    assert client.post("/api/v1/backups", json={"tour_id": "missing"}).status_code == 404
    assert client.post("/api/v1/backups", json={"tour_id": "empty-tour"}).status_code == 422
    assert client.post("/api/v1/backups", json={"tour_id": "tour-1", "unknown": 1}).status_code == 422
    assert client.get("/api/v1/backups/missing").status_code == 404


def test_process_endpoint_runs_chunks_and_exposes_parts(tmp_path: Path) -> None:
    _prepare_env(tmp_path)
    _seed_tour()
    scheduler = DeferredScheduler()
    client = _client(scheduler)
    job_id = client.post("/api/v1/backups", json={"tour_id": "tour-1"}).json()["id"]

    first = client.post(f"/api/v1/backups/{job_id}/process")
    assert first.status_code == 200
    assert first.json()["in_progress"] is True
    assert first.json()["part_number"] == 1
    assert first.json()["total_parts"] == 2
    assert client.post(f"/api/v1/backups/{job_id}/process").status_code == 409

    pending_job, callback = scheduler.pending.pop(0)
    assert pending_job == job_id
    callback(job_id)

    job = client.get(f"/api/v1/backups/{job_id}").json()
    assert job["status"] == "completed"
    assert job["progress_percentage"] == 100.0
    assert job["queue"]["status"] == "completed"

    parts = client.get(f"/api/v1/backups/{job_id}/parts").json()["items"]
    assert [part["part_number"] for part in parts] == [1, 2]
    assert sum(part["file_size"] for part in parts) == job["file_size"]

    logs = client.get(f"/api/v1/backups/{job_id}/logs", params={"limit": 50}).json()["items"]
    assert "completed" in [entry["event_type"] for entry in logs]

    signed = urlparse(parts[0]["file_url"])
    download = client.get(f"{signed.path}?{signed.query}")
    assert download.status_code == 200
    assert download.headers["content-type"] == "application/zip"
    assert download.content[:2] == b"PK"

    params = {key: values[0] for key, values in parse_qs(signed.query).items()}
    params["signature"] = "0" * 64
    tampered = client.get(signed.path, params=params)
    assert tampered.status_code == 403

    assert client.post(f"/api/v1/backups/{job_id}/process").status_code == 409


def test_queue_endpoints_dispatch_and_reset_stuck_entries(tmp_path: Path) -> None:
    _prepare_env(tmp_path)
    _seed_tour()
    _seed_tour("tour-2")
    scheduler = DeferredScheduler()
    client = _client(scheduler)
    first_id = client.post("/api/v1/backups", json={"tour_id": "tour-1", "priority": 1}).json()["id"]
    second_id = client.post("/api/v1/backups", json={"tour_id": "tour-2", "priority": 9}).json()["id"]

    dispatched = client.post("/api/v1/backups/queue/process", json={"max_jobs": 1})
    assert dispatched.status_code == 200
    payload = dispatched.json()
    assert payload["processed"] == 1
    assert payload["details"][0]["job_id"] == second_id
    assert payload["details"][0]["outcome"] == "in_progress"
    assert client.post("/api/v1/backups/queue/process", json={"max_jobs": 0}).status_code == 422

    long_ago = datetime.now(tz=timezone.utc) - timedelta(hours=2)
    with get_session_factory()() as session:
        entry = session.scalar(select(BackupQueueEntry).where(BackupQueueEntry.backup_job_id == second_id))
        assert entry is not None
        entry.heartbeat_at = long_ago
        entry.started_at = long_ago
        session.commit()

    cleaned = client.post("/api/v1/backups/queue/cleanup-stuck")
    assert cleaned.status_code == 200
    assert cleaned.json() == {"cleaned": 1}
    second = client.get(f"/api/v1/backups/{second_id}").json()
    assert second["queue"]["status"] == QueueStatus.RETRY.value
    assert client.get(f"/api/v1/backups/{first_id}").json()["queue"]["status"] == "pending"


def test_blob_download_rejects_unknown_paths(tmp_path: Path) -> None:
    _prepare_env(tmp_path)
    client = _client(DeferredScheduler())

    expires = int((datetime.now(tz=timezone.utc) + timedelta(hours=1)).timestamp())
    response = client.get("/api/v1/blobs/owner/job/missing.zip", params={"expires": expires, "signature": "a" * 64})
    assert response.status_code == 403
    assert client.get("/api/v1/blobs/owner/job/missing.zip", params={"expires": expires}).status_code == 422


def _make_target(tmp_path: Path) -> str:
    url = f"sqlite:///{(tmp_path / 'target.sqlite3').as_posix()}"
    engine = create_engine(url)
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE virtual_tours (id INTEGER PRIMARY KEY, title TEXT NOT NULL)"))
        conn.execute(text("INSERT INTO virtual_tours (id, title) VALUES (1, 'Loft')"))
    engine.dispose()
    return url


def test_safe_migration_endpoint_status_codes(tmp_path: Path) -> None:
    _prepare_env(tmp_path)
    client = _client(DeferredScheduler())
    url = _make_target(tmp_path)

    ok = client.post(
        "/api/v1/migrations/safe-run",
        json={"target_url": url, "statement_batch": "UPDATE virtual_tours SET title = 'Attic';"},
    )
    assert ok.status_code == 200
    body = ok.json()
    assert body["success"] is True
    assert body["state"] == "completed"
    assert body["stats"]["successful"] == 1

    run = client.get(f"/api/v1/migrations/{body['run_id']}")
    assert run.status_code == 200
    assert run.json()["state"] == "completed"

    unreachable = tmp_path / "missing-dir" / "db.sqlite3"
    failed = client.post(
        "/api/v1/migrations/safe-run",
        json={"target_url": f"sqlite:///{unreachable.as_posix()}", "statement_batch": "SELECT 1"},
    )
    assert failed.status_code == 500
    assert failed.json()["state"] == "failed"
    assert failed.json()["rollback"]["performed"] is False

    invalid = client.post("/api/v1/migrations/safe-run", json={"target_url": "not a url", "statement_batch": "SELECT 1"})
    assert invalid.status_code == 422
    assert client.get("/api/v1/migrations/does-not-exist").status_code == 404
