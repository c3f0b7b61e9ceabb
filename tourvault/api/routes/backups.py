from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from tourvault.api.schemas.backups import (
    BackupJobResponse,
    BackupLogListResponse,
    BackupLogResponse,
    BackupPartListResponse,
    BackupPartResponse,
    CleanupStuckResponse,
    CreateBackupRequest,
    ProcessJobResponse,
    ProcessQueueRequest,
    ProcessQueueResponse,
)
from tourvault.backup.processor import BackupProcessingError, JobProcessor, chunk_result_to_dict
from tourvault.jobs.service import (
    BackupJobService,
    InvalidJobStateError,
    JobConflictError,
    JobNotFoundError,
    JobPolicyError,
    job_snapshot_to_dict,
    log_snapshot_to_dict,
    part_snapshot_to_dict,
)
from tourvault.queue.service import QueueService
from tourvault.queue.types import dispatch_result_to_dict
from tourvault.tours.source import TourNotFoundError
from tourvault.worker.pipeline import build_job_service, build_processor, build_queue_service

router = APIRouter(prefix="/backups", tags=["backups"])


def get_backup_job_service() -> BackupJobService:
    return build_job_service()


def get_job_processor() -> JobProcessor:
    return build_processor()


def get_queue_service(processor: JobProcessor = Depends(get_job_processor)) -> QueueService:
    return build_queue_service(processor=processor)


@router.post("", response_model=BackupJobResponse, status_code=status.HTTP_201_CREATED)
def create_backup(
    request: CreateBackupRequest,
    service: BackupJobService = Depends(get_backup_job_service),
) -> BackupJobResponse:
    try:
        job = service.create_backup(
            request.tour_id,
            kind=request.kind,
            destination_id=request.destination_id,
            priority=request.priority,
        )
    except TourNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except JobPolicyError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except JobConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return BackupJobResponse.model_validate(job_snapshot_to_dict(job))


@router.post("/queue/process", response_model=ProcessQueueResponse)
def process_queue(
    request: ProcessQueueRequest,
    service: QueueService = Depends(get_queue_service),
) -> ProcessQueueResponse:
    result = service.process_queue(max_jobs=request.max_jobs)
    return ProcessQueueResponse.model_validate(dispatch_result_to_dict(result))


@router.post("/queue/cleanup-stuck", response_model=CleanupStuckResponse)
def cleanup_stuck_jobs(service: QueueService = Depends(get_queue_service)) -> CleanupStuckResponse:
    return CleanupStuckResponse(cleaned=service.cleanup_stuck_jobs())


@router.get("/{job_id}", response_model=BackupJobResponse)
def get_backup(job_id: str, service: BackupJobService = Depends(get_backup_job_service)) -> BackupJobResponse:
    try:
        job = service.get_job(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return BackupJobResponse.model_validate(job_snapshot_to_dict(job))


@router.get("/{job_id}/parts", response_model=BackupPartListResponse)
def list_backup_parts(
    job_id: str,
    service: BackupJobService = Depends(get_backup_job_service),
) -> BackupPartListResponse:
    try:
        parts = service.list_parts(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return BackupPartListResponse(items=[BackupPartResponse.model_validate(part_snapshot_to_dict(part)) for part in parts])


@router.get("/{job_id}/logs", response_model=BackupLogListResponse)
def list_backup_logs(
    job_id: str,
    limit: int = Query(default=200, ge=1, le=1000),
    service: BackupJobService = Depends(get_backup_job_service),
) -> BackupLogListResponse:
    try:
        logs = service.list_logs(job_id, limit=limit)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return BackupLogListResponse(items=[BackupLogResponse.model_validate(log_snapshot_to_dict(entry)) for entry in logs])


@router.post("/{job_id}/process", response_model=ProcessJobResponse)
def process_backup(job_id: str, processor: JobProcessor = Depends(get_job_processor)) -> ProcessJobResponse:
    try:
        result = processor.process_job(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (JobConflictError, InvalidJobStateError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except BackupProcessingError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    return ProcessJobResponse.model_validate(chunk_result_to_dict(result))
