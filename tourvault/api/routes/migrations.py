from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from tourvault.api.schemas.migrations import MigrationRunResponse, SafeMigrationRequest, SafeMigrationResponse
from tourvault.core.config import get_settings
from tourvault.db.models import MigrationState
from tourvault.db.session import get_session_factory
from tourvault.migration.engine import MigrationConflictError, MigrationEngine, MigrationNotFoundError
from tourvault.migration.types import MigrationRequest, migration_result_to_dict, run_snapshot_to_dict

router = APIRouter(prefix="/migrations", tags=["migrations"])

_FAILURE_STATES = {MigrationState.FAILED, MigrationState.FAILED_UNRECOVERABLE}


def get_migration_engine() -> MigrationEngine:
    return MigrationEngine(settings=get_settings(), session_factory=get_session_factory())


@router.post("/safe-run", response_model=SafeMigrationResponse)
def run_safe_migration(
    request: SafeMigrationRequest,
    engine: MigrationEngine = Depends(get_migration_engine),
) -> JSONResponse:
    try:
        result = engine.run_safe_migration(
            MigrationRequest(
                target_url=request.target_url,
                target_credential=request.target_credential,
                statement_batch=request.statement_batch,
                create_backup=request.create_backup,
            )
        )
    except MigrationConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    body = SafeMigrationResponse.model_validate(migration_result_to_dict(result))
    status_code = (
        status.HTTP_500_INTERNAL_SERVER_ERROR if result.state in _FAILURE_STATES else status.HTTP_200_OK
    )
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


@router.get("/{run_id}", response_model=MigrationRunResponse)
def get_migration_run(run_id: str, engine: MigrationEngine = Depends(get_migration_engine)) -> MigrationRunResponse:
    try:
        run = engine.get_run(run_id)
    except MigrationNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return MigrationRunResponse.model_validate(run_snapshot_to_dict(run))
