from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy import Engine, MetaData, Table, create_engine, func, inspect, select, table, text
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import ArgumentError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from tourvault.core.config import Settings
from tourvault.db.models import MigrationRun, MigrationState
from tourvault.migration.types import (
    MigrationRequest,
    MigrationResult,
    MigrationRunSnapshot,
    MigrationStats,
    RollbackReport,
    TargetSnapshot,
    migration_result_to_dict,
)

logger = logging.getLogger(__name__)


class MigrationConflictError(RuntimeError):
    pass


class MigrationCriticalError(RuntimeError):
    pass


class InvalidMigrationStateError(RuntimeError):
    pass


class MigrationNotFoundError(RuntimeError):
    pass


ALLOWED_TRANSITIONS: dict[MigrationState, set[MigrationState]] = {
    MigrationState.IDLE: {MigrationState.BACKING_UP, MigrationState.VALIDATING},
    MigrationState.BACKING_UP: {MigrationState.VALIDATING, MigrationState.FAILED},
    MigrationState.VALIDATING: {MigrationState.EXECUTING, MigrationState.FAILED},
    MigrationState.EXECUTING: {
        MigrationState.VERIFYING,
        MigrationState.ROLLING_BACK,
        MigrationState.FAILED_UNRECOVERABLE,
    },
    MigrationState.VERIFYING: {
        MigrationState.COMPLETED,
        MigrationState.ROLLING_BACK,
        MigrationState.FAILED_UNRECOVERABLE,
    },
    MigrationState.ROLLING_BACK: {MigrationState.ROLLED_BACK, MigrationState.FAILED_UNRECOVERABLE},
    MigrationState.COMPLETED: set(),
    MigrationState.ROLLED_BACK: set(),
    MigrationState.FAILED: set(),
    MigrationState.FAILED_UNRECOVERABLE: set(),
}

_TARGET_LOCKS: dict[str, threading.Lock] = {}
_TARGET_LOCKS_GUARD = threading.Lock()


def _target_lock(target: str) -> threading.Lock:
    with _TARGET_LOCKS_GUARD:
        return _TARGET_LOCKS.setdefault(target, threading.Lock())


def split_statements(batch: str) -> list[str]:
    kept_lines = [line for line in batch.splitlines() if not line.strip().startswith("--")]
    return [statement.strip() for statement in "\n".join(kept_lines).split(";") if statement.strip()]


def _error_text(exc: BaseException) -> str:
    original = getattr(exc, "orig", None)
    return str(original if original is not None else exc).strip() or exc.__class__.__name__


class _RunTracker:
    def __init__(self, run_id: str):
        self.run_id = run_id
        self.state = MigrationState.IDLE
        self.log: list[str] = []

    def note(self, message: str) -> None:
        stamp = datetime.now(tz=timezone.utc).isoformat(timespec="seconds")
        self.log.append(f"[{stamp}] {message}")
        logger.info("Migration %s: %s", self.run_id, message)

    def transition(self, to_state: MigrationState) -> None:
        if to_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidMigrationStateError(f"Illegal transition: {self.state.value} -> {to_state.value}")
        self.note(f"State {self.state.value} -> {to_state.value}")
        self.state = to_state


class MigrationEngine:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        *,
        engine_factory: Callable[[URL], Engine] = create_engine,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._engine_factory = engine_factory

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def resolve_target(self, request: MigrationRequest) -> URL:
        try:
            url = make_url(request.target_url)
        except ArgumentError as exc:
            raise ValueError(f"Invalid target URL: {exc}") from exc
        if request.target_credential:
            url = url.set(password=request.target_credential)
        return url

    def run_safe_migration(self, request: MigrationRequest) -> MigrationResult:
        url = self.resolve_target(request)
        target = url.render_as_string(hide_password=True)
        lock = _target_lock(target)
        if not lock.acquire(blocking=False):
            raise MigrationConflictError(f"A migration is already running against {target}")
        try:
            try:
                engine = self._engine_factory(url)
            except (ArgumentError, SQLAlchemyError) as exc:
                raise ValueError(f"Cannot create engine for {target}: {exc}") from exc

            run_id = self._open_run(target, request.create_backup)
            try:
                result = self._run(run_id, engine, request)
            finally:
                engine.dispose()
            self._close_run(result)
            return result
        finally:
            lock.release()

    def get_run(self, run_id: str) -> MigrationRunSnapshot:
        with self._session_factory() as session:
            run = session.get(MigrationRun, run_id)
            if run is None:
                raise MigrationNotFoundError(f"Migration run not found: {run_id}")
            return MigrationRunSnapshot(
                id=run.id,
                target=run.target,
                state=run.state,
                success=run.success,
                create_backup=run.create_backup,
                stats=dict(run.stats or {}),
                rollback=run.rollback,
                log=list(run.log or []),
                error_message=run.error_message,
                started_at=run.started_at,
                finished_at=run.finished_at,
            )

    def _open_run(self, target: str, create_backup: bool) -> str:
        run_id = str(uuid4())
        with self._session_factory() as session:
            session.add(
                MigrationRun(
                    id=run_id,
                    target=target,
                    state=MigrationState.IDLE,
                    create_backup=create_backup,
                    started_at=self._now(),
                )
            )
            session.commit()
        return run_id

    def _close_run(self, result: MigrationResult) -> None:
        payload = migration_result_to_dict(result)
        with self._session_factory() as session:
            run = session.get(MigrationRun, result.run_id)
            if run is None:
                raise MigrationNotFoundError(f"Migration run not found: {result.run_id}")
            run.state = result.state
            run.success = result.success
            run.stats = payload["stats"]
            run.rollback = payload["rollback"]
            run.log = payload["log"]
            run.error_message = result.error or result.rollback_error
            run.finished_at = self._now()
            session.commit()

    def _run(self, run_id: str, engine: Engine, request: MigrationRequest) -> MigrationResult:
        tracker = _RunTracker(run_id)
        statements = split_statements(request.statement_batch)
        stats = MigrationStats(total_statements=len(statements))
        snapshot: TargetSnapshot | None = None
        tracker.note(f"Migration started with {len(statements)} statements")

        if request.create_backup:
            tracker.transition(MigrationState.BACKING_UP)
            try:
                snapshot = self._take_snapshot(engine, tracker)
            except SQLAlchemyError as exc:
                return self._abort(tracker, stats, "Snapshot of target failed; nothing was changed", exc)
            tracker.note(f"Snapshot captured: {len(snapshot.tables)} tables, {snapshot.total_records} records")
        else:
            tracker.note("Snapshot skipped; rollback will not be possible")

        tracker.transition(MigrationState.VALIDATING)
        try:
            with engine.connect() as connection:
                connection.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            return self._abort(tracker, stats, "Target is not reachable; nothing was changed", exc)

        tracker.transition(MigrationState.EXECUTING)
        try:
            self._execute(engine, statements, stats, tracker)
            tracker.transition(MigrationState.VERIFYING)
            self._verify(engine, snapshot, tracker)
        except (MigrationCriticalError, SQLAlchemyError) as exc:
            return self._recover(tracker, engine, snapshot, stats, exc)

        tracker.transition(MigrationState.COMPLETED)
        return MigrationResult(
            run_id=run_id,
            success=True,
            state=tracker.state,
            message=f"Migration completed: {stats.successful}/{stats.total_statements} statements succeeded",
            stats=stats,
            log=tracker.log,
        )

    def _abort(self, tracker: _RunTracker, stats: MigrationStats, message: str, exc: Exception) -> MigrationResult:
        error = _error_text(exc)
        tracker.note(f"{message}: {error}")
        tracker.transition(MigrationState.FAILED)
        return MigrationResult(
            run_id=tracker.run_id,
            success=False,
            state=tracker.state,
            message=message,
            error=error,
            stats=stats,
            rollback=RollbackReport(performed=False, reason="aborted before any change"),
            log=tracker.log,
        )

    def _take_snapshot(self, engine: Engine, tracker: _RunTracker) -> TargetSnapshot:
        tables: dict[str, list[dict[str, Any]]] = {}
        with engine.connect() as connection:
            available = set(inspect(connection).get_table_names())
            for name in self._settings.migration_snapshot_tables:
                if name not in available:
                    tracker.note(f"Table {name} not present in target; not captured")
                    continue
                reflected = Table(name, MetaData(), autoload_with=connection)
                tables[name] = [dict(row._mapping) for row in connection.execute(select(reflected))]
                tracker.note(f"Captured {len(tables[name])} rows from {name}")
        return TargetSnapshot(tables=tables, taken_at=self._now())

    def _execute(self, engine: Engine, statements: list[str], stats: MigrationStats, tracker: _RunTracker) -> None:
        total = len(statements)
        threshold = self._settings.migration_error_threshold
        interval = self._settings.migration_checkpoint_interval
        detail_limit = self._settings.migration_error_detail_limit

        for index, statement in enumerate(statements, start=1):
            try:
                with engine.begin() as connection:
                    connection.exec_driver_sql(statement)
            except SQLAlchemyError as exc:
                stats.errors += 1
                error = _error_text(exc)
                if len(stats.error_details) < detail_limit:
                    stats.error_details.append({"index": index, "statement": statement[:200], "error": error})
                tracker.note(f"Statement {index}/{total} failed: {error}")
                if stats.errors > total * threshold:
                    raise MigrationCriticalError(
                        f"Error threshold exceeded: {stats.errors} of {total} statements failed"
                    ) from exc
            else:
                stats.successful += 1

            if index % interval == 0:
                tracker.note(f"Checkpoint: {index}/{total} statements executed, {stats.errors} errors")

    def _verify(self, engine: Engine, snapshot: TargetSnapshot | None, tracker: _RunTracker) -> None:
        if snapshot is None:
            tracker.note("No snapshot taken; nothing to verify")
            return
        with engine.connect() as connection:
            for name in snapshot.tables:
                try:
                    count = connection.execute(select(func.count()).select_from(table(name))).scalar_one()
                except SQLAlchemyError as exc:
                    raise MigrationCriticalError(f"Verification failed for table {name}: {_error_text(exc)}") from exc
                tracker.note(f"Verified {name}: {count} rows")

    def _recover(
        self,
        tracker: _RunTracker,
        engine: Engine,
        snapshot: TargetSnapshot | None,
        stats: MigrationStats,
        exc: Exception,
    ) -> MigrationResult:
        error = _error_text(exc)
        tracker.note(f"Critical failure: {error}")

        if snapshot is None:
            tracker.transition(MigrationState.FAILED_UNRECOVERABLE)
            return MigrationResult(
                run_id=tracker.run_id,
                success=False,
                state=tracker.state,
                message="Migration failed without a snapshot; manual intervention required",
                error=error,
                stats=stats,
                rollback=RollbackReport(performed=False, reason="no snapshot available"),
                critical_failure=True,
                log=tracker.log,
            )

        tracker.transition(MigrationState.ROLLING_BACK)
        report = RollbackReport(performed=True, reason=error)
        for name, rows in snapshot.tables.items():
            try:
                with engine.begin() as connection:
                    reflected = Table(name, MetaData(), autoload_with=connection)
                    connection.execute(reflected.delete())
                    if rows:
                        connection.execute(reflected.insert(), rows)
            except SQLAlchemyError as restore_exc:
                report.failed_tables.append(name)
                tracker.note(f"Restore of {name} failed: {_error_text(restore_exc)}")
                continue
            report.tables_restored += 1
            report.records_restored += len(rows)
            tracker.note(f"Restored {len(rows)} rows into {name}")

        if report.failed_tables:
            rollback_error = f"Failed to restore tables: {', '.join(report.failed_tables)}"
            tracker.transition(MigrationState.FAILED_UNRECOVERABLE)
            return MigrationResult(
                run_id=tracker.run_id,
                success=False,
                state=tracker.state,
                message="Rollback incomplete; manual intervention required",
                error=error,
                stats=stats,
                rollback=report,
                critical_failure=True,
                rollback_error=rollback_error,
                log=tracker.log,
            )

        tracker.transition(MigrationState.ROLLED_BACK)
        return MigrationResult(
            run_id=tracker.run_id,
            success=False,
            state=tracker.state,
            message=(
                f"Migration rolled back: restored {report.tables_restored} tables "
                f"and {report.records_restored} records"
            ),
            error=error,
            stats=stats,
            rollback=report,
            log=tracker.log,
        )
