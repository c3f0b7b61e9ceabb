from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class BackupKind(str, Enum):
    FULL = "full"
    MEDIA_ONLY = "media_only"


class BackupJobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    RETRY = "retry"
    COMPLETED = "completed"
    FAILED = "failed"


class PartStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class MigrationState(str, Enum):
    IDLE = "idle"
    BACKING_UP = "backing_up"
    VALIDATING = "validating"
    EXECUTING = "executing"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"
    FAILED_UNRECOVERABLE = "failed_unrecoverable"


class BackupJob(Base):
    __tablename__ = "backup_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tour_id: Mapped[str] = mapped_column(String(36), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    destination_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    kind: Mapped[BackupKind] = mapped_column(
        SAEnum(BackupKind, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=BackupKind.FULL,
    )
    status: Mapped[BackupJobStatus] = mapped_column(
        SAEnum(BackupJobStatus, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=BackupJobStatus.PENDING,
    )

    total_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress_percentage: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    storage_path: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    file_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    job_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON(none_as_null=True), nullable=False, default=dict
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_backup_jobs_tour_status", "tour_id", "status"),
        Index("ix_backup_jobs_owner_created", "owner_id", "created_at"),
        Index("ix_backup_jobs_status_updated", "status", "updated_at"),
    )


class BackupQueueEntry(Base):
    __tablename__ = "backup_queue"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    backup_job_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("backup_jobs.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    status: Mapped[QueueStatus] = mapped_column(
        SAEnum(QueueStatus, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=QueueStatus.PENDING,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    heartbeat_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_backup_queue_dispatch", "status", "priority", "scheduled_at"),
        Index("ix_backup_queue_processing_started", "status", "started_at"),
    )


class BackupPart(Base):
    __tablename__ = "backup_parts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    backup_job_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("backup_jobs.id", ondelete="CASCADE"), nullable=False
    )
    part_number: Mapped[int] = mapped_column(Integer, nullable=False)
    storage_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    file_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    file_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    items_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[PartStatus] = mapped_column(
        SAEnum(PartStatus, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=PartStatus.COMPLETED,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("backup_job_id", "part_number", name="uq_backup_parts_job_part"),
        Index("ix_backup_parts_job_status", "backup_job_id", "status"),
    )


class BackupLog(Base):
    __tablename__ = "backup_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    backup_job_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("backup_jobs.id", ondelete="CASCADE"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    is_error: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSON(none_as_null=True), nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (Index("ix_backup_logs_job_created", "backup_job_id", "created_at", "id"),)


class MigrationRun(Base):
    __tablename__ = "migration_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    target: Mapped[str] = mapped_column(String(1024), nullable=False)
    state: Mapped[MigrationState] = mapped_column(
        SAEnum(MigrationState, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=MigrationState.IDLE,
    )
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    create_backup: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    stats: Mapped[dict[str, Any]] = mapped_column(JSON(none_as_null=True), nullable=False, default=dict)
    rollback: Mapped[dict[str, Any] | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    log: Mapped[list[str]] = mapped_column(JSON(none_as_null=True), nullable=False, default=list)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_migration_runs_started", "started_at"),)


class Tour(Base):
    __tablename__ = "tours"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class FloorPlan(Base):
    __tablename__ = "floor_plans"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tour_id: Mapped[str] = mapped_column(String(36), ForeignKey("tours.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (Index("ix_floor_plans_tour_order", "tour_id", "display_order"),)


class Hotspot(Base):
    __tablename__ = "hotspots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    floor_plan_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("floor_plans.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    x_position: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    y_position: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    __table_args__ = (Index("ix_hotspots_floor", "floor_plan_id"),)


class PanoramaPhoto(Base):
    __tablename__ = "panorama_photos"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    hotspot_id: Mapped[str] = mapped_column(String(36), ForeignKey("hotspots.id", ondelete="CASCADE"), nullable=False)
    photo_url: Mapped[str] = mapped_column(Text, nullable=False)
    capture_date: Mapped[str | None] = mapped_column(String(32), nullable=True)
    display_order: Mapped[int | None] = mapped_column(Integer, nullable=True)
    original_filename: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (Index("ix_panorama_photos_hotspot", "hotspot_id"),)


class SchemaMigration(Base):
    __tablename__ = "schema_migrations"

    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
