from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, PositiveInt, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SNAPSHOT_TABLES = (
    "virtual_tours",
    "floor_plans",
    "hotspots",
    "panorama_photos",
    "tenants",
    "profiles",
    "backup_jobs",
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TOURVAULT_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "TourVault"
    environment: str = "production"
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    log_level: str = "INFO"

    state_root: Path = Field(default=Path("/state"))
    database_url: str | None = None

    blob_root: Path = Field(default=Path("/state/blobs"))
    blob_signing_key: str = "change-me"
    public_base_url: str = "http://localhost:8080"
    signed_url_ttl_seconds: PositiveInt = 7 * 24 * 3600

    items_per_part: PositiveInt = 5
    archive_compression_level: int = 6
    image_fetch_timeout_seconds: PositiveInt = 30

    queue_max_attempts: PositiveInt = 3
    queue_default_priority: int = 5
    retry_base_seconds: PositiveInt = 300
    retry_max_seconds: PositiveInt = 6 * 3600
    stuck_job_timeout_seconds: PositiveInt = 30 * 60
    continuation_workers: PositiveInt = 4
    dispatch_max_jobs: PositiveInt = 1
    worker_poll_seconds: PositiveInt = 30

    cloud_sync_url: str | None = None
    cloud_sync_token: str | None = None
    cloud_sync_timeout_seconds: PositiveInt = 10

    migration_snapshot_tables: list[str] = Field(default_factory=lambda: list(DEFAULT_SNAPSHOT_TABLES))
    migration_checkpoint_interval: PositiveInt = 100
    migration_error_threshold: float = 0.1
    migration_error_detail_limit: PositiveInt = 10

    @field_validator("state_root", "blob_root", mode="before")
    @classmethod
    def _normalize_path(cls, value: str | Path) -> Path:
        raw = str(value)
        if "~" in raw:
            raise ValueError("Home expansion syntax is not allowed in paths")
        if "$" in raw:
            raise ValueError("Environment variable syntax is not allowed in paths")
        path = Path(raw)
        if not path.is_absolute():
            raise ValueError("Path settings must be absolute")
        return path

    @model_validator(mode="after")
    def _validate_runtime_constraints(self) -> "Settings":
        self.state_root = self.state_root.resolve(strict=False)
        self.blob_root = self.blob_root.resolve(strict=False)

        self.state_root.mkdir(parents=True, exist_ok=True)
        if self.blob_root.as_posix() == "/state/blobs" and self.state_root.as_posix() != "/state":
            self.blob_root = (self.state_root / "blobs").resolve(strict=False)
        self.blob_root.mkdir(parents=True, exist_ok=True)

        if not self.blob_signing_key.strip():
            raise ValueError("blob_signing_key cannot be blank")
        self.public_base_url = self.public_base_url.rstrip("/")

        if not 0 <= self.archive_compression_level <= 9:
            raise ValueError("archive_compression_level must be between 0 and 9")

        if self.retry_max_seconds < self.retry_base_seconds:
            raise ValueError("retry_max_seconds must be greater than or equal to retry_base_seconds")

        if not 0.0 < self.migration_error_threshold <= 1.0:
            raise ValueError("migration_error_threshold must be in (0.0, 1.0]")

        tables = [name.strip() for name in self.migration_snapshot_tables if name.strip()]
        for name in tables:
            if not name.replace("_", "").isalnum():
                raise ValueError(f"Invalid snapshot table name: {name}")
        self.migration_snapshot_tables = tables

        return self

    @property
    def effective_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        db_path = self.state_root / "tourvault.sqlite3"
        return f"sqlite:///{db_path.as_posix()}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
