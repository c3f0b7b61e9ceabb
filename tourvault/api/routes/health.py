from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter

from tourvault.core.config import get_settings

router = APIRouter(tags=["health"])


@router.get("/health")
def get_health() -> dict[str, object]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.environment,
        "items_per_part": settings.items_per_part,
        "cloud_sync_enabled": bool(settings.cloud_sync_url),
        "timestamp": datetime.now(tz=timezone.utc),
    }
