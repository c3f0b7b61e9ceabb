from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class DispatchOutcome(str, Enum):
    PROCESSED = "processed"
    IN_PROGRESS = "in_progress"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(slots=True)
class DispatchDetail:
    queue_id: int
    job_id: str
    outcome: DispatchOutcome
    error: str | None = None


@dataclass(slots=True)
class DispatchResult:
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    details: list[DispatchDetail] = field(default_factory=list)


def dispatch_result_to_dict(result: DispatchResult) -> dict[str, Any]:
    return {
        "processed": result.processed,
        "failed": result.failed,
        "skipped": result.skipped,
        "details": [
            {
                "queue_id": detail.queue_id,
                "job_id": detail.job_id,
                "outcome": detail.outcome.value,
                "error": detail.error,
            }
            for detail in result.details
        ],
    }
