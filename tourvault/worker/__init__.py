from tourvault.worker.pipeline import (
    build_processor,
    build_queue_service,
    cleanup_stuck_jobs,
    enqueue_backup,
    run_dispatch_once,
    shutdown_continuations,
)

__all__ = [
    "enqueue_backup",
    "run_dispatch_once",
    "cleanup_stuck_jobs",
    "build_processor",
    "build_queue_service",
    "shutdown_continuations",
]
