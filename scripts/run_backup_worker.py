from __future__ import annotations

import argparse
import logging
import time

from tourvault.core.config import get_settings
from tourvault.core.logging import configure_logging
from tourvault.db.init_db import initialize_database
from tourvault.worker.pipeline import build_queue_service, shutdown_continuations

logger = logging.getLogger("tourvault.worker")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Dispatch queued tour backups and recover stuck entries")
    parser.add_argument("--max-jobs", type=int, default=None, help="Queue entries claimed per dispatch pass")
    parser.add_argument("--poll-seconds", type=float, default=None, help="Sleep between dispatch passes")
    parser.add_argument("--once", action="store_true", help="Run a single cleanup and dispatch pass, then exit")
    parser.add_argument("--log-level", default=None, help="Override the configured log level")
    return parser.parse_args()


def run_pass(max_jobs: int | None) -> None:
    service = build_queue_service()
    cleaned = service.cleanup_stuck_jobs()
    result = service.process_queue(max_jobs)
    logger.info(
        "cleaned=%s processed=%s failed=%s skipped=%s",
        cleaned,
        result.processed,
        result.failed,
        result.skipped,
    )


def main() -> int:
    args = parse_args()
    settings = get_settings()
    configure_logging(args.log_level or settings.log_level)
    initialize_database()

    poll_seconds = args.poll_seconds if args.poll_seconds is not None else settings.worker_poll_seconds
    try:
        while True:
            run_pass(args.max_jobs)
            if args.once:
                break
            time.sleep(poll_seconds)
    except KeyboardInterrupt:
        logger.info("Worker interrupted; waiting for running continuations")
    finally:
        shutdown_continuations(wait=True)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
