from __future__ import annotations

import logging

_LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    resolved = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=resolved, format=_LOG_FORMAT)
    root.setLevel(resolved)

    logging.getLogger("httpx").setLevel(max(resolved, logging.WARNING))
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
