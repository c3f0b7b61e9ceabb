from __future__ import annotations

import re
import unicodedata
from pathlib import PurePosixPath

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_-]")
_REPEATED_UNDERSCORES = re.compile(r"_+")
_MAX_NAME_LENGTH = 50


class PathSafetyError(ValueError):
    pass


def sanitize_name(raw_name: str | None, *, fallback: str = "untitled") -> str:
    if not raw_name:
        return fallback
    decomposed = unicodedata.normalize("NFD", raw_name)
    ascii_only = "".join(char for char in decomposed if not unicodedata.combining(char))
    cleaned = _REPEATED_UNDERSCORES.sub("_", _UNSAFE_CHARS.sub("_", ascii_only.strip()))
    cleaned = cleaned.strip("_")[:_MAX_NAME_LENGTH]
    return cleaned or fallback


def validate_storage_path(raw_path: str) -> PurePosixPath:
    if not raw_path or not raw_path.strip():
        raise PathSafetyError("Storage path cannot be blank")
    if raw_path.startswith("/") or "\\" in raw_path:
        raise PathSafetyError("Storage path must be a relative posix path")
    path = PurePosixPath(raw_path)
    if ".." in path.parts:
        raise PathSafetyError("Path traversal is not allowed")
    if "~" in raw_path:
        raise PathSafetyError("Home expansion is not allowed")
    if "$" in raw_path:
        raise PathSafetyError("Environment variable expansion is not allowed")
    return path
