from __future__ import annotations

import hashlib
import hmac
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol
from urllib.parse import quote, urlencode

from tourvault.core.path_safety import PathSafetyError, validate_storage_path


class BlobStoreError(RuntimeError):
    pass


class BlobExistsError(BlobStoreError):
    pass


class BlobNotFoundError(BlobStoreError):
    pass


class BlobSignatureError(BlobStoreError):
    pass


class BlobStore(Protocol):
    def upload(self, path: str, data: bytes, *, overwrite: bool = False) -> None:
        ...

    def download(self, path: str) -> bytes:
        ...

    def exists(self, path: str) -> bool:
        ...

    def signed_url(self, path: str, *, expires_in: int, download_name: str | None = None) -> str:
        ...


class LocalBlobStore:
    def __init__(self, root: Path, *, signing_key: str, public_base_url: str):
        self._root = root.resolve(strict=False)
        self._signing_key = signing_key.encode("utf-8")
        self._public_base_url = public_base_url.rstrip("/")

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _resolve(self, path: str) -> Path:
        try:
            relative = validate_storage_path(path)
        except PathSafetyError as exc:
            raise BlobStoreError(str(exc)) from exc
        candidate = (self._root / relative).resolve(strict=False)
        if candidate == self._root or self._root not in candidate.parents:
            raise BlobStoreError("Blob path escapes blob root")
        return candidate

    def _signature(self, path: str, expires: int, download_name: str | None) -> str:
        material = f"{path}\n{expires}\n{download_name or ''}".encode("utf-8")
        return hmac.new(self._signing_key, material, hashlib.sha256).hexdigest()

    def upload(self, path: str, data: bytes, *, overwrite: bool = False) -> None:
        target = self._resolve(path)
        if target.exists() and not overwrite:
            raise BlobExistsError(f"Blob already exists: {path}")
        target.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(prefix=".upload-", dir=target.parent)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, target)
        except OSError as exc:
            Path(tmp_name).unlink(missing_ok=True)
            raise BlobStoreError(f"Failed to write blob {path}: {exc}") from exc

    def download(self, path: str) -> bytes:
        target = self._resolve(path)
        if not target.is_file():
            raise BlobNotFoundError(f"Blob not found: {path}")
        return target.read_bytes()

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def local_path(self, path: str) -> Path:
        target = self._resolve(path)
        if not target.is_file():
            raise BlobNotFoundError(f"Blob not found: {path}")
        return target

    def signed_url(self, path: str, *, expires_in: int, download_name: str | None = None) -> str:
        self._resolve(path)
        if expires_in <= 0:
            raise BlobStoreError("expires_in must be greater than zero")
        expires = int(self._now().timestamp()) + int(expires_in)
        params: dict[str, str | int] = {"expires": expires}
        if download_name:
            params["download"] = download_name
        params["signature"] = self._signature(path, expires, download_name)
        return f"{self._public_base_url}/api/v1/blobs/{quote(path)}?{urlencode(params)}"

    def verify_signature(self, path: str, *, expires: int, signature: str, download_name: str | None = None) -> None:
        if expires < int(self._now().timestamp()):
            raise BlobSignatureError("Signed URL has expired")
        expected = self._signature(path, expires, download_name)
        if not hmac.compare_digest(expected, signature):
            raise BlobSignatureError("Invalid blob signature")
