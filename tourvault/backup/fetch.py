from __future__ import annotations

import logging
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)


class ImageFetchError(RuntimeError):
    pass


class ImageFetcher(Protocol):
    def fetch(self, url: str) -> bytes:
        ...


class HttpImageFetcher:
    def __init__(self, timeout_seconds: float = 30.0, client: httpx.Client | None = None):
        self._timeout = timeout_seconds
        self._client = client

    def fetch(self, url: str) -> bytes:
        if not url.startswith(("http://", "https://")):
            raise ImageFetchError(f"Unsupported image reference: {url}")
        try:
            if self._client is not None:
                response = self._client.get(url, follow_redirects=True, timeout=self._timeout)
            else:
                with httpx.Client(timeout=self._timeout, follow_redirects=True) as client:
                    response = client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ImageFetchError(f"Failed to fetch {url}: {exc}") from exc
        return response.content
