from __future__ import annotations

import logging
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)


class CloudSyncError(RuntimeError):
    pass


class SyncTrigger(Protocol):
    def trigger(self, *, job_id: str, destination_id: str | None) -> bool:
        ...


class CloudSyncTrigger:
    def __init__(
        self,
        url: str | None,
        *,
        token: str | None = None,
        timeout_seconds: float = 10.0,
        client: httpx.Client | None = None,
    ):
        self._url = url
        self._token = token
        self._timeout = timeout_seconds
        self._client = client

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def trigger(self, *, job_id: str, destination_id: str | None) -> bool:
        if not self._url or not destination_id:
            logger.debug("Cloud sync skipped for job %s", job_id)
            return False

        payload = {"action": "sync_backup", "backup_job_id": job_id, "destination_id": destination_id}
        try:
            if self._client is not None:
                response = self._client.post(self._url, json=payload, headers=self._headers(), timeout=self._timeout)
            else:
                with httpx.Client(timeout=self._timeout) as client:
                    response = client.post(self._url, json=payload, headers=self._headers())
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise CloudSyncError(f"Cloud sync request failed for job {job_id}: {exc}") from exc

        logger.info("Cloud sync triggered for job %s (destination %s)", job_id, destination_id)
        return True
