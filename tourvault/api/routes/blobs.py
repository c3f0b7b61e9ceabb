from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import FileResponse

from tourvault.storage.blob import BlobNotFoundError, BlobSignatureError, BlobStoreError, LocalBlobStore
from tourvault.worker.pipeline import build_blob_store

router = APIRouter(prefix="/blobs", tags=["blobs"])


def get_blob_store() -> LocalBlobStore:
    return build_blob_store()


@router.get("/{blob_path:path}")
def download_blob(
    blob_path: str,
    expires: int = Query(...),
    signature: str = Query(..., min_length=64, max_length=64),
    download: str | None = Query(default=None, max_length=255),
    store: LocalBlobStore = Depends(get_blob_store),
) -> FileResponse:
    try:
        store.verify_signature(blob_path, expires=expires, signature=signature, download_name=download)
        local_path = store.local_path(blob_path)
    except BlobSignatureError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except BlobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except BlobStoreError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    media_type = "application/zip" if local_path.suffix == ".zip" else "application/octet-stream"
    return FileResponse(local_path, media_type=media_type, filename=download or local_path.name)
