from tourvault.storage.blob import (
    BlobExistsError,
    BlobNotFoundError,
    BlobSignatureError,
    BlobStore,
    BlobStoreError,
    LocalBlobStore,
)

__all__ = [
    "BlobStore",
    "LocalBlobStore",
    "BlobStoreError",
    "BlobExistsError",
    "BlobNotFoundError",
    "BlobSignatureError",
]
