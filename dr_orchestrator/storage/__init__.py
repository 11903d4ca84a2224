"""
Artifact storage backends
"""

from .blob_store import (
    InMemoryBlobStore,
    LocalBlobStore,
    S3BlobStore,
    RetryingBlobStore,
    create_blob_store,
)

__all__ = [
    "InMemoryBlobStore",
    "LocalBlobStore",
    "S3BlobStore",
    "RetryingBlobStore",
    "create_blob_store",
]
