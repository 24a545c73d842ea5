"""Append-blob store client and naming."""

from .client import AppendBlobClient, BlobHttpError
from .paths import daily_blob_path

__all__ = [
    "AppendBlobClient",
    "BlobHttpError",
    "daily_blob_path",
]
