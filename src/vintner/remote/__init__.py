"""
Remote stage service boundary.

``StageClient`` performs the HTTP calls; ``models`` and ``shapes`` turn the
backend's loosely-shaped bodies into typed values before the pipeline sees
them.
"""

from .client import SourceFile, StageClient
from .models import (
    CapabilityStatus,
    CompareResponse,
    OcrResponse,
    StoragePublishResponse,
    UploadedFile,
)
from .shapes import normalize_upload_items, parse_upload_response

__all__ = [
    "SourceFile",
    "StageClient",
    "CapabilityStatus",
    "CompareResponse",
    "OcrResponse",
    "StoragePublishResponse",
    "UploadedFile",
    "normalize_upload_items",
    "parse_upload_response",
]
