"""Storage backends for convoy audit events."""

from .chroma import ChromaEvent, ChromaStore, ChromaUnavailableError
from .models import AlertRecord, MergeRecord

__all__ = [
    "AlertRecord",
    "ChromaEvent",
    "ChromaStore",
    "ChromaUnavailableError",
    "MergeRecord",
]
