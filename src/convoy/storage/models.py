"""Data models for the audit store."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class AlertRecord:
    kind: str
    message: str
    operation: str | None
    raised_at: datetime
    details: dict[str, Any]


@dataclass(slots=True)
class MergeRecord:
    operation: str
    outcome: str
    reason: str | None
    merge_commit: str | None
    recorded_at: datetime


__all__ = ["AlertRecord", "MergeRecord"]
