"""Per-kind worker polling daemons."""

from .daemon import ITEM_TYPES, WorkerCycle, WorkerDaemon, WorkerError, backoff_delay

__all__ = ["ITEM_TYPES", "WorkerCycle", "WorkerDaemon", "WorkerError", "backoff_delay"]
