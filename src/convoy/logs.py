"""Root logging configuration shared by the server and the daemons."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
LOG_MAX_BYTES = 100_000
LOG_BACKUPS = 3


def configure_logging(level: str, log_file: Path | None = None) -> None:
    """Configure root logging, optionally mirroring output to a rotating file."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=LOG_FORMAT,
    )
    if log_file is None:
        return
    log_file = Path(log_file)
    root = logging.getLogger()
    for handler in root.handlers:
        if isinstance(handler, RotatingFileHandler) and Path(handler.baseFilename) == log_file.resolve():
            return
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(log_file, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)


__all__ = ["LOG_BACKUPS", "LOG_FORMAT", "LOG_MAX_BYTES", "configure_logging"]
