"""FastMCP server bootstrap for convoy."""

from __future__ import annotations

import asyncio
import json
import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Any

from fastmcp import Context, FastMCP

from . import __version__
from .config import ConvoySettings, get_settings
from .logs import configure_logging
from .mergeq.daemon import MergeDaemon
from .mergeq.models import EntryStatus
from .runtime import Runtime, build_runtime
from .storage import ChromaUnavailableError
from .tools import entry_summary, register_tools

logger = logging.getLogger(__name__)

RECENT_ALERTS = 5


def _run_sync(coro):
    """Execute an async coroutine on a dedicated event loop."""

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def queue_in_dequeue_order(runtime: Runtime) -> list[dict[str, Any]]:
    """Pending entries first in dequeue order, then everything else as stored."""

    pending = runtime.queue.pending()
    rest = [entry for entry in runtime.queue.entries() if entry.status != EntryStatus.PENDING]
    return [entry_summary(entry) for entry in pending + rest]


def create_server(settings: ConvoySettings | None = None, *, runtime: Runtime | None = None) -> FastMCP:
    """Instantiate the control server and recover entries a crashed daemon left behind."""

    if runtime is None:
        runtime = build_runtime(settings or get_settings(), holder="convoy-server")
    settings = runtime.settings

    recovery_actions: list[dict[str, Any]] = []
    try:
        actions = _run_sync(MergeDaemon(runtime).recover())
    except RuntimeError as exc:
        logger.exception("Startup recovery failed", extra={"error": str(exc)})
    else:
        recovery_actions = [{"operation": action.operation, "action": action.action} for action in actions]
        if recovery_actions:
            logger.info("Recovered queue entries on startup", extra={"actions": recovery_actions})

    server = FastMCP(
        name="Convoy",
        version=__version__,
        instructions=(
            "Convoy coordinates autonomous coding workers and a merge queue that "
            "integrates their branches into the develop branch. Use the tools to "
            "inspect, hold, resume, cancel and enqueue operations."
        ),
    )

    handles = register_tools(server, runtime=runtime)

    def status_resource(context: Context) -> str:
        queue_counts = Counter(entry.status.value for entry in runtime.queue.entries())
        phase_counts = Counter(operation.phase.value for operation in runtime.store.list_operations())

        alerts: list[dict[str, Any]] = []
        alerts_error: str | None = None
        audit = runtime.alerts.audit
        if audit is not None:
            try:
                alerts = [
                    {
                        "kind": record.kind,
                        "message": record.message,
                        "operation": record.operation,
                        "raised_at": record.raised_at.isoformat(),
                    }
                    for record in audit.list_alerts(limit=RECENT_ALERTS)
                ]
            except ChromaUnavailableError as exc:
                alerts_error = str(exc)

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "project": settings.project,
            "log_level": settings.log_level,
            "queue": {"count": sum(queue_counts.values()), "status_counts": dict(queue_counts)},
            "operations": {"count": sum(phase_counts.values()), "phase_counts": dict(phase_counts)},
            "alerts": {"recent": alerts, "error": alerts_error},
            "storage": {"chroma": runtime.audit_metadata},
            "recovery": recovery_actions,
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    def queue_resource(context: Context) -> str:
        return json.dumps({"entries": queue_in_dequeue_order(runtime)})

    server.resource(
        "resource://convoy/status",
        name="convoy_status",
        title="Convoy Status",
        description="Queue counts, operation phase counts, recent alerts and audit store availability.",
        mime_type="application/json",
        tags={"status", "health"},
    )(status_resource)
    server.resource(
        "resource://convoy/queue",
        name="convoy_queue",
        title="Convoy Merge Queue",
        description="Merge queue entries in dequeue order.",
        mime_type="application/json",
        tags={"queue"},
    )(queue_resource)

    setattr(server, "runtime", runtime)
    setattr(server, "tool_handles", handles)
    setattr(server, "recovery_actions", recovery_actions)
    setattr(server, "status_resource", status_resource)
    setattr(server, "queue_resource", queue_resource)
    return server


def main() -> None:
    """Entry point for running the convoy control server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logger.info(
        "Launching convoy control server",
        extra={
            "version": __version__,
            "project": settings.project,
            "chroma_available": getattr(server, "runtime").audit_metadata.get("available"),
        },
    )
    server.run()


__all__ = ["configure_logging", "create_server", "main", "queue_in_dequeue_order"]


if __name__ == "__main__":
    main()
