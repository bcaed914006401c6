"""Convoy diagnostics CLI."""

from __future__ import annotations

import argparse
import json
from dataclasses import asdict

from convoy.config import ConvoySettings, load_settings
from convoy.mergeq.models import EntryStatus
from convoy.state.store import StateStore
from convoy.storage import ChromaStore, ChromaUnavailableError


def open_store(settings: ConvoySettings) -> ChromaStore:
    return ChromaStore(settings.chroma_path)


def load_store(settings: ConvoySettings) -> ChromaStore:
    store = open_store(settings)
    try:
        store.ping()
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    return store


def load_state(settings: ConvoySettings) -> StateStore:
    return StateStore(settings.operations_dir)


def read_queue(settings: ConvoySettings) -> list[dict]:
    if not settings.queue_file.exists():
        return []
    document = json.loads(settings.queue_file.read_text(encoding="utf-8"))
    return list(document.get("entries", []))


def cmd_operations(args: argparse.Namespace) -> None:
    settings = load_settings()
    operations = load_state(settings).list_operations()
    if args.json:
        print(json.dumps([operation.to_document() for operation in operations], indent=2))
        return
    for operation in operations:
        held = " (held)" if operation.held else ""
        after = f" after={operation.after}" if operation.after else ""
        print(f"{operation.name} [{operation.phase.value}]{held}{after}")


def cmd_queue(args: argparse.Namespace) -> None:
    settings = load_settings()
    entries = read_queue(settings)
    if args.status:
        entries = [entry for entry in entries if entry.get("status") == args.status]
    for entry in entries:
        reason = f" ({entry['reason']})" if entry.get("reason") else ""
        print(f"{entry['operation']} [{entry.get('status')}] priority={entry.get('priority', 0)}{reason}")


def cmd_events(args: argparse.Namespace) -> None:
    settings = load_settings()
    state = load_state(settings)
    if not state.exists(args.name):
        print(f"Unknown operation: {args.name}")
        raise SystemExit(1)
    events = state.read_events(args.name, limit=args.limit)
    print(json.dumps([asdict(event) for event in events], indent=2))


def cmd_metrics(args: argparse.Namespace) -> None:
    settings = load_settings()
    operations = load_state(settings).list_operations()
    entries = read_queue(settings)

    phase_counts: dict[str, int] = {}
    for operation in operations:
        phase_counts[operation.phase.value] = phase_counts.get(operation.phase.value, 0) + 1

    queue_counts: dict[str, int] = {}
    conflict_retries = 0
    for entry in entries:
        status = entry.get("status", "unknown")
        queue_counts[status] = queue_counts.get(status, 0) + 1
        conflict_retries += int(entry.get("conflict_retries", 0) or 0)

    metrics = {
        "operations_total": len(operations),
        "phase_counts": phase_counts,
        "queue_total": len(entries),
        "queue_status_counts": queue_counts,
        "queue_pending": queue_counts.get(EntryStatus.PENDING.value, 0),
        "conflict_retries": conflict_retries,
    }

    try:
        store = open_store(settings)
        alerts = store.list_alerts()
        merges = store.list_merges()
    except ChromaUnavailableError as exc:
        metrics["audit_error"] = str(exc)
    else:
        alert_counts: dict[str, int] = {}
        for alert in alerts:
            alert_counts[alert.kind] = alert_counts.get(alert.kind, 0) + 1
        outcome_counts: dict[str, int] = {}
        for merge in merges:
            outcome_counts[merge.outcome] = outcome_counts.get(merge.outcome, 0) + 1
        metrics["alert_counts"] = alert_counts
        metrics["merge_outcome_counts"] = outcome_counts

    print(json.dumps(metrics, indent=2))


def cmd_alerts(args: argparse.Namespace) -> None:
    settings = load_settings()
    store = load_store(settings)
    try:
        alerts = store.list_alerts(operation=args.operation, limit=args.limit)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)

    payload = [
        {
            "kind": alert.kind,
            "operation": alert.operation,
            "message": alert.message,
            "details": alert.details,
            "timestamp": alert.raised_at.isoformat(),
        }
        for alert in alerts
    ]
    print(json.dumps(payload, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Convoy diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_operations = sub.add_parser("operations", help="List operation records")
    p_operations.add_argument("--json", action="store_true", help="Output JSON")
    p_operations.set_defaults(func=cmd_operations)

    p_queue = sub.add_parser("queue", help="List merge queue entries")
    p_queue.add_argument("--status", choices=[status.value for status in EntryStatus])
    p_queue.set_defaults(func=cmd_queue)

    p_events = sub.add_parser("events", help="Show an operation's event log")
    p_events.add_argument("name")
    p_events.add_argument("--limit", type=int, default=20)
    p_events.set_defaults(func=cmd_events)

    p_metrics = sub.add_parser("metrics", help="Show operation, queue and alert counts")
    p_metrics.set_defaults(func=cmd_metrics)

    p_alerts = sub.add_parser("alerts", help="List alerts recorded in the audit store")
    p_alerts.add_argument("--operation")
    p_alerts.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, show only the latest N alerts",
    )
    p_alerts.set_defaults(func=cmd_alerts)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
