"""Forward worker crash and merge failure alerts from the audit store.

Meant to be run from cron or a monitoring agent::

    convoy_alert_forwarder.py --kind worker_crash --format text >> /var/log/convoy-alerts
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Callable, Iterable

from convoy.alerts import MERGE_CONFLICT, MERGE_FAILED, WORKER_CRASH, WORKER_STOPPED
from convoy.config import ConvoySettings, load_settings
from convoy.storage import AlertRecord, ChromaStore, ChromaUnavailableError

FORWARDED_KINDS = (WORKER_CRASH, WORKER_STOPPED, MERGE_FAILED, MERGE_CONFLICT)

Formatter = Callable[[dict[str, object]], str]


def load_store(settings: ConvoySettings) -> ChromaStore:
    return ChromaStore(settings.chroma_path)


def alert_payload(alert: AlertRecord) -> dict[str, object]:
    return {
        "kind": alert.kind,
        "operation": alert.operation,
        "message": alert.message,
        "details": alert.details,
        "raised_at": alert.raised_at.isoformat(),
    }


def select_alerts(
    alerts: Iterable[AlertRecord],
    kinds: Iterable[str],
    limit: int | None = None,
) -> list[dict[str, object]]:
    """Keep alerts of the forwarded kinds, oldest first, trimmed to the latest ``limit``."""

    wanted = set(kinds)
    selected = [alert_payload(alert) for alert in alerts if alert.kind in wanted]
    if limit and limit > 0:
        selected = selected[-limit:]
    return selected


def text_line(item: dict[str, object]) -> str:
    fields = ("kind", "operation", "message", "raised_at")
    return " | ".join(f"{field}={item[field]}" for field in fields)


def render(payload: list[dict[str, object]], output_format: str, formatter: Formatter = text_line) -> str:
    if output_format == "json":
        return json.dumps(payload, indent=2)
    return "\n".join(formatter(item) for item in payload)


def forward_alerts(args: argparse.Namespace, *, formatter: Formatter = text_line) -> int:
    settings = load_settings()
    try:
        alerts = load_store(settings).list_alerts(operation=args.operation)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}", file=sys.stderr)
        return 1

    payload = select_alerts(alerts, args.kind or FORWARDED_KINDS, args.limit)
    rendered = render(payload, args.format, formatter)
    if args.output:
        Path(args.output).write_text(rendered, encoding="utf-8")
    else:
        print(rendered)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Forward convoy alerts to stdout or a file")
    parser.add_argument("--operation", help="Only forward alerts raised for this operation")
    parser.add_argument(
        "--kind",
        action="append",
        choices=FORWARDED_KINDS,
        help="Alert kind to forward; repeat for several (default: all of them)",
    )
    parser.add_argument("--format", choices=("json", "text"), default="json")
    parser.add_argument("--output", help="Write the alerts to this file instead of stdout")
    parser.add_argument("--limit", type=int, help="Forward only the latest N alerts")
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    exit_code = forward_alerts(args)
    if exit_code:
        raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
