"""Forward archived stuck-session alerts to monitoring-friendly output."""

from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterable

from agent_orchestrator.config import OrchestratorSettings
from agent_orchestrator.projects import parse_duration
from agent_orchestrator.storage import ArchiveEvent, ArchiveStore, ArchiveUnavailableError

STUCK_EVENT = "session.stuck"
ALERT_FIELDS = ("session_id", "project_id", "old_status", "reason", "suggested_action")


def load_store(settings: OrchestratorSettings) -> ArchiveStore:
    """Construct an ArchiveStore using the provided settings."""

    return ArchiveStore(settings.archive_path)


def _alert_cutoff(since: str | None, now: datetime) -> datetime | None:
    if not since:
        return None
    window = parse_duration(since)
    if window <= 0:
        raise ValueError(f"--since expects a duration like 30s, 10m or 1h, got {since!r}")
    return now - timedelta(seconds=window)


def collect_alerts(
    events: Iterable[ArchiveEvent],
    *,
    project_id: str | None = None,
    session_id: str | None = None,
    cutoff: datetime | None = None,
) -> list[dict[str, object]]:
    """Flatten stuck events into oldest-first alert rows matching the filters."""

    alerts = []
    for event in events:
        metadata = event.metadata
        if project_id and metadata.get("project_id") != project_id:
            continue
        if session_id and metadata.get("session_id") != session_id:
            continue
        if cutoff is not None and event.timestamp < cutoff:
            continue
        row: dict[str, object] = {"event_id": event.id}
        row.update({field: metadata.get(field) for field in ALERT_FIELDS})
        row["timestamp"] = event.timestamp.isoformat()
        alerts.append(row)
    return sorted(alerts, key=lambda row: row["timestamp"])


def format_alert_line(alert: dict[str, object]) -> str:
    parts = [
        f"[{alert['timestamp']}]",
        f"{alert['session_id']} ({alert['project_id']})",
        f"stuck after {alert['old_status']}: {alert['reason']}",
    ]
    if alert.get("suggested_action"):
        parts.append(f"-> {alert['suggested_action']}")
    return " ".join(parts)


def forward_alerts(
    args: argparse.Namespace,
    *,
    formatter: Callable[[dict[str, object]], str] = format_alert_line,
    now: datetime | None = None,
) -> int:
    try:
        cutoff = _alert_cutoff(args.since, now or datetime.now(timezone.utc))
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 2

    try:
        store = load_store(OrchestratorSettings())
        events = store.search_events(filters={"event_type": STUCK_EVENT})
    except ArchiveUnavailableError as exc:
        print(f"Archive unavailable: {exc}", file=sys.stderr)
        return 1

    alerts = collect_alerts(
        events,
        project_id=args.project_id,
        session_id=args.session_id,
        cutoff=cutoff,
    )
    if args.limit:
        alerts = alerts[-args.limit :]

    if args.format == "json":
        rendered = json.dumps(alerts, indent=2)
    else:
        rendered = "\n".join(formatter(alert) for alert in alerts)

    if args.output:
        Path(args.output).write_text(rendered, encoding="utf-8")
    else:
        print(rendered)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Emit archived stuck-session alerts as JSON or text for monitoring integrations."
    )
    parser.add_argument("--project-id", default=None, help="Only alerts for this project")
    parser.add_argument("--session-id", default=None, help="Only alerts for this session")
    parser.add_argument("--since", default=None, help="Only alerts newer than this window (30s, 10m, 1h)")
    parser.add_argument("--format", choices=("json", "text"), default="json")
    parser.add_argument("--output", default=None, help="Write alerts to this file instead of stdout")
    parser.add_argument("--limit", type=int, default=None, help="Keep only the newest N alerts")
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    exit_code = forward_alerts(args)
    if exit_code:
        raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
