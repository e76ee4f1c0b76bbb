"""Agent Orchestrator diagnostics CLI."""

from __future__ import annotations

import argparse
import json
from dataclasses import asdict

from agent_orchestrator.config import OrchestratorSettings
from agent_orchestrator.storage import ArchiveStore, ArchiveUnavailableError

STUCK_EVENT = "session.stuck"


def load_store(settings: OrchestratorSettings) -> ArchiveStore:
    try:
        return ArchiveStore(settings.archive_path)
    except ArchiveUnavailableError as exc:
        print(f"Archive unavailable: {exc}")
        raise SystemExit(1)


def _unavailable(exc: Exception) -> None:
    print(f"Archive unavailable: {exc}")
    raise SystemExit(1)


def cmd_sessions(args: argparse.Namespace) -> None:
    settings = OrchestratorSettings()
    store = load_store(settings)
    try:
        records = store.list_archived(project_id=args.project_id)
    except ArchiveUnavailableError as exc:
        _unavailable(exc)
    if args.json:
        payload = [
            {**asdict(record), "archived_at": record.archived_at.isoformat()} for record in records
        ]
        print(json.dumps(payload, indent=2))
    else:
        for record in records:
            suffix = f" ({record.verdict}: {record.reason})" if record.verdict else ""
            print(f"{record.session_id} [{record.status}] {record.project_id}{suffix}")


def cmd_events(args: argparse.Namespace) -> None:
    settings = OrchestratorSettings()
    store = load_store(settings)
    try:
        events = store.fetch_session_events(args.session_id, limit=args.limit)
    except ArchiveUnavailableError as exc:
        _unavailable(exc)
    payload = [
        {
            "event_id": event.id,
            "event_type": event.event_type,
            "timestamp": event.timestamp.isoformat(),
            "metadata": event.metadata,
        }
        for event in events
    ]
    print(json.dumps(payload, indent=2))


def cmd_metrics(args: argparse.Namespace) -> None:
    settings = OrchestratorSettings()
    store = load_store(settings)
    try:
        archived = store.list_archived()
        stuck_events = store.search_events(filters={"event_type": STUCK_EVENT})
        merge_failures = store.search_events(filters={"event_type": "merge.failed"})
    except ArchiveUnavailableError as exc:
        _unavailable(exc)

    status_counts: dict[str, int] = {}
    project_counts: dict[str, int] = {}
    for record in archived:
        status_counts[record.status] = status_counts.get(record.status, 0) + 1
        project_counts[record.project_id] = project_counts.get(record.project_id, 0) + 1

    stuck_sessions: dict[str, int] = {}
    for event in stuck_events:
        session_id = event.metadata.get("session_id")
        if session_id:
            stuck_sessions[session_id] = stuck_sessions.get(session_id, 0) + 1

    metrics = {
        "archived_total": len(archived),
        "status_counts": status_counts,
        "project_counts": project_counts,
        "stuck_events": len(stuck_events),
        "stuck_sessions": stuck_sessions,
        "merge_failures": len(merge_failures),
        "max_consecutive_same_status": settings.max_consecutive_same_status,
        "max_cycle_repetitions": settings.max_cycle_repetitions,
    }

    print(json.dumps(metrics, indent=2))


def cmd_alerts(args: argparse.Namespace) -> None:
    settings = OrchestratorSettings()
    store = load_store(settings)
    try:
        alerts = store.search_events(filters={"event_type": STUCK_EVENT})
    except ArchiveUnavailableError as exc:
        _unavailable(exc)

    project_id = args.project_id
    if project_id:
        alerts = [event for event in alerts if event.metadata.get("project_id") == project_id]

    alerts.sort(key=lambda event: event.timestamp)
    if args.limit is not None and args.limit > 0:
        alerts = alerts[-args.limit :]

    payload = [
        {
            "event_id": getattr(event, "id", None),
            "session_id": event.metadata.get("session_id"),
            "project_id": event.metadata.get("project_id"),
            "verdict": event.metadata.get("verdict"),
            "reason": event.metadata.get("reason"),
            "timestamp": event.timestamp.isoformat(),
        }
        for event in alerts
    ]
    print(json.dumps(payload, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Agent Orchestrator diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_sessions = sub.add_parser("sessions", help="List archived sessions")
    p_sessions.add_argument("--project-id")
    p_sessions.add_argument("--json", action="store_true", help="Output JSON")
    p_sessions.set_defaults(func=cmd_sessions)

    p_events = sub.add_parser("events", help="List archived events for one session")
    p_events.add_argument("session_id")
    p_events.add_argument("--limit", type=int, default=None)
    p_events.set_defaults(func=cmd_events)

    p_metrics = sub.add_parser("metrics", help="Show archived session and stuck counts")
    p_metrics.set_defaults(func=cmd_metrics)

    p_alerts = sub.add_parser("alerts", help="List stuck-session events")
    p_alerts.add_argument("--project-id")
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
