"""FastMCP server bootstrap for the orchestrator."""

import asyncio
import json
import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .commands import CommandRunner
from .config import OrchestratorSettings, get_settings
from .lifecycle import MergeStewardService, ReconciliationLoop
from .models import SessionStatus
from .plugins import PLUGIN_SLOTS, PluginRegistry, register_builtins
from .projects import ProjectLoadError, ProjectLoader
from .sessions import SessionManager
from .storage import ArchiveSink, ArchiveStore, ArchiveUnavailableError
from .tools import register_tools


def configure_logging(level: str) -> None:
    """Configure root logging for the orchestrator."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def create_server(
    settings: Optional[OrchestratorSettings] = None,
    *,
    registry: PluginRegistry | None = None,
    runner: CommandRunner | None = None,
    archive: ArchiveSink | None = None,
) -> FastMCP:
    """Wire the session manager, reconciliation loop and MCP tools together."""

    settings = settings or get_settings()
    logger = logging.getLogger(__name__)

    project_loader = ProjectLoader(settings.project_paths)
    project_error: str | None = None
    try:
        projects = project_loader.load_all()
    except ProjectLoadError as exc:
        project_error = str(exc)
        projects = {}
        logger.error("Failed to load projects", extra={"error": project_error})

    if registry is None:
        registry = PluginRegistry()
        registry.load_entry_points()
    register_builtins(registry)

    archive_metadata = {
        "available": False,
        "path": str(settings.archive_path),
        "error": None,
    }
    if archive is None:
        try:
            store = ArchiveStore(settings.archive_path)
            store.ping()
            archive = store
            archive_metadata["available"] = True
        except ArchiveUnavailableError as exc:
            archive_metadata["error"] = str(exc)
    else:
        archive_metadata["available"] = True

    sessions = SessionManager(registry, projects, settings)
    steward = MergeStewardService(runner, step_timeout=settings.merge_step_timeout)
    reconciler = ReconciliationLoop(
        sessions,
        registry,
        projects,
        settings,
        steward=steward,
        archive=archive,
    )

    server = FastMCP(
        name="Agent Orchestrator",
        version=__version__,
        instructions=(
            "Agent Orchestrator runs coding-agent sessions from spawn to merged pull "
            "request. Use the tools to spawn sessions, inspect their status and history, "
            "and kill, resume or message them."
        ),
    )

    handles = register_tools(server, sessions=sessions, loop=reconciler)

    def status_payload(request_id: Any = None) -> dict[str, Any]:
        status_counts = Counter(
            session.status.value for session in sessions.list(include_archived=True)
        )
        stuck: list[dict[str, Any]] = []
        for session in sessions.active():
            if session.status is not SessionStatus.STUCK:
                continue
            judgment = reconciler.last_judgment(session.id)
            stuck.append(
                {
                    "session_id": session.id,
                    "project_id": session.project_id,
                    "reason": judgment.reason if judgment else None,
                }
            )
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "projects": {
                "count": len(projects),
                "ids": sorted(projects),
                "error": project_error,
            },
            "plugins": {
                slot: [manifest.name for manifest in registry.list(slot)] for slot in PLUGIN_SLOTS
            },
            "storage": {"archive": archive_metadata},
            "loop": {
                "running": reconciler.running,
                "poll_interval": settings.poll_interval,
                "poll_failures": dict(reconciler.poll_failures),
                "merges_in_flight": sorted(reconciler.merges_in_flight()),
            },
            "sessions": {
                "active": len(sessions.active()),
                "archived": len(sessions.archived()),
                "status_counts": dict(status_counts),
                "stuck": stuck,
            },
            "request_id": request_id,
        }

    @server.resource(
        "resource://orchestrator/status",
        name="orchestrator_status",
        title="Agent Orchestrator Status",
        description="Provides the current runtime status for the orchestrator.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing sessions, plugins and loop health."""

        return json.dumps(status_payload(getattr(context, "request_id", None)))

    setattr(server, "project_loader", project_loader)
    setattr(server, "registry", registry)
    setattr(server, "archive", archive)
    setattr(server, "archive_metadata", archive_metadata)
    setattr(server, "session_manager", sessions)
    setattr(server, "reconciler", reconciler)
    setattr(server, "status_payload", status_payload)
    setattr(server, "tool_handles", handles)
    return server


async def _serve(server: FastMCP, settings: OrchestratorSettings) -> None:
    reconciler: ReconciliationLoop = getattr(server, "reconciler")
    reconciler.start(settings.poll_interval)
    try:
        await server.run_async()
    finally:
        await reconciler.stop(wait_for_merges=False)


def main() -> None:
    """Entry point for running the orchestrator MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching Agent Orchestrator MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "archive_available": getattr(server, "archive_metadata", {}).get("available"),
        },
    )
    asyncio.run(_serve(server, settings))


if __name__ == "__main__":
    main()
