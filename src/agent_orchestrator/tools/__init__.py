"""Tool registration for the orchestrator MCP server."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

from fastmcp import Context, FastMCP

from ..lifecycle import Judgment, ReconciliationLoop
from ..projects import ProjectConfig
from ..sessions import (
    ProjectNotFoundError,
    SessionManager,
    SessionNotFoundError,
    SessionStateError,
)


@dataclass(slots=True)
class ToolHandles:
    spawn_session: Any
    list_sessions: Any
    session_status: Any
    session_history: Any
    kill_session: Any
    resume_session: Any
    send_message: Any
    list_projects: Any


def _judgment_payload(judgment: Judgment | None) -> dict[str, Any] | None:
    if judgment is None:
        return None
    return {
        "verdict": judgment.verdict,
        "recommendation": judgment.recommendation,
        "reason": judgment.reason,
        "suggested_action": judgment.suggested_action,
    }


def _project_payload(project: ProjectConfig) -> dict[str, Any]:
    return {
        "id": project.id,
        "name": project.name or project.id,
        "repo_path": str(project.repo_path),
        "default_branch": project.default_branch,
        "auto_merge": project.auto_merge,
        "plugins": {
            slot: getattr(project, slot)
            for slot in ("runtime", "agent", "workspace", "scm", "tracker", "terminal")
            if getattr(project, slot)
        },
        "notifiers": list(project.notifiers),
        "reactions": sorted(project.reactions),
    }


def register_tools(
    server: FastMCP,
    *,
    sessions: SessionManager,
    loop: ReconciliationLoop,
) -> ToolHandles:
    """Register the orchestrator's MCP tools on the server."""

    def _get_session(session_id: str):
        try:
            return sessions.get(session_id)
        except SessionNotFoundError as exc:
            raise ValueError(f"Unknown session '{session_id}'") from exc

    async def _spawn_session(
        project_id: str,
        issue_id: str | None = None,
        branch: str | None = None,
        metadata: dict[str, Any] | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Start a new agent session for a configured project."""

        try:
            session = await sessions.spawn(
                project_id, issue_id=issue_id, branch=branch, metadata=metadata
            )
        except ProjectNotFoundError as exc:
            raise ValueError(f"Unknown project '{project_id}'") from exc

        _emit_log(
            context,
            "info",
            "Spawned agent session",
            extra={"session_id": session.id, "project_id": project_id, "issue_id": issue_id},
        )
        return session.summary()

    def _list_sessions(
        project_id: str | None = None,
        include_archived: bool = False,
        context: Context | None = None,
    ) -> list[dict[str, Any]]:
        listed = [
            session.summary()
            for session in sessions.list(include_archived=include_archived)
            if project_id is None or session.project_id == project_id
        ]
        _emit_log(context, "debug", "Listing sessions", extra={"count": len(listed)})
        return listed

    async def _session_status(
        session_id: str,
        refresh: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        session = _get_session(session_id)
        if refresh:
            await loop.check(session_id)
        payload = session.summary()
        payload["archived"] = sessions.is_archived(session_id)
        payload["merge_in_flight"] = session_id in loop.merges_in_flight()
        payload["judgment"] = _judgment_payload(loop.last_judgment(session_id))
        _emit_log(
            context,
            "debug",
            "Reported session status",
            extra={"session_id": session_id, "status": payload["status"]},
        )
        return payload

    def _session_history(session_id: str, context: Context | None = None) -> dict[str, Any]:
        _get_session(session_id)
        detector = loop.detector
        loop_info = detector.detect_loop(session_id)
        cycle_info = detector.detect_cycle(session_id)
        payload = {
            "session_id": session_id,
            "history": detector.get_history(session_id),
            "loop": (
                {**asdict(loop_info), "detected_at": loop_info.detected_at.isoformat()}
                if loop_info
                else None
            ),
            "cycle": (
                {
                    "pattern": list(cycle_info.pattern),
                    "repetitions": cycle_info.repetitions,
                    "detected_at": cycle_info.detected_at.isoformat(),
                }
                if cycle_info
                else None
            ),
            "judgment": _judgment_payload(detector.judge_cycle(session_id)),
        }
        _emit_log(
            context,
            "debug",
            "Reported session history",
            extra={"session_id": session_id, "entries": len(payload["history"])},
        )
        return payload

    async def _kill_session(session_id: str, context: Context | None = None) -> dict[str, Any]:
        """Request termination; the next reconciliation applies it."""

        _get_session(session_id)
        sessions.request_kill(session_id)
        status = await loop.check(session_id)
        _emit_log(
            context,
            "info",
            "Kill requested",
            extra={"session_id": session_id, "status": status.value},
        )
        return sessions.get(session_id).summary()

    async def _resume_session(session_id: str, context: Context | None = None) -> dict[str, Any]:
        _get_session(session_id)
        try:
            sessions.request_resume(session_id)
        except SessionStateError as exc:
            raise ValueError(str(exc)) from exc
        status = await loop.check(session_id)
        _emit_log(
            context,
            "info",
            "Resume requested",
            extra={"session_id": session_id, "status": status.value},
        )
        return sessions.get(session_id).summary()

    async def _send_message(
        session_id: str,
        message: str,
        context: Context | None = None,
    ) -> dict[str, Any]:
        _get_session(session_id)
        try:
            await sessions.send(session_id, message)
        except SessionStateError as exc:
            raise ValueError(str(exc)) from exc
        _emit_log(
            context,
            "info",
            "Sent message to agent",
            extra={"session_id": session_id, "length": len(message)},
        )
        return {"session_id": session_id, "delivered": True}

    def _list_projects(context: Context | None = None) -> list[dict[str, Any]]:
        catalog = [_project_payload(project) for project in sessions.projects.values()]
        _emit_log(context, "debug", "Listing projects", extra={"count": len(catalog)})
        return catalog

    tool_spawn = server.tool(
        name="spawn_session",
        description=(
            "Spawn a coding-agent session for a configured project, optionally linked to a "
            "tracker issue. Returns the new session summary."
        ),
        annotations={
            "safety": {
                "level": "caution",
                "notes": "Starts a long-running agent with write access to the project repository",
            }
        },
    )(_spawn_session)

    tool_list = server.tool(
        name="list_sessions",
        description="List tracked sessions, optionally filtered by project and including archived ones.",
    )(_list_sessions)

    tool_status = server.tool(
        name="session_status",
        description="Show a session's status and latest stuck-detection verdict (refresh=true reconciles first).",
    )(_session_status)

    tool_history = server.tool(
        name="session_history",
        description="Show the recorded status history and any detected loop or cycle for a session.",
    )(_session_history)

    tool_kill = server.tool(
        name="kill_session",
        description="Kill a session and tear down its runtime.",
    )(_kill_session)

    tool_resume = server.tool(
        name="resume_session",
        description="Resume a stuck session so the agent continues working.",
    )(_resume_session)

    tool_send = server.tool(
        name="send_message",
        description="Send a message to the agent running in a session.",
    )(_send_message)

    tool_projects = server.tool(
        name="list_projects",
        description="List configured projects and their plugins.",
    )(_list_projects)

    return ToolHandles(
        spawn_session=tool_spawn,
        list_sessions=tool_list,
        session_status=tool_status,
        session_history=tool_history,
        kill_session=tool_kill,
        resume_session=tool_resume,
        send_message=tool_send,
        list_projects=tool_projects,
    )


__all__ = ["register_tools", "ToolHandles"]

logger = logging.getLogger(__name__)


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)
