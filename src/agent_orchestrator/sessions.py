"""In-memory session table and session lifecycle operations."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Mapping

from .config import OrchestratorSettings
from .models import Session, SessionStatus, utcnow
from .plugins import PluginRegistry, PluginSlot, RuntimeCreateConfig
from .projects import ProjectConfig

logger = logging.getLogger(__name__)


class SessionNotFoundError(KeyError):
    """Raised when a session id is not tracked."""


class ProjectNotFoundError(KeyError):
    """Raised when a project id is not configured."""


class SessionStateError(RuntimeError):
    """Raised when an operation does not apply to the session's current state."""


class SessionManager:
    """Owns the active and archived session tables.

    Sessions are created by ``spawn`` and only moved, never deleted: once a
    session is terminal the reconciliation loop calls ``archive`` which
    transfers it to the archived table.
    """

    def __init__(
        self,
        registry: PluginRegistry,
        projects: Mapping[str, ProjectConfig],
        settings: OrchestratorSettings,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._registry = registry
        self._projects = dict(projects)
        self._settings = settings
        self._clock = clock or utcnow
        self._active: dict[str, Session] = {}
        self._archived: dict[str, Session] = {}
        self._reserved: set[str] = set()

    @property
    def projects(self) -> dict[str, ProjectConfig]:
        return self._projects

    def project(self, project_id: str) -> ProjectConfig:
        try:
            return self._projects[project_id]
        except KeyError as exc:
            raise ProjectNotFoundError(project_id) from exc

    def plugin_name(self, project: ProjectConfig, slot: PluginSlot) -> str | None:
        """Plugin configured for ``slot`` on ``project``, falling back to settings defaults."""

        configured = getattr(project, slot, None)
        if configured:
            return configured
        return getattr(self._settings, f"default_{slot}", None)

    def _reserve_session_id(self, prefix: str) -> str:
        """Claim the lowest free ``<prefix>-<n>`` id, including ids still being spawned."""

        number = 1
        while True:
            candidate = f"{prefix}-{number}"
            if (
                candidate not in self._active
                and candidate not in self._archived
                and candidate not in self._reserved
            ):
                self._reserved.add(candidate)
                return candidate
            number += 1

    async def spawn(
        self,
        project_id: str,
        *,
        issue_id: str | None = None,
        branch: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Session:
        project = self.project(project_id)
        session_id = self._reserve_session_id(project.prefix)
        now = self._clock()
        session = Session(
            id=session_id,
            project_id=project.id,
            status=SessionStatus.SPAWNING,
            branch=branch or (f"feat/{issue_id}" if issue_id else f"session/{session_id}"),
            issue_id=issue_id,
            created_at=now,
            last_activity_at=now,
            metadata=dict(metadata or {}),
        )

        try:
            await self._provision(session, project)
            self._active[session.id] = session
        finally:
            self._reserved.discard(session.id)
        logger.info(
            "Spawned session",
            extra={"session_id": session.id, "project_id": project.id, "branch": session.branch},
        )
        return session

    async def _provision(self, session: Session, project: ProjectConfig) -> None:
        workspace_name = self.plugin_name(project, "workspace")
        workspace = self._registry.require("workspace", workspace_name) if workspace_name else None
        if workspace is not None:
            session.workspace_path = await workspace.create(project, session.id, session.branch)

        runtime_name = self.plugin_name(project, "runtime")
        if runtime_name:
            runtime = self._registry.require("runtime", runtime_name)
            agent_name = self.plugin_name(project, "agent")
            if not agent_name:
                raise SessionStateError(
                    f"Project '{project.id}' has a runtime but no agent plugin configured"
                )
            agent = self._registry.require("agent", agent_name)
            try:
                session.runtime_handle = await runtime.create(
                    RuntimeCreateConfig(
                        session_id=session.id,
                        launch_command=agent.get_launch_command(session, project),
                        workspace_path=session.workspace_path or project.repo_path,
                        environment={
                            "AO_SESSION_ID": session.id,
                            "AO_PROJECT_ID": project.id,
                        },
                    )
                )
            except Exception:
                if workspace is not None and session.workspace_path is not None:
                    try:
                        await workspace.destroy(session.workspace_path)
                    except Exception as cleanup_exc:
                        logger.warning(
                            "Failed to remove workspace after spawn failure",
                            extra={"session_id": session.id, "error": str(cleanup_exc)},
                        )
                raise

    def get(self, session_id: str) -> Session:
        session = self._active.get(session_id) or self._archived.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def list(self, *, include_archived: bool = False) -> list[Session]:
        sessions = list(self._active.values())
        if include_archived:
            sessions.extend(self._archived.values())
        return sessions

    def active(self) -> list[Session]:
        return list(self._active.values())

    def archived(self) -> list[Session]:
        return list(self._archived.values())

    def is_archived(self, session_id: str) -> bool:
        return session_id in self._archived

    def request_kill(self, session_id: str) -> Session:
        session = self.get(session_id)
        if not session.is_terminal:
            session.kill_requested = True
        return session

    def request_resume(self, session_id: str) -> Session:
        session = self.get(session_id)
        if session.status is not SessionStatus.STUCK:
            raise SessionStateError(
                f"Session '{session_id}' is {session.status.value}, only stuck sessions can resume"
            )
        session.resume_requested = True
        return session

    async def send(self, session_id: str, message: str) -> None:
        session = self.get(session_id)
        if session.runtime_handle is None:
            raise SessionStateError(f"Session '{session_id}' has no runtime to message")
        runtime = self._registry.require("runtime", session.runtime_handle.runtime_name)
        await runtime.send_message(session.runtime_handle, message)
        session.last_activity_at = self._clock()

    def archive(self, session_id: str) -> Session:
        session = self._active.pop(session_id, None)
        if session is None:
            return self.get(session_id)
        self._archived[session_id] = session
        return session


__all__ = [
    "ProjectNotFoundError",
    "SessionManager",
    "SessionNotFoundError",
    "SessionStateError",
]
