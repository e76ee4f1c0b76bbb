from __future__ import annotations

import asyncio
from pathlib import Path
import textwrap

import pytest

from agent_orchestrator.config import OrchestratorSettings
from agent_orchestrator.models import RuntimeHandle
from agent_orchestrator.plugins import PluginRegistry
from agent_orchestrator.server import create_server
from agent_orchestrator.storage import ArchiveUnavailableError


class StubArchive:
    def __init__(self) -> None:
        self.events = []
        self.archived = []

    def record_orchestrator_event(self, event):
        self.events.append(event)

    def archive_session(self, session, history, judgment=None):
        self.archived.append(session.id)


class StubRuntime:
    async def create(self, config):
        return RuntimeHandle(id=f"rt-{config.session_id}", runtime_name="stub")

    async def destroy(self, handle):
        return None

    async def is_alive(self, handle):
        return True

    async def get_output(self, handle, lines: int = 50):
        return ""


class StubAgent:
    def get_launch_command(self, session, project):
        return "agent"

    def detect_activity(self, terminal_output):
        return "active"

    async def is_process_running(self, handle):
        return True


def write_project(directory: Path) -> None:
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "app.yaml").write_text(
        textwrap.dedent(
            """
            id: app
            repo_path: .
            runtime: stub
            agent: stub
            """
        ).strip(),
        encoding="utf-8",
    )


def make_settings(tmp_path: Path) -> OrchestratorSettings:
    return OrchestratorSettings(
        AO_PROJECT_PATHS=str(tmp_path / "projects"),
        AO_ARCHIVE_PATH=str(tmp_path / "archive"),
    )


def make_registry() -> PluginRegistry:
    registry = PluginRegistry()
    registry.register("runtime", "stub", StubRuntime())
    registry.register("agent", "stub", StubAgent())
    return registry


def test_create_server_wires_components(tmp_path: Path) -> None:
    write_project(tmp_path / "projects")
    archive = StubArchive()

    server = create_server(make_settings(tmp_path), registry=make_registry(), archive=archive)

    payload = server.status_payload("req-1")  # type: ignore[attr-defined]
    assert payload["request_id"] == "req-1"
    assert payload["projects"] == {"count": 1, "ids": ["app"], "error": None}
    assert payload["plugins"]["runtime"] == ["stub"]
    assert payload["plugins"]["notifier"] == ["log"]
    assert payload["storage"]["archive"]["available"] is True
    assert payload["loop"]["running"] is False
    assert payload["sessions"]["active"] == 0
    assert server.archive is archive  # type: ignore[attr-defined]


def test_status_payload_tracks_sessions(tmp_path: Path) -> None:
    write_project(tmp_path / "projects")
    server = create_server(make_settings(tmp_path), registry=make_registry(), archive=StubArchive())
    handles = server.tool_handles  # type: ignore[attr-defined]
    reconciler = server.reconciler  # type: ignore[attr-defined]

    async def scenario():
        await handles.spawn_session.fn(project_id="app")  # type: ignore[attr-defined]
        await handles.spawn_session.fn(project_id="app")  # type: ignore[attr-defined]
        await reconciler.tick()
        await handles.kill_session.fn(session_id="app-2")  # type: ignore[attr-defined]

    asyncio.run(scenario())

    sessions = server.status_payload()["sessions"]  # type: ignore[attr-defined]
    assert sessions["active"] == 1
    assert sessions["archived"] == 1
    assert sessions["status_counts"] == {"working": 1, "killed": 1}
    assert sessions["stuck"] == []


def test_create_server_reports_project_errors(tmp_path: Path) -> None:
    projects = tmp_path / "projects"
    projects.mkdir()
    (projects / "broken.yaml").write_text("id: \nrepo_path: .", encoding="utf-8")

    server = create_server(make_settings(tmp_path), registry=make_registry(), archive=StubArchive())

    payload = server.status_payload()  # type: ignore[attr-defined]
    assert payload["projects"]["count"] == 0
    assert "broken.yaml" in payload["projects"]["error"]


def test_create_server_without_archive(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    class UnavailableStore:
        def __init__(self, *_, **__):
            pass

        def ping(self) -> bool:
            raise ArchiveUnavailableError("chromadb package is not installed")

    monkeypatch.setattr("agent_orchestrator.server.ArchiveStore", UnavailableStore)

    server = create_server(make_settings(tmp_path))

    metadata = server.archive_metadata  # type: ignore[attr-defined]
    assert metadata["available"] is False
    assert metadata["error"] == "chromadb package is not installed"
    assert server.archive is None  # type: ignore[attr-defined]
    assert server.status_payload()["plugins"]["notifier"] == ["log"]  # type: ignore[attr-defined]
