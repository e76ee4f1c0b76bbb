from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from agent_orchestrator.config import OrchestratorSettings
from agent_orchestrator.models import RuntimeHandle, SessionStatus
from agent_orchestrator.plugins import PluginRegistry
from agent_orchestrator.projects import ProjectConfig
from agent_orchestrator.sessions import (
    ProjectNotFoundError,
    SessionManager,
    SessionNotFoundError,
    SessionStateError,
)


class StubRuntime:
    def __init__(self, fail: bool = False, delay: float = 0.0) -> None:
        self.fail = fail
        self.delay = delay
        self.configs = []
        self.sent = []

    async def create(self, config):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("tmux not running")
        self.configs.append(config)
        return RuntimeHandle(id=f"rt-{config.session_id}", runtime_name="stub")

    async def send_message(self, handle, text):
        self.sent.append((handle.id, text))


class StubAgent:
    def get_launch_command(self, session, project):
        return f"agent --branch {session.branch}"


class StubWorkspace:
    def __init__(self, root: Path) -> None:
        self.root = root
        self.destroyed = []

    async def create(self, project, session_id, branch):
        path = self.root / session_id
        path.mkdir()
        return path

    async def destroy(self, path):
        self.destroyed.append(path)


def build_manager(tmp_path: Path, *, runtime=None, settings=None, **project_fields):
    fields = {"id": "app", "repo_path": tmp_path, "runtime": "stub", "agent": "stub"}
    fields.update(project_fields)
    project = ProjectConfig(**fields)
    registry = PluginRegistry()
    registry.register("runtime", "stub", runtime or StubRuntime())
    registry.register("agent", "stub", StubAgent())
    registry.register("workspace", "dir", StubWorkspace(tmp_path))
    manager = SessionManager(registry, {"app": project}, settings or OrchestratorSettings())
    return manager, registry


def test_spawn_allocates_ids_and_starts_runtime(tmp_path: Path) -> None:
    runtime = StubRuntime()
    manager, _ = build_manager(tmp_path, runtime=runtime)

    async def scenario():
        first = await manager.spawn("app", issue_id="INT-7")
        second = await manager.spawn("app", branch="fix/login")
        return first, second

    first, second = asyncio.run(scenario())

    assert (first.id, second.id) == ("app-1", "app-2")
    assert first.status is SessionStatus.SPAWNING
    assert first.branch == "feat/INT-7"
    assert second.branch == "fix/login"
    assert first.runtime_handle.id == "rt-app-1"
    assert runtime.configs[0].launch_command == "agent --branch feat/INT-7"
    assert runtime.configs[0].workspace_path == tmp_path
    assert runtime.configs[0].environment == {"AO_SESSION_ID": "app-1", "AO_PROJECT_ID": "app"}
    assert [session.id for session in manager.active()] == ["app-1", "app-2"]


def test_concurrent_spawns_get_distinct_ids(tmp_path: Path) -> None:
    runtime = StubRuntime(delay=0.01)
    manager, _ = build_manager(tmp_path, runtime=runtime)

    async def scenario():
        return await asyncio.gather(manager.spawn("app"), manager.spawn("app"), manager.spawn("app"))

    sessions = asyncio.run(scenario())

    assert sorted(session.id for session in sessions) == ["app-1", "app-2", "app-3"]
    assert sorted(config.session_id for config in runtime.configs) == ["app-1", "app-2", "app-3"]
    assert len(manager.active()) == 3


def test_failed_spawn_releases_its_id(tmp_path: Path) -> None:
    runtime = StubRuntime(fail=True, delay=0.01)
    manager, _ = build_manager(tmp_path, runtime=runtime)

    async def scenario():
        with pytest.raises(RuntimeError):
            await manager.spawn("app")
        runtime.fail = False
        return await manager.spawn("app")

    session = asyncio.run(scenario())

    assert session.id == "app-1"
    assert [item.id for item in manager.active()] == ["app-1"]


def test_spawn_creates_workspace(tmp_path: Path) -> None:
    runtime = StubRuntime()
    manager, _ = build_manager(tmp_path, runtime=runtime, workspace="dir")

    session = asyncio.run(manager.spawn("app"))

    assert session.workspace_path == tmp_path / "app-1"
    assert runtime.configs[0].workspace_path == tmp_path / "app-1"


def test_spawn_failure_removes_workspace(tmp_path: Path) -> None:
    manager, registry = build_manager(tmp_path, runtime=StubRuntime(fail=True), workspace="dir")

    with pytest.raises(RuntimeError):
        asyncio.run(manager.spawn("app"))

    assert registry.get("workspace", "dir").destroyed == [tmp_path / "app-1"]
    assert manager.active() == []


def test_spawn_requires_agent_with_runtime(tmp_path: Path) -> None:
    manager, _ = build_manager(tmp_path, agent=None)

    with pytest.raises(SessionStateError):
        asyncio.run(manager.spawn("app"))


def test_spawn_unknown_project(tmp_path: Path) -> None:
    manager, _ = build_manager(tmp_path)

    with pytest.raises(ProjectNotFoundError):
        asyncio.run(manager.spawn("other"))


def test_plugin_name_falls_back_to_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AO_DEFAULT_RUNTIME", "stub")
    manager, _ = build_manager(tmp_path, runtime=None, settings=OrchestratorSettings())
    project = ProjectConfig(id="bare", repo_path=tmp_path)

    assert manager.plugin_name(project, "runtime") == "stub"
    assert manager.plugin_name(project, "scm") is None


def test_kill_and_resume_requests(tmp_path: Path) -> None:
    manager, _ = build_manager(tmp_path)
    session = asyncio.run(manager.spawn("app"))

    with pytest.raises(SessionStateError):
        manager.request_resume(session.id)

    manager.request_kill(session.id)
    assert session.kill_requested

    session.status = SessionStatus.STUCK
    manager.request_resume(session.id)
    assert session.resume_requested


def test_send_routes_to_runtime(tmp_path: Path) -> None:
    runtime = StubRuntime()
    manager, _ = build_manager(tmp_path, runtime=runtime)

    async def scenario():
        session = await manager.spawn("app")
        await manager.send(session.id, "please rebase")

    asyncio.run(scenario())

    assert runtime.sent == [("rt-app-1", "please rebase")]


def test_send_without_runtime_fails(tmp_path: Path) -> None:
    manager, _ = build_manager(tmp_path, runtime=None)
    bare = ProjectConfig(id="bare", repo_path=tmp_path)
    manager.projects["bare"] = bare

    async def scenario():
        session = await manager.spawn("bare")
        await manager.send(session.id, "hello")

    with pytest.raises(SessionStateError):
        asyncio.run(scenario())


def test_archive_moves_session(tmp_path: Path) -> None:
    manager, _ = build_manager(tmp_path)
    session = asyncio.run(manager.spawn("app"))

    manager.archive(session.id)

    assert manager.is_archived(session.id)
    assert manager.active() == []
    assert manager.get(session.id) is session
    assert manager.list(include_archived=True) == [session]
    with pytest.raises(SessionNotFoundError):
        manager.get("app-9")
