from __future__ import annotations

import asyncio
import logging
from typing import Any

import pytest

from agent_orchestrator.events import create_event
from agent_orchestrator.plugins import (
    LogNotifier,
    NotifyAction,
    PluginManifest,
    PluginNotFoundError,
    PluginRegistry,
    register_builtins,
)
from agent_orchestrator.plugins import registry as registry_module


class StubPluginModule:
    def __init__(self, slot: str, name: str) -> None:
        self.manifest = PluginManifest(slot=slot, name=name, description="stub", version="1.2.3")
        self.configs: list[Any] = []

    def create(self, config=None):
        self.configs.append(config)
        return {"plugin": self.manifest.name, "config": config}


class StubEntryPoint:
    def __init__(self, name: str, target: Any = None, error: Exception | None = None) -> None:
        self.name = name
        self._target = target
        self._error = error

    def load(self):
        if self._error is not None:
            raise self._error
        return self._target


def test_register_and_lookup() -> None:
    registry = PluginRegistry()
    runtime = object()
    registry.register("runtime", "tmux", runtime)

    assert registry.get("runtime", "tmux") is runtime
    assert registry.require("runtime", "tmux") is runtime
    assert registry.get("runtime", "docker") is None
    assert registry.get("runtime", None) is None
    assert [manifest.name for manifest in registry.list("runtime")] == ["tmux"]


def test_require_missing_plugin_raises() -> None:
    with pytest.raises(PluginNotFoundError):
        PluginRegistry().require("scm", "github")


def test_register_rejects_unknown_slot() -> None:
    with pytest.raises(ValueError):
        PluginRegistry().register("database", "postgres", object())


def test_register_module_uses_manifest() -> None:
    registry = PluginRegistry()
    module = StubPluginModule("scm", "github")

    instance = registry.register_module(module, {"token_env": "GH_TOKEN"})

    assert registry.get("scm", "github") is instance
    assert module.configs == [{"token_env": "GH_TOKEN"}]
    assert registry.list("scm")[0].version == "1.2.3"


def test_load_entry_points_skips_broken_plugins(monkeypatch: pytest.MonkeyPatch) -> None:
    good = StubPluginModule("tracker", "linear")
    points = [
        StubEntryPoint("linear", good),
        StubEntryPoint("broken", error=ImportError("missing dependency")),
        StubEntryPoint("not-a-plugin", object()),
    ]
    monkeypatch.setattr(registry_module, "entry_points", lambda group: points)

    registry = PluginRegistry()
    loaded = registry.load_entry_points(configs={"tracker:linear": {"team": "core"}})

    assert [manifest.name for manifest in loaded] == ["linear"]
    assert registry.get("tracker", "linear") == {"plugin": "linear", "config": {"team": "core"}}


def test_register_builtins_keeps_existing_notifier() -> None:
    registry = PluginRegistry()
    custom = object()
    registry.register("notifier", "log", custom)

    register_builtins(registry)

    assert registry.get("notifier", "log") is custom

    fresh = PluginRegistry()
    register_builtins(fresh)
    assert isinstance(fresh.get("notifier", "log"), LogNotifier)


def test_log_notifier_writes_events(caplog: pytest.LogCaptureFixture) -> None:
    notifier = LogNotifier("agent_orchestrator.test_notifications")
    event = create_event(
        "session.stuck", session_id="app-1", project_id="app", message="app-1 is stuck"
    )

    with caplog.at_level(logging.INFO, logger="agent_orchestrator.test_notifications"):
        asyncio.run(
            notifier.notify_with_actions(event, [NotifyAction(label="Kill", action="kill_session:app-1")])
        )

    assert caplog.records[0].levelno == logging.ERROR
    assert "app-1 is stuck" in caplog.records[0].getMessage()
    assert "kill_session:app-1" in caplog.records[1].getMessage()
