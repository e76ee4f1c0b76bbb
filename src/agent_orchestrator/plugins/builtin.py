"""Plugins shipped with the orchestrator."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Mapping

from .interfaces import NotifyAction, PluginManifest

if TYPE_CHECKING:
    from ..events import OrchestratorEvent
    from .registry import PluginRegistry

_LEVELS = {
    "urgent": logging.ERROR,
    "warning": logging.WARNING,
    "action": logging.INFO,
    "info": logging.INFO,
}


class LogNotifier:
    """Notifier that writes events to the logging system."""

    def __init__(self, logger_name: str = "agent_orchestrator.notifications") -> None:
        self._logger = logging.getLogger(logger_name)

    async def notify(self, event: "OrchestratorEvent") -> None:
        self._logger.log(
            _LEVELS.get(event.priority, logging.INFO),
            "[%s] %s: %s",
            event.type,
            event.session_id,
            event.message,
            extra={"event_id": event.id, "project_id": event.project_id},
        )

    async def notify_with_actions(
        self, event: "OrchestratorEvent", actions: list[NotifyAction]
    ) -> None:
        await self.notify(event)
        for action in actions:
            self._logger.info("  action %s -> %s", action.label, action.action)


class _LogNotifierModule:
    manifest = PluginManifest(
        slot="notifier",
        name="log",
        description="Write notifications to the application log",
        version="0.1.0",
    )

    @staticmethod
    def create(config: Mapping[str, Any] | None = None) -> LogNotifier:
        name = (config or {}).get("logger_name", "agent_orchestrator.notifications")
        return LogNotifier(str(name))


log_notifier = _LogNotifierModule()

BUILTIN_MODULES = (log_notifier,)


def register_builtins(registry: "PluginRegistry") -> None:
    for module in BUILTIN_MODULES:
        if registry.get(module.manifest.slot, module.manifest.name) is None:
            registry.register_module(module)


__all__ = ["BUILTIN_MODULES", "LogNotifier", "log_notifier", "register_builtins"]
