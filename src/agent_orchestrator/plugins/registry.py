"""Plugin registry: resolves a (slot, name) pair to a plugin instance.

The registry is an ordinary value built once at startup and handed to the
components that need capability lookups.
"""

from __future__ import annotations

import logging
from importlib.metadata import entry_points
from typing import Any, Mapping, Protocol

from .interfaces import PLUGIN_SLOTS, PluginManifest, PluginSlot

ENTRY_POINT_GROUP = "agent_orchestrator.plugins"

logger = logging.getLogger(__name__)


class PluginNotFoundError(LookupError):
    """Raised when a required plugin has not been registered."""


class PluginModule(Protocol):
    manifest: PluginManifest

    def create(self, config: Mapping[str, Any] | None = None) -> Any:
        ...


def _is_plugin_module(candidate: Any) -> bool:
    return isinstance(getattr(candidate, "manifest", None), PluginManifest) and callable(
        getattr(candidate, "create", None)
    )


class PluginRegistry:
    """Lookup table of plugin instances keyed by slot and name."""

    def __init__(self) -> None:
        self._plugins: dict[tuple[str, str], tuple[PluginManifest, Any]] = {}

    def register(
        self,
        slot: PluginSlot,
        name: str,
        instance: Any,
        manifest: PluginManifest | None = None,
    ) -> None:
        if slot not in PLUGIN_SLOTS:
            raise ValueError(f"Unknown plugin slot '{slot}'")
        self._plugins[(slot, name)] = (manifest or PluginManifest(slot=slot, name=name), instance)

    def register_module(self, module: PluginModule, config: Mapping[str, Any] | None = None) -> Any:
        """Instantiate a plugin module and register the instance under its manifest."""

        manifest = module.manifest
        instance = module.create(config)
        self.register(manifest.slot, manifest.name, instance, manifest)
        return instance

    def get(self, slot: PluginSlot, name: str | None) -> Any | None:
        if not name:
            return None
        entry = self._plugins.get((slot, name))
        return entry[1] if entry else None

    def require(self, slot: PluginSlot, name: str) -> Any:
        instance = self.get(slot, name)
        if instance is None:
            raise PluginNotFoundError(f"No {slot} plugin registered as '{name}'")
        return instance

    def list(self, slot: PluginSlot) -> list[PluginManifest]:
        return [manifest for (entry_slot, _), (manifest, _) in self._plugins.items() if entry_slot == slot]

    def load_entry_points(
        self,
        group: str = ENTRY_POINT_GROUP,
        configs: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> list[PluginManifest]:
        """Register every installed plugin module advertised under ``group``.

        ``configs`` maps ``"slot:name"`` to that plugin's configuration. A
        plugin that fails to import or construct is logged and skipped.
        """

        loaded: list[PluginManifest] = []
        for entry_point in entry_points(group=group):
            try:
                module = entry_point.load()
                if not _is_plugin_module(module):
                    logger.warning(
                        "Entry point is not a plugin module",
                        extra={"entry_point": entry_point.name},
                    )
                    continue
                key = f"{module.manifest.slot}:{module.manifest.name}"
                self.register_module(module, (configs or {}).get(key))
            except Exception as exc:
                logger.warning(
                    "Failed to load plugin",
                    extra={"entry_point": entry_point.name, "error": str(exc)},
                )
                continue
            loaded.append(module.manifest)
        return loaded


__all__ = ["ENTRY_POINT_GROUP", "PluginModule", "PluginNotFoundError", "PluginRegistry"]
