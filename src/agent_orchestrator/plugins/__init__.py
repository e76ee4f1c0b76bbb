"""Plugin capability interfaces and registry."""

from .builtin import LogNotifier, register_builtins
from .interfaces import (
    PLUGIN_SLOTS,
    SCM,
    Agent,
    Notifier,
    NotifyAction,
    PluginManifest,
    PluginSlot,
    Runtime,
    RuntimeCreateConfig,
    Terminal,
    Tracker,
    Workspace,
)
from .registry import ENTRY_POINT_GROUP, PluginModule, PluginNotFoundError, PluginRegistry

__all__ = [
    "Agent",
    "ENTRY_POINT_GROUP",
    "LogNotifier",
    "Notifier",
    "NotifyAction",
    "PLUGIN_SLOTS",
    "PluginManifest",
    "PluginModule",
    "PluginNotFoundError",
    "PluginRegistry",
    "PluginSlot",
    "Runtime",
    "RuntimeCreateConfig",
    "SCM",
    "Terminal",
    "Tracker",
    "Workspace",
    "register_builtins",
]
