"""Capability interfaces implemented by backend plugins."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal, Protocol

from ..models import (
    ActivityState,
    CIStatus,
    Issue,
    MergeReadiness,
    PRInfo,
    PRState,
    Review,
    ReviewDecision,
    RuntimeHandle,
    Session,
)

if TYPE_CHECKING:
    from ..events import OrchestratorEvent
    from ..projects import ProjectConfig

PluginSlot = Literal["agent", "runtime", "scm", "tracker", "notifier", "workspace", "terminal"]

PLUGIN_SLOTS: tuple[PluginSlot, ...] = (
    "agent",
    "runtime",
    "scm",
    "tracker",
    "notifier",
    "workspace",
    "terminal",
)


@dataclass(slots=True, frozen=True)
class PluginManifest:
    slot: PluginSlot
    name: str
    description: str = ""
    version: str = "0.0.0"


@dataclass(slots=True)
class RuntimeCreateConfig:
    session_id: str
    launch_command: str
    workspace_path: Path | None = None
    environment: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class NotifyAction:
    label: str
    action: str


class Runtime(Protocol):
    async def create(self, config: RuntimeCreateConfig) -> RuntimeHandle:
        ...

    async def destroy(self, handle: RuntimeHandle) -> None:
        ...

    async def is_alive(self, handle: RuntimeHandle) -> bool:
        ...

    async def get_output(self, handle: RuntimeHandle, lines: int = 50) -> str:
        ...

    async def get_metrics(self, handle: RuntimeHandle) -> dict[str, Any]:
        ...

    async def send_message(self, handle: RuntimeHandle, text: str) -> None:
        ...


class Agent(Protocol):
    def get_launch_command(self, session: Session, project: "ProjectConfig") -> str:
        ...

    def detect_activity(self, terminal_output: str) -> ActivityState:
        ...

    async def is_process_running(self, handle: RuntimeHandle) -> bool:
        ...


class SCM(Protocol):
    async def detect_pr(self, session: Session, project: "ProjectConfig") -> PRInfo | None:
        ...

    async def get_pr_state(self, pr: PRInfo) -> PRState:
        ...

    async def get_ci_summary(self, pr: PRInfo) -> CIStatus:
        ...

    async def get_review_decision(self, pr: PRInfo) -> ReviewDecision:
        ...

    async def get_reviews(self, pr: PRInfo) -> list[Review]:
        ...

    async def get_mergeability(self, pr: PRInfo) -> MergeReadiness:
        ...

    async def merge_pr(self, pr: PRInfo, method: str = "squash") -> None:
        ...

    async def close_pr(self, pr: PRInfo) -> None:
        ...


class Tracker(Protocol):
    async def get_issue(self, issue_id: str, project: "ProjectConfig") -> Issue:
        ...

    async def is_completed(self, issue_id: str, project: "ProjectConfig") -> bool:
        ...

    async def list_issues(self, project: "ProjectConfig", *, state: str = "open") -> list[Issue]:
        ...

    async def update_issue(self, issue_id: str, project: "ProjectConfig", **changes: Any) -> None:
        ...

    async def create_issue(self, project: "ProjectConfig", title: str, body: str = "") -> Issue:
        ...


class Notifier(Protocol):
    async def notify(self, event: "OrchestratorEvent") -> None:
        ...

    async def notify_with_actions(
        self, event: "OrchestratorEvent", actions: list[NotifyAction]
    ) -> None:
        ...


class Workspace(Protocol):
    async def create(self, project: "ProjectConfig", session_id: str, branch: str) -> Path:
        ...

    async def destroy(self, path: Path) -> None:
        ...

    async def exists(self, path: Path) -> bool:
        ...


class Terminal(Protocol):
    async def open_session(self, session: Session) -> None:
        ...

    async def is_session_open(self, session: Session) -> bool:
        ...


__all__ = [
    "Agent",
    "Notifier",
    "NotifyAction",
    "PLUGIN_SLOTS",
    "PluginManifest",
    "PluginSlot",
    "Runtime",
    "RuntimeCreateConfig",
    "SCM",
    "Terminal",
    "Tracker",
    "Workspace",
]
