"""Orchestrator events and notification routing."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping

from .models import SessionStatus, utcnow
from .projects import EventPriority, ProjectConfig

if TYPE_CHECKING:
    from .plugins import NotifyAction, PluginRegistry

logger = logging.getLogger(__name__)

_STATUS_EVENT_TYPES: dict[SessionStatus, str] = {
    SessionStatus.WORKING: "session.working",
    SessionStatus.PR_OPEN: "pr.created",
    SessionStatus.CI_FAILED: "ci.failing",
    SessionStatus.REVIEW_PENDING: "review.pending",
    SessionStatus.CHANGES_REQUESTED: "review.changes_requested",
    SessionStatus.APPROVED: "review.approved",
    SessionStatus.MERGEABLE: "merge.ready",
    SessionStatus.MERGING: "merge.started",
    SessionStatus.MERGED: "merge.completed",
    SessionStatus.KILLED: "session.killed",
    SessionStatus.STUCK: "session.stuck",
    SessionStatus.CLEANUP: "session.cleanup",
    SessionStatus.DONE: "session.done",
    SessionStatus.TERMINATED: "session.terminated",
}


@dataclass(slots=True)
class OrchestratorEvent:
    """A notable change in a session's life, routed to notifiers by priority."""

    id: str
    type: str
    priority: EventPriority
    session_id: str
    project_id: str
    timestamp: datetime
    message: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "priority": self.priority,
            "session_id": self.session_id,
            "project_id": self.project_id,
            "timestamp": self.timestamp.isoformat(),
            "message": self.message,
            "data": dict(self.data),
        }


def infer_priority(event_type: str) -> EventPriority:
    if "stuck" in event_type or "needs_input" in event_type or "errored" in event_type:
        return "urgent"
    if event_type.startswith("summary."):
        return "info"
    if any(
        marker in event_type
        for marker in ("approved", "ready", "merged", "completed", "escalated")
    ):
        return "action"
    if "fail" in event_type or "changes_requested" in event_type or "conflicts" in event_type:
        return "warning"
    return "info"


def status_to_event_type(status: SessionStatus) -> str | None:
    return _STATUS_EVENT_TYPES.get(status)


def create_event(
    event_type: str,
    *,
    session_id: str,
    project_id: str,
    message: str,
    priority: EventPriority | None = None,
    data: dict[str, Any] | None = None,
    clock: Callable[[], datetime] | None = None,
) -> OrchestratorEvent:
    return OrchestratorEvent(
        id=uuid.uuid4().hex,
        type=event_type,
        priority=priority or infer_priority(event_type),
        session_id=session_id,
        project_id=project_id,
        timestamp=(clock or utcnow)(),
        message=message,
        data=dict(data or {}),
    )


def route_notifiers(
    priority: EventPriority,
    project: ProjectConfig | None,
    default_notifiers: Iterable[str],
) -> list[str]:
    """Names of the notifiers that should receive an event of ``priority``.

    Project routing for the priority wins, then the project's own notifier
    list, then the global defaults.
    """

    if project is not None:
        routed = project.notification_routing.get(priority)
        if routed:
            return list(routed)
        if project.notifiers:
            return list(project.notifiers)
    return list(default_notifiers)


class NotificationDispatcher:
    """Deliver events to the notifiers routed for their priority.

    Delivery failures, including notifiers that exceed ``timeout``, are logged
    and counted, never raised.
    """

    def __init__(
        self,
        registry: "PluginRegistry",
        projects: Mapping[str, ProjectConfig],
        default_notifiers: Iterable[str] = ("log",),
        *,
        timeout: float | None = None,
    ) -> None:
        self._registry = registry
        self._projects = projects
        self._default_notifiers = tuple(default_notifiers)
        self._timeout = timeout
        self.failures = 0

    async def notify(
        self,
        event: OrchestratorEvent,
        actions: list["NotifyAction"] | None = None,
    ) -> int:
        project = self._projects.get(event.project_id)
        delivered = 0
        for name in route_notifiers(event.priority, project, self._default_notifiers):
            notifier = self._registry.get("notifier", name)
            if notifier is None:
                logger.debug("Notifier not registered", extra={"notifier": name})
                continue
            try:
                if actions:
                    delivery = notifier.notify_with_actions(event, actions)
                else:
                    delivery = notifier.notify(event)
                await asyncio.wait_for(delivery, timeout=self._timeout)
            except Exception as exc:
                self.failures += 1
                logger.warning(
                    "Notifier failed",
                    extra={
                        "notifier": name,
                        "event_type": event.type,
                        "error": str(exc) or type(exc).__name__,
                    },
                )
                continue
            delivered += 1
        return delivered


__all__ = [
    "NotificationDispatcher",
    "OrchestratorEvent",
    "create_event",
    "infer_priority",
    "route_notifiers",
    "status_to_event_type",
]
