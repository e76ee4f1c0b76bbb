"""Automatic reactions to session events, with retry tracking and escalation."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Literal

from ..events import NotificationDispatcher, create_event
from ..models import Session, SessionStatus, utcnow
from ..projects import ReactionConfig, parse_duration

logger = logging.getLogger(__name__)

ReactionAction = Literal["send-to-agent", "notify", "escalated", "skipped"]

DEFAULT_MESSAGES: dict[str, str] = {
    "ci-failed": (
        "CI is failing on your PR. Run the failing checks locally, fix the issues, and push."
    ),
    "changes-requested": (
        "Review comments were left on your PR. Read them, address the feedback, and push fixes."
    ),
    "merge-failed": (
        "Merging your PR failed. Make sure the branch is up to date and the tests pass, then push."
    ),
}

_STATUS_REACTIONS: dict[SessionStatus, str] = {
    SessionStatus.CI_FAILED: "ci-failed",
    SessionStatus.CHANGES_REQUESTED: "changes-requested",
    SessionStatus.MERGEABLE: "approved-and-green",
    SessionStatus.STUCK: "agent-stuck",
    SessionStatus.KILLED: "agent-exited",
}


def reaction_key_for(status: SessionStatus) -> str | None:
    return _STATUS_REACTIONS.get(status)


@dataclass(slots=True)
class ReactionTracker:
    attempts: int
    first_triggered: datetime


@dataclass(slots=True, frozen=True)
class ReactionResult:
    key: str
    action: ReactionAction
    success: bool
    escalated: bool = False
    message: str | None = None


MessageSender = Callable[[str, str], Awaitable[None]]


class ReactionEngine:
    """Executes configured reactions and escalates to a human when they stop helping.

    Attempts are counted per ``(session, reaction key)``. A reaction escalates
    once its attempts exceed ``retries`` or a numeric ``escalate_after``, or
    once a duration ``escalate_after`` has elapsed since it first fired.
    """

    def __init__(
        self,
        notifications: NotificationDispatcher,
        send_message: MessageSender,
        *,
        clock: Callable[[], datetime] | None = None,
        send_timeout: float | None = None,
    ) -> None:
        self._notifications = notifications
        self._send_message = send_message
        self._send_timeout = send_timeout
        self._clock = clock or utcnow
        self._trackers: dict[tuple[str, str], ReactionTracker] = {}

    def attempts(self, session_id: str, key: str) -> int:
        tracker = self._trackers.get((session_id, key))
        return tracker.attempts if tracker else 0

    def reset(self, session_id: str, key: str) -> None:
        self._trackers.pop((session_id, key), None)

    def clear_session(self, session_id: str) -> None:
        for tracker_key in [k for k in self._trackers if k[0] == session_id]:
            del self._trackers[tracker_key]

    def handles(self, config: ReactionConfig | None) -> bool:
        """Whether ``config`` takes over notification for its event."""

        if config is None:
            return False
        return config.auto or config.action == "notify"

    def _should_escalate(self, tracker: ReactionTracker, config: ReactionConfig) -> bool:
        if config.retries is not None and tracker.attempts > config.retries:
            return True
        escalate_after = config.escalate_after
        if isinstance(escalate_after, str):
            window = parse_duration(escalate_after)
            elapsed = (self._clock() - tracker.first_triggered).total_seconds()
            if window > 0 and elapsed > window:
                return True
        elif escalate_after is not None and tracker.attempts > escalate_after:
            return True
        return False

    async def execute(
        self,
        session: Session,
        key: str,
        config: ReactionConfig,
        *,
        detail: str | None = None,
    ) -> ReactionResult:
        tracker = self._trackers.setdefault(
            (session.id, key), ReactionTracker(attempts=0, first_triggered=self._clock())
        )
        tracker.attempts += 1

        if self._should_escalate(tracker, config):
            event = create_event(
                "reaction.escalated",
                session_id=session.id,
                project_id=session.project_id,
                message=f"Reaction '{key}' escalated after {tracker.attempts} attempts",
                priority=config.priority or "urgent",
                data={"reaction_key": key, "attempts": tracker.attempts},
                clock=self._clock,
            )
            await self._notifications.notify(event)
            logger.info(
                "Reaction escalated",
                extra={"session_id": session.id, "reaction_key": key, "attempts": tracker.attempts},
            )
            return ReactionResult(key=key, action="escalated", success=True, escalated=True)

        if config.action == "send-to-agent":
            if not config.auto:
                return ReactionResult(key=key, action="skipped", success=True)
            message = config.message or DEFAULT_MESSAGES.get(key)
            if not message:
                return ReactionResult(key=key, action="skipped", success=True)
            if detail:
                message = f"{message}\n\n{detail}"
            try:
                await asyncio.wait_for(
                    self._send_message(session.id, message), timeout=self._send_timeout
                )
            except Exception as exc:
                # Retried on the next trigger; escalation handles persistent failure.
                logger.warning(
                    "Failed to send reaction message",
                    extra={
                        "session_id": session.id,
                        "reaction_key": key,
                        "error": str(exc) or type(exc).__name__,
                    },
                )
                return ReactionResult(key=key, action="send-to-agent", success=False)
            return ReactionResult(key=key, action="send-to-agent", success=True, message=message)

        text = config.message or f"Reaction '{key}' triggered notification"
        if detail:
            text = f"{text}: {detail}"
        event = create_event(
            "reaction.triggered",
            session_id=session.id,
            project_id=session.project_id,
            message=text,
            priority=config.priority or "info",
            data={"reaction_key": key},
            clock=self._clock,
        )
        await self._notifications.notify(event)
        return ReactionResult(key=key, action="notify", success=True, message=text)


__all__ = [
    "DEFAULT_MESSAGES",
    "ReactionEngine",
    "ReactionResult",
    "ReactionTracker",
    "reaction_key_for",
]
