"""Core data records shared by the orchestrator and its plugins."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from pathlib import Path
from typing import Any, Literal


class SessionStatus(StrEnum):
    """Closed set of states a session moves through."""

    SPAWNING = "spawning"
    WORKING = "working"
    PR_OPEN = "pr_open"
    CI_FAILED = "ci_failed"
    REVIEW_PENDING = "review_pending"
    CHANGES_REQUESTED = "changes_requested"
    APPROVED = "approved"
    MERGEABLE = "mergeable"
    MERGING = "merging"
    MERGED = "merged"
    KILLED = "killed"
    STUCK = "stuck"
    CLEANUP = "cleanup"
    DONE = "done"
    TERMINATED = "terminated"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        SessionStatus.MERGED,
        SessionStatus.KILLED,
        SessionStatus.DONE,
        SessionStatus.TERMINATED,
    }
)

PRState = Literal["open", "merged", "closed"]
CIStatus = Literal["none", "pending", "passing", "failing"]
ReviewDecision = Literal["none", "pending", "approved", "changes_requested"]
ActivityState = Literal["active", "idle", "waiting_input", "exited"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class PRInfo:
    """Pull request discovered for a session branch."""

    number: int
    url: str
    branch: str
    base_branch: str
    title: str = ""
    owner: str = ""
    repo: str = ""
    is_draft: bool = False


@dataclass(slots=True)
class MergeReadiness:
    mergeable: bool
    ci_passing: bool = False
    approved: bool = False
    no_conflicts: bool = True
    blockers: list[str] = field(default_factory=list)


@dataclass(slots=True)
class Review:
    author: str
    state: Literal["approved", "changes_requested", "commented", "pending", "dismissed"]
    submitted_at: datetime


@dataclass(slots=True)
class Issue:
    id: str
    title: str
    url: str = ""
    state: Literal["open", "in_progress", "closed", "cancelled"] = "open"
    labels: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RuntimeHandle:
    """Opaque reference to a live compute backend, owned by the runtime plugin."""

    id: str
    runtime_name: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Session:
    """One tracked unit of agent work."""

    id: str
    project_id: str
    status: SessionStatus = SessionStatus.SPAWNING
    branch: str | None = None
    pr: PRInfo | None = None
    issue_id: str | None = None
    runtime_handle: RuntimeHandle | None = None
    workspace_path: Path | None = None
    created_at: datetime = field(default_factory=utcnow)
    last_activity_at: datetime = field(default_factory=utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)
    kill_requested: bool = False
    resume_requested: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def summary(self) -> dict[str, Any]:
        return {
            "session_id": self.id,
            "project_id": self.project_id,
            "status": self.status.value,
            "branch": self.branch,
            "issue_id": self.issue_id,
            "pr_url": self.pr.url if self.pr else None,
            "runtime": self.runtime_handle.runtime_name if self.runtime_handle else None,
            "created_at": self.created_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
            "metadata": dict(self.metadata),
        }


__all__ = [
    "ActivityState",
    "CIStatus",
    "Issue",
    "MergeReadiness",
    "PRInfo",
    "PRState",
    "Review",
    "ReviewDecision",
    "RuntimeHandle",
    "Session",
    "SessionStatus",
    "TERMINAL_STATUSES",
    "utcnow",
]
