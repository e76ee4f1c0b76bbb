"""Project configuration models."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

EventPriority = Literal["urgent", "action", "warning", "info"]

REACTION_KEYS = (
    "ci-failed",
    "changes-requested",
    "approved-and-green",
    "agent-stuck",
    "agent-exited",
    "merge-failed",
)

_DURATION_PATTERN = re.compile(r"^(\d+)(s|m|h)$")


def parse_duration(value: str) -> float:
    """Convert ``"30s"``, ``"10m"`` or ``"1h"`` to seconds; unparsable input yields 0."""

    match = _DURATION_PATTERN.match(value.strip())
    if match is None:
        return 0.0
    amount = int(match.group(1))
    return float(amount * {"s": 1, "m": 60, "h": 3600}[match.group(2)])


class ReactionConfig(BaseModel):
    """How the orchestrator responds automatically to one kind of event."""

    auto: bool = Field(default=True, description="Whether the reaction fires without a human.")
    action: Literal["send-to-agent", "notify"] = Field(
        default="notify", description="What the reaction does when it fires."
    )
    message: str | None = Field(
        default=None, description="Text sent to the agent or included in the notification."
    )
    priority: EventPriority | None = Field(
        default=None, description="Override for the notification priority."
    )
    retries: int | None = Field(
        default=None, description="Attempts allowed before escalating to a human."
    )
    escalate_after: int | str | None = Field(
        default=None,
        description="Attempt count, or a duration such as '10m', after which to escalate.",
    )

    @field_validator("retries")
    @classmethod
    def _validate_retries(cls, value: int | None) -> int | None:
        if value is not None and value < 0:
            raise ValueError("retries must be >= 0")
        return value

    @field_validator("escalate_after")
    @classmethod
    def _validate_escalate_after(cls, value: int | str | None) -> int | str | None:
        if isinstance(value, str) and not _DURATION_PATTERN.match(value.strip()):
            raise ValueError("escalate_after must be an attempt count or a duration like '10m'")
        return value


class ProjectConfig(BaseModel):
    """Everything the orchestrator needs to run sessions for one repository."""

    id: str = Field(..., description="Unique identifier for the project.")
    name: str = Field(default="", description="Display name.")
    repo_path: Path = Field(..., description="Local clone used for worktrees and merges.")
    default_branch: str = Field(default="main", description="Branch pull requests target.")
    session_prefix: str | None = Field(
        default=None, description="Prefix for session ids; defaults to the project id."
    )
    runtime: str | None = None
    agent: str | None = None
    workspace: str | None = None
    scm: str | None = None
    tracker: str | None = None
    terminal: str | None = None
    notifiers: list[str] = Field(default_factory=list)
    notification_routing: dict[EventPriority, list[str]] = Field(default_factory=dict)
    reactions: dict[str, ReactionConfig] = Field(default_factory=dict)
    auto_merge: bool = Field(
        default=False, description="Merge automatically once a pull request is mergeable."
    )
    merge_method: Literal["squash", "merge"] = "squash"
    test_command: str | None = Field(
        default=None,
        description="Command run in an isolated worktree before merging; absent means merge via SCM.",
    )
    allowed_reviewers: list[str] = Field(
        default_factory=list,
        description="When set, only reviews from these users count toward the review decision.",
    )
    agent_config: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Project id must not be empty")
        return normalized

    @field_validator("reactions")
    @classmethod
    def _validate_reaction_keys(cls, value: dict[str, ReactionConfig]) -> dict[str, ReactionConfig]:
        unknown = sorted(set(value) - set(REACTION_KEYS))
        if unknown:
            raise ValueError(f"Unknown reaction keys: {', '.join(unknown)}")
        return value

    @field_validator("notifiers", "allowed_reviewers", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        if isinstance(value, (list, tuple)):
            return list(value)
        raise TypeError("notifiers and allowed_reviewers must be sequences of strings")

    @property
    def prefix(self) -> str:
        return self.session_prefix or self.id


__all__ = [
    "EventPriority",
    "ProjectConfig",
    "REACTION_KEYS",
    "ReactionConfig",
    "parse_duration",
]
