"""Session status state machine.

``transition`` is a pure, total mapping from the current status and the
observations gathered during one reconciliation tick to the next status.
Observation fields left as ``None`` are unknown for this tick and never force
a move on their own.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from ..models import ActivityState, CIStatus, PRState, ReviewDecision, SessionStatus
from .cycle_detector import Judgment

MergeOutcome = Literal["merged", "failed"]

# Statuses whose repetition across polls means the agent has not acted yet.
AGENT_BLOCKED_STATUSES = frozenset(
    {
        SessionStatus.SPAWNING,
        SessionStatus.CI_FAILED,
        SessionStatus.CHANGES_REQUESTED,
    }
)

_PR_STATUSES = frozenset(
    {
        SessionStatus.PR_OPEN,
        SessionStatus.CI_FAILED,
        SessionStatus.REVIEW_PENDING,
        SessionStatus.CHANGES_REQUESTED,
        SessionStatus.APPROVED,
        SessionStatus.MERGEABLE,
    }
)


@dataclass(slots=True, frozen=True)
class Observation:
    """Everything learned about a session during one tick."""

    kill_requested: bool = False
    resume_requested: bool = False
    runtime_alive: bool | None = None
    activity: ActivityState | None = None
    pr_state: PRState | None = None
    ci_status: CIStatus | None = None
    review_decision: ReviewDecision | None = None
    mergeable: bool | None = None
    issue_completed: bool | None = None
    merge_outcome: MergeOutcome | None = None
    cleanup_complete: bool = False

    @property
    def agent_active(self) -> bool:
        return self.activity == "active"


def _needs_agent(
    current: SessionStatus,
    blocked: SessionStatus,
    obs: Observation,
) -> SessionStatus:
    # The agent picking the work back up moves the session to working until it goes idle.
    if obs.agent_active and current in (blocked, SessionStatus.WORKING):
        return SessionStatus.WORKING
    return blocked


def _pr_status(current: SessionStatus, obs: Observation) -> SessionStatus:
    if obs.mergeable:
        return SessionStatus.MERGEABLE
    if obs.ci_status == "failing":
        return _needs_agent(current, SessionStatus.CI_FAILED, obs)
    if obs.review_decision == "changes_requested":
        return _needs_agent(current, SessionStatus.CHANGES_REQUESTED, obs)
    if obs.review_decision == "approved":
        return SessionStatus.APPROVED
    if obs.review_decision == "pending":
        return SessionStatus.REVIEW_PENDING
    if obs.ci_status is None and obs.review_decision is None and current in _PR_STATUSES:
        return current
    return SessionStatus.PR_OPEN


def transition(current: SessionStatus, obs: Observation) -> SessionStatus:
    """Return the next status for ``current`` given this tick's observations."""

    if current.is_terminal:
        return current
    if obs.kill_requested:
        return SessionStatus.KILLED

    if current is SessionStatus.MERGING:
        if obs.merge_outcome == "merged":
            return SessionStatus.MERGED
        if obs.merge_outcome == "failed":
            return SessionStatus.APPROVED
        return current
    if current is SessionStatus.STUCK:
        return SessionStatus.WORKING if obs.resume_requested else current
    if current is SessionStatus.CLEANUP:
        return SessionStatus.DONE if obs.cleanup_complete else current

    if obs.runtime_alive is False or obs.activity == "exited":
        return SessionStatus.KILLED

    if obs.pr_state == "merged":
        return SessionStatus.MERGED
    if obs.pr_state == "closed":
        return SessionStatus.TERMINATED
    if obs.pr_state is None and obs.issue_completed:
        return SessionStatus.CLEANUP
    if obs.pr_state == "open":
        return _pr_status(current, obs)

    if current is SessionStatus.SPAWNING:
        return SessionStatus.WORKING if obs.agent_active else current
    return current


def escalate(status: SessionStatus, judgment: Judgment | None) -> SessionStatus:
    """Move a session to ``stuck`` when the detector says the pattern must be broken."""

    if judgment is None or not judgment.should_break:
        return status
    if status.is_terminal or status in (SessionStatus.MERGING, SessionStatus.STUCK):
        return status
    return SessionStatus.STUCK


def should_record(previous: SessionStatus, next_status: SessionStatus) -> bool:
    """Whether a tick's outcome is a committed transition for the detector."""

    if previous is not next_status:
        return True
    return next_status in AGENT_BLOCKED_STATUSES


__all__ = [
    "AGENT_BLOCKED_STATUSES",
    "MergeOutcome",
    "Observation",
    "escalate",
    "should_record",
    "transition",
]
