"""Periodic reconciliation of tracked sessions against their backends."""

from __future__ import annotations

import asyncio
import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Mapping, TypeVar

from ..config import OrchestratorSettings
from ..events import NotificationDispatcher, OrchestratorEvent, create_event, status_to_event_type
from ..models import PRInfo, Review, ReviewDecision, Session, SessionStatus, utcnow
from ..plugins import NotifyAction, PluginRegistry
from ..projects import ProjectConfig
from ..sessions import SessionManager
from ..storage import ArchiveSink
from .cycle_detector import CycleDetector, CycleDetectorConfig, Judgment, create_cycle_detector
from .merge_steward import MergeParams, MergeStewardService
from .reactions import ReactionEngine, reaction_key_for
from .state_machine import MergeOutcome, Observation, escalate, should_record, transition

T = TypeVar("T")

logger = logging.getLogger(__name__)


def filtered_review_decision(reviews: Iterable[Review], allowed: Iterable[str]) -> ReviewDecision:
    """Review decision computed from the latest review of each allowed reviewer."""

    allowed_users = {user.lower() for user in allowed}
    latest: dict[str, Review] = {}
    for review in reviews:
        author = review.author.lower()
        if author not in allowed_users:
            continue
        existing = latest.get(author)
        if existing is None or review.submitted_at > existing.submitted_at:
            latest[author] = review

    states = [review.state for review in latest.values()]
    if not states:
        return "none"
    if "changes_requested" in states:
        return "changes_requested"
    if all(state == "approved" for state in states):
        return "approved"
    if any(state in ("pending", "commented") for state in states):
        return "pending"
    return "none"


@dataclass(slots=True)
class _Commit:
    changes: list[tuple[SessionStatus, SessionStatus]] = field(default_factory=list)
    judgment: Judgment | None = None
    start_merge: bool = False


class ReconciliationLoop:
    """Drives every tracked session through the status state machine.

    One tick gathers observations for each non-terminal session, applies
    ``transition`` and records committed statuses in the cycle detector, then
    performs side effects: notifications, reactions, merge hand-off and
    archival. Ticks never overlap and a session is reconciled by at most one
    task at a time.
    """

    def __init__(
        self,
        sessions: SessionManager,
        registry: PluginRegistry,
        projects: Mapping[str, ProjectConfig],
        settings: OrchestratorSettings,
        *,
        detector: CycleDetector | None = None,
        steward: MergeStewardService | None = None,
        reactions: ReactionEngine | None = None,
        notifications: NotificationDispatcher | None = None,
        archive: ArchiveSink | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._sessions = sessions
        self._registry = registry
        self._projects = projects
        self._settings = settings
        self._clock = clock or utcnow
        self._detector = detector or create_cycle_detector(
            CycleDetectorConfig(
                max_consecutive_same_status=settings.max_consecutive_same_status,
                max_cycle_repetitions=settings.max_cycle_repetitions,
                max_history_size=settings.max_history_size,
            ),
            clock=self._clock,
        )
        self._steward = steward or MergeStewardService(step_timeout=settings.merge_step_timeout)
        self._notifications = notifications or NotificationDispatcher(
            registry, projects, settings.default_notifiers, timeout=settings.poll_timeout
        )
        self._reactions = reactions or ReactionEngine(
            self._notifications,
            sessions.send,
            clock=self._clock,
            send_timeout=settings.poll_timeout,
        )
        self._archive = archive

        self._semaphore = asyncio.Semaphore(settings.max_concurrency)
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._cache: dict[tuple[str, str], Any] = {}
        self._judgments: dict[str, Judgment] = {}
        self._merges: dict[str, asyncio.Task[None]] = {}
        self._polling = False
        self._all_complete_emitted = False
        self._task: asyncio.Task[None] | None = None
        self.poll_failures: Counter[str] = Counter()

    @property
    def detector(self) -> CycleDetector:
        return self._detector

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def merges_in_flight(self) -> set[str]:
        return set(self._merges)

    def last_judgment(self, session_id: str) -> Judgment | None:
        return self._judgments.get(session_id)

    def get_states(self) -> dict[str, SessionStatus]:
        return {session.id: session.status for session in self._sessions.list(include_archived=True)}

    def start(self, interval: float | None = None) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self.run_forever(interval))

    async def stop(self, *, wait_for_merges: bool = True) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if wait_for_merges:
            await self.wait_for_merges()

    async def wait_for_merges(self) -> None:
        """Wait until every merge started so far has committed its outcome."""

        while self._merges:
            await asyncio.gather(*list(self._merges.values()), return_exceptions=True)

    async def run_forever(self, interval: float | None = None) -> None:
        period = interval or self._settings.poll_interval
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Reconciliation tick failed")
            await asyncio.sleep(period)

    async def tick(self) -> bool:
        """Reconcile every active session once; returns False if a tick was already running."""

        if self._polling:
            logger.debug("Skipping tick, previous tick still running")
            return False
        self._polling = True
        try:
            deadline = asyncio.get_running_loop().time() + self._settings.tick_timeout
            candidates = [
                session for session in self._sessions.active() if session.id not in self._merges
            ]
            results = await asyncio.gather(
                *(self._guarded(session, deadline) for session in candidates),
                return_exceptions=True,
            )
            for session, result in zip(candidates, results):
                if isinstance(result, BaseException):
                    logger.error(
                        "Session reconciliation failed",
                        extra={"session_id": session.id, "error": str(result)},
                        exc_info=result,
                    )
            await self._check_all_complete()
            return True
        finally:
            self._polling = False

    async def check(self, session_id: str) -> SessionStatus:
        """Reconcile a single session immediately."""

        session = self._sessions.get(session_id)
        deadline = asyncio.get_running_loop().time() + self._settings.tick_timeout
        await self._guarded(session, deadline)
        return session.status

    async def _guarded(self, session: Session, deadline: float) -> None:
        async with self._semaphore:
            async with self._locks[session.id]:
                if session.id in self._merges or self._sessions.is_archived(session.id):
                    return
                await self._reconcile(session, deadline)

    async def _reconcile(self, session: Session, deadline: float) -> None:
        project = self._projects.get(session.project_id)
        if session.is_terminal:
            await self._finalize(session, project)
            return

        previous = session.status
        obs, discovered_pr = await self._observe(session, project, deadline)
        if discovered_pr is not None and session.pr is None:
            session.pr = discovered_pr
        commit = self._commit(session, previous, transition(previous, obs), project)
        if previous is SessionStatus.STUCK:
            session.resume_requested = False
        await self._after_commit(session, project, commit)

    async def _observe(
        self,
        session: Session,
        project: ProjectConfig | None,
        deadline: float,
    ) -> tuple[Observation, PRInfo | None]:
        base = {
            "kill_requested": session.kill_requested,
            "resume_requested": session.resume_requested,
        }
        if session.kill_requested or session.status is SessionStatus.STUCK:
            return Observation(**base), None
        if session.status is SessionStatus.MERGING:
            # No merge task owns this session any more.
            return Observation(**base, merge_outcome="failed"), None
        if session.status is SessionStatus.CLEANUP:
            await self._teardown(session)
            return Observation(**base, cleanup_complete=True), None
        if project is None:
            logger.warning(
                "Session references unknown project",
                extra={"session_id": session.id, "project_id": session.project_id},
            )
            return Observation(**base), None

        values: dict[str, Any] = {}
        handle = session.runtime_handle
        runtime = self._registry.get("runtime", handle.runtime_name) if handle else None
        agent = self._registry.get("agent", self._sessions.plugin_name(project, "agent"))
        scm = self._registry.get("scm", project.scm)
        tracker = self._registry.get("tracker", project.tracker)

        if runtime is not None and handle is not None:
            values["runtime_alive"] = await self._poll(
                session, "runtime_alive", lambda: runtime.is_alive(handle), deadline
            )
            if agent is not None and values["runtime_alive"]:
                running = await self._poll(
                    session, "process_running", lambda: agent.is_process_running(handle), deadline
                )
                if running is False:
                    values["activity"] = "exited"
                else:
                    output = await self._poll(
                        session, "terminal_output", lambda: runtime.get_output(handle), deadline
                    )
                    if output is not None:
                        values["activity"] = agent.detect_activity(output)

        pr = session.pr
        discovered: PRInfo | None = None
        if scm is not None and pr is None:
            discovered = await self._poll(
                session, "pr", lambda: scm.detect_pr(session, project), deadline
            )
            pr = discovered
        if scm is not None and pr is not None:
            values["pr_state"] = await self._poll(
                session, "pr_state", lambda: scm.get_pr_state(pr), deadline
            )
            if values["pr_state"] == "open":
                values["ci_status"] = await self._poll(
                    session, "ci_status", lambda: scm.get_ci_summary(pr), deadline
                )
                values["review_decision"] = await self._review_decision(
                    session, project, scm, pr, deadline
                )
                readiness = await self._poll(
                    session, "mergeable", lambda: scm.get_mergeability(pr), deadline
                )
                if readiness is not None:
                    values["mergeable"] = readiness.mergeable

        if tracker is not None and pr is None and session.issue_id:
            issue_id = session.issue_id
            values["issue_completed"] = await self._poll(
                session,
                "issue_completed",
                lambda: tracker.is_completed(issue_id, project),
                deadline,
            )

        return Observation(**base, **values), discovered

    async def _review_decision(
        self,
        session: Session,
        project: ProjectConfig,
        scm: Any,
        pr: PRInfo,
        deadline: float,
    ) -> ReviewDecision | None:
        if not project.allowed_reviewers:
            return await self._poll(
                session, "review_decision", lambda: scm.get_review_decision(pr), deadline
            )
        reviews = await self._poll(session, "reviews", lambda: scm.get_reviews(pr), deadline)
        if reviews is None:
            return None
        return filtered_review_decision(reviews, project.allowed_reviewers)

    async def _poll(
        self,
        session: Session,
        name: str,
        call: Callable[[], Awaitable[T]],
        deadline: float,
    ) -> T | None:
        """Run one collaborator call, falling back to the last good value on failure."""

        key = (session.id, name)
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            logger.debug(
                "Tick budget exhausted, using cached value",
                extra={"session_id": session.id, "field": name},
            )
            return self._cache.get(key)
        try:
            value = await asyncio.wait_for(call(), timeout=min(self._settings.poll_timeout, remaining))
        except Exception as exc:
            self.poll_failures[name] += 1
            logger.warning(
                "Poll failed, using last known value",
                extra={"session_id": session.id, "field": name, "error": str(exc) or type(exc).__name__},
            )
            return self._cache.get(key)
        self._cache[key] = value
        return value

    def _commit(
        self,
        session: Session,
        previous: SessionStatus,
        next_status: SessionStatus,
        project: ProjectConfig | None,
    ) -> _Commit:
        # Synchronous: a committed transition is never interleaved or cancelled.
        commit = _Commit()
        if should_record(previous, next_status):
            self._detector.record_transition(session.id, next_status)
        judgment = self._detector.judge_cycle(session.id)
        commit.judgment = judgment
        if judgment is not None:
            self._judgments[session.id] = judgment

        escalated = escalate(next_status, judgment)
        if escalated is not next_status:
            if next_status is not previous:
                commit.changes.append((previous, next_status))
            self._detector.record_transition(session.id, escalated)
            previous, next_status = next_status, escalated

        if (
            next_status is SessionStatus.MERGEABLE
            and project is not None
            and project.auto_merge
            and session.id not in self._merges
        ):
            if next_status is not previous:
                commit.changes.append((previous, next_status))
            self._detector.record_transition(session.id, SessionStatus.MERGING)
            previous, next_status = next_status, SessionStatus.MERGING
            commit.start_merge = True

        if next_status is not previous:
            commit.changes.append((previous, next_status))
        if commit.changes:
            session.status = next_status
            session.last_activity_at = self._clock()
            logger.info(
                "Session transitioned",
                extra={
                    "session_id": session.id,
                    "transitions": [f"{old.value}->{new.value}" for old, new in commit.changes],
                },
            )
        if commit.start_merge and project is not None:
            self._merges[session.id] = asyncio.create_task(self._run_merge(session, project))
        return commit

    async def _after_commit(
        self,
        session: Session,
        project: ProjectConfig | None,
        commit: _Commit,
        *,
        merge_error: BaseException | None = None,
    ) -> None:
        last = len(commit.changes) - 1
        for index, (old, new) in enumerate(commit.changes):
            old_key = reaction_key_for(old)
            if old_key:
                self._reactions.reset(session.id, old_key)
            await self._on_transition(
                session, project, old, new, commit.judgment, settled=index == last
            )

        if merge_error is not None:
            await self._on_merge_failed(session, project, merge_error)

        if session.is_terminal:
            await self._finalize(session, project)

    async def _on_transition(
        self,
        session: Session,
        project: ProjectConfig | None,
        old: SessionStatus,
        new: SessionStatus,
        judgment: Judgment | None,
        *,
        settled: bool = True,
    ) -> None:
        event_type = status_to_event_type(new)
        if event_type is None:
            return
        data: dict[str, Any] = {"old_status": old.value, "new_status": new.value}
        message = f"{session.id}: {old.value} -> {new.value}"
        if new is SessionStatus.STUCK and judgment is not None:
            message = f"{session.id} is stuck: {judgment.reason}"
            data.update(
                verdict=judgment.verdict,
                reason=judgment.reason,
                suggested_action=judgment.suggested_action,
            )
        event = create_event(
            event_type,
            session_id=session.id,
            project_id=session.project_id,
            message=message,
            data=data,
            clock=self._clock,
        )
        await self._record(event)
        if not settled:
            return

        key = reaction_key_for(new)
        config = project.reactions.get(key) if project is not None and key else None
        if new is SessionStatus.STUCK:
            await self._notifications.notify(
                event,
                [
                    NotifyAction(label="Resume", action=f"resume_session:{session.id}"),
                    NotifyAction(label="Kill", action=f"kill_session:{session.id}"),
                ],
            )
            if config is not None and config.auto and config.action == "send-to-agent":
                await self._reactions.execute(session, key, config, detail=judgment.reason if judgment else None)
            return
        if key and self._reactions.handles(config):
            await self._reactions.execute(session, key, config)
            return
        if event.priority != "info":
            await self._notifications.notify(event)

    async def _on_merge_failed(
        self,
        session: Session,
        project: ProjectConfig | None,
        error: BaseException,
    ) -> None:
        event = create_event(
            "merge.failed",
            session_id=session.id,
            project_id=session.project_id,
            message=str(error),
            data={"error_type": type(error).__name__},
            clock=self._clock,
        )
        await self._record(event)
        config = project.reactions.get("merge-failed") if project is not None else None
        if self._reactions.handles(config):
            await self._reactions.execute(session, "merge-failed", config, detail=str(error))
        else:
            await self._notifications.notify(event)

    async def _run_merge(self, session: Session, project: ProjectConfig) -> None:
        outcome: MergeOutcome = "merged"
        error: BaseException | None = None
        try:
            await self._merge(session, project)
        except Exception as exc:
            outcome, error = "failed", exc
            logger.warning(
                "Merge failed",
                extra={"session_id": session.id, "error": str(exc)},
            )

        async with self._locks[session.id]:
            self._merges.pop(session.id, None)
            previous = session.status
            # Operator requests wait for the next tick; the merge outcome is authoritative here.
            commit = self._commit(
                session,
                previous,
                transition(previous, Observation(merge_outcome=outcome)),
                project,
            )
            await self._after_commit(session, project, commit, merge_error=error)

    async def _merge(self, session: Session, project: ProjectConfig) -> None:
        pr = session.pr
        if project.test_command:
            source = session.branch or (pr.branch if pr else None)
            if not source:
                raise ValueError(f"Session '{session.id}' has no branch to merge")
            await self._steward.test_then_merge(
                MergeParams(
                    repo_path=project.repo_path,
                    source_branch=source,
                    target_branch=pr.base_branch if pr else project.default_branch,
                    test_command=project.test_command,
                    merge_method=project.merge_method,
                    commit_message=f"{pr.title} (#{pr.number})" if pr and pr.title else None,
                )
            )
            return
        if pr is None:
            raise ValueError(f"Session '{session.id}' has no pull request to merge")
        scm = self._registry.require("scm", project.scm or "")
        await scm.merge_pr(pr, project.merge_method)

    async def _best_effort(self, session: Session, what: str, call: Callable[[], Awaitable[Any]]) -> None:
        try:
            await asyncio.wait_for(call(), timeout=self._settings.poll_timeout)
        except Exception as exc:
            logger.warning(
                f"Failed to {what}",
                extra={"session_id": session.id, "error": str(exc) or type(exc).__name__},
            )

    async def _teardown(self, session: Session) -> None:
        await self._destroy_runtime(session)
        project = self._projects.get(session.project_id)
        workspace_name = self._sessions.plugin_name(project, "workspace") if project else None
        workspace = self._registry.get("workspace", workspace_name)
        if workspace is not None and session.workspace_path is not None:
            path = session.workspace_path
            await self._best_effort(session, "destroy workspace", lambda: workspace.destroy(path))

    async def _destroy_runtime(self, session: Session) -> None:
        handle = session.runtime_handle
        runtime = self._registry.get("runtime", handle.runtime_name) if handle else None
        if runtime is not None and handle is not None:
            await self._best_effort(session, "destroy runtime", lambda: runtime.destroy(handle))

    async def _finalize(self, session: Session, project: ProjectConfig | None) -> None:
        if session.status is not SessionStatus.DONE:
            await self._destroy_runtime(session)
        self._sessions.archive(session.id)
        self._reactions.clear_session(session.id)
        for key in [key for key in self._cache if key[0] == session.id]:
            del self._cache[key]
        if self._archive is not None:
            history = self._detector.get_history(session.id)
            judgment = self._judgments.get(session.id)
            try:
                await asyncio.to_thread(self._archive.archive_session, session, history, judgment)
            except Exception as exc:
                logger.warning(
                    "Failed to archive session",
                    extra={"session_id": session.id, "error": str(exc)},
                )
        logger.info(
            "Archived session",
            extra={"session_id": session.id, "status": session.status.value},
        )

    async def _record(self, event: OrchestratorEvent) -> None:
        if self._archive is None:
            return
        try:
            await asyncio.to_thread(self._archive.record_orchestrator_event, event)
        except Exception as exc:
            logger.warning(
                "Failed to archive event",
                extra={"event_type": event.type, "error": str(exc)},
            )

    async def _check_all_complete(self) -> None:
        sessions = self._sessions.list(include_archived=True)
        if any(not session.is_terminal for session in sessions):
            self._all_complete_emitted = False
            return
        if not sessions or self._all_complete_emitted:
            return
        self._all_complete_emitted = True
        event = create_event(
            "summary.all_complete",
            session_id="system",
            project_id="all",
            message=f"All {len(sessions)} sessions are complete",
            data={"sessions": len(sessions)},
            clock=self._clock,
        )
        await self._record(event)
        await self._notifications.notify(event)


__all__ = ["ReconciliationLoop", "filtered_review_decision"]
