"""Loop and cycle detection over per-session status history.

Sessions polled on a fixed interval produce repeating status sequences when
they stop making progress: a status that never changes (a *loop*) or a short
sequence of statuses that keeps recurring, such as ``working -> ci_failed``
(a *cycle*). Both are recognised from the tail of a bounded history and
judged against a small table of known unproductive patterns.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Hashable, Literal, Sequence

Verdict = Literal["productive", "stuck", "uncertain"]
Recommendation = Literal["continue", "break", "escalate"]

DEFAULT_MAX_CONSECUTIVE_SAME_STATUS = 5
DEFAULT_MAX_CYCLE_REPETITIONS = 3
DEFAULT_MAX_HISTORY_SIZE = 50


@dataclass(slots=True)
class CycleDetectorConfig:
    max_consecutive_same_status: int = DEFAULT_MAX_CONSECUTIVE_SAME_STATUS
    max_cycle_repetitions: int = DEFAULT_MAX_CYCLE_REPETITIONS
    max_history_size: int = DEFAULT_MAX_HISTORY_SIZE

    def __post_init__(self) -> None:
        if self.max_consecutive_same_status < 1:
            raise ValueError("max_consecutive_same_status must be >= 1")
        if self.max_cycle_repetitions < 2:
            raise ValueError("max_cycle_repetitions must be >= 2")
        if self.max_history_size < 1:
            raise ValueError("max_history_size must be >= 1")


@dataclass(slots=True, frozen=True)
class LoopInfo:
    status: str
    count: int
    detected_at: datetime


@dataclass(slots=True, frozen=True)
class CycleInfo:
    pattern: tuple[str, ...]
    repetitions: int
    detected_at: datetime


@dataclass(slots=True, frozen=True)
class Judgment:
    verdict: Verdict
    recommendation: Recommendation
    reason: str
    suggested_action: str | None = None

    @property
    def should_break(self) -> bool:
        return self.verdict == "stuck" and self.recommendation == "break"


@dataclass(slots=True)
class _DetectionMark:
    """First-detection timestamp for the run or cycle currently at the tail."""

    signature: Hashable
    detected_at: datetime
    confirmed_end: int


@dataclass(slots=True)
class _SessionTrack:
    history: list[str] = field(default_factory=list)
    recorded: int = 0
    loop_mark: _DetectionMark | None = None
    cycle_mark: _DetectionMark | None = None


@dataclass(slots=True, frozen=True)
class _PatternRule:
    statuses: frozenset[str]
    stuck_reason: str
    suggested_action: str
    productive_reason: str | None = None


# Ordered; the first rule whose statuses all appear in the pattern applies.
_KNOWN_PATTERNS: tuple[_PatternRule, ...] = (
    _PatternRule(
        statuses=frozenset({"spawning", "killed"}),
        stuck_reason="Agent is repeatedly failing to start: {pattern}",
        suggested_action="Check agent configuration, runtime availability, and workspace setup",
    ),
    _PatternRule(
        statuses=frozenset({"working", "ci_failed"}),
        stuck_reason="CI keeps failing after {repetitions} fix attempts: {pattern}",
        suggested_action="Review CI logs manually; the agent may need guidance on the failing checks",
        productive_reason="Agent is actively fixing CI failures ({repetitions} attempts so far): {pattern}",
    ),
    _PatternRule(
        statuses=frozenset({"working", "changes_requested"}),
        stuck_reason="The reviewer keeps requesting changes after {repetitions} rounds: {pattern}",
        suggested_action="Read the PR comments; the reviewer and agent may be talking past each other",
        productive_reason="Agent is addressing review feedback ({repetitions} rounds so far): {pattern}",
    ),
    _PatternRule(
        statuses=frozenset({"mergeable", "merging"}),
        stuck_reason="Merge keeps failing after {repetitions} attempts: {pattern}",
        suggested_action="Run the merge test command locally and check for conflicts with the target branch",
    ),
)


def _tail_run(history: Sequence[str]) -> int:
    if not history:
        return 0
    last = history[-1]
    run = 0
    for status in reversed(history):
        if status != last:
            break
        run += 1
    return run


def _tail_repetitions(history: Sequence[str], period: int) -> int:
    """Count back-to-back copies of the last ``period`` entries at the tail."""

    length = len(history)
    pattern = history[length - period :]
    reps = 1
    end = length - period
    while end >= period and history[end - period : end] == pattern:
        reps += 1
        end -= period
    return reps


def _periodic_suffix(history: Sequence[str], period: int) -> int:
    """Length of the longest tail in which every entry equals the one ``period`` later."""

    length = len(history)
    index = length - period - 1
    while index >= 0 and history[index] == history[index + period]:
        index -= 1
    return length - index - 1


def _canonical(pattern: Sequence[str]) -> tuple[str, ...]:
    rotations = (tuple(pattern[i:]) + tuple(pattern[:i]) for i in range(len(pattern)))
    return min(rotations)


def find_cycle(history: Sequence[str], min_repetitions: int) -> tuple[tuple[str, ...], int] | None:
    """Return the shortest non-degenerate pattern repeating at the tail, if any."""

    history = list(history)
    for period in range(1, len(history) // 2 + 1):
        pattern = history[len(history) - period :]
        if len(set(pattern)) < 2:
            continue
        reps = _tail_repetitions(history, period)
        if reps >= min_repetitions:
            return tuple(pattern), reps
    return None


class CycleDetector:
    """In-memory loop/cycle recogniser keyed by session id.

    State is partitioned per session; callers reconciling different sessions
    never touch the same entry.
    """

    def __init__(
        self,
        config: CycleDetectorConfig | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config or CycleDetectorConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._tracks: dict[str, _SessionTrack] = {}

    @property
    def config(self) -> CycleDetectorConfig:
        return self._config

    def record_transition(self, session_id: str, status: str) -> None:
        track = self._tracks.setdefault(session_id, _SessionTrack())
        track.history.append(str(status))
        track.recorded += 1
        excess = len(track.history) - self._config.max_history_size
        if excess > 0:
            del track.history[:excess]

    def get_history(self, session_id: str) -> list[str]:
        track = self._tracks.get(session_id)
        return list(track.history) if track else []

    def detect_loop(self, session_id: str) -> LoopInfo | None:
        track = self._tracks.get(session_id)
        if track is None or not track.history:
            return None

        run = _tail_run(track.history)
        if run < self._config.max_consecutive_same_status:
            track.loop_mark = None
            return None

        status = track.history[-1]
        start = track.recorded - run
        track.loop_mark = self._remember(track.loop_mark, status, start, track.recorded)
        return LoopInfo(status=status, count=run, detected_at=track.loop_mark.detected_at)

    def detect_cycle(self, session_id: str) -> CycleInfo | None:
        track = self._tracks.get(session_id)
        if track is None:
            return None

        found = find_cycle(track.history, self._config.max_cycle_repetitions)
        if found is None:
            track.cycle_mark = None
            return None

        pattern, reps = found
        start = track.recorded - _periodic_suffix(track.history, len(pattern))
        track.cycle_mark = self._remember(
            track.cycle_mark, _canonical(pattern), start, track.recorded
        )
        return CycleInfo(
            pattern=pattern,
            repetitions=reps,
            detected_at=track.cycle_mark.detected_at,
        )

    def judge_cycle(
        self,
        session_id: str,
        *,
        max_repetitions: int | None = None,
    ) -> Judgment | None:
        """Classify the session's tail; cycles take priority over loops.

        ``max_repetitions`` is the judging threshold for patterns that can be
        productive. It defaults to the detection threshold, so a detected
        cycle is only reported as productive when a caller judges against a
        stricter threshold than the one used for detection.
        """

        cycle = self.detect_cycle(session_id)
        if cycle is not None:
            threshold = max_repetitions or self._config.max_cycle_repetitions
            return judge_pattern(cycle.pattern, cycle.repetitions, threshold)

        loop = self.detect_loop(session_id)
        if loop is not None:
            return judge_loop(loop.status, loop.count)

        return None

    def clear_session(self, session_id: str) -> None:
        self._tracks.pop(session_id, None)

    def clear(self) -> None:
        self._tracks.clear()

    def _remember(
        self,
        mark: _DetectionMark | None,
        signature: Hashable,
        start: int,
        end: int,
    ) -> _DetectionMark:
        # A run that began before the last confirmation has not been broken since.
        if mark is not None and mark.signature == signature and start < mark.confirmed_end:
            mark.confirmed_end = end
            return mark
        return _DetectionMark(signature=signature, detected_at=self._clock(), confirmed_end=end)


def judge_pattern(pattern: Sequence[str], repetitions: int, max_repetitions: int) -> Judgment:
    statuses = set(pattern)
    rendered = " -> ".join(pattern)
    for rule in _KNOWN_PATTERNS:
        if not rule.statuses <= statuses:
            continue
        if rule.productive_reason is not None and repetitions < max_repetitions:
            return Judgment(
                verdict="productive",
                recommendation="continue",
                reason=rule.productive_reason.format(pattern=rendered, repetitions=repetitions),
            )
        return Judgment(
            verdict="stuck",
            recommendation="break",
            reason=rule.stuck_reason.format(pattern=rendered, repetitions=repetitions),
            suggested_action=rule.suggested_action,
        )

    return Judgment(
        verdict="uncertain",
        recommendation="escalate",
        reason=f"Detected repeating pattern ({repetitions} repetitions): {rendered}",
        suggested_action="Human review recommended to decide whether this cycle is productive",
    )


def judge_loop(status: str, count: int) -> Judgment:
    return Judgment(
        verdict="stuck",
        recommendation="break",
        reason=f'"{status}" has repeated for {count} consecutive polls without transitioning',
        suggested_action=(
            f'Investigate why the session is stuck in "{status}" and consider '
            "restarting it or sending new instructions"
        ),
    )


def create_cycle_detector(
    config: CycleDetectorConfig | None = None,
    *,
    clock: Callable[[], datetime] | None = None,
) -> CycleDetector:
    return CycleDetector(config, clock=clock)


__all__ = [
    "CycleDetector",
    "CycleDetectorConfig",
    "CycleInfo",
    "Judgment",
    "LoopInfo",
    "create_cycle_detector",
    "find_cycle",
    "judge_loop",
    "judge_pattern",
]
