from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from agent_orchestrator.lifecycle.cycle_detector import (
    CycleDetector,
    CycleDetectorConfig,
    create_cycle_detector,
    find_cycle,
)


class TickingClock:
    def __init__(self) -> None:
        self.now = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


def _detector(**overrides) -> CycleDetector:
    return create_cycle_detector(CycleDetectorConfig(**overrides), clock=TickingClock())


def _record(detector: CycleDetector, statuses, session_id: str = "s-1") -> None:
    for status in statuses:
        detector.record_transition(session_id, status)


def test_history_keeps_last_entries_in_order() -> None:
    detector = _detector(max_history_size=4)
    statuses = [f"status-{index}" for index in range(7)]
    _record(detector, statuses)

    assert detector.get_history("s-1") == statuses[-4:]

    short = _detector(max_history_size=10)
    _record(short, statuses[:3])
    assert short.get_history("s-1") == statuses[:3]


def test_history_is_a_copy_and_unknown_sessions_are_empty() -> None:
    detector = _detector()
    _record(detector, ["working"])

    history = detector.get_history("s-1")
    history.append("tampered")

    assert detector.get_history("s-1") == ["working"]
    assert detector.get_history("missing") == []
    assert detector.detect_loop("missing") is None
    assert detector.detect_cycle("missing") is None
    assert detector.judge_cycle("missing") is None


def test_loop_requires_threshold_and_reports_exact_run() -> None:
    detector = _detector()
    _record(detector, ["working", "ci_failed", "ci_failed", "ci_failed", "ci_failed"])
    assert detector.detect_loop("s-1") is None

    detector.record_transition("s-1", "ci_failed")
    loop = detector.detect_loop("s-1")
    assert loop is not None
    assert loop.status == "ci_failed"
    assert loop.count == 5

    _record(detector, ["ci_failed", "ci_failed"])
    assert detector.detect_loop("s-1").count == 7


def test_loop_detected_at_is_sticky_until_run_breaks() -> None:
    detector = _detector()
    _record(detector, ["spawning"] * 5)
    first = detector.detect_loop("s-1").detected_at

    detector.record_transition("s-1", "spawning")
    assert detector.detect_loop("s-1").detected_at == first
    assert detector.detect_loop("s-1").detected_at == first

    detector.record_transition("s-1", "working")
    assert detector.detect_loop("s-1") is None

    _record(detector, ["spawning"] * 5)
    again = detector.detect_loop("s-1")
    assert again is not None
    assert again.detected_at > first


def test_loop_detected_at_changes_when_run_breaks_between_checks() -> None:
    detector = _detector()
    _record(detector, ["spawning"] * 5)
    first = detector.detect_loop("s-1").detected_at

    # Broken and re-qualified without an intermediate check.
    _record(detector, ["working"] + ["spawning"] * 5)

    assert detector.detect_loop("s-1").detected_at != first


def test_cycle_detected_for_three_repetitions_only() -> None:
    detector = _detector()
    _record(detector, ["working", "ci_failed"] * 2)
    assert detector.detect_cycle("s-1") is None

    _record(detector, ["working", "ci_failed"])
    cycle = detector.detect_cycle("s-1")
    assert cycle is not None
    assert cycle.pattern == ("working", "ci_failed")
    assert cycle.repetitions == 3


def test_cycle_prefers_shortest_period() -> None:
    assert find_cycle(["a", "b", "a", "b", "a", "b"], 3) == (("a", "b"), 3)
    assert find_cycle(["a", "b"] * 6, 3) == (("a", "b"), 6)

    detector = _detector()
    _record(detector, ["a", "b"] * 4)
    assert len(detector.detect_cycle("s-1").pattern) == 2


def test_identical_tail_is_a_loop_not_a_cycle() -> None:
    detector = _detector()
    _record(detector, ["ci_failed"] * 10)

    assert detector.detect_cycle("s-1") is None
    assert detector.detect_loop("s-1").count == 10


def test_cycle_detected_at_is_sticky_across_rotations() -> None:
    detector = _detector()
    _record(detector, ["working", "ci_failed"] * 3)
    first = detector.detect_cycle("s-1").detected_at

    detector.record_transition("s-1", "working")
    rotated = detector.detect_cycle("s-1")
    assert rotated.pattern == ("ci_failed", "working")
    assert rotated.detected_at == first


@pytest.mark.parametrize(
    ("pattern", "needle"),
    [
        (["working", "ci_failed"], "CI"),
        (["working", "changes_requested"], "reviewer"),
        (["spawning", "killed"], "failing to start"),
        (["approved", "mergeable", "merging"], "Merge keeps failing"),
    ],
)
def test_judge_known_patterns_as_stuck(pattern, needle) -> None:
    detector = _detector()
    _record(detector, pattern * 3)

    judgment = detector.judge_cycle("s-1")

    assert judgment.verdict == "stuck"
    assert judgment.recommendation == "break"
    assert needle in judgment.reason
    assert judgment.should_break


def test_judge_productive_below_stricter_threshold() -> None:
    detector = _detector()
    _record(detector, ["working", "ci_failed"] * 3)

    judgment = detector.judge_cycle("s-1", max_repetitions=5)

    assert judgment.verdict == "productive"
    assert judgment.recommendation == "continue"
    assert not judgment.should_break


def test_judge_unknown_pattern_escalates() -> None:
    detector = _detector()
    _record(detector, ["pr_open", "review_pending"] * 3)

    judgment = detector.judge_cycle("s-1")

    assert judgment.verdict == "uncertain"
    assert judgment.recommendation == "escalate"
    assert not judgment.should_break


def test_judge_loop_names_status_and_count() -> None:
    detector = _detector()
    _record(detector, ["ci_failed"] * 5)

    judgment = detector.judge_cycle("s-1")

    assert judgment.verdict == "stuck"
    assert "ci_failed" in judgment.reason
    assert "5 consecutive polls" in judgment.reason


def test_clear_session_and_clear_reset_state() -> None:
    detector = _detector()
    _record(detector, ["ci_failed"] * 5, session_id="a")
    _record(detector, ["working", "ci_failed"] * 3, session_id="b")

    detector.clear_session("a")
    assert detector.get_history("a") == []
    assert detector.detect_loop("a") is None
    assert detector.detect_cycle("b") is not None

    detector.clear()
    assert detector.detect_cycle("b") is None
    assert detector.judge_cycle("b") is None


def test_replay_into_fresh_detector_is_deterministic() -> None:
    sequence = ["spawning", "working", "ci_failed", "working", "ci_failed", "working", "ci_failed"]
    first = _detector()
    second = _detector()
    _record(first, sequence)
    _record(second, sequence)

    assert first.detect_loop("s-1") == second.detect_loop("s-1")
    assert first.detect_cycle("s-1") == second.detect_cycle("s-1")
    assert first.judge_cycle("s-1") == second.judge_cycle("s-1")


def test_sessions_are_partitioned() -> None:
    detector = _detector()
    _record(detector, ["ci_failed"] * 5, session_id="a")
    _record(detector, ["ci_failed"] * 2, session_id="b")

    assert detector.detect_loop("a") is not None
    assert detector.detect_loop("b") is None


@pytest.mark.parametrize(
    "overrides",
    [
        {"max_consecutive_same_status": 0},
        {"max_cycle_repetitions": 1},
        {"max_history_size": 0},
    ],
)
def test_invalid_thresholds_raise(overrides) -> None:
    with pytest.raises(ValueError):
        CycleDetectorConfig(**overrides)


def test_defaults() -> None:
    config = create_cycle_detector().config
    assert config.max_consecutive_same_status == 5
    assert config.max_cycle_repetitions == 3
    assert config.max_history_size == 50
