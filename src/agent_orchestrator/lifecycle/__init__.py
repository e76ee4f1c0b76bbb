"""Session lifecycle: state machine, stuck detection, merging and reconciliation."""

from .cycle_detector import (
    CycleDetector,
    CycleDetectorConfig,
    CycleInfo,
    Judgment,
    LoopInfo,
    create_cycle_detector,
)
from .merge_steward import MergeParams, MergeResult, MergeStewardService, WorktreeHandle
from .reactions import ReactionEngine, ReactionResult, reaction_key_for
from .reconciler import ReconciliationLoop, filtered_review_decision
from .state_machine import Observation, escalate, should_record, transition

__all__ = [
    "CycleDetector",
    "CycleDetectorConfig",
    "CycleInfo",
    "Judgment",
    "LoopInfo",
    "MergeParams",
    "MergeResult",
    "MergeStewardService",
    "Observation",
    "ReactionEngine",
    "ReactionResult",
    "ReconciliationLoop",
    "WorktreeHandle",
    "create_cycle_detector",
    "escalate",
    "filtered_review_decision",
    "reaction_key_for",
    "should_record",
    "transition",
]
