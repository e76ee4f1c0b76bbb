"""Project models and loader exports."""

from .loader import ProjectConfig, ProjectLoadError, ProjectLoader, load_projects
from .models import REACTION_KEYS, EventPriority, ReactionConfig, parse_duration

__all__ = [
    "EventPriority",
    "ProjectConfig",
    "ProjectLoadError",
    "ProjectLoader",
    "REACTION_KEYS",
    "ReactionConfig",
    "load_projects",
    "parse_duration",
]
