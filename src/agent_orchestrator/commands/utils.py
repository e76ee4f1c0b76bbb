"""Utility helpers for command execution."""

from __future__ import annotations

import os
import shlex
from typing import Mapping

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
    "GIT_DIR",
    "GIT_WORK_TREE",
    "GIT_INDEX_FILE",
}


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for subprocess execution.

    Inherited ``GIT_*`` location variables are dropped so ``git -C`` always
    targets the directory it is given.
    """

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def split_command(command: str) -> list[str]:
    """Split a configured command line into argv without involving a shell."""

    try:
        parts = shlex.split(command.strip())
    except ValueError as exc:
        raise ValueError(f"Invalid test command: {exc}") from exc
    if not parts:
        raise ValueError("Invalid test command: empty")
    return parts


__all__ = ["sanitize_environment", "split_command"]
