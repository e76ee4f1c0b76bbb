"""Command execution utilities."""

from .runner import (
    CommandError,
    CommandNotFoundError,
    CommandResult,
    CommandRunner,
    CommandTimeoutError,
    FakeCommandRunner,
    SubprocessRunner,
)

__all__ = [
    "CommandError",
    "CommandNotFoundError",
    "CommandResult",
    "CommandRunner",
    "CommandTimeoutError",
    "FakeCommandRunner",
    "SubprocessRunner",
]
