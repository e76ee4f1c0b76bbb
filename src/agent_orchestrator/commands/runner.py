"""Async command execution port used by the merge steward."""

from __future__ import annotations

import asyncio
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Protocol, Sequence

from .utils import sanitize_environment


class CommandError(RuntimeError):
    """Raised when a command exits unsuccessfully."""

    def __init__(self, message: str, *, result: "CommandResult | None" = None) -> None:
        super().__init__(message)
        self.result = result


class CommandTimeoutError(CommandError):
    """Raised when a command exceeds its timeout."""


class CommandNotFoundError(CommandError):
    """Raised when the executable cannot be located."""


@dataclass(slots=True)
class CommandResult:
    """Holds the outcome of a command invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str
    cwd: str | None = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner(Protocol):
    """Executes one command; raises ``CommandError`` on failure."""

    async def run(
        self,
        command: str,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        ...


class SubprocessRunner:
    """Execute commands with ``asyncio`` subprocesses, never through a shell."""

    def __init__(self, *, default_timeout: float | None = None) -> None:
        self._default_timeout = default_timeout

    @staticmethod
    def _resolve_executable(command: str) -> str:
        if "/" in command:
            candidate = Path(command)
            if candidate.exists() and candidate.is_file():
                return str(candidate)
            raise CommandNotFoundError(f"Executable not found at {candidate}")

        binary = shutil.which(command)
        if binary is None:
            raise CommandNotFoundError(f"Executable '{command}' not found on PATH")
        return binary

    async def run(
        self,
        command: str,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        cmd = [self._resolve_executable(command), *args]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd is not None else None,
            env=sanitize_environment(),
        )
        effective_timeout = timeout if timeout is not None else self._default_timeout
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(), timeout=effective_timeout
            )
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise CommandTimeoutError(
                f"Command timed out after {effective_timeout}s: {' '.join([command, *args])}"
            ) from exc

        result = CommandResult(
            args=(command, *args),
            returncode=process.returncode,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
            cwd=str(cwd) if cwd is not None else None,
        )
        if not result.ok:
            detail = result.stderr.strip() or result.stdout.strip()
            message = f"Command failed with exit code {result.returncode}: {' '.join(result.args)}"
            if detail:
                message = f"{message}\n{detail}"
            raise CommandError(message, result=result)
        return result


class FakeCommandRunner:
    """Test double that records invocations and can fail selected commands."""

    def __init__(
        self,
        *,
        fail_when: Callable[[str, tuple[str, ...]], BaseException | None] | None = None,
        responses: Iterable[CommandResult] | None = None,
    ) -> None:
        self._fail_when = fail_when
        self._responses = list(responses or [])
        self._invocations: list[tuple[str, tuple[str, ...], str | None]] = []

    async def run(
        self,
        command: str,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        argv = tuple(args)
        self._invocations.append((command, argv, str(cwd) if cwd is not None else None))
        if self._fail_when is not None:
            error = self._fail_when(command, argv)
            if error is not None:
                raise error
        if self._responses:
            return self._responses.pop(0)
        return CommandResult(args=(command, *argv), returncode=0, stdout="", stderr="")

    @property
    def invocations(self) -> list[tuple[str, tuple[str, ...], str | None]]:
        return self._invocations
