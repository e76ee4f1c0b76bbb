from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from agent_orchestrator.commands import (
    CommandError,
    CommandNotFoundError,
    CommandResult,
    CommandTimeoutError,
    FakeCommandRunner,
    SubprocessRunner,
)
from agent_orchestrator.commands.utils import sanitize_environment, split_command


def write_script(path: Path, body: str) -> Path:
    path.write_text(f"#!/bin/sh\n{body}\n", encoding="utf-8")
    path.chmod(0o755)
    return path


def test_subprocess_runner_executes_script(tmp_path: Path) -> None:
    script = write_script(tmp_path / "hello", "echo \"$@\"")

    result = asyncio.run(SubprocessRunner().run(str(script), ["one", "two"]))

    assert result.ok
    assert result.stdout.strip() == "one two"
    assert result.args == (str(script), "one", "two")


def test_subprocess_runner_uses_cwd(tmp_path: Path) -> None:
    script = write_script(tmp_path / "where", "pwd")
    workdir = tmp_path / "work"
    workdir.mkdir()

    result = asyncio.run(SubprocessRunner().run(str(script), [], cwd=workdir))

    assert Path(result.stdout.strip()).resolve() == workdir.resolve()
    assert result.cwd == str(workdir)


def test_subprocess_runner_raises_on_nonzero_exit(tmp_path: Path) -> None:
    script = write_script(tmp_path / "broken", "echo 'tests failed' >&2\nexit 3")

    with pytest.raises(CommandError) as excinfo:
        asyncio.run(SubprocessRunner().run(str(script), []))

    assert excinfo.value.result is not None
    assert excinfo.value.result.returncode == 3
    assert "tests failed" in str(excinfo.value)


def test_subprocess_runner_times_out(tmp_path: Path) -> None:
    script = write_script(tmp_path / "slow", "sleep 5")

    with pytest.raises(CommandTimeoutError):
        asyncio.run(SubprocessRunner().run(str(script), [], timeout=0.1))


def test_subprocess_runner_missing_executable(tmp_path: Path) -> None:
    with pytest.raises(CommandNotFoundError):
        asyncio.run(SubprocessRunner().run(str(tmp_path / "missing"), []))


def test_fake_runner_records_invocations_and_failures() -> None:
    boom = CommandError("push rejected")
    fake = FakeCommandRunner(
        fail_when=lambda command, argv: boom if "push" in argv else None,
        responses=[CommandResult(args=("git",), returncode=0, stdout="fetched", stderr="")],
    )

    first = asyncio.run(fake.run("git", ["fetch"], cwd=Path("/repo")))
    with pytest.raises(CommandError):
        asyncio.run(fake.run("git", ["push"]))

    assert first.stdout == "fetched"
    assert fake.invocations == [("git", ("fetch",), "/repo"), ("git", ("push",), None)]


def test_sanitize_environment_strips_virtualenv_and_git(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PYTHONPATH", "value")
    monkeypatch.setenv("GIT_DIR", "/elsewhere/.git")
    env = sanitize_environment({"AO_SESSION_ID": "app-1"})

    assert "PYTHONPATH" not in env
    assert "GIT_DIR" not in env
    assert env["AO_SESSION_ID"] == "app-1"


def test_split_command_handles_quotes() -> None:
    assert split_command("pytest -k 'not slow'") == ["pytest", "-k", "not slow"]
    with pytest.raises(ValueError):
        split_command("   ")
