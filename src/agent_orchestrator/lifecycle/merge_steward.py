"""Isolated test-then-merge in a disposable git worktree."""

from __future__ import annotations

import logging
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from ..commands import CommandRunner, SubprocessRunner
from ..commands.utils import split_command

MergeMethod = Literal["squash", "merge"]

TEMP_PREFIX = "ao-merge-steward-"

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class MergeParams:
    repo_path: Path
    source_branch: str
    target_branch: str
    test_command: str
    merge_method: MergeMethod = "squash"
    commit_message: str | None = None
    push: bool = True

    @property
    def message(self) -> str:
        return self.commit_message or f"Merge {self.source_branch} into {self.target_branch}"


@dataclass(slots=True, frozen=True)
class MergeResult:
    merged: bool
    temp_worktree_path: str


@dataclass(slots=True, frozen=True)
class WorktreeHandle:
    repo_path: Path
    temp_dir: Path


class MergeStewardService:
    """Run the test command against the source branch, then merge and push.

    Every step goes through the injected ``CommandRunner``. The first failing
    step aborts the protocol and its exception reaches the caller unchanged,
    after the disposable worktree has been removed.
    """

    def __init__(
        self,
        runner: CommandRunner | None = None,
        *,
        step_timeout: float | None = None,
        temp_root: Path | None = None,
    ) -> None:
        self._runner = runner or SubprocessRunner()
        self._step_timeout = step_timeout
        self._temp_root = temp_root

    async def test_then_merge(self, params: MergeParams) -> MergeResult:
        worktree = WorktreeHandle(
            repo_path=Path(params.repo_path),
            temp_dir=Path(tempfile.mkdtemp(prefix=TEMP_PREFIX, dir=self._temp_root)),
        )
        primary_error: BaseException | None = None
        try:
            test_argv = split_command(params.test_command)
            await self._git(worktree.repo_path, "fetch", "origin")
            await self._git(
                worktree.repo_path,
                "worktree",
                "add",
                "--detach",
                str(worktree.temp_dir),
                params.source_branch,
            )
            await self._runner.run(
                test_argv[0],
                test_argv[1:],
                cwd=worktree.temp_dir,
                timeout=self._step_timeout,
            )
            await self._merge(worktree, params)
            if params.push:
                await self._git(
                    worktree.temp_dir, "push", "origin", f"HEAD:{params.target_branch}"
                )
            logger.info(
                "Merged branch",
                extra={
                    "source_branch": params.source_branch,
                    "target_branch": params.target_branch,
                    "merge_method": params.merge_method,
                },
            )
            return MergeResult(merged=True, temp_worktree_path=str(worktree.temp_dir))
        except BaseException as exc:
            primary_error = exc
            raise
        finally:
            await self._cleanup(worktree, primary_error)

    async def _merge(self, worktree: WorktreeHandle, params: MergeParams) -> None:
        await self._git(
            worktree.temp_dir, "checkout", "--detach", f"origin/{params.target_branch}"
        )
        if params.merge_method == "squash":
            await self._git(worktree.temp_dir, "merge", "--squash", params.source_branch)
            await self._git(worktree.temp_dir, "commit", "-m", params.message)
        else:
            await self._git(
                worktree.temp_dir,
                "merge",
                "--no-ff",
                "-m",
                params.message,
                params.source_branch,
            )

    async def _cleanup(
        self, worktree: WorktreeHandle, primary_error: BaseException | None
    ) -> None:
        try:
            await self._git(
                worktree.repo_path, "worktree", "remove", "--force", str(worktree.temp_dir)
            )
        except Exception as exc:
            if primary_error is None:
                raise
            logger.warning(
                "Worktree removal failed after earlier error",
                extra={"temp_dir": str(worktree.temp_dir), "error": str(exc)},
            )
        finally:
            shutil.rmtree(worktree.temp_dir, ignore_errors=True)

    async def _git(self, cwd: Path, *args: str) -> None:
        await self._runner.run(
            "git", ["-C", str(cwd), *args], timeout=self._step_timeout
        )


__all__ = [
    "MergeMethod",
    "MergeParams",
    "MergeResult",
    "MergeStewardService",
    "WorktreeHandle",
]
