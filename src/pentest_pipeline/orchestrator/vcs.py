"""Thin async wrapper over the ``git`` executable.

Besides snapshot and restore of a single tree, the client manages short-lived
worktrees: an agent running next to siblings gets its own checkout on a private
branch, and only a successful branch is merged back into the shared tree.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from pentest_pipeline.orchestrator.errors import StorageError
from pentest_pipeline.orchestrator.models import CommitRef

logger = logging.getLogger(__name__)

_IDENTITY = (
    "-c",
    "user.name=pentest-pipeline",
    "-c",
    "user.email=pipeline@localhost",
    "-c",
    "commit.gpgsign=false",
)


@dataclass(slots=True)
class GitResult:
    """Captured git invocation output."""

    exit_code: int
    stdout: str
    stderr: str


class GitClient:
    """Version-control operations used by the checkpoint store.

    Every failure is raised as :class:`StorageError`.
    """

    def __init__(self, executable: str = "git") -> None:
        self._executable = executable

    async def ensure_repository(self, path: Path) -> None:
        """Initialize ``path`` as a repository with a root commit when it is not one."""

        if not path.is_dir():
            raise StorageError(f"Workspace is not a directory: {path}")
        probe = await self._run(path, "rev-parse", "--is-inside-work-tree", check=False)
        if probe.exit_code == 0 and probe.stdout.strip() == "true":
            return
        logger.info("Initializing git repository in %s", path)
        await self._run(path, "init", "--quiet")
        await self.snapshot(path, "Initial workspace state")

    async def snapshot(self, path: Path, message: str) -> CommitRef:
        """Stage everything and record a commit, even when nothing changed."""

        await self._run(path, "add", "-A")
        await self._run(path, "commit", "--quiet", "--allow-empty", "--no-verify", "-m", message)
        return await self.current_ref(path)

    async def commit(self, path: Path, message: str) -> CommitRef:
        return await self.snapshot(path, message)

    async def restore(self, path: Path, ref: CommitRef) -> None:
        """Reset tracked files to ``ref`` and delete untracked files."""

        await self._run(path, "reset", "--hard", "--quiet", ref)
        await self._run(path, "clean", "-fd", "--quiet")

    async def current_ref(self, path: Path) -> CommitRef:
        result = await self._run(path, "rev-parse", "HEAD")
        return result.stdout.strip()

    async def newest(self, path: Path, refs: Sequence[CommitRef]) -> CommitRef:
        """The ref among ``refs`` that no other one descends from."""

        result = await self._run(path, "rev-list", "--topo-order", "--max-count=1", *refs)
        return result.stdout.strip()

    async def is_dirty(self, path: Path) -> bool:
        result = await self._run(path, "status", "--porcelain")
        return bool(result.stdout.strip())

    async def add_worktree(self, repo: Path, path: Path, branch: str, base_ref: CommitRef) -> None:
        """Check out ``base_ref`` at ``path`` on ``branch``.

        A worktree left behind by an interrupted run still holding ``branch`` is
        removed first.
        """

        listing = await self._run(repo, "worktree", "list", "--porcelain")
        stale = _worktrees_by_branch(listing.stdout).get(branch)
        if stale is not None:
            logger.info("Removing stale worktree %s of %s", stale, branch)
            await self._run(repo, "worktree", "remove", "--force", str(stale), check=False)
            shutil.rmtree(stale, ignore_errors=True)
        await self._run(repo, "worktree", "prune")
        await self._run(repo, "worktree", "add", "--quiet", "-B", branch, str(path), base_ref)

    async def remove_worktree(self, repo: Path, path: Path, branch: str) -> None:
        await self._run(repo, "worktree", "remove", "--force", str(path))
        await self._run(repo, "branch", "-D", "--quiet", branch)

    async def merge(self, repo: Path, branch: str, message: str) -> CommitRef:
        """Merge ``branch`` into the checked-out branch of ``repo`` with a merge commit."""

        result = await self._run(
            repo,
            "merge",
            "--quiet",
            "--no-ff",
            "--no-edit",
            "--no-verify",
            "-m",
            message,
            branch,
            check=False,
        )
        if result.exit_code != 0:
            await self._run(repo, "merge", "--abort", check=False)
            raise StorageError(
                f"git merge of {branch} failed in {repo} "
                f"(exit {result.exit_code}): {(result.stderr or result.stdout).strip()}",
            )
        return await self.current_ref(repo)

    async def _run(self, path: Path, *args: str, check: bool = True) -> GitResult:
        try:
            process = await asyncio.create_subprocess_exec(
                self._executable,
                *_IDENTITY,
                *args,
                cwd=str(path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, NotADirectoryError, PermissionError) as error:
            raise StorageError(f"git {args[0]} could not start in {path}: {error}") from error

        stdout, stderr = await process.communicate()
        result = GitResult(
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
        if check and result.exit_code != 0:
            raise StorageError(
                f"git {' '.join(args)} failed in {path} "
                f"(exit {result.exit_code}): {result.stderr.strip()}",
            )
        return result


def _worktrees_by_branch(porcelain: str) -> dict[str, Path]:
    """Map local branch name to worktree path from ``git worktree list --porcelain``."""

    result: dict[str, Path] = {}
    current: Path | None = None
    for line in porcelain.splitlines():
        if line.startswith("worktree "):
            current = Path(line.removeprefix("worktree "))
        elif line.startswith("branch refs/heads/") and current is not None:
            result[line.removeprefix("branch refs/heads/")] = current
        elif not line:
            current = None
    return result
