"""Workspace snapshot and rollback built on git commits."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import shutil
import tempfile
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from pathlib import Path

from pentest_pipeline.orchestrator.errors import StorageError
from pentest_pipeline.orchestrator.models import CommitRef
from pentest_pipeline.orchestrator.vcs import GitClient

logger = logging.getLogger(__name__)

_BRANCH_PREFIX = "pentest-pipeline"


@dataclass(frozen=True, slots=True)
class IsolatedWorkspace:
    """Private checkout of a shared workspace for one concurrently running agent."""

    workspace: Path
    path: Path
    branch: str


class CheckpointStore:
    """Checkpoint, commit and rollback for agent workspaces.

    Operations on one workspace are serialized by a per-workspace lock so a
    concurrent reader never observes a half-applied rollback from this process.
    Agents that run next to siblings work in an :meth:`isolated` worktree, so a
    rollback only ever discards the failing agent's own changes.
    """

    def __init__(self, git: GitClient | None = None) -> None:
        self._git = git or GitClient()
        self._locks: dict[str, asyncio.Lock] = {}

    async def checkpoint(self, workspace: Path, label: str, attempt_number: int) -> CommitRef:
        """Snapshot current workspace state before an attempt."""

        async with self._lock_for(workspace):
            await self._git.ensure_repository(workspace)
            ref = await self._git.snapshot(
                workspace,
                f"Checkpoint: {label} (attempt {attempt_number})",
            )
        logger.debug("Checkpoint %s for %s attempt %d", ref[:12], label, attempt_number)
        return ref

    async def commit_success(self, workspace: Path, label: str) -> CommitRef:
        """Record the accepted state of a successful attempt."""

        async with self._lock_for(workspace):
            await self._git.ensure_repository(workspace)
            ref = await self._git.commit(workspace, f"Agent success: {label}")
        logger.info("Committed %s as %s", label, ref[:12])
        return ref

    async def rollback(self, workspace: Path, reason: str) -> None:
        """Discard every change since the most recent checkpoint.

        Untracked files are removed as well; calling this twice is a no-op.
        """

        async with self._lock_for(workspace):
            head = await self._git.current_ref(workspace)
            await self._git.restore(workspace, head)
        logger.info("Rolled back %s to %s (%s)", workspace, head[:12], reason)

    async def restore_to(self, workspace: Path, ref: CommitRef) -> None:
        """Reset the workspace to an older accepted checkpoint."""

        async with self._lock_for(workspace):
            await self._git.restore(workspace, ref)
        logger.info("Restored %s to %s", workspace, ref[:12])

    async def current_ref(self, workspace: Path) -> CommitRef:
        return await self._git.current_ref(workspace)

    async def latest(self, workspace: Path, refs: Sequence[CommitRef]) -> CommitRef:
        """Most recent of several checkpoints recorded on the same workspace history."""

        if len(refs) == 1:
            return refs[0]
        return await self._git.newest(workspace, refs)

    @contextlib.asynccontextmanager
    async def isolated(self, workspace: Path, name: str) -> AsyncIterator[IsolatedWorkspace]:
        """Check out the workspace into a private worktree for the duration of the block.

        Uncommitted changes of the shared tree are snapshotted first so the
        worktree starts from the same files. Nothing done in the worktree
        reaches ``workspace`` unless :meth:`merge_isolated` is called; the
        worktree and its branch are removed on exit.
        """

        branch = f"{_BRANCH_PREFIX}/{name}"
        async with self._lock_for(workspace):
            await self._git.ensure_repository(workspace)
            if await self._git.is_dirty(workspace):
                await self._git.snapshot(workspace, f"Workspace state before {name}")
            base_ref = await self._git.current_ref(workspace)
            parent = Path(tempfile.mkdtemp(prefix=f"{_BRANCH_PREFIX}-{name}-"))
            path = parent / name
            try:
                await self._git.add_worktree(workspace, path, branch, base_ref)
            except StorageError:
                shutil.rmtree(parent, ignore_errors=True)
                raise
        logger.debug("Isolated %s in %s from %s", name, path, base_ref[:12])
        try:
            yield IsolatedWorkspace(workspace=workspace, path=path, branch=branch)
        finally:
            await asyncio.shield(self._discard(workspace, parent, path, branch))

    async def merge_isolated(self, isolated: IsolatedWorkspace, label: str) -> CommitRef:
        """Bring an isolated agent's committed work into the shared workspace."""

        async with self._lock_for(isolated.workspace):
            ref = await self._git.merge(
                isolated.workspace,
                isolated.branch,
                f"Agent success: {label}",
            )
        logger.info("Merged %s into %s as %s", label, isolated.workspace, ref[:12])
        return ref

    async def _discard(self, workspace: Path, parent: Path, path: Path, branch: str) -> None:
        async with self._lock_for(workspace):
            try:
                await self._git.remove_worktree(workspace, path, branch)
            except StorageError as error:
                logger.warning("Could not remove worktree %s: %s", path, error)
        shutil.rmtree(parent, ignore_errors=True)

    def _lock_for(self, workspace: Path) -> asyncio.Lock:
        key = str(workspace.resolve())
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock
