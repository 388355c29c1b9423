"""
PHASEFORGE Workspace — Version-Control Facade

Each feature runs in its own `git worktree` under `<repo>/.trees/<slug>`,
checked out on a branch derived from the slug. The orchestrator only
depends on the small contract here: ensure a worktree, commit, diff,
and compute branch names.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from loguru import logger

from phaseforge.config_loader import TREES_DIR_NAME, GitConfig
from phaseforge.errors import VersionControlError

GIT_TIMEOUT_SECONDS = 60


@dataclass(frozen=True)
class CommitOutcome:
    """Result of a commit attempt: committed, nothing to commit, or failed."""
    status: Literal["committed", "no_changes", "failed"]
    sha: str | None = None
    detail: str = ""

    @classmethod
    def committed(cls, sha: str) -> "CommitOutcome":
        return cls(status="committed", sha=sha)

    @classmethod
    def no_changes(cls) -> "CommitOutcome":
        return cls(status="no_changes")

    @classmethod
    def failed(cls, detail: str) -> "CommitOutcome":
        return cls(status="failed", detail=detail)


def extract_id(slug: str) -> str:
    """Leading underscore-delimited numeric prefix of a slug, else the slug."""
    head = slug.split("_", 1)[0]
    if head and head.isascii() and head.isdigit():
        return head
    return slug


class GitOps:
    """Worktree lifecycle, commits and diffs for one repository."""

    def __init__(self, repo_path: Path, config: GitConfig):
        self.repo_path = repo_path.resolve()
        self.config = config

    @property
    def base_branch(self) -> str:
        return self.config.base_branch

    def worktree_path(self, slug: str) -> Path:
        return self.repo_path / TREES_DIR_NAME / slug

    def branch_name(self, slug: str) -> str:
        return (
            self.config.branch_pattern
            .replace("{slug}", slug)
            .replace("{id}", extract_id(slug))
        )

    async def ensure_worktree(self, slug: str) -> Path:
        """Return the feature's worktree, creating it on first use."""
        path = self.worktree_path(slug)
        if path.exists():
            logger.debug(f"[WORKSPACE] Reusing worktree: {path}")
            return path
        return await self.create_worktree(slug)

    async def create_worktree(self, slug: str) -> Path:
        path = self.worktree_path(slug)
        branch = self.branch_name(slug)
        path.parent.mkdir(parents=True, exist_ok=True)

        if await self._branch_exists(branch):
            # Worktree directory was removed but the branch survived: reattach.
            args = ["worktree", "add", str(path), branch]
        else:
            args = ["worktree", "add", "-b", branch, str(path), self.base_branch]

        code, _, stderr = await self._run(args, cwd=self.repo_path)
        if code != 0:
            raise VersionControlError(f"failed to create worktree for {slug}: {stderr.strip()}")

        logger.info(f"[WORKSPACE] Worktree created: {path} ({branch})")
        return path

    async def commit(self, worktree: Path, message: str) -> CommitOutcome:
        """Stage everything and commit. Never raises for git failures."""
        try:
            code, _, stderr = await self._run(["add", "-A"], cwd=worktree)
            if code != 0:
                return CommitOutcome.failed(f"git add failed: {stderr.strip()}")

            code, status, stderr = await self._run(["status", "--porcelain"], cwd=worktree)
            if code != 0:
                return CommitOutcome.failed(f"git status failed: {stderr.strip()}")
            if not status.strip():
                logger.debug("[WORKSPACE] Nothing to commit.")
                return CommitOutcome.no_changes()

            code, _, stderr = await self._run(["commit", "-m", message], cwd=worktree)
            if code != 0:
                return CommitOutcome.failed(f"git commit failed: {stderr.strip()}")

            code, sha, stderr = await self._run(["rev-parse", "--short", "HEAD"], cwd=worktree)
            if code != 0:
                return CommitOutcome.failed(f"git rev-parse failed: {stderr.strip()}")
        except VersionControlError as e:
            return CommitOutcome.failed(str(e))

        sha = sha.strip()
        logger.debug(f"[WORKSPACE] Committed {sha}: {message}")
        return CommitOutcome.committed(sha)

    async def diff(self, worktree: Path, base: str) -> str:
        """Diff of the worktree (committed and uncommitted) against `base`."""
        code, out, stderr = await self._run(["diff", base], cwd=worktree)
        if code != 0:
            raise VersionControlError(f"git diff failed: {stderr.strip()}")
        return out

    async def current_branch(self, worktree: Path) -> str:
        code, out, stderr = await self._run(["rev-parse", "--abbrev-ref", "HEAD"], cwd=worktree)
        if code != 0:
            raise VersionControlError(f"git rev-parse --abbrev-ref failed: {stderr.strip()}")
        return out.strip()

    async def _branch_exists(self, name: str) -> bool:
        code, out, _ = await self._run(["branch", "--list", name], cwd=self.repo_path)
        return code == 0 and bool(out.strip())

    @staticmethod
    async def _run(args: list[str], cwd: Path) -> tuple[int, str, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                "git", *args,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise VersionControlError(f"failed to spawn git {' '.join(args)}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=GIT_TIMEOUT_SECONDS)
        except asyncio.TimeoutError as e:
            process.kill()
            await process.communicate()
            raise VersionControlError(f"git {' '.join(args)} timed out") from e

        return (
            process.returncode if process.returncode is not None else 1,
            stdout.decode(errors="replace"),
            stderr.decode(errors="replace"),
        )
