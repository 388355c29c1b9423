"""
Post-phase pipeline steps: review, verification, change-request creation.
"""

from __future__ import annotations

from pathlib import Path

from loguru import logger

from phaseforge.errors import VersionControlError


async def commit_fixes(git, worktree: Path, message: str, tag: str) -> str | None:
    """Commit agent fixes. No changes is fine; any other failure raises."""
    outcome = await git.commit(worktree, message)
    if outcome.status == "failed":
        raise VersionControlError(outcome.detail)
    if outcome.status == "no_changes":
        logger.debug(f"[{tag}] No fix changes to commit")
        return None
    logger.debug(f"[{tag}] Committed fixes: {outcome.sha}")
    return outcome.sha
