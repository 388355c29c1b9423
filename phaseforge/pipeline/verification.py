"""
Verification cycle: verify agent checks the acceptance criteria, the
code agent fixes what it reports, repeat.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from loguru import logger

from phaseforge.agents import AgentTranscript, Collaborator
from phaseforge.pipeline import commit_fixes
from phaseforge.plan_store import VerificationPlan, VerificationResult

_FAIL_WORDS = ("fail", "error")
_PASS_WORDS = ("pass", "success")


def verification_passed(transcript: AgentTranscript) -> bool:
    """
    An explicit failure flag always fails. Otherwise keyword heuristic:
    fail only when a failure word appears and no success word does.
    "tests passed with 1 error" counts as passed.
    """
    if transcript.is_error:
        return False

    lower = transcript.text.lower()
    has_fail = any(word in lower for word in _FAIL_WORDS)
    has_pass = any(word in lower for word in _PASS_WORDS)
    return not (has_fail and not has_pass)


class VerificationCycle:
    def __init__(
        self,
        collaborator: Collaborator,
        git,
        *,
        slug: str,
        plan: VerificationPlan,
        max_iterations: int,
        auto_commit: bool = True,
        base_context: dict[str, Any] | None = None,
    ):
        self.collaborator = collaborator
        self.git = git
        self.slug = slug
        self.plan = plan
        self.max_iterations = max_iterations
        self.auto_commit = auto_commit
        self.base_context = dict(base_context or {})
        self.turns = 0

    async def run(self, worktree: Path) -> VerificationResult:
        for iteration in range(self.max_iterations):
            context = {
                **self.base_context,
                "criteria": self.plan.criteria,
                "test_commands": self.plan.test_commands,
            }
            transcript = await self.collaborator.invoke("verify", "verify/task", context, worktree)
            self.turns += transcript.turns

            if verification_passed(transcript):
                logger.info(f"[VERIFY] Passed on iteration {iteration + 1}")
                return VerificationResult(turns=self.turns, passed=True)

            logger.info(f"[VERIFY] Iteration {iteration + 1} failed")
            if iteration + 1 >= self.max_iterations:
                break

            fix_context = {
                **self.base_context,
                "failures": [],
                "output": transcript.text,
            }
            fix = await self.collaborator.invoke("code", "verify/fix", fix_context, worktree)
            self.turns += fix.turns

            if self.auto_commit:
                message = f"fix({self.slug}): verification iteration {iteration + 1} fixes"
                await commit_fixes(self.git, worktree, message, "VERIFY")

        logger.warning(f"[VERIFY] Still failing after {self.max_iterations} iteration(s)")
        return VerificationResult(turns=self.turns, passed=False)
