"""
Change-request finalizer: asks the code agent to open a pull/merge
request for the feature branch and fishes the URL out of its output.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loguru import logger

from phaseforge.agents import Collaborator
from phaseforge.plan_store import Plan, ReviewResult, VerificationResult

_URL_RE = re.compile(r"https?://[^\s\"'()<>]+")
CHANGE_REQUEST_SEGMENTS = ("/pull/", "/merge_requests/")


def extract_pr_url(text: str) -> str | None:
    """First URL that looks like a GitHub pull or GitLab merge request."""
    for match in _URL_RE.finditer(text):
        url = match.group(0).rstrip(".,;:")
        if any(segment in url for segment in CHANGE_REQUEST_SEGMENTS):
            return url
    return None


@dataclass
class FinalizerOutcome:
    url: str | None
    diagnostic: str = ""

    @property
    def created(self) -> bool:
        return self.url is not None


def build_pr_context(
    plan: Plan,
    *,
    branch: str,
    base_branch: str,
    review: ReviewResult,
    verification: VerificationResult,
) -> dict[str, Any]:
    phases = []
    for phase in plan.phases:
        result = None
        if phase.result is not None:
            result = {"turns": phase.result.turns, "commit": phase.result.commit or "unknown"}
        phases.append({"name": phase.name, "result": result})

    return {
        "feature_description": plan.feature,
        "branch": branch,
        "base_branch": base_branch,
        "phases": phases,
        "review": {
            "issues_found": review.issues_found,
            "issues_fixed": review.issues_fixed,
        },
        "verification": {"passed": verification.passed},
    }


async def create_change_request(
    collaborator: Collaborator,
    worktree: Path,
    context: dict[str, Any],
) -> FinalizerOutcome:
    """Never raises for a missing URL; the diagnostic carries the raw output."""
    transcript = await collaborator.invoke("code", "code/pr", context, worktree)

    url = extract_pr_url(transcript.text)
    if url is None:
        logger.warning("[PR] No change request URL in agent output")
        return FinalizerOutcome(
            url=None,
            diagnostic=f"PR URL not detected in agent output: {transcript.text.strip()}",
        )

    logger.info(f"[PR] Created: {url}")
    return FinalizerOutcome(url=url)
