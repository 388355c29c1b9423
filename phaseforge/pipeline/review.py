"""
Review cycle: diff → review agent → parse issues → code agent fixes → commit.

Review output is free text. Two layouts are understood:

    - severity: error
      file: src/main.rs
      description: Missing error handling

and, only when the block layout yields nothing:

    - [error] src/main.rs: Missing error handling
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel

from phaseforge.agents import Collaborator
from phaseforge.pipeline import commit_fixes
from phaseforge.plan_store import ReviewResult


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    SUGGESTION = "suggestion"


_SEVERITY_ALIASES = {
    "error": Severity.ERROR,
    "warning": Severity.WARNING,
    "warn": Severity.WARNING,
    "suggestion": Severity.SUGGESTION,
    "info": Severity.SUGGESTION,
    "note": Severity.SUGGESTION,
}


class Issue(BaseModel):
    severity: Severity
    file: str
    description: str


def parse_severity(text: str) -> Severity | None:
    return _SEVERITY_ALIASES.get(text.strip().lower())


def _make_issue(severity: Severity | None, file: str | None, description: str | None) -> Issue | None:
    if severity is None or not file or not description:
        return None
    return Issue(severity=severity, file=file, description=description)


def parse_block_issues(output: str) -> list[Issue]:
    issues: list[Issue] = []
    severity: Severity | None = None
    file: str | None = None
    description: str | None = None
    seen_severity = False

    for line in output.splitlines():
        stripped = line.strip()

        rest = None
        if stripped.startswith("severity:"):
            rest = stripped[len("severity:"):]
        elif stripped.startswith("- severity:"):
            rest = stripped[len("- severity:"):]

        if rest is not None:
            if seen_severity and (issue := _make_issue(severity, file, description)):
                issues.append(issue)
            severity = parse_severity(rest)
            file = None
            description = None
            seen_severity = True
        elif stripped.startswith("file:"):
            file = stripped[len("file:"):].strip()
        elif stripped.startswith("description:"):
            description = stripped[len("description:"):].strip()

    if seen_severity and (issue := _make_issue(severity, file, description)):
        issues.append(issue)
    return issues


def parse_inline_issue(line: str) -> Issue | None:
    """Parse `- [severity] file: description`."""
    if not line.startswith("-"):
        return None
    content = line[1:].strip()
    if not content.startswith("["):
        return None
    end = content.find("]")
    if end < 0:
        return None

    severity = parse_severity(content[1:end])
    if severity is None:
        return None

    file, sep, description = content[end + 1:].partition(":")
    if not sep:
        return None
    return _make_issue(severity, file.strip(), description.strip())


def parse_review_issues(output: str) -> list[Issue]:
    """Block layout wins outright if it finds anything; otherwise inline."""
    block = parse_block_issues(output)
    if block:
        return block

    issues = []
    for line in output.splitlines():
        issue = parse_inline_issue(line.strip())
        if issue is not None:
            issues.append(issue)
    return issues


class ReviewCycle:
    """
    Bounded review/fix loop. Running out of iterations is not an error;
    the totals accrued so far are returned.
    """

    def __init__(
        self,
        collaborator: Collaborator,
        git,
        *,
        slug: str,
        base_branch: str,
        max_iterations: int,
        auto_commit: bool = True,
        base_context: dict[str, Any] | None = None,
        criteria: list[str] | None = None,
    ):
        self.collaborator = collaborator
        self.git = git
        self.slug = slug
        self.base_branch = base_branch
        self.max_iterations = max_iterations
        self.auto_commit = auto_commit
        self.base_context = dict(base_context or {})
        self.criteria = list(criteria or [])

        self.turns = 0
        self.issues_found = 0
        self.issues_fixed = 0
        self.issues: list[Issue] = []

    @property
    def result(self) -> ReviewResult:
        return ReviewResult(
            turns=self.turns,
            issues_found=self.issues_found,
            issues_fixed=self.issues_fixed,
        )

    async def run(self, worktree: Path) -> ReviewResult:
        for iteration in range(self.max_iterations):
            diff = await self.git.diff(worktree, self.base_branch)
            if not diff.strip():
                logger.debug("[REVIEW] Empty diff, nothing to review")
                break

            review_context = {
                **self.base_context,
                "verification_criteria": self.criteria,
                "diff": diff,
            }
            transcript = await self.collaborator.invoke("review", "review/task", review_context, None)
            self.turns += transcript.turns

            issues = parse_review_issues(transcript.text)
            if not issues:
                logger.info(f"[REVIEW] Iteration {iteration + 1}: no issues")
                break

            self.issues.extend(issues)
            self.issues_found += len(issues)
            logger.info(f"[REVIEW] Iteration {iteration + 1}: {len(issues)} issue(s)")

            fix_context = {
                **self.base_context,
                "issues": [issue.model_dump(mode="json") for issue in issues],
            }
            fix = await self.collaborator.invoke("code", "review/fix", fix_context, worktree)
            self.turns += fix.turns
            self.issues_fixed += len(issues)

            if self.auto_commit:
                message = f"fix({self.slug}): review iteration {iteration + 1} fixes"
                await commit_fixes(self.git, worktree, message, "REVIEW")

        return self.result
