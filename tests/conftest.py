from __future__ import annotations

import os
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import pytest

from phaseforge.agents import AgentTranscript
from phaseforge.config_loader import ProjectConfig
from phaseforge.controller import RunContext
from phaseforge.plan_store import Phase, PhaseResult, Plan, PlanStore, StepStatus, VerificationPlan
from phaseforge.workspace import CommitOutcome

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


@dataclass
class Call:
    agent: str
    template: str
    context: dict[str, Any]
    working_dir: Path | None


class FakeCollaborator:
    """
    Scripted collaborator. `script` maps a template name to a list of
    transcripts (or exceptions) consumed in order; the last entry repeats.
    """

    def __init__(self, script: dict[str, list] | None = None, default_turns: int = 1):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.default_turns = default_turns
        self.calls: list[Call] = []
        self.on_invoke: Callable[[Call], None] | None = None

    async def invoke(self, agent_name, task_template, context, working_dir):
        call = Call(agent_name, task_template, dict(context), working_dir)
        self.calls.append(call)
        if self.on_invoke is not None:
            self.on_invoke(call)

        queue = self.script.get(task_template)
        if not queue:
            return AgentTranscript(text="ok", turns=self.default_turns)
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

    def templates(self) -> list[str]:
        return [c.template for c in self.calls]


@dataclass
class FakeGit:
    """In-memory version-control facade."""
    diffs: list[str] = field(default_factory=list)
    commit_outcomes: list[CommitOutcome] = field(default_factory=list)
    commits: list[str] = field(default_factory=list)
    branch_pattern: str = "feat/{id}-{slug}"
    _counter: int = 0

    async def ensure_worktree(self, slug: str) -> Path:
        return Path("/tmp") / slug

    def branch_name(self, slug: str) -> str:
        return self.branch_pattern.replace("{slug}", slug).replace("{id}", slug)

    async def commit(self, worktree: Path, message: str) -> CommitOutcome:
        self.commits.append(message)
        if self.commit_outcomes:
            return self.commit_outcomes.pop(0)
        self._counter += 1
        return CommitOutcome.committed(f"abc{self._counter:04d}")

    async def diff(self, worktree: Path, base: str) -> str:
        if not self.diffs:
            return ""
        return self.diffs.pop(0)


def make_config(**sections: dict) -> ProjectConfig:
    """ProjectConfig with review and verification off unless overridden."""
    data: dict[str, Any] = {
        "review": {"enabled": False},
        "verification": {"enabled": False},
    }
    data.update(sections)
    return ProjectConfig(**data)


def make_plan(phase_count: int = 2, completed: int = 0, verification: VerificationPlan | None = None) -> Plan:
    phases = []
    for i in range(phase_count):
        result = None
        if i < completed:
            result = PhaseResult(status=StepStatus.COMPLETED, turns=2, commit=f"done{i}")
        phases.append(Phase(
            name=f"phase {i + 1}",
            description=f"do part {i + 1}",
            tasks=[f"task {i + 1}.a", f"task {i + 1}.b"],
            result=result,
        ))
    return Plan(feature="Add auth", phases=phases, verification_plan=verification or VerificationPlan())


@pytest.fixture
def store(tmp_path) -> PlanStore:
    return PlanStore(tmp_path / ".phaseforge")


@pytest.fixture
def make_context(tmp_path, store):
    def _make(plan: Plan, collaborator, git=None, config: ProjectConfig | None = None, slug: str = "0001_auth"):
        store.save(slug, plan)
        return RunContext(
            repo_path=tmp_path,
            slug=slug,
            plan=plan,
            design_spec="design notes",
            worktree=tmp_path / ".trees" / slug,
            config=config or make_config(),
            store=store,
            git=git or FakeGit(),
            collaborator=collaborator,
        )
    return _make


# ---------------------------------------------------------------------------
# Real git helpers
# ---------------------------------------------------------------------------

def _git_env() -> dict[str, str]:
    env = os.environ.copy()
    env.update({
        "GIT_AUTHOR_NAME": "Test",
        "GIT_AUTHOR_EMAIL": "test@example.com",
        "GIT_COMMITTER_NAME": "Test",
        "GIT_COMMITTER_EMAIL": "test@example.com",
    })
    return env


def git(repo: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args], cwd=repo, check=True, capture_output=True, text=True, env=_git_env(),
    )
    return result.stdout


@pytest.fixture
def git_repo(tmp_path, monkeypatch) -> Path:
    """A repository on `main` with one commit."""
    for key, value in _git_env().items():
        if key.startswith("GIT_"):
            monkeypatch.setenv(key, value)

    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "-q")
    git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    (repo / "README.md").write_text("hello\n", encoding="utf-8")
    git(repo, "add", "README.md")
    git(repo, "commit", "-q", "-m", "initial")
    return repo
