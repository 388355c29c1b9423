"""
PHASEFORGE Engine — the public entry point.

    engine = Engine(EngineConfig(repo_path=Path(".")))
    stream = await engine.run("0001_auth")
    async for event in stream:
        ...
"""

from __future__ import annotations

import asyncio

from loguru import logger

from phaseforge.agents import Collaborator
from phaseforge.agents.runner import AgentRunner
from phaseforge.config_loader import EngineConfig, ProjectConfig, resolve_config
from phaseforge.controller import Controller, RunContext
from phaseforge.errors import AlreadyInitializedError, FeatureNotFoundError, NotInitializedError
from phaseforge.events import EventChannel, RunStream
from phaseforge.plan_store import PlanStore
from phaseforge.prompts import PromptManager
from phaseforge.router import Router
from phaseforge.workspace import GitOps

DEFAULT_REPO_CONFIG = """\
# PHASEFORGE configuration.
# Values here are merged over the built-in defaults.

agent:
  # model: anthropic/claude-sonnet-4-20250514
  # max_tokens: 16384
  max_turns: 30
  permission_mode: auto

git:
  auto_commit: true
  branch_pattern: "feat/{id}-{slug}"
  base_branch: main

review:
  enabled: true
  max_iterations: 3

verification:
  enabled: true
  max_iterations: 3

hooks:
  pre_commit: []
  #  - name: tests
  #    command: python -m pytest -q
  max_retries: 5
"""

GITIGNORE_ENTRY = ".trees/"


class Engine:
    def __init__(
        self,
        config: EngineConfig,
        *,
        collaborator: Collaborator | None = None,
        git: GitOps | None = None,
    ):
        self.config = config
        self.project: ProjectConfig = resolve_config(config)
        self.store = PlanStore(config.state_dir)
        self.git = git or GitOps(config.repo_path, self.project.git)
        self.router: Router | None = None

        if collaborator is None:
            self.router = Router(self.project.agent)
            prompts = PromptManager(self.project.prompts.include, base_dir=config.repo_path)
            collaborator = AgentRunner(self.router, prompts, self.project.agent, self.project.tools)
        self.collaborator = collaborator

    async def run(self, slug: str) -> RunStream:
        """Start executing a feature's plan in a background task."""
        if not self.config.state_dir.exists():
            raise NotInitializedError()

        plan = self.store.load(slug)
        try:
            design_spec = self.store.load_supporting_document(slug, "design")
        except FeatureNotFoundError as e:
            logger.warning(f"[RUN] Design spec missing, continuing with empty context: {e}")
            design_spec = ""

        worktree = await self.git.ensure_worktree(slug)
        logger.info(f"[RUN] Worktree ready: {worktree}")

        ctx = RunContext(
            repo_path=self.config.repo_path,
            slug=slug,
            plan=plan,
            design_spec=design_spec,
            worktree=worktree,
            config=self.project,
            store=self.store,
            git=self.git,
            collaborator=self.collaborator,
        )
        channel = EventChannel()
        task = asyncio.create_task(Controller(ctx, channel).execute(), name=f"phaseforge-run-{slug}")
        return RunStream(channel, task)

    def init(self) -> None:
        """Scaffold the state directory and ignore worktrees in git."""
        state_dir = self.config.state_dir
        if state_dir.exists():
            raise AlreadyInitializedError()

        logger.info(f"[INIT] Initializing {self.config.repo_path}")
        (state_dir / "features").mkdir(parents=True)
        self.config.logs_dir.mkdir(parents=True, exist_ok=True)
        self.config.config_path.write_text(DEFAULT_REPO_CONFIG, encoding="utf-8")
        self.config.trees_dir.mkdir(parents=True, exist_ok=True)
        self._update_gitignore()

    def _update_gitignore(self) -> None:
        path = self.config.repo_path / ".gitignore"
        content = path.read_text(encoding="utf-8") if path.exists() else ""
        if any(line.strip() == GITIGNORE_ENTRY for line in content.splitlines()):
            return
        if content and not content.endswith("\n"):
            content += "\n"
        path.write_text(content + GITIGNORE_ENTRY + "\n", encoding="utf-8")

    def usage_summary(self) -> dict:
        if self.router is None:
            return {}
        return self.router.usage.summary()
