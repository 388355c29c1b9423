"""
PHASEFORGE Pre-commit Checks

Named shell commands (build, lint, tests) gate every phase commit. When
checks fail, the code agent gets each failing check's output and a
chance to fix it, then every check runs again.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable

from loguru import logger

from phaseforge.agents import Collaborator
from phaseforge.config_loader import Hook, HooksConfig
from phaseforge.errors import CheckCycleExhaustedError, PhaseforgeError

# Receives (check name, passed) after every individual check.
CheckReporter = Callable[[str, bool], Awaitable[Any]]


@dataclass
class HookOutcome:
    name: str
    command: str
    passed: bool
    stdout: str = ""
    stderr: str = ""

    @property
    def output(self) -> str:
        return f"{self.stdout}\n{self.stderr}"


class HookRunner:
    """Runs the configured checks in order, each in a fresh shell."""

    def __init__(self, config: HooksConfig):
        self.hooks: list[Hook] = list(config.pre_commit)
        self.max_retries = config.max_retries

    @property
    def has_hooks(self) -> bool:
        return bool(self.hooks)

    async def run_all(self, cwd: Path) -> list[HookOutcome]:
        """Run every hook. A failing hook never stops the ones after it."""
        return [await self.run_one(hook, cwd) for hook in self.hooks]

    async def run_one(self, hook: Hook, cwd: Path) -> HookOutcome:
        logger.debug(f"[HOOKS] Running {hook.name}: {hook.command}")
        try:
            process = await asyncio.create_subprocess_shell(
                hook.command,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise PhaseforgeError(f"failed to spawn hook {hook.name}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=hook.timeout_seconds)
        except asyncio.TimeoutError:
            process.kill()
            await process.communicate()
            logger.warning(f"[HOOKS] {hook.name} timed out after {hook.timeout_seconds}s")
            return HookOutcome(
                name=hook.name,
                command=hook.command,
                passed=False,
                stderr=f"timed out after {hook.timeout_seconds}s",
            )

        passed = process.returncode == 0
        if passed:
            logger.debug(f"[HOOKS] {hook.name} passed")
        else:
            logger.warning(f"[HOOKS] {hook.name} failed (exit {process.returncode})")

        return HookOutcome(
            name=hook.name,
            command=hook.command,
            passed=passed,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )


class CheckCycle:
    """
    Run checks, hand failures to the code agent, re-run, up to
    `max_retries` fix rounds. `turns` accumulates the fix invocations'
    turns and stays readable if the cycle raises.
    """

    def __init__(
        self,
        runner: HookRunner,
        collaborator: Collaborator,
        base_context: dict[str, Any] | None = None,
    ):
        self.runner = runner
        self.collaborator = collaborator
        self.base_context = dict(base_context or {})
        self.turns = 0
        self.rounds = 0

    async def run(self, worktree: Path, report: CheckReporter | None = None) -> None:
        if not self.runner.has_hooks:
            return

        max_retries = self.runner.max_retries
        for attempt in range(max_retries + 1):
            self.rounds += 1
            results = await self.runner.run_all(worktree)

            for result in results:
                if report is not None:
                    await report(result.name, result.passed)

            failed = [r for r in results if not r.passed]
            if not failed:
                logger.info(f"[HOOKS] All {len(results)} checks passed (attempt {attempt + 1})")
                return

            if attempt == max_retries:
                names = [r.name for r in failed]
                logger.error(f"[HOOKS] Checks still failing after {max_retries} retries: {names}")
                raise CheckCycleExhaustedError(names, max_retries)

            for result in failed:
                logger.info(f"[HOOKS] Asking code agent to fix {result.name} (attempt {attempt + 1})")
                context = {
                    **self.base_context,
                    "hook_name": result.name,
                    "hook_command": result.command,
                    "hook_output": result.output,
                }
                transcript = await self.collaborator.invoke("code", "code/hook_fix", context, worktree)
                self.turns += transcript.turns
