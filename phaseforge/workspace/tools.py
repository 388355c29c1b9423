"""
Sandboxed command execution for agents.

Every shell command an agent asks to run goes through `ToolExecutor`,
which refuses blocked patterns and confines the working directory to
the feature's worktree.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

DEFAULT_TIMEOUT_SECONDS = 300
MAX_OUTPUT_CHARS = 20_000


class ToolViolationError(Exception):
    """Command rejected before it ran."""


@dataclass
class ToolResult:
    command: str
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    def render(self) -> str:
        return f"Exit code: {self.returncode}\nSTDOUT:\n{self.stdout}\nSTDERR:\n{self.stderr}"


def _truncate(text: str) -> str:
    if len(text) <= MAX_OUTPUT_CHARS:
        return text
    return text[:MAX_OUTPUT_CHARS] + f"\n... [truncated {len(text) - MAX_OUTPUT_CHARS} chars]"


class ToolExecutor:
    def __init__(
        self,
        working_dir: Path,
        blocked_patterns: list[str] | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.working_dir = working_dir
        self.blocked_patterns = list(blocked_patterns or [])
        self.timeout_seconds = timeout_seconds

    def check(self, command: str) -> None:
        if not command.strip():
            raise ToolViolationError("empty command")
        for pattern in self.blocked_patterns:
            if pattern in command:
                raise ToolViolationError(f"command matches blocked pattern {pattern!r}: {command}")

    def resolve_path(self, relative: str) -> Path:
        """Resolve a path inside the working directory, refusing escapes."""
        root = self.working_dir.resolve()
        target = (root / relative).resolve()
        if target != root and root not in target.parents:
            raise ToolViolationError(f"path escapes workspace: {relative}")
        return target

    async def execute(self, command: str) -> ToolResult:
        self.check(command)
        logger.debug(f"[TOOLS] $ {command}")

        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(self.working_dir),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            process.kill()
            stdout, stderr = await process.communicate()
            logger.warning(f"[TOOLS] Timed out after {self.timeout_seconds}s: {command}")
            return ToolResult(
                command=command,
                returncode=process.returncode if process.returncode is not None else -1,
                stdout=_truncate(stdout.decode(errors="replace")),
                stderr=_truncate(stderr.decode(errors="replace")),
                timed_out=True,
            )

        return ToolResult(
            command=command,
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=_truncate(stdout.decode(errors="replace")),
            stderr=_truncate(stderr.decode(errors="replace")),
        )
