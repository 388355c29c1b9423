"""
PHASEFORGE Agent Roster

An agent is:
  - A system prompt (`<agent>/system`)
  - A task template rendered with a context mapping
  - A tool set (possibly empty)

Agents are stateless between invocations. State lives in the plan file
and the worktree.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel


class AgentTranscript(BaseModel):
    """What an agent invocation hands back to the pipeline."""
    text: str = ""
    turns: int = 1
    is_error: bool = False


class AgentProfile(BaseModel):
    name: str
    tools: list[str] = []  # empty → single completion, no tool loop
    max_tokens: int = 8192


ALL_TOOLS = ["read_file", "write_file", "list_files", "run_command", "done"]
READ_ONLY_TOOLS = ["read_file", "list_files", "run_command", "done"]

AGENT_PROFILES: dict[str, AgentProfile] = {
    "code": AgentProfile(name="code", tools=ALL_TOOLS),
    "review": AgentProfile(name="review", tools=[], max_tokens=4096),
    "verify": AgentProfile(name="verify", tools=READ_ONLY_TOOLS),
}


class Collaborator(Protocol):
    """The change-producing collaborator the pipeline drives."""

    async def invoke(
        self,
        agent_name: str,
        task_template: str,
        context: dict[str, Any],
        working_dir: Path | None,
    ) -> AgentTranscript:
        ...
