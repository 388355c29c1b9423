"""
Agent runner — the collaborator behind every pipeline step.

Renders `<agent>/system` plus the task template, then either makes a
single completion (agents without tools) or runs a read-execute-observe
tool loop in the worktree until the model calls `done` or runs out of
turns.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from loguru import logger

from phaseforge.agents import AGENT_PROFILES, AgentProfile, AgentTranscript
from phaseforge.config_loader import AgentConfig, ToolsConfig
from phaseforge.errors import CollaboratorError, PhaseforgeError
from phaseforge.prompts import PromptManager
from phaseforge.router import Router
from phaseforge.workspace.tools import ToolExecutor, ToolViolationError

MAX_LISTED_FILES = 500
NUDGE = "Please use your tools to take action, or call `done` if you are finished."

TOOL_SCHEMAS: dict[str, dict] = {
    "read_file": {
        "type": "function",
        "function": {
            "name": "read_file",
            "description": "Read a file from the workspace.",
            "parameters": {
                "type": "object",
                "properties": {"path": {"type": "string"}},
                "required": ["path"],
            },
        },
    },
    "write_file": {
        "type": "function",
        "function": {
            "name": "write_file",
            "description": "Write complete content to a file in the workspace (creates or overwrites).",
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {"type": "string"},
                    "content": {"type": "string"},
                },
                "required": ["path", "content"],
            },
        },
    },
    "list_files": {
        "type": "function",
        "function": {
            "name": "list_files",
            "description": "List files under a directory of the workspace (default: the root).",
            "parameters": {
                "type": "object",
                "properties": {"path": {"type": "string"}},
            },
        },
    },
    "run_command": {
        "type": "function",
        "function": {
            "name": "run_command",
            "description": "Run a shell command (build, linter, tests) in the workspace.",
            "parameters": {
                "type": "object",
                "properties": {"command": {"type": "string"}},
                "required": ["command"],
            },
        },
    },
    "done": {
        "type": "function",
        "function": {
            "name": "done",
            "description": "Signal that the task is finished.",
            "parameters": {
                "type": "object",
                "properties": {
                    "summary": {"type": "string", "description": "What you accomplished"},
                    "success": {"type": "boolean", "description": "False if the task could not be completed"},
                },
                "required": ["summary"],
            },
        },
    },
}


def _tool_call_to_dict(tool_call: Any) -> dict:
    if hasattr(tool_call, "model_dump"):
        return tool_call.model_dump()
    return {
        "id": tool_call.id,
        "type": "function",
        "function": {"name": tool_call.function.name, "arguments": tool_call.function.arguments},
    }


class AgentRunner:
    def __init__(
        self,
        router: Router,
        prompts: PromptManager,
        agent_config: AgentConfig,
        tools_config: ToolsConfig,
    ):
        self.router = router
        self.prompts = prompts
        self.agent_config = agent_config
        self.tools_config = tools_config

    def tools_for(self, profile: AgentProfile) -> list[str]:
        tools = list(profile.tools)
        mode = self.agent_config.permission_mode
        if mode == "none":
            tools = [t for t in tools if t != "write_file"]
        elif mode == "manual":
            tools = [t for t in tools if t != "run_command"]
        return tools

    async def invoke(
        self,
        agent_name: str,
        task_template: str,
        context: dict[str, Any],
        working_dir: Path | None,
    ) -> AgentTranscript:
        profile = AGENT_PROFILES.get(agent_name)
        if profile is None:
            raise CollaboratorError(f"unknown agent: {agent_name}")

        messages = [
            {"role": "system", "content": self.prompts.render(f"{agent_name}/system", context)},
            {"role": "user", "content": self.prompts.render(task_template, context)},
        ]

        logger.info(f"[AGENT] {agent_name} ← {task_template}")
        try:
            tools = self.tools_for(profile)
            if not tools or working_dir is None:
                response = await self.router.complete(agent_name, messages, max_tokens=profile.max_tokens)
                return AgentTranscript(text=response.content, turns=1)
            return await self._tool_loop(profile, tools, messages, working_dir)
        except PhaseforgeError:
            raise
        except Exception as e:
            raise CollaboratorError(
                f"agent {agent_name} failed: {e}. Check your network connection and API credentials."
            ) from e

    async def _tool_loop(
        self,
        profile: AgentProfile,
        tools: list[str],
        messages: list[dict[str, Any]],
        working_dir: Path,
    ) -> AgentTranscript:
        executor = ToolExecutor(working_dir, blocked_patterns=self.tools_config.blocked_patterns)
        schemas = [TOOL_SCHEMAS[name] for name in tools]
        texts: list[str] = []
        max_turns = self.agent_config.max_turns

        for turn in range(1, max_turns + 1):
            logger.debug(f"[AGENT] {profile.name} turn {turn}/{max_turns}")
            response = await self.router.complete(
                profile.name, messages, tools=schemas, max_tokens=profile.max_tokens,
            )

            assistant: dict[str, Any] = {"role": "assistant"}
            if response.content:
                assistant["content"] = response.content
                texts.append(response.content)
            if response.tool_calls:
                assistant["tool_calls"] = [_tool_call_to_dict(tc) for tc in response.tool_calls]
            messages.append(assistant)

            if not response.tool_calls:
                messages.append({"role": "user", "content": NUDGE})
                continue

            for tool_call in response.tool_calls:
                name = tool_call.function.name
                try:
                    args = json.loads(tool_call.function.arguments or "{}")
                except json.JSONDecodeError:
                    messages.append(self._tool_msg(tool_call, "Error: Invalid JSON in arguments."))
                    continue

                if name == "done" and name in tools:
                    summary = args.get("summary", "")
                    if summary:
                        texts.append(summary)
                    success = args.get("success", True) is not False
                    logger.info(f"[AGENT] {profile.name} done after {turn} turn(s) (success={success})")
                    return AgentTranscript(text="\n".join(texts), turns=turn, is_error=not success)

                result = await self._run_tool(name, args, tools, executor)
                messages.append(self._tool_msg(tool_call, result))

        logger.warning(f"[AGENT] {profile.name} exhausted {max_turns} turns without calling `done`.")
        return AgentTranscript(text="\n".join(texts), turns=max_turns, is_error=True)

    @staticmethod
    def _tool_msg(tool_call: Any, content: str) -> dict[str, Any]:
        return {
            "role": "tool",
            "tool_call_id": tool_call.id,
            "name": tool_call.function.name,
            "content": content,
        }

    async def _run_tool(self, name: str, args: dict, tools: list[str], executor: ToolExecutor) -> str:
        if name not in tools:
            return f"Error: tool `{name}` is not available."

        logger.debug(f"[AGENT] Tool call: {name}")
        try:
            if name == "read_file":
                content = executor.resolve_path(args.get("path", "")).read_text(encoding="utf-8")
                return f"Read {len(content)} characters:\n\n{content}"

            if name == "write_file":
                path = executor.resolve_path(args.get("path", ""))
                content = args.get("content", "")
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(content, encoding="utf-8")
                return f"Successfully wrote {len(content)} characters to {args.get('path')}."

            if name == "list_files":
                root = executor.resolve_path(args.get("path") or ".")
                base = executor.working_dir.resolve()
                files = sorted(
                    p.relative_to(base).as_posix()
                    for p in root.rglob("*")
                    if p.is_file() and ".git" not in p.relative_to(base).parts
                )
                listing = "\n".join(files[:MAX_LISTED_FILES])
                if len(files) > MAX_LISTED_FILES:
                    listing += f"\n... and {len(files) - MAX_LISTED_FILES} more"
                return listing or "(no files)"

            if name == "run_command":
                result = await executor.execute(args.get("command", ""))
                return result.render()
        except ToolViolationError as e:
            return f"Execution blocked: {e}"
        except (OSError, UnicodeDecodeError) as e:
            return f"Error: {e}"

        return f"Error: unknown tool `{name}`."
