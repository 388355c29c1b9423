import json
from types import SimpleNamespace

import pytest

from phaseforge.agents.runner import AgentRunner
from phaseforge.config_loader import AgentConfig, ToolsConfig
from phaseforge.errors import CollaboratorError
from phaseforge.prompts import PromptManager
from phaseforge.router import RouterResponse


def _tool_call(name, call_id="call_1", **arguments):
    return SimpleNamespace(
        id=call_id,
        type="function",
        function=SimpleNamespace(name=name, arguments=json.dumps(arguments)),
    )


class ScriptedRouter:
    """Returns canned responses in order and records what it was asked."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    async def complete(self, agent, messages, tools=None, temperature=0.2, max_tokens=8192):
        self.requests.append({"agent": agent, "messages": list(messages), "tools": tools})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _response(content="", tool_calls=None):
    return RouterResponse(content=content, model="test/model", tool_calls=tool_calls or [])


def _runner(router, **agent_settings):
    return AgentRunner(
        router,
        PromptManager(),
        AgentConfig(**agent_settings),
        ToolsConfig(blocked_patterns=["git push"]),
    )


def _tool_names(request):
    return [schema["function"]["name"] for schema in request["tools"]]


@pytest.mark.asyncio
async def test_review_agent_is_a_single_completion(tmp_path):
    router = ScriptedRouter([_response("- [error] a.py: broken")])

    transcript = await _runner(router).invoke(
        "review", "review/task", {"diff": "+x", "feature_slug": "auth"}, None,
    )

    assert transcript.text == "- [error] a.py: broken"
    assert transcript.turns == 1
    assert router.requests[0]["tools"] is None
    system, user = router.requests[0]["messages"]
    assert "auth" in system["content"]
    assert "+x" in user["content"]


@pytest.mark.asyncio
async def test_tool_loop_writes_files_then_finishes(tmp_path):
    router = ScriptedRouter([
        _response("writing", [_tool_call("write_file", path="src/app.py", content="print('hi')\n")]),
        _response("", [_tool_call("done", call_id="call_2", summary="added app")]),
    ])

    transcript = await _runner(router).invoke("code", "code/task", {"phase": {"name": "p"}}, tmp_path)

    assert (tmp_path / "src" / "app.py").read_text(encoding="utf-8") == "print('hi')\n"
    assert transcript.turns == 2
    assert not transcript.is_error
    assert "added app" in transcript.text
    tool_reply = router.requests[1]["messages"][-1]
    assert tool_reply["role"] == "tool"
    assert tool_reply["tool_call_id"] == "call_1"


@pytest.mark.asyncio
async def test_done_with_failure_marks_transcript(tmp_path):
    router = ScriptedRouter([_response("", [_tool_call("done", summary="could not", success=False)])])
    transcript = await _runner(router).invoke("code", "code/task", {"phase": {"name": "p"}}, tmp_path)
    assert transcript.is_error
    assert transcript.turns == 1


@pytest.mark.asyncio
async def test_running_out_of_turns(tmp_path):
    router = ScriptedRouter([_response("thinking"), _response("still thinking")])

    transcript = await _runner(router, max_turns=2).invoke("code", "code/task", {"phase": {"name": "p"}}, tmp_path)

    assert transcript.is_error
    assert transcript.turns == 2
    assert router.requests[1]["messages"][-1]["role"] == "user"


@pytest.mark.asyncio
async def test_blocked_command_is_reported_to_the_model(tmp_path):
    router = ScriptedRouter([
        _response("", [_tool_call("run_command", command="git push origin main")]),
        _response("", [_tool_call("done", call_id="call_2", summary="ok")]),
    ])

    await _runner(router).invoke("code", "code/task", {"phase": {"name": "p"}}, tmp_path)

    assert "Execution blocked" in router.requests[1]["messages"][-1]["content"]


@pytest.mark.asyncio
async def test_path_outside_worktree_is_refused(tmp_path):
    worktree = tmp_path / "tree"
    worktree.mkdir()
    router = ScriptedRouter([
        _response("", [_tool_call("write_file", path="../escape.txt", content="x")]),
        _response("", [_tool_call("done", call_id="call_2", summary="ok")]),
    ])

    await _runner(router).invoke("code", "code/task", {"phase": {"name": "p"}}, worktree)

    assert not (tmp_path / "escape.txt").exists()
    assert "Execution blocked" in router.requests[1]["messages"][-1]["content"]


@pytest.mark.asyncio
async def test_permission_modes_restrict_tools(tmp_path):
    router = ScriptedRouter([_response("", [_tool_call("done", summary="ok")])])
    await _runner(router, permission_mode="none").invoke("code", "code/task", {"phase": {"name": "p"}}, tmp_path)
    assert "write_file" not in _tool_names(router.requests[0])
    assert "run_command" in _tool_names(router.requests[0])

    router = ScriptedRouter([_response("", [_tool_call("done", summary="ok")])])
    await _runner(router, permission_mode="manual").invoke("code", "code/task", {"phase": {"name": "p"}}, tmp_path)
    assert "run_command" not in _tool_names(router.requests[0])


@pytest.mark.asyncio
async def test_verify_agent_cannot_write(tmp_path):
    router = ScriptedRouter([
        _response("", [_tool_call("write_file", path="a.txt", content="x")]),
        _response("all passed", [_tool_call("done", call_id="call_2", summary="all passed")]),
    ])

    await _runner(router).invoke("verify", "verify/task", {}, tmp_path)

    assert not (tmp_path / "a.txt").exists()
    assert "not available" in router.requests[1]["messages"][-1]["content"]


@pytest.mark.asyncio
async def test_router_failure_becomes_collaborator_error(tmp_path):
    router = ScriptedRouter([ConnectionError("connection reset")])

    with pytest.raises(CollaboratorError, match="network"):
        await _runner(router).invoke("review", "review/task", {}, None)


@pytest.mark.asyncio
async def test_unknown_agent():
    with pytest.raises(CollaboratorError, match="unknown agent"):
        await _runner(ScriptedRouter([])).invoke("planner", "code/task", {}, None)
