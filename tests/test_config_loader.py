import pytest

from phaseforge.config_loader import EngineConfig, load_config, resolve_config
from phaseforge.errors import ConfigError
from phaseforge.workspace.tools import ToolExecutor, ToolViolationError


def _write_repo_config(repo, text):
    state = repo / ".phaseforge"
    state.mkdir(parents=True, exist_ok=True)
    (state / "config.yaml").write_text(text, encoding="utf-8")


def test_builtin_defaults():
    config = load_config()
    assert config.agent.max_turns == 30
    assert config.agent.permission_mode == "auto"
    assert config.git.branch_pattern == "feat/{id}-{slug}"
    assert config.review.enabled and config.verification.enabled
    assert config.hooks.pre_commit == []
    assert config.hooks.max_retries == 5
    assert "git push --force" in config.tools.blocked_patterns


def test_repo_overrides_are_deep_merged(tmp_path):
    _write_repo_config(tmp_path, (
        "git:\n"
        "  base_branch: develop\n"
        "hooks:\n"
        "  max_retries: 2\n"
        "  pre_commit:\n"
        "    - name: lint\n"
        "      command: ruff check .\n"
        "      timeout_seconds: 30\n"
    ))

    config = load_config(tmp_path)

    assert config.git.base_branch == "develop"
    assert config.git.auto_commit is True
    assert config.hooks.max_retries == 2
    assert config.hooks.pre_commit[0].name == "lint"
    assert config.hooks.pre_commit[0].timeout_seconds == 30


def test_missing_repo_config_uses_defaults(tmp_path):
    assert load_config(tmp_path) == load_config()


@pytest.mark.parametrize("text", [
    "git: [unclosed\n",
    "- just\n- a list\n",
    "review:\n  max_iterations: -1\n",
    "unknown_section:\n  x: 1\n",
    "agent:\n  permission_mode: yolo\n",
])
def test_invalid_repo_config_raises(tmp_path, text):
    _write_repo_config(tmp_path, text)
    with pytest.raises(ConfigError):
        load_config(tmp_path)


def test_invocation_overrides(tmp_path):
    config = resolve_config(EngineConfig(repo_path=tmp_path, model="openai/gpt-4o", max_tokens=2048))
    assert config.agent.model == "openai/gpt-4o"
    assert config.agent.max_tokens == 2048
    assert config.agent.max_turns == 30


def test_engine_config_paths(tmp_path):
    engine_config = EngineConfig(repo_path=tmp_path)
    assert engine_config.state_dir == tmp_path / ".phaseforge"
    assert engine_config.trees_dir == tmp_path / ".trees"
    assert engine_config.config_path == tmp_path / ".phaseforge" / "config.yaml"
    assert engine_config.logs_dir == tmp_path / ".phaseforge" / "logs"


@pytest.mark.parametrize("command", [
    "git push -u origin feat/0001-0001_auth",
    "gh pr create --fill --base main",
])
def test_default_blocklist_allows_opening_a_pull_request(tmp_path, command):
    tools = ToolExecutor(tmp_path, blocked_patterns=load_config().tools.blocked_patterns)
    tools.check(command)


@pytest.mark.parametrize("command", [
    "git push --force origin main",
    "git push -f origin main",
    "sudo rm x",
])
def test_default_blocklist_rejects_destructive_commands(tmp_path, command):
    tools = ToolExecutor(tmp_path, blocked_patterns=load_config().tools.blocked_patterns)
    with pytest.raises(ToolViolationError):
        tools.check(command)
