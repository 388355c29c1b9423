"""
Configuration loader for PHASEFORGE.
Merges built-in defaults with per-repo .phaseforge/config.yaml overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from phaseforge.errors import ConfigError

STATE_DIR_NAME = ".phaseforge"
TREES_DIR_NAME = ".trees"
DEFAULT_MODEL = "anthropic/claude-sonnet-4-20250514"


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class AgentConfig(_Frozen):
    model: str | None = None
    models: dict[str, str] = Field(default_factory=dict)  # agent name → model override
    max_tokens: int | None = None
    max_turns: int = 30
    permission_mode: Literal["auto", "manual", "none"] = "auto"


class PromptsConfig(_Frozen):
    include: list[Path] = Field(default_factory=list)


class GitConfig(_Frozen):
    auto_commit: bool = True
    branch_pattern: str = "feat/{id}-{slug}"
    base_branch: str = "main"


class ReviewConfig(_Frozen):
    enabled: bool = True
    max_iterations: int = Field(default=3, ge=0)


class VerificationConfig(_Frozen):
    enabled: bool = True
    max_iterations: int = Field(default=3, ge=0)


class Hook(_Frozen):
    """A named shell command gating a commit."""
    name: str
    command: str
    timeout_seconds: float | None = None


class HooksConfig(_Frozen):
    pre_commit: list[Hook] = Field(default_factory=list)
    max_retries: int = Field(default=5, ge=0)


class ToolsConfig(_Frozen):
    blocked_patterns: list[str] = Field(default_factory=list)


class ProjectConfig(_Frozen):
    agent: AgentConfig = Field(default_factory=AgentConfig)
    prompts: PromptsConfig = Field(default_factory=PromptsConfig)
    git: GitConfig = Field(default_factory=GitConfig)
    review: ReviewConfig = Field(default_factory=ReviewConfig)
    verification: VerificationConfig = Field(default_factory=VerificationConfig)
    hooks: HooksConfig = Field(default_factory=HooksConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)


class EngineConfig(_Frozen):
    """Per-invocation settings, resolved once before the engine starts."""
    repo_path: Path
    model: str | None = None
    max_tokens: int | None = None

    @property
    def state_dir(self) -> Path:
        return self.repo_path / STATE_DIR_NAME

    @property
    def trees_dir(self) -> Path:
        return self.repo_path / TREES_DIR_NAME

    @property
    def config_path(self) -> Path:
        return self.state_dir / "config.yaml"

    @property
    def logs_dir(self) -> Path:
        return self.state_dir / "logs"


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"{path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at the top level")
    return data


def load_config(repo_path: Path | None = None) -> ProjectConfig:
    """
    Load config by merging:
      1. Built-in defaults (phaseforge/config.yaml)
      2. Repo-level overrides (<repo>/.phaseforge/config.yaml)
    """
    base = _read_yaml(_DEFAULT_CONFIG_PATH)

    if repo_path:
        repo_config = repo_path / STATE_DIR_NAME / "config.yaml"
        if repo_config.exists():
            base = _deep_merge(base, _read_yaml(repo_config))

    try:
        return ProjectConfig(**base)
    except ValidationError as e:
        raise ConfigError(str(e)) from e


def resolve_config(engine_config: EngineConfig) -> ProjectConfig:
    """Load the project config and apply invocation-level overrides."""
    config = load_config(engine_config.repo_path)

    agent_updates: dict[str, Any] = {}
    if engine_config.model:
        agent_updates["model"] = engine_config.model
    if engine_config.max_tokens:
        agent_updates["max_tokens"] = engine_config.max_tokens
    if not agent_updates:
        return config

    agent = config.agent.model_copy(update=agent_updates)
    return config.model_copy(update={"agent": agent})


def validate_api_keys() -> dict[str, bool]:
    """Check which API keys are available."""
    return {
        "ANTHROPIC_API_KEY": bool(os.environ.get("ANTHROPIC_API_KEY")),
        "OPENAI_API_KEY":    bool(os.environ.get("OPENAI_API_KEY")),
        "GOOGLE_API_KEY":    bool(os.environ.get("GOOGLE_API_KEY")),
        "GEMINI_API_KEY":    bool(os.environ.get("GEMINI_API_KEY")),
    }
