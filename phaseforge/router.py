"""
PHASEFORGE Router — Vendor-Agnostic Model Abstraction

Routes agent calls through LiteLLM so agents never know which vendor
is backing them. Handles retries, usage tracking and structured logging.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

import litellm
from loguru import logger
from pydantic import BaseModel, ConfigDict
from tenacity import retry, stop_after_attempt, wait_exponential

from phaseforge.config_loader import DEFAULT_MODEL, AgentConfig


# ---------------------------------------------------------------------------
# Usage Tracking
# ---------------------------------------------------------------------------

@dataclass
class UsageRecord:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0
    call_count: int = 0


@dataclass
class UsageTracker:
    """Token and dollar spend across every call made by one engine."""
    usage: UsageRecord = field(default_factory=UsageRecord)

    def record(self, response: Any) -> None:
        """Record usage from a LiteLLM response."""
        usage = getattr(response, "usage", None)
        if usage:
            self.usage.prompt_tokens += getattr(usage, "prompt_tokens", 0) or 0
            self.usage.completion_tokens += getattr(usage, "completion_tokens", 0) or 0
            self.usage.total_tokens += getattr(usage, "total_tokens", 0) or 0

        try:
            self.usage.estimated_cost += litellm.completion_cost(completion_response=response)
        except Exception as e:
            # Unknown models have no price table entry.
            logger.debug(f"[ROUTER] Cost unavailable: {e}")

        self.usage.call_count += 1

    def summary(self) -> dict:
        return {
            "total_tokens": self.usage.total_tokens,
            "estimated_cost": round(self.usage.estimated_cost, 4),
            "call_count": self.usage.call_count,
        }


# ---------------------------------------------------------------------------
# Model capability helpers
# ---------------------------------------------------------------------------

_FIXED_TEMPERATURE_PREFIXES = ("gpt-5", "o1", "o3", "o4")


def _accepts_temperature(model: str) -> bool:
    """GPT-5 and the o-series reasoning models reject `temperature`."""
    bare = model.lower().split("/", 1)[-1] if model.lower().startswith("openai/") else model.lower()
    return not bare.startswith(_FIXED_TEMPERATURE_PREFIXES)


def _build_kwargs(
    model: str,
    messages: list[dict[str, Any]],
    temperature: float,
    max_tokens: int,
    tools: list[dict] | None,
) -> dict[str, Any]:
    """LiteLLM kwargs, minus parameters the model family does not support."""
    kwargs: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "max_tokens": max_tokens,
    }

    if _accepts_temperature(model):
        kwargs["temperature"] = temperature

    if tools:
        kwargs["tools"] = tools

    return kwargs


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

class RouterResponse(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    content: str
    model: str
    tool_calls: list[Any] = []
    tokens_used: int = 0
    cost: float = 0.0
    latency_ms: int = 0


class Router:
    """
    Agents call `await router.complete(agent, messages, tools=...)`.
    The router resolves the model and returns a structured response.
    """

    def __init__(self, config: AgentConfig):
        self.config = config
        self.usage = UsageTracker()
        litellm.suppress_debug_info = True

    def resolve_model(self, agent: str) -> str:
        """Per-agent override, then the configured model, then the default."""
        return self.config.models.get(agent) or self.config.model or DEFAULT_MODEL

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10), reraise=True)
    async def complete(
        self,
        agent: str,
        messages: list[dict[str, Any]],
        tools: list[dict] | None = None,
        temperature: float = 0.2,
        max_tokens: int = 8192,
    ) -> RouterResponse:
        model = self.resolve_model(agent)
        if self.config.max_tokens:
            max_tokens = self.config.max_tokens
        start = time.monotonic()

        logger.debug(f"[ROUTER] {agent} → {model} ({len(messages)} messages)")

        kwargs = _build_kwargs(model, messages, temperature, max_tokens, tools)
        response = await litellm.acompletion(**kwargs)
        elapsed_ms = int((time.monotonic() - start) * 1000)

        self.usage.record(response)

        message = response.choices[0].message
        logger.debug(
            f"[ROUTER] {agent} complete — "
            f"{self.usage.usage.total_tokens} tokens, "
            f"${self.usage.usage.estimated_cost:.4f}, "
            f"{elapsed_ms}ms"
        )

        return RouterResponse(
            content=message.content or "",
            model=model,
            tool_calls=list(getattr(message, "tool_calls", None) or []),
            tokens_used=getattr(response.usage, "total_tokens", 0) or 0,
            cost=self.usage.usage.estimated_cost,
            latency_ms=elapsed_ms,
        )
