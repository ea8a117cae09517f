"""
SitePilot Router: vendor-agnostic model access.

Routes capability calls through LiteLLM so capabilities never know which
vendor backs them. Picks the model profile from the capability's category,
bounds every call with that profile's timeout, falls back to the secondary
model on transport failure, and keeps usage totals.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Iterator

import litellm
from loguru import logger
from pydantic import BaseModel
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential
from tenacity.wait import wait_base

from sitepilot.config_loader import ModelProfile, SitePilotConfig
from sitepilot.errors import TransportError
from sitepilot.models import Capability, category_for


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
    """Process-wide token + dollar totals. Informational only."""
    usage: UsageRecord = field(default_factory=UsageRecord)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record(self, response: Any) -> tuple[int, float]:
        """Record usage from a LiteLLM response.

        Returns:
            tuple[int, float]: tokens and estimated cost of this one call.
        """
        tokens = 0
        prompt = completion = 0
        usage = getattr(response, "usage", None)
        if usage:
            prompt = getattr(usage, "prompt_tokens", 0) or 0
            completion = getattr(usage, "completion_tokens", 0) or 0
            tokens = getattr(usage, "total_tokens", 0) or 0

        try:
            cost = litellm.completion_cost(completion_response=response)
        except Exception as e:
            # Unknown pricing for preview models is common; usage still counts.
            logger.debug(f"[ROUTER] No cost data: {e}")
            cost = 0.0

        with self._lock:
            self.usage.prompt_tokens += prompt
            self.usage.completion_tokens += completion
            self.usage.total_tokens += tokens
            self.usage.estimated_cost += cost
            self.usage.call_count += 1

        return tokens, cost

    def summary(self) -> dict:
        return {
            "total_tokens": self.usage.total_tokens,
            "estimated_cost": round(self.usage.estimated_cost, 6),
            "call_count": self.usage.call_count,
        }

    def reset(self) -> None:
        with self._lock:
            self.usage = UsageRecord()


# ---------------------------------------------------------------------------
# Model capability helpers
# ---------------------------------------------------------------------------

def _is_gpt5_model(model: str) -> bool:
    """GPT-5 family models have restricted parameter support."""
    normalized = model.lower().replace("openai/", "")
    return normalized.startswith("gpt-5")


def _is_o_series_model(model: str) -> bool:
    """OpenAI o-series reasoning models don't support temperature."""
    normalized = model.lower().replace("openai/", "")
    return normalized.startswith(("o1", "o3", "o4"))


def _build_kwargs(
    model: str,
    messages: list[dict[str, str]],
    temperature: float,
    max_tokens: int,
    timeout_s: float,
) -> dict[str, Any]:
    """
    Build LiteLLM kwargs with per-model param filtering.
    Different model families support different parameters.
    """
    kwargs: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "max_tokens": max_tokens,
        "timeout": timeout_s,
    }

    if not _is_gpt5_model(model) and not _is_o_series_model(model):
        kwargs["temperature"] = temperature

    return kwargs


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

class RouterResponse(BaseModel):
    content: str
    model: str
    tokens_used: int = 0
    cost: float = 0.0
    latency_ms: int = 0


class Router:
    """
    Vendor-agnostic model router.

    Capabilities call `router.complete(capability, messages)`.
    The router resolves the model profile and returns the raw text.
    """

    def __init__(self, config: SitePilotConfig, wait: wait_base | None = None):
        self.config = config
        self.usage = UsageTracker()
        self._wait = wait or wait_exponential(multiplier=1, min=1, max=10)
        litellm.suppress_debug_info = True

    def resolve_profile(self, capability: Capability) -> ModelProfile:
        return self.config.routing.profile_for(category_for(capability))

    def complete(
        self,
        capability: Capability,
        messages: list[dict[str, str]],
        temperature: float | None = None,
        max_tokens: int | None = None,
        timeout_s: float | None = None,
    ) -> RouterResponse:
        """Send a completion request through LiteLLM.

        The first attempt uses the profile's primary model; later attempts
        switch to the fallback model when one is configured.

        Raises:
            TransportError: every attempt failed (network error or timeout).
        """
        profile = self.resolve_profile(capability)
        retrying = Retrying(
            stop=stop_after_attempt(max(1, self.config.routing.transport_attempts)),
            wait=self._wait,
            retry=retry_if_exception_type(TransportError),
            reraise=True,
        )

        for attempt in retrying:
            with attempt:
                use_fallback = attempt.retry_state.attempt_number > 1 and bool(profile.fallback)
                model = profile.fallback if use_fallback else profile.model
                if use_fallback:
                    logger.warning(f"[ROUTER] {capability.value} switching to fallback {model}")
                return self._call(
                    capability,
                    model,
                    messages,
                    temperature if temperature is not None else profile.temperature,
                    max_tokens or profile.max_tokens,
                    timeout_s or profile.timeout_s,
                )

        raise TransportError(f"No attempt made for {capability.value}")  # pragma: no cover

    def _call(
        self,
        capability: Capability,
        model: str,
        messages: list[dict[str, str]],
        temperature: float,
        max_tokens: int,
        timeout_s: float,
    ) -> RouterResponse:
        start = time.monotonic()
        logger.debug(f"[ROUTER] {capability.value} → {model} ({len(messages)} messages, {timeout_s}s)")

        kwargs = _build_kwargs(model, messages, temperature, max_tokens, timeout_s)
        try:
            response = litellm.completion(**kwargs)
        except Exception as e:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            logger.warning(f"[ROUTER] {capability.value} failed after {elapsed_ms}ms: {e}")
            raise TransportError(f"{model}: {e}") from e

        elapsed_ms = int((time.monotonic() - start) * 1000)
        tokens, cost = self.usage.record(response)
        content = response.choices[0].message.content or ""

        logger.debug(
            f"[ROUTER] {capability.value} complete: "
            f"{tokens} tokens, ${cost:.6f}, {elapsed_ms}ms"
        )

        return RouterResponse(
            content=content,
            model=model,
            tokens_used=tokens,
            cost=cost,
            latency_ms=elapsed_ms,
        )

    def stream(
        self,
        capability: Capability,
        messages: list[dict[str, str]],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> Iterator[str]:
        """Yield raw text chunks as the model produces them. No fallback."""
        profile = self.resolve_profile(capability)
        kwargs = _build_kwargs(
            profile.model,
            messages,
            temperature if temperature is not None else profile.temperature,
            max_tokens or profile.max_tokens,
            profile.timeout_s,
        )
        kwargs["stream"] = True

        logger.debug(f"[ROUTER] {capability.value} → {profile.model} (stream)")
        try:
            for chunk in litellm.completion(**kwargs):
                text = chunk.choices[0].delta.content
                if text:
                    yield text
        except Exception as e:
            raise TransportError(f"{profile.model} stream: {e}") from e
