"""
Configuration loader for SitePilot.
Merges packaged defaults with a deployment-level .sitepilot/config.yaml
and a handful of environment overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field

from sitepilot.models import CapabilityCategory


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class ModelProfile(BaseModel):
    model: str
    fallback: str | None = None
    max_tokens: int = 1000
    temperature: float = 0.5
    timeout_s: float = 30


class RoutingConfig(BaseModel):
    deep_reasoning: ModelProfile = Field(default_factory=lambda: ModelProfile(
        model="gemini/gemini-2.5-pro",
        fallback="gemini/gemini-2.5-flash",
        max_tokens=2000,
        temperature=0.7,
        timeout_s=60,
    ))
    fast_execution: ModelProfile = Field(default_factory=lambda: ModelProfile(
        model="gemini/gemini-2.5-flash",
        fallback="gemini/gemini-2.5-flash-lite",
    ))
    transport_attempts: int = 2

    def profile_for(self, category: CapabilityCategory) -> ModelProfile:
        if category == CapabilityCategory.DEEP_REASONING:
            return self.deep_reasoning
        return self.fast_execution


class EnforcerConfig(BaseModel):
    max_retries: int = 3
    backoff_ms: int = 500


class QueueOverride(BaseModel):
    attempts: int | None = None
    backoff_ms: int | None = None


class QueuesConfig(BaseModel):
    backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"
    prefix: str = "sitepilot"
    retry_attempts: int = 3
    retry_delay_ms: int = 1000
    overrides: dict[str, QueueOverride] = Field(default_factory=dict)
    concurrency: dict[str, int] = Field(default_factory=dict)
    poll_interval_s: float = 0.5
    lease_s: float = 600.0

    def attempts_for(self, queue_name: str) -> int:
        override = self.overrides.get(queue_name)
        if override and override.attempts:
            return override.attempts
        return self.retry_attempts

    def backoff_for(self, queue_name: str) -> int:
        override = self.overrides.get(queue_name)
        if override and override.backoff_ms is not None:
            return override.backoff_ms
        return self.retry_delay_ms

    def concurrency_for(self, queue_name: str) -> int:
        return max(1, self.concurrency.get(queue_name, 1))


class ScheduleConfig(BaseModel):
    research_to_architecture_ms: int = 5_000
    architecture_to_content_ms: int = 10_000
    content_to_publish_ms: int = 5_000
    publish_stagger_ms: int = 30_000
    live_to_monitor_ms: int = 60_000
    cadence_ms: dict[str, int] = Field(default_factory=lambda: {
        "daily": 86_400_000,
        "weekly": 604_800_000,
        "biweekly": 1_209_600_000,
    })

    def cadence_for(self, cadence: str) -> int:
        return self.cadence_ms.get(cadence, self.cadence_ms.get("weekly", 604_800_000))


class LifecycleConfig(BaseModel):
    shutdown_timeout_s: float = 30
    poll_interval_s: float = 1
    failure_threshold: float = 0.10


class StoreConfig(BaseModel):
    path: str = ".sitepilot/store.json"


class SitePilotConfig(BaseModel):
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    enforcer: EnforcerConfig = Field(default_factory=EnforcerConfig)
    queues: QueuesConfig = Field(default_factory=QueuesConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)


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


def _env_overrides() -> dict[str, Any]:
    queues: dict[str, Any] = {}
    if os.environ.get("REDIS_URL"):
        queues["redis_url"] = os.environ["REDIS_URL"]
    if os.environ.get("SITEPILOT_QUEUE_BACKEND"):
        queues["backend"] = os.environ["SITEPILOT_QUEUE_BACKEND"]
    return {"queues": queues} if queues else {}


def load_config(config_path: Path | None = None) -> SitePilotConfig:
    """
    Load config by merging:
      1. Built-in defaults (sitepilot/config.yaml)
      2. Deployment overrides (explicit path, or ./.sitepilot/config.yaml)
      3. Environment variable overrides
    """
    with open(_DEFAULT_CONFIG_PATH, "r") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    override_path = config_path or Path.cwd() / ".sitepilot" / "config.yaml"
    if override_path.exists():
        with open(override_path, "r") as f:
            overrides: dict[str, Any] = yaml.safe_load(f) or {}
        base = _deep_merge(base, overrides)

    base = _deep_merge(base, _env_overrides())
    return SitePilotConfig(**base)


def validate_api_keys() -> dict[str, bool]:
    """Check which provider keys are available (LiteLLM reads them directly)."""
    return {
        "GEMINI_API_KEY": bool(os.environ.get("GEMINI_API_KEY")),
        "GOOGLE_API_KEY": bool(os.environ.get("GOOGLE_API_KEY")),
        "OPENAI_API_KEY": bool(os.environ.get("OPENAI_API_KEY")),
        "ANTHROPIC_API_KEY": bool(os.environ.get("ANTHROPIC_API_KEY")),
    }
