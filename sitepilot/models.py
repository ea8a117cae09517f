"""
SitePilot data model.

Plain pydantic records shared by every layer. Nothing here talks to the
network or the store; these are the shapes that flow between them.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------

class Capability(str, Enum):
    MARKET_RESEARCH = "market_research"
    SITE_ARCHITECT = "site_architect"
    CONTENT_BUILDER = "content_builder"
    LAYOUT_BUILDER = "layout_builder"
    INTERNAL_LINKER = "internal_linker"
    PAGE_BUILDER = "page_builder"
    PUBLISHER = "publisher"
    OPTIMIZER = "optimizer"
    MONITOR = "monitor"
    FIXER = "fixer"
    TECHNICAL_SEO = "technical_seo"


class CapabilityCategory(str, Enum):
    DEEP_REASONING = "deep_reasoning"
    FAST_EXECUTION = "fast_execution"


DEEP_REASONING_CAPABILITIES: frozenset[Capability] = frozenset({
    Capability.MARKET_RESEARCH,
    Capability.SITE_ARCHITECT,
    Capability.OPTIMIZER,
    Capability.TECHNICAL_SEO,
    Capability.CONTENT_BUILDER,
})


def category_for(kind: Capability) -> CapabilityCategory:
    if kind in DEEP_REASONING_CAPABILITIES:
        return CapabilityCategory.DEEP_REASONING
    return CapabilityCategory.FAST_EXECUTION


# ---------------------------------------------------------------------------
# Projects and content units
# ---------------------------------------------------------------------------

class ProjectStatus(str, Enum):
    DRAFT = "draft"
    RESEARCHING = "researching"
    ARCHITECTING = "architecting"
    BUILDING = "building"
    PUBLISHING = "publishing"
    LIVE = "live"
    PAUSED = "paused"


class UnitStatus(str, Enum):
    DRAFT = "draft"
    READY = "ready"
    PUBLISHING = "publishing"
    PUBLISHED = "published"
    OPTIMIZING = "optimizing"


RunCadence = Literal["daily", "weekly", "biweekly"]


class ProjectSettings(BaseModel):
    niche: str
    target_audience: str = ""
    keywords: list[str] = Field(default_factory=list)
    content_tone: str = "helpful and authoritative"
    word_count: int = 1500
    run_cadence: RunCadence = "weekly"
    autopilot: bool = True


class Project(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    domain: str
    status: ProjectStatus = ProjectStatus.DRAFT
    settings: ProjectSettings
    paused_from: ProjectStatus | None = None
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)


class ContentUnit(BaseModel):
    """One page of the site."""
    id: str = Field(default_factory=new_id)
    project_id: str
    title: str
    slug: str
    target_keyword: str = ""
    category: str = ""
    status: UnitStatus = UnitStatus.DRAFT
    content_html: str = ""
    meta_title: str = ""
    meta_description: str = ""
    layout: Any = None
    internal_links: list[str] = Field(default_factory=list)
    remote_id: str | None = None
    url: str | None = None
    published_at: str | None = None
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)


class Artifact(BaseModel):
    """A persisted capability output, keyed by project and optionally unit."""
    project_id: str
    kind: str
    unit_id: str | None = None
    data: Any = None
    correlation_id: str = ""
    created_at: str = Field(default_factory=utc_now)


class AnalyticsSnapshot(BaseModel):
    project_id: str
    date: str
    total_clicks: int = 0
    total_impressions: int = 0
    average_ctr: float = 0.0
    average_position: float = 0.0
    data: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Run history and tracing
# ---------------------------------------------------------------------------

class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class AgentRunRecord(BaseModel):
    """One invocation attempt of a capability.

    Retries never touch an earlier record; each attempt writes its own,
    and the correlation id ties them together.
    """
    id: str = Field(default_factory=new_id)
    project_id: str
    capability: Capability
    status: RunStatus = RunStatus.RUNNING
    input: dict[str, Any] = Field(default_factory=dict)
    output: dict[str, Any] | None = None
    error: str | None = None
    model: str = ""
    duration_ms: int | None = None
    retry_count: int = 0
    correlation_id: str = ""
    created_at: str = Field(default_factory=utc_now)
    completed_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status != RunStatus.RUNNING

    def finish(
        self,
        status: RunStatus,
        duration_ms: int,
        output: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> "AgentRunRecord":
        if self.is_terminal:
            raise ValueError(f"Run {self.id} is already {self.status.value}")
        return self.model_copy(update={
            "status": status,
            "output": output,
            "error": error,
            "duration_ms": duration_ms,
            "completed_at": utc_now(),
        })


class CorrelationContext(BaseModel):
    """Opaque id threading every task and artifact of one workflow run."""
    model_config = ConfigDict(frozen=True)

    correlation_id: str

    @classmethod
    def new(cls, prefix: str = "run") -> "CorrelationContext":
        return cls(correlation_id=f"{prefix}-{uuid.uuid4().hex[:16]}")

    def __str__(self) -> str:
        return self.correlation_id
