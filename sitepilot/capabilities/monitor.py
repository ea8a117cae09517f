"""
Live-site capabilities: monitoring, optimization, technical audit, fixes.

These drive the monitor → optimize loop and the audit → fix loop once a
project is live.
"""

from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, Field

from sitepilot.capabilities import BaseCapability, _bullets
from sitepilot.models import Capability

Priority = Literal["high", "medium", "low"]


class PageSummary(BaseModel):
    slug: str
    title: str = ""
    url: str | None = None
    target_keyword: str = ""
    status: str = ""


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------

class SnapshotSummary(BaseModel):
    date: str
    total_clicks: int = 0
    total_impressions: int = 0
    average_ctr: float = 0.0
    average_position: float = 0.0


class MonitorInput(BaseModel):
    project_id: str
    snapshots: list[SnapshotSummary] = Field(default_factory=list)
    pages: list[PageSummary] = Field(default_factory=list)


class Alert(BaseModel):
    type: Literal["warning", "critical", "info"] = "info"
    message: str
    page_slug: str | None = None


class OptimizationCandidate(BaseModel):
    page_slug: str
    priority: Priority = "medium"
    reason: str = ""


class MonitorOutput(BaseModel):
    health_score: int = Field(default=0, ge=0, le=100)
    alerts: list[Alert] = Field(default_factory=list)
    optimization_candidates: list[OptimizationCandidate] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class Monitor(BaseCapability):
    kind = Capability.MONITOR
    name = "monitor"
    description = "Reads search performance trends and flags pages to optimize."
    input_model = MonitorInput
    output_model = MonitorOutput

    system_prompt = """You are the performance monitor inside SitePilot.

Read search analytics snapshots (newest first) and the site's pages.

Output schema:
{
  "health_score": 0-100,
  "alerts": [{"type": "warning|critical|info", "message": "...", "page_slug": "optional"}],
  "optimization_candidates": [{"page_slug": "...", "priority": "high|medium|low", "reason": "..."}],
  "recommendations": ["..."]
}

Rules:
- Only name page slugs from the provided list.
- Reserve "high" priority for clear drops in clicks or position.
"""

    def build_prompt(self, data: MonitorInput) -> str:
        snapshots = json.dumps([s.model_dump() for s in data.snapshots], indent=2)
        pages = "\n".join(f"- {p.slug}: {p.title} [{p.status}]" for p in data.pages)
        return f"""Project: {data.project_id}

Snapshots:
{snapshots}

Pages:
{pages or '- None'}

Report on site health as JSON."""


# ---------------------------------------------------------------------------
# Optimizer
# ---------------------------------------------------------------------------

class QueryRow(BaseModel):
    query: str
    clicks: int = 0
    impressions: int = 0
    ctr: float = 0.0
    position: float = 0.0


class OptimizerInput(BaseModel):
    page_slug: str
    title: str = ""
    target_keyword: str = ""
    current_content: str = ""
    reason: str = ""
    query_data: list[QueryRow] = Field(default_factory=list)


class OptimizerOutput(BaseModel):
    updated_content: str | None = None
    updated_meta_title: str | None = None
    updated_meta_description: str | None = None
    recommendations: list[str] = Field(default_factory=list)


class Optimizer(BaseCapability):
    kind = Capability.OPTIMIZER
    name = "optimizer"
    description = "Rewrites an underperforming page using its query data."
    input_model = OptimizerInput
    output_model = OptimizerOutput

    system_prompt = """You are the content optimizer inside SitePilot.

Improve one live page using the search queries it already ranks for.

Output schema:
{
  "updated_content": "<h2>...</h2> or null to keep the current content",
  "updated_meta_title": "... or null",
  "updated_meta_description": "... or null",
  "recommendations": ["..."]
}

Rules:
- Keep what already works. Only rewrite sections with a reason to change.
- Never remove existing internal links.
"""

    def build_prompt(self, data: OptimizerInput) -> str:
        rows = "\n".join(
            f"- {r.query}: {r.clicks} clicks, {r.impressions} impressions, pos {r.position:.1f}"
            for r in data.query_data
        )
        return f"""Page: {data.title} (/{data.page_slug})
Target keyword: {data.target_keyword or data.title}
Why it was flagged: {data.reason or 'unspecified'}

Queries:
{rows or '- No query data'}

Current content:
{data.current_content}

Return the optimization as JSON."""


# ---------------------------------------------------------------------------
# Technical SEO
# ---------------------------------------------------------------------------

class TechnicalSEOInput(BaseModel):
    domain: str
    pages: list[PageSummary] = Field(default_factory=list)


class SEOIssue(BaseModel):
    type: Literal["critical", "warning", "info"] = "info"
    category: str = ""
    description: str
    affected_pages: list[str] = Field(default_factory=list)
    impact: Priority = "low"


class TechnicalSEOOutput(BaseModel):
    score: int = Field(default=0, ge=0, le=100)
    issues: list[SEOIssue] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class TechnicalSEO(BaseCapability):
    kind = Capability.TECHNICAL_SEO
    name = "technical_seo"
    description = "Audits the live site for technical SEO problems."
    input_model = TechnicalSEOInput
    output_model = TechnicalSEOOutput

    system_prompt = """You are the technical SEO auditor inside SitePilot.

Audit the listed pages of a live site.

Output schema:
{
  "score": 0-100,
  "issues": [
    {"type": "critical|warning|info", "category": "meta|content|links|structure", "description": "...", "affected_pages": ["slug"], "impact": "high|medium|low"}
  ],
  "recommendations": ["..."]
}

Rules:
- affected_pages holds slugs from the provided list only.
"""

    def build_prompt(self, data: TechnicalSEOInput) -> str:
        pages = "\n".join(
            f"- {p.slug}: {p.title} -> {p.url or 'unpublished'}" for p in data.pages
        )
        return f"""Domain: {data.domain}

Pages:
{pages or '- None'}

Return the audit as JSON."""


# ---------------------------------------------------------------------------
# Fixer
# ---------------------------------------------------------------------------

class FixerInput(BaseModel):
    domain: str = ""
    issues: list[dict[str, Any]] = Field(default_factory=list)
    pages: list[PageSummary] = Field(default_factory=list)


class PageFix(BaseModel):
    page_slug: str
    description: str = ""
    updated_content: str | None = None
    updated_meta_title: str | None = None
    updated_meta_description: str | None = None


class FixerOutput(BaseModel):
    fixes: list[PageFix] = Field(default_factory=list)
    requires_manual_review: bool = False
    recommendations: list[str] = Field(default_factory=list)


class Fixer(BaseCapability):
    kind = Capability.FIXER
    name = "fixer"
    description = "Turns audit issues into concrete per-page edits."
    input_model = FixerInput
    output_model = FixerOutput

    system_prompt = """You are the fixer inside SitePilot.

Turn technical SEO issues into concrete edits to specific pages.

Output schema:
{
  "fixes": [
    {"page_slug": "...", "description": "...", "updated_content": "... or null", "updated_meta_title": "... or null", "updated_meta_description": "... or null"}
  ],
  "requires_manual_review": false,
  "recommendations": ["..."]
}

Rules:
- Only touch pages named in the issues.
- If an issue cannot be fixed by editing page content, set requires_manual_review.
"""

    def build_prompt(self, data: FixerInput) -> str:
        issues = [f"{i.get('type', 'info')}: {i.get('description', '')}" for i in data.issues]
        pages = "\n".join(f"- {p.slug}: {p.title}" for p in data.pages)
        return f"""Domain: {data.domain}

Issues:
{_bullets(issues, "- None")}

Pages:
{pages or '- None'}

Return the fixes as JSON."""
