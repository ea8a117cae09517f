"""
Research-phase capabilities: market research and site architecture.

Both run on the deep-reasoning profile. Their outputs are stored as
project artifacts and feed every later phase.
"""

from __future__ import annotations

import json
from typing import Literal

from pydantic import BaseModel, Field

from sitepilot.capabilities import BaseCapability, _bullets
from sitepilot.models import Capability


# ---------------------------------------------------------------------------
# Market Research
# ---------------------------------------------------------------------------

class MarketResearchInput(BaseModel):
    niche: str = "General"
    target_audience: str = "General audience"
    keywords: list[str] = Field(default_factory=list)
    competitors: list[str] = Field(default_factory=list)


class MarketAnalysis(BaseModel):
    market_size: str = ""
    trends: list[str] = Field(default_factory=list)
    opportunities: list[str] = Field(default_factory=list)
    challenges: list[str] = Field(default_factory=list)


class KeywordOpportunity(BaseModel):
    keyword: str
    intent: Literal["informational", "transactional", "navigational", "commercial"] = "informational"
    difficulty: Literal["low", "medium", "high"] = "medium"
    potential: Literal["low", "medium", "high"] = "medium"


class MarketResearchOutput(BaseModel):
    market_analysis: MarketAnalysis = Field(default_factory=MarketAnalysis)
    keyword_opportunities: list[KeywordOpportunity] = Field(default_factory=list)
    content_gaps: list[str] = Field(default_factory=list)
    recommended_topics: list[str] = Field(default_factory=list)


class MarketResearch(BaseCapability):
    kind = Capability.MARKET_RESEARCH
    name = "market_research"
    description = "Sizes the niche, maps keyword opportunities and content gaps."
    input_model = MarketResearchInput
    output_model = MarketResearchOutput

    system_prompt = """You are the market research analyst inside SitePilot.

Given a niche and an audience, map the opportunity for a content site.

Output schema:
{
  "market_analysis": {
    "market_size": "Short description",
    "trends": ["..."],
    "opportunities": ["..."],
    "challenges": ["..."]
  },
  "keyword_opportunities": [
    {
      "keyword": "best trail running shoes",
      "intent": "informational|transactional|navigational|commercial",
      "difficulty": "low|medium|high",
      "potential": "low|medium|high"
    }
  ],
  "content_gaps": ["Topics competitors cover poorly"],
  "recommended_topics": ["Page ideas, most valuable first"]
}

Rules:
- 10 to 25 keyword opportunities, realistic for a new site.
- Prefer low-difficulty, high-potential keywords.
- Never invent traffic numbers.
"""

    def build_prompt(self, data: MarketResearchInput) -> str:
        return f"""Niche: {data.niche}
Target audience: {data.target_audience}

Seed keywords:
{_bullets(data.keywords)}

Known competitors:
{_bullets(data.competitors)}

Produce the market research as JSON."""


# ---------------------------------------------------------------------------
# Site Architect
# ---------------------------------------------------------------------------

class SiteArchitectInput(BaseModel):
    niche: str
    target_audience: str = ""
    domain: str
    market_research: dict = Field(default_factory=dict)


class HomepagePlan(BaseModel):
    title: str
    meta_description: str = ""
    sections: list[str] = Field(default_factory=list)


class PagePlan(BaseModel):
    title: str
    slug: str
    target_keyword: str = ""
    content_type: str = "article"


class CategoryPlan(BaseModel):
    name: str
    slug: str
    description: str = ""
    pages: list[PagePlan] = Field(default_factory=list)


class SiteStructure(BaseModel):
    homepage: HomepagePlan
    categories: list[CategoryPlan] = Field(default_factory=list)


class LinkCluster(BaseModel):
    hub: str
    spokes: list[str] = Field(default_factory=list)


class InternalLinkStrategy(BaseModel):
    hub_pages: list[str] = Field(default_factory=list)
    pillar_content: list[str] = Field(default_factory=list)
    link_clusters: list[LinkCluster] = Field(default_factory=list)


class SiteArchitectOutput(BaseModel):
    site_structure: SiteStructure
    internal_link_strategy: InternalLinkStrategy = Field(default_factory=InternalLinkStrategy)


class SiteArchitect(BaseCapability):
    kind = Capability.SITE_ARCHITECT
    name = "site_architect"
    description = "Turns research into a homepage plus categorized page plan."
    input_model = SiteArchitectInput
    output_model = SiteArchitectOutput

    system_prompt = """You are the site architect inside SitePilot.

Design the page structure of a new content site from the market research.

Output schema:
{
  "site_structure": {
    "homepage": {"title": "...", "meta_description": "...", "sections": ["..."]},
    "categories": [
      {
        "name": "Category name",
        "slug": "category-slug",
        "description": "...",
        "pages": [
          {"title": "...", "slug": "page-slug", "target_keyword": "...", "content_type": "article|guide|comparison|review"}
        ]
      }
    ]
  },
  "internal_link_strategy": {
    "hub_pages": ["slug"],
    "pillar_content": ["slug"],
    "link_clusters": [{"hub": "slug", "spokes": ["slug"]}]
  }
}

Rules:
- Slugs are lowercase, hyphenated, unique across the whole site.
- Every page targets exactly one keyword from the research.
- 3 to 6 categories, 3 to 8 pages each.
"""

    def build_prompt(self, data: SiteArchitectInput) -> str:
        research = json.dumps(data.market_research, indent=2)
        return f"""Domain: {data.domain}
Niche: {data.niche}
Target audience: {data.target_audience or 'General audience'}

Market research:
{research}

Produce the site architecture as JSON."""
