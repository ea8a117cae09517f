"""
Publisher: the pre-publish gate.

It never talks to the publish target itself; it inspects a finished page
and decides whether it may go out.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from sitepilot.capabilities import BaseCapability
from sitepilot.models import Capability


class PublisherInput(BaseModel):
    page_title: str
    page_slug: str
    content_html: str = ""
    meta_title: str = ""
    meta_description: str = ""
    target_keyword: str = ""


class ChecklistItem(BaseModel):
    check: str
    passed: bool
    note: str = ""


class PublisherOutput(BaseModel):
    publish_ready: bool
    seo_checklist: list[ChecklistItem] = Field(default_factory=list)
    final_meta_title: str = ""
    final_meta_description: str = ""


class Publisher(BaseCapability):
    kind = Capability.PUBLISHER
    name = "publisher"
    description = "Runs the SEO checklist and returns a publish verdict."
    input_model = PublisherInput
    output_model = PublisherOutput

    system_prompt = """You are the publishing gatekeeper inside SitePilot.

Check a finished page before it goes live.

Output schema:
{
  "publish_ready": true,
  "seo_checklist": [{"check": "meta title length", "passed": true, "note": ""}],
  "final_meta_title": "...",
  "final_meta_description": "..."
}

Rules:
- publish_ready is false if the content is empty, truncated, or off-topic.
- Fix meta tags that are too long instead of failing the page for them.
"""

    def build_prompt(self, data: PublisherInput) -> str:
        return f"""Title: {data.page_title}
Slug: /{data.page_slug}
Target keyword: {data.target_keyword or data.page_title}
Meta title: {data.meta_title or '(missing)'}
Meta description: {data.meta_description or '(missing)'}

Content:
{data.content_html or '(empty)'}

Return the publish verdict as JSON."""
