"""
Build-phase capabilities: page content, layout, and internal links.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from sitepilot.capabilities import BaseCapability, _bullets
from sitepilot.models import Capability


class PageBrief(BaseModel):
    title: str
    slug: str
    target_keyword: str = ""
    content_type: str = "article"
    niche: str = ""
    tone: str = "helpful and authoritative"
    word_count: int = Field(default=1500, ge=300, le=10_000)
    outline: list[str] = Field(default_factory=list)
    available_internal_links: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Content Builder
# ---------------------------------------------------------------------------

class Heading(BaseModel):
    level: int
    text: str


class ContentBuilderOutput(BaseModel):
    title: str
    meta_title: str
    meta_description: str
    content: str
    headings: list[Heading] = Field(default_factory=list)
    word_count: int = 0
    reading_time: int = 0
    suggested_internal_links: list[str] = Field(default_factory=list)


class ContentBuilder(BaseCapability):
    kind = Capability.CONTENT_BUILDER
    name = "content_builder"
    description = "Writes long-form article HTML for one page brief."
    input_model = PageBrief
    output_model = ContentBuilderOutput

    system_prompt = """You are the content writer inside SitePilot.

Write one complete, original article in semantic HTML.

Output schema:
{
  "title": "...",
  "meta_title": "Under 60 characters",
  "meta_description": "Under 155 characters",
  "content": "<h2>...</h2><p>...</p>",
  "headings": [{"level": 2, "text": "..."}],
  "word_count": 1500,
  "reading_time": 7,
  "suggested_internal_links": ["/slug"]
}

Rules:
- Use the target keyword in the first paragraph and one H2.
- No <h1>; the page title is rendered separately.
- Escape every double quote inside the HTML.
"""

    def build_prompt(self, data: PageBrief) -> str:
        return f"""Title: {data.title}
Target keyword: {data.target_keyword or data.title}
Content type: {data.content_type}
Tone: {data.tone}
Word count: about {data.word_count}

Outline:
{_bullets(data.outline, "- Your choice")}

Write the article as JSON."""


# ---------------------------------------------------------------------------
# Layout Builder
# ---------------------------------------------------------------------------

class LayoutInput(BaseModel):
    title: str
    content: str
    keywords: list[str] = Field(default_factory=list)
    content_type: str = "article"
    sections: list[str] = Field(default_factory=list)


class LayoutElement(BaseModel):
    id: str
    el_type: str
    settings: dict[str, Any] = Field(default_factory=dict)
    elements: list[Any] = Field(default_factory=list)


class LayoutBuilderOutput(BaseModel):
    layout_version: str = "1.0"
    elements: list[LayoutElement] = Field(default_factory=list)
    widgets_used: list[str] = Field(default_factory=list)
    sections_count: int = 0


class LayoutBuilder(BaseCapability):
    kind = Capability.LAYOUT_BUILDER
    name = "layout_builder"
    description = "Arranges finished content into page-builder sections."
    input_model = LayoutInput
    output_model = LayoutBuilderOutput

    system_prompt = """You are the layout builder inside SitePilot.

Arrange the given content into page sections and widgets.

Output schema:
{
  "layout_version": "1.0",
  "elements": [
    {"id": "a1b2c3", "el_type": "section|column|widget", "settings": {}, "elements": []}
  ],
  "widgets_used": ["heading", "text-editor"],
  "sections_count": 4
}
"""

    def build_prompt(self, data: LayoutInput) -> str:
        return f"""Page: {data.title} ({data.content_type})
Keywords: {', '.join(data.keywords) or 'none'}

Requested sections:
{_bullets(data.sections, "- Your choice")}

Content:
{data.content}

Produce the layout as JSON."""


# ---------------------------------------------------------------------------
# Page Builder
# ---------------------------------------------------------------------------

class PageBuilderOutput(BaseModel):
    content_html: str
    meta_title: str
    meta_description: str
    layout: dict[str, Any] = Field(default_factory=dict)
    internal_links: list[str] = Field(default_factory=list)
    word_count: int = 0


class PageBuilder(BaseCapability):
    """Content and layout in one call; the build phase's workhorse."""

    kind = Capability.PAGE_BUILDER
    name = "page_builder"
    description = "Produces publishable HTML, meta tags and layout for one page."
    input_model = PageBrief
    output_model = PageBuilderOutput

    system_prompt = """You are the page builder inside SitePilot.

Produce a complete, publishable page: content, meta tags and layout.

Output schema:
{
  "content_html": "<h2>...</h2><p>...</p>",
  "meta_title": "Under 60 characters",
  "meta_description": "Under 155 characters",
  "layout": {"sections": [{"type": "hero|content|faq|cta", "heading": "..."}]},
  "internal_links": ["/slug"],
  "word_count": 1500
}

Rules:
- Only link to paths listed as available internal links.
- Escape every double quote inside the HTML.
"""

    def build_prompt(self, data: PageBrief) -> str:
        return f"""Title: {data.title}
Slug: {data.slug}
Target keyword: {data.target_keyword or data.title}
Niche: {data.niche}
Tone: {data.tone}
Word count: about {data.word_count}

Available internal links:
{_bullets(data.available_internal_links, "- None yet")}

Build the page as JSON."""


# ---------------------------------------------------------------------------
# Internal Linker
# ---------------------------------------------------------------------------

class SiblingPage(BaseModel):
    title: str
    slug: str
    target_keyword: str = ""


class InternalLinkerInput(BaseModel):
    title: str
    slug: str
    content: str
    existing_pages: list[SiblingPage] = Field(default_factory=list)


class LinkSuggestion(BaseModel):
    anchor_text: str
    target_slug: str
    context: str = ""
    position: int = 0


class InternalLinkerOutput(BaseModel):
    links_to_add: list[LinkSuggestion] = Field(default_factory=list)


class InternalLinker(BaseCapability):
    kind = Capability.INTERNAL_LINKER
    name = "internal_linker"
    description = "Suggests anchor texts in a page that should link to sibling pages."
    input_model = InternalLinkerInput
    output_model = InternalLinkerOutput

    system_prompt = """You are the internal linking specialist inside SitePilot.

Pick phrases in the page that should link to other pages of the same site.

Output schema:
{
  "links_to_add": [
    {"anchor_text": "exact phrase from the content", "target_slug": "other-page", "context": "sentence it sits in", "position": 0}
  ]
}

Rules:
- anchor_text MUST appear verbatim in the content, same case.
- target_slug MUST be one of the listed pages.
- At most one link per target page. 3 to 8 links total.
"""

    def build_prompt(self, data: InternalLinkerInput) -> str:
        pages = "\n".join(
            f"- {p.slug}: {p.title} ({p.target_keyword or 'no keyword'})"
            for p in data.existing_pages
        )
        return f"""Current page: {data.title} (/{data.slug})

Other pages on the site:
{pages or '- None'}

Content:
{data.content}

Suggest internal links as JSON."""
