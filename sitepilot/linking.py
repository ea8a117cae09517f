"""
Applies internal-link suggestions to page HTML.

Each suggestion names an anchor text and a target slug. The first
case-sensitive occurrence of the anchor that is neither inside an existing
link nor inside a tag gets wrapped. Anything that can't be placed is
skipped without complaint.
"""

from __future__ import annotations

import re
from typing import Any, Iterable

_ANCHOR_OPEN = re.compile(r"<a[\s>]", re.IGNORECASE)


def _inside_anchor(content: str, index: int) -> bool:
    last_open = -1
    for match in _ANCHOR_OPEN.finditer(content, 0, index):
        last_open = match.start()
    last_close = content.lower().rfind("</a>", 0, index)
    return last_open > last_close


def _inside_tag(content: str, index: int) -> bool:
    return content.rfind("<", 0, index) > content.rfind(">", 0, index)


def _find_placeable(content: str, anchor: str) -> int:
    start = 0
    while True:
        index = content.find(anchor, start)
        if index == -1:
            return -1
        if not _inside_anchor(content, index) and not _inside_tag(content, index):
            return index
        start = index + len(anchor)


def link_html(slug: str, anchor: str) -> str:
    return f'<a href="/{slug}">{anchor}</a>'


def apply_link_suggestions(
    content: str,
    suggestions: Iterable[dict[str, Any]],
    known_slugs: Iterable[str],
) -> tuple[str, list[str]]:
    """Wrap suggested anchors in links to sibling pages.

    Returns:
        The updated HTML and the slugs that were actually linked, in order.
    """
    known = set(known_slugs)
    applied: list[str] = []

    for suggestion in suggestions:
        anchor = suggestion.get("anchor_text") or ""
        slug = (suggestion.get("target_slug") or "").strip("/")
        if not anchor or slug not in known or slug in applied:
            continue
        if f'href="/{slug}"' in content:
            continue

        index = _find_placeable(content, anchor)
        if index == -1:
            continue

        content = content[:index] + link_html(slug, anchor) + content[index + len(anchor):]
        applied.append(slug)

    return content, applied
