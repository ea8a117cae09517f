"""
SitePilot integration ports.

The publish target, the search-index notifier and the analytics source
are external collaborators. Phase logic sees them only through these
narrow protocols, resolved per project.
"""

from __future__ import annotations

from typing import Any, Callable, Protocol, TypeVar

from loguru import logger
from pydantic import BaseModel, ConfigDict

T = TypeVar("T")


class PublishedPage(BaseModel):
    remote_id: str
    url: str


class PublishTarget(Protocol):
    def create_page(
        self,
        title: str,
        slug: str,
        content_html: str,
        meta_title: str = "",
        meta_description: str = "",
        layout: Any = None,
    ) -> PublishedPage: ...

    def update_page(
        self,
        remote_id: str,
        content_html: str | None = None,
        meta_title: str | None = None,
        meta_description: str | None = None,
    ) -> PublishedPage: ...


class IndexNotifier(Protocol):
    def submit_url(self, url: str) -> None: ...


class AnalyticsSource(Protocol):
    def fetch_snapshot(self, start_date: str, end_date: str) -> dict[str, Any]:
        """Totals plus raw rows: total_clicks, total_impressions, average_ctr,
        average_position, queries, pages."""
        ...

    def page_performance(self, page_url: str, start_date: str, end_date: str) -> list[dict[str, Any]]:
        """Per-query rows for one page: query, clicks, impressions, ctr, position."""
        ...


class ProjectIntegrations(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    publish_target: Any = None
    index_notifier: Any = None
    analytics: Any = None


IntegrationResolver = Callable[[str], ProjectIntegrations]


class StaticIntegrations:
    """Resolver backed by a dict of project id → integrations."""

    def __init__(
        self,
        by_project: dict[str, ProjectIntegrations] | None = None,
        default: ProjectIntegrations | None = None,
    ):
        self.by_project = by_project or {}
        self.default = default or ProjectIntegrations()

    def register(self, project_id: str, integrations: ProjectIntegrations) -> None:
        self.by_project[project_id] = integrations

    def __call__(self, project_id: str) -> ProjectIntegrations:
        return self.by_project.get(project_id, self.default)


def best_effort(label: str, fn: Callable[[], T]) -> T | None:
    """Run a side call whose failure must never reach the caller."""
    try:
        return fn()
    except Exception as e:
        logger.warning(f"[PHASE] {label} failed (ignored): {e}")
        return None
