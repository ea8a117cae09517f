import copy
import json
from collections import Counter
from typing import Any

import pytest
from loguru import logger

from sitepilot.app import build_context
from sitepilot.config_loader import SitePilotConfig
from sitepilot.integrations import ProjectIntegrations, PublishedPage, StaticIntegrations
from sitepilot.models import Project, ProjectSettings
from sitepilot.router import RouterResponse
from sitepilot.scheduler import build_queues
from sitepilot.store import InMemoryContentStore

PAGE_HTML = "<p>Our guide to trail shoe sizing and the best trail shoes.</p>"

CANNED: dict[str, Any] = {
    "market_research": {
        "market_analysis": {"market_size": "mid", "trends": ["ultra distances"]},
        "keyword_opportunities": [
            {"keyword": "best trail shoes", "intent": "commercial", "difficulty": "medium", "potential": "high"},
            {"keyword": "trail shoe sizing", "intent": "informational", "difficulty": "low", "potential": "medium"},
        ],
        "content_gaps": ["sizing for wide feet"],
        "recommended_topics": ["trail shoe sizing"],
    },
    "site_architect": {
        "site_structure": {
            "homepage": {
                "title": "Trail Shoe Guide",
                "meta_description": "Everything about trail shoes.",
                "sections": ["hero", "latest"],
            },
            "categories": [
                {
                    "name": "Shoes",
                    "slug": "shoes",
                    "pages": [
                        {"title": "Best Trail Shoes", "slug": "best-trail-shoes", "target_keyword": "best trail shoes"},
                        {"title": "Trail Shoe Sizing", "slug": "trail-shoe-sizing", "target_keyword": "trail shoe sizing"},
                        {"title": "Best Trail Shoes Again", "slug": "/best-trail-shoes/"},
                    ],
                },
            ],
        },
        "internal_link_strategy": {"hub_pages": ["home"]},
    },
    "page_builder": {
        "content_html": PAGE_HTML,
        "meta_title": "Trail shoes",
        "meta_description": "A practical guide.",
        "layout": {"layout_version": "1.0"},
        "word_count": 11,
    },
    "internal_linker": {
        "links_to_add": [{"anchor_text": "trail shoe sizing", "target_slug": "trail-shoe-sizing"}],
    },
    "publisher": {
        "publish_ready": True,
        "seo_checklist": [{"check": "title length", "passed": True}],
        "final_meta_title": "",
        "final_meta_description": "",
    },
    "monitor": {
        "health_score": 72,
        "alerts": [],
        "optimization_candidates": [
            {"page_slug": "best-trail-shoes", "priority": "high", "reason": "ctr_drop"},
            {"page_slug": "home", "priority": "low"},
        ],
        "recommendations": [],
    },
    "technical_seo": {
        "score": 81,
        "issues": [
            {
                "type": "critical",
                "category": "meta",
                "description": "Homepage title too long",
                "affected_pages": ["home"],
                "impact": "high",
            },
        ],
    },
    "optimizer": {
        "updated_meta_title": "Best Trail Shoes of 2026",
        "recommendations": ["Add a comparison table"],
    },
    "fixer": {
        "fixes": [{"page_slug": "home", "description": "Shorten title", "updated_meta_title": "Trail Shoe Guide"}],
        "requires_manual_review": False,
    },
    "content_builder": {
        "title": "Trail Shoe Sizing",
        "meta_title": "Trail shoe sizing",
        "meta_description": "How to size trail shoes.",
        "content": PAGE_HTML,
    },
    "layout_builder": {"layout_version": "1.0", "elements": [], "widgets_used": [], "sections_count": 0},
}


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeRouter:
    """Answers with canned JSON per capability. Scripted items are used first."""

    def __init__(self, outputs: dict[str, Any] | None = None, scripted: dict[str, list] | None = None):
        self.outputs = copy.deepcopy(CANNED if outputs is None else outputs)
        self.scripted = scripted or {}
        self.calls: list[dict[str, Any]] = []
        self.chunks: list[str] = []

    def complete(self, capability, messages, temperature=None, max_tokens=None, timeout_s=None):
        key = capability.value
        self.calls.append({"capability": key, "messages": messages})
        queue = self.scripted.get(key)
        item = queue.pop(0) if queue else self.outputs.get(key, {})
        if isinstance(item, Exception):
            raise item
        content = item if isinstance(item, str) else json.dumps(item)
        return RouterResponse(content=content, model="fake/model", tokens_used=10)

    def stream(self, capability, messages, temperature=None, max_tokens=None):
        self.calls.append({"capability": capability.value, "messages": messages})
        yield from self.chunks

    def counts(self) -> Counter:
        return Counter(call["capability"] for call in self.calls)


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakePublishTarget:
    def __init__(self, domain: str = "https://trail.example"):
        self.domain = domain
        self.created: list[str] = []
        self.updated: list[dict[str, Any]] = []

    def create_page(self, title, slug, content_html, meta_title="", meta_description="", layout=None):
        self.created.append(slug)
        return PublishedPage(remote_id=f"wp-{len(self.created)}", url=f"{self.domain}/{slug}")

    def update_page(self, remote_id, content_html=None, meta_title=None, meta_description=None):
        self.updated.append({
            "remote_id": remote_id,
            "content_html": content_html,
            "meta_title": meta_title,
            "meta_description": meta_description,
        })
        return PublishedPage(remote_id=remote_id, url=f"{self.domain}/{remote_id}")


class RecordingIndexer:
    def __init__(self):
        self.submitted: list[str] = []

    def submit_url(self, url: str) -> None:
        self.submitted.append(url)


class FailingIndexer:
    def submit_url(self, url: str) -> None:
        raise RuntimeError("indexing API unavailable")


class FakeAnalytics:
    def __init__(self):
        self.page_calls: list[str] = []

    def fetch_snapshot(self, start_date, end_date):
        return {
            "total_clicks": 120,
            "total_impressions": 4000,
            "average_ctr": 0.03,
            "average_position": 14.2,
            "queries": [{"query": "best trail shoes", "clicks": 40}],
            "pages": [],
        }

    def page_performance(self, page_url, start_date, end_date):
        self.page_calls.append(page_url)
        return [{"query": "best trail shoes", "clicks": 10, "impressions": 900, "ctr": 0.011, "position": 12.5}]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def log_messages():
    messages: list[str] = []
    handler_id = logger.add(lambda m: messages.append(m.record["message"]), level="DEBUG")
    yield messages
    logger.remove(handler_id)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def router():
    return FakeRouter()


@pytest.fixture
def target():
    return FakePublishTarget()


@pytest.fixture
def indexer():
    return RecordingIndexer()


@pytest.fixture
def analytics():
    return FakeAnalytics()


@pytest.fixture
def integrations(target, indexer, analytics):
    return StaticIntegrations(default=ProjectIntegrations(
        publish_target=target,
        index_notifier=indexer,
        analytics=analytics,
    ))


@pytest.fixture
def ctx(router, integrations, clock):
    config = SitePilotConfig()
    return build_context(
        config,
        store=InMemoryContentStore(),
        integrations=integrations,
        router=router,
        queues=build_queues(config.queues, clock=clock),
        sleep=lambda s: None,
    )


@pytest.fixture
def project(ctx):
    return ctx.store.save_project(Project(
        name="Trail Site",
        domain="https://trail.example",
        settings=ProjectSettings(
            niche="trail running",
            target_audience="weekend trail runners",
            keywords=["trail shoes"],
        ),
    ))


@pytest.fixture
def run_until_idle(ctx, clock):
    """Process every due job on every queue, stepping the clock between rounds.

    Stops after a few rounds with nothing to do, which is how a live project's
    weekly monitor re-schedule is left waiting in its queue.
    """

    def run(step_s: float = 120, idle_rounds: int = 3, max_rounds: int = 200) -> int:
        workers = ctx.build_workers()
        total = 0
        idle = 0
        for _ in range(max_rounds):
            processed = 0
            progress = True
            while progress:
                progress = False
                for worker in workers.values():
                    while worker.process_next() is not None:
                        processed += 1
                        progress = True
            total += processed
            idle = idle + 1 if processed == 0 else 0
            if idle >= idle_rounds:
                return total
            clock.advance(step_s)
        raise AssertionError("queues never went idle")

    return run
