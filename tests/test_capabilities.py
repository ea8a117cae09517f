import pytest

from sitepilot.capabilities import CapabilityContext, build_capabilities
from sitepilot.enforcer import StructuredOutputEnforcer
from sitepilot.errors import MalformedOutput, ValidationError
from sitepilot.models import Capability, RunStatus
from sitepilot.store import InMemoryContentStore
from tests.conftest import FakeRouter


@pytest.fixture
def store():
    return InMemoryContentStore()


def _roster(router, store):
    return build_capabilities(StructuredOutputEnforcer(router, sleep=lambda s: None), store)


def test_run_writes_completed_record(store):
    roster = _roster(FakeRouter(), store)
    context = CapabilityContext(project_id="p1", correlation_id="run-1")

    output = roster[Capability.MARKET_RESEARCH].run("p1", {"niche": "trail running"}, context)

    assert output["keyword_opportunities"][0]["keyword"] == "best trail shoes"
    [record] = store.list_runs("p1")
    assert record.status == RunStatus.COMPLETED
    assert record.capability == Capability.MARKET_RESEARCH
    assert record.correlation_id == "run-1"
    assert record.model == "fake/model"
    assert record.output == output
    assert record.completed_at is not None


def test_output_schema_mismatch_is_a_validation_error(store):
    router = FakeRouter(scripted={"market_research": [
        {"keyword_opportunities": [{"keyword": "x", "difficulty": "extreme"}]},
    ]})
    roster = _roster(router, store)

    with pytest.raises(ValidationError) as exc:
        roster[Capability.MARKET_RESEARCH].run("p1", {"niche": "trail"})

    assert exc.value.retryable is False
    assert exc.value.details["errors"]
    [record] = store.list_runs("p1")
    assert record.status == RunStatus.FAILED


def test_invalid_input_never_reaches_the_generator(store):
    router = FakeRouter()
    roster = _roster(router, store)

    with pytest.raises(ValidationError):
        roster[Capability.PAGE_BUILDER].run("p1", {"title": "Home", "slug": "home", "word_count": 50})
    assert router.calls == []


def test_every_attempt_writes_its_own_record(store):
    router = FakeRouter(scripted={"monitor": ["garbage"] * 3})
    roster = _roster(router, store)
    monitor = roster[Capability.MONITOR]

    with pytest.raises(MalformedOutput):
        monitor.run("p1", {"project_id": "p1"}, CapabilityContext(project_id="p1", correlation_id="run-1"))
    monitor.run("p1", {"project_id": "p1"}, CapabilityContext(project_id="p1", correlation_id="run-1", retry_count=1))

    records = sorted(store.list_runs(correlation_id="run-1"), key=lambda r: r.retry_count)
    assert [(r.retry_count, r.status) for r in records] == [
        (0, RunStatus.FAILED),
        (1, RunStatus.COMPLETED),
    ]
    assert "Unparseable output" in records[0].error


def test_prompts_render_input():
    roster = _roster(FakeRouter(), None)
    prompt = roster[Capability.PAGE_BUILDER].build_prompt(
        roster[Capability.PAGE_BUILDER].input_model(
            title="Trail Shoe Sizing",
            slug="trail-shoe-sizing",
            available_internal_links=["/home"],
        )
    )
    assert "Slug: trail-shoe-sizing" in prompt
    assert "- /home" in prompt


def test_roster_covers_every_capability():
    roster = _roster(FakeRouter(), None)
    assert set(roster) == set(Capability)
    assert all(len(c.system_prompt) >= 50 for c in roster.values())
