from datetime import datetime, timedelta, timezone

import pytest

from sitepilot.errors import (
    DependencyNotReady,
    InvalidTransition,
    ProjectNotFound,
    TransportError,
    ValidationError,
)
from sitepilot.integrations import ProjectIntegrations
from sitepilot.models import (
    Capability,
    ContentUnit,
    Project,
    ProjectSettings,
    ProjectStatus,
    RunStatus,
    UnitStatus,
)
from sitepilot.orchestrator import ANALYTICS_WINDOW_DAYS, _window
from sitepilot.queue import Job
from tests.conftest import PAGE_HTML, FailingIndexer, FakePublishTarget

LINK = '<a href="/trail-shoe-sizing">trail shoe sizing</a>'


def _units(ctx, project_id):
    return {u.slug: u for u in ctx.store.list_content_units(project_id)}


def _job(name, project_id, **payload):
    return Job(
        queue="build",
        name=name,
        payload={"project_id": project_id, **payload},
        correlation_id="run-test",
        attempts_made=1,
    )


# ---------------------------------------------------------------------------
# Full pipeline
# ---------------------------------------------------------------------------

def test_pipeline_reaches_live(ctx, project, router, target, indexer, analytics, run_until_idle):
    correlation_id = ctx.machine.start(project.id)
    assert correlation_id.startswith("run-")

    run_until_idle()

    assert ctx.store.get_project(project.id).status == ProjectStatus.LIVE

    units = _units(ctx, project.id)
    assert sorted(units) == ["best-trail-shoes", "home", "trail-shoe-sizing"]
    assert all(u.status == UnitStatus.PUBLISHED for u in units.values())
    assert all(u.url == f"https://trail.example/{slug}" for slug, u in units.items())
    assert sorted(target.created) == sorted(units)
    assert sorted(indexer.submitted) == sorted(u.url for u in units.values())

    assert LINK in units["home"].content_html
    assert units["home"].internal_links == ["trail-shoe-sizing"]
    assert units["trail-shoe-sizing"].content_html == PAGE_HTML
    assert units["trail-shoe-sizing"].internal_links == []

    calls = router.counts()
    assert calls["page_builder"] == 3
    assert calls["internal_linker"] == 3
    assert calls["publisher"] == 3
    for single in ("market_research", "site_architect", "monitor", "technical_seo", "optimizer", "fixer"):
        assert calls[single] == 1


def test_pipeline_runs_live_loops(ctx, project, target, analytics, run_until_idle):
    ctx.machine.start(project.id)
    run_until_idle()

    units = _units(ctx, project.id)
    updated = {u["remote_id"]: u for u in target.updated}

    optimized = units["best-trail-shoes"]
    assert optimized.meta_title == "Best Trail Shoes of 2026"
    assert optimized.status == UnitStatus.PUBLISHED
    assert updated[optimized.remote_id]["meta_title"] == "Best Trail Shoes of 2026"
    assert analytics.page_calls == ["https://trail.example/best-trail-shoes"]

    fixed = units["home"]
    assert fixed.meta_title == "Trail Shoe Guide"
    assert updated[fixed.remote_id]["meta_title"] == "Trail Shoe Guide"

    assert len(ctx.store.list_snapshots(project.id)) == 1
    assert ctx.store.get_artifact(project.id, "monitor").data["health_score"] == 72
    # next monitor run waits a full cadence period
    assert ctx.queues["monitor"].counts().delayed == 1


def test_every_run_shares_the_workflow_correlation_id(ctx, project, run_until_idle):
    correlation_id = ctx.machine.start(project.id)
    run_until_idle()

    runs = ctx.store.list_runs(project.id)
    assert len(runs) == 15
    assert {r.correlation_id for r in runs} == {correlation_id}
    assert all(r.status == RunStatus.COMPLETED for r in runs)
    assert ctx.store.get_artifact(project.id, "site_architect").correlation_id == correlation_id


def test_transient_failure_is_retried_with_a_new_run_record(ctx, project, router, run_until_idle):
    router.scripted["market_research"] = [TransportError("timeout")] * 3

    ctx.machine.start(project.id)
    run_until_idle()

    assert ctx.store.get_project(project.id).status == ProjectStatus.LIVE
    research = sorted(
        (r for r in ctx.store.list_runs(project.id) if r.capability == Capability.MARKET_RESEARCH),
        key=lambda r: r.retry_count,
    )
    assert [(r.retry_count, r.status) for r in research] == [
        (0, RunStatus.FAILED),
        (1, RunStatus.COMPLETED),
    ]


# ---------------------------------------------------------------------------
# Publish failures
# ---------------------------------------------------------------------------

def test_missing_publish_target_fails_terminally(ctx, project, router, integrations, run_until_idle):
    integrations.default = ProjectIntegrations()

    ctx.machine.start(project.id)
    run_until_idle()

    assert ctx.store.get_project(project.id).status == ProjectStatus.PUBLISHING
    failed = ctx.scheduler.failed_jobs("publish")
    assert len(failed) == 3
    assert all(j.failed_reason.startswith("IntegrationMissing") for j in failed)
    assert all(j.attempts_made == 1 for j in failed)
    assert router.counts()["publisher"] == 0
    assert all(u.status == UnitStatus.READY for u in _units(ctx, project.id).values())


def test_retry_failed_requeues_with_fresh_correlation(
    ctx, project, integrations, target, indexer, analytics, run_until_idle,
):
    integrations.default = ProjectIntegrations()
    ctx.machine.start(project.id)
    run_until_idle()

    integrations.register(project.id, ProjectIntegrations(
        publish_target=target, index_notifier=indexer, analytics=analytics,
    ))
    retried = ctx.machine.retry_failed(project.id)

    assert len(retried) == 3
    assert all(j.correlation_id.startswith("retry-") for j in retried)
    assert ctx.scheduler.failed_jobs() == []

    run_until_idle()
    assert ctx.store.get_project(project.id).status == ProjectStatus.LIVE


def test_rejected_page_is_not_published(ctx, project, router, target, run_until_idle):
    router.outputs["publisher"] = {
        "publish_ready": False,
        "seo_checklist": [{"check": "meta description", "passed": False, "note": "missing"}],
    }

    ctx.machine.start(project.id)
    run_until_idle()

    failed = ctx.scheduler.failed_jobs("publish")
    assert len(failed) == 3
    assert all(j.failed_reason.startswith("PublishRejected") for j in failed)
    assert target.created == []
    assert ctx.store.get_project(project.id).status == ProjectStatus.PUBLISHING


def test_index_notification_failure_is_ignored(
    ctx, project, integrations, target, analytics, run_until_idle, log_messages,
):
    integrations.default = ProjectIntegrations(
        publish_target=target, index_notifier=FailingIndexer(), analytics=analytics,
    )

    ctx.machine.start(project.id)
    run_until_idle()

    assert ctx.store.get_project(project.id).status == ProjectStatus.LIVE
    assert ctx.scheduler.failed_jobs() == []
    assert any("failed (ignored)" in m for m in log_messages)


# ---------------------------------------------------------------------------
# Monitoring
# ---------------------------------------------------------------------------

def test_monitor_without_analytics_skips_and_reschedules(
    ctx, project, integrations, target, indexer, run_until_idle, log_messages,
):
    integrations.default = ProjectIntegrations(publish_target=target, index_notifier=indexer)

    ctx.machine.start(project.id)
    run_until_idle()

    assert ctx.store.get_project(project.id).status == ProjectStatus.LIVE
    assert ctx.store.list_snapshots(project.id) == []
    assert ctx.store.get_artifact(project.id, "monitor") is None
    assert any("No analytics source connected" in m for m in log_messages)
    assert ctx.queues["monitor"].counts().delayed == 1
    assert ctx.scheduler.failed_jobs() == []


def test_monitor_without_autopilot_does_not_reschedule(ctx):
    project = ctx.store.save_project(Project(
        name="Manual Site",
        domain="https://manual.example",
        status=ProjectStatus.LIVE,
        settings=ProjectSettings(niche="trail running", autopilot=False),
    ))

    result = ctx.machine.handle(_job("monitor", project.id))

    assert result.status == "completed"
    assert ctx.queues["monitor"].counts().delayed == 0


# ---------------------------------------------------------------------------
# Pause / resume
# ---------------------------------------------------------------------------

def test_paused_project_defers_then_resumes(ctx, project, router, run_until_idle):
    ctx.machine.start(project.id)
    paused = ctx.machine.pause(project.id)
    assert paused.status == ProjectStatus.PAUSED
    assert paused.paused_from == ProjectStatus.RESEARCHING

    run_until_idle()
    assert ctx.store.get_project(project.id).status == ProjectStatus.PAUSED
    assert router.calls == []

    resumed = ctx.machine.resume(project.id)
    assert resumed.status == ProjectStatus.RESEARCHING
    assert resumed.paused_from is None

    run_until_idle()
    assert ctx.store.get_project(project.id).status == ProjectStatus.LIVE
    assert all(r.correlation_id.startswith("resume-") for r in ctx.store.list_runs(project.id))


def test_resume_building_with_nothing_left_moves_to_publishing(ctx):
    project = ctx.store.save_project(Project(
        name="Built Site",
        domain="https://built.example",
        status=ProjectStatus.PAUSED,
        paused_from=ProjectStatus.BUILDING,
        settings=ProjectSettings(niche="trail running"),
    ))
    ctx.store.save_units([
        ContentUnit(project_id=project.id, title=slug, slug=slug, content_html=PAGE_HTML, status=UnitStatus.READY)
        for slug in ("home", "guide")
    ])

    resumed = ctx.machine.resume(project.id)

    assert resumed.status == ProjectStatus.PUBLISHING
    assert ctx.queues["publish"].counts().delayed == 2


def test_resume_publishing_with_everything_published_goes_live(ctx):
    project = ctx.store.save_project(Project(
        name="Published Site",
        domain="https://published.example",
        status=ProjectStatus.PAUSED,
        paused_from=ProjectStatus.PUBLISHING,
        settings=ProjectSettings(niche="trail running"),
    ))
    ctx.store.save_unit(ContentUnit(project_id=project.id, title="Home", slug="home", status=UnitStatus.PUBLISHED))

    resumed = ctx.machine.resume(project.id)

    assert resumed.status == ProjectStatus.LIVE
    assert ctx.queues["monitor"].counts().delayed == 2


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------

def test_invalid_transitions(ctx, project):
    ctx.machine.start(project.id)
    with pytest.raises(InvalidTransition):
        ctx.machine.start(project.id)
    with pytest.raises(InvalidTransition):
        ctx.machine.resume(project.id)

    ctx.machine.pause(project.id)
    with pytest.raises(InvalidTransition):
        ctx.machine.pause(project.id)


def test_phase_for_wrong_status_is_rejected(ctx, project):
    with pytest.raises(InvalidTransition) as exc:
        ctx.machine.handle(_job("publish", project.id, unit_id="u1"))
    assert exc.value.retryable is False


def test_content_before_research_is_not_ready(ctx):
    project = ctx.store.save_project(Project(
        name="Early Site",
        domain="https://early.example",
        status=ProjectStatus.BUILDING,
        settings=ProjectSettings(niche="trail running"),
    ))
    unit = ctx.store.save_unit(ContentUnit(project_id=project.id, title="Home", slug="home"))

    with pytest.raises(DependencyNotReady) as exc:
        ctx.machine.handle(_job("content", project.id, unit_id=unit.id))

    assert exc.value.missing == ["market_research", "site_architect"]
    assert exc.value.retryable is True


def test_malformed_tasks_are_rejected(ctx, project):
    with pytest.raises(ValidationError):
        ctx.machine.handle(_job("deploy", project.id))
    with pytest.raises(ValidationError):
        ctx.machine.handle(Job(queue="build", name="research", payload={}, correlation_id="run-x"))
    with pytest.raises(ValidationError):
        ctx.machine.handle(_job("capability", project.id, capability="summarize"))
    with pytest.raises(ProjectNotFound):
        ctx.machine.handle(_job("research", "missing"))


def test_ad_hoc_capability_runs_on_agent_tasks(ctx, project, run_until_idle):
    job = ctx.machine.run_capability(project.id, Capability.MARKET_RESEARCH, {"niche": "trail running"})
    assert job.queue == "agent-tasks"
    assert job.correlation_id.startswith("task-")

    run_until_idle()

    artifact = ctx.store.get_artifact(project.id, "market_research")
    assert artifact.correlation_id == job.correlation_id
    assert ctx.store.get_project(project.id).status == ProjectStatus.DRAFT


# ---------------------------------------------------------------------------
# Republishing and concurrent phase completion
# ---------------------------------------------------------------------------

class FlakyTarget(FakePublishTarget):
    """Publishes normally but times out on the first page update."""

    def __init__(self):
        super().__init__()
        self.update_failures = 1

    def update_page(self, remote_id, content_html=None, meta_title=None, meta_description=None):
        if self.update_failures:
            self.update_failures -= 1
            raise TimeoutError("CMS timed out")
        return super().update_page(remote_id, content_html, meta_title, meta_description)


def test_failed_republish_is_pushed_on_retry(ctx, project, integrations, indexer, analytics, run_until_idle):
    flaky = FlakyTarget()
    integrations.default = ProjectIntegrations(publish_target=flaky, index_notifier=indexer, analytics=analytics)

    ctx.machine.start(project.id)
    run_until_idle()

    assert flaky.update_failures == 0
    assert ctx.scheduler.failed_jobs() == []
    units = _units(ctx, project.id)
    assert all(u.status == UnitStatus.PUBLISHED for u in units.values())

    pushed = {u["remote_id"]: u["meta_title"] for u in flaky.updated}
    assert pushed[units["best-trail-shoes"].remote_id] == "Best Trail Shoes of 2026"
    assert pushed[units["home"].remote_id] == "Trail Shoe Guide"


def test_only_one_task_moves_a_finished_build_to_publishing(ctx):
    stale = ctx.store.save_project(Project(
        name="Built Site",
        domain="https://built.example",
        status=ProjectStatus.BUILDING,
        settings=ProjectSettings(niche="trail running"),
    ))
    ctx.store.save_units([
        ContentUnit(project_id=stale.id, title=slug, slug=slug, content_html=PAGE_HTML, status=UnitStatus.READY)
        for slug in ("home", "guide")
    ])

    # both tasks loaded the project while it was still building
    assert ctx.machine._finish_building(stale, _job("content", stale.id)) == 0
    assert ctx.machine._finish_building(stale, _job("content", stale.id)) == 0

    assert ctx.store.get_project(stale.id).status == ProjectStatus.PUBLISHING
    assert ctx.queues["publish"].counts().delayed == 2


def test_only_one_task_takes_a_project_live(ctx):
    stale = ctx.store.save_project(Project(
        name="Published Site",
        domain="https://published.example",
        status=ProjectStatus.PUBLISHING,
        settings=ProjectSettings(niche="trail running"),
    ))
    ctx.store.save_unit(ContentUnit(project_id=stale.id, title="Home", slug="home", status=UnitStatus.PUBLISHED))

    ctx.machine._finish_publishing(stale, _job("publish", stale.id))
    ctx.machine._finish_publishing(stale, _job("publish", stale.id))

    assert ctx.store.get_project(stale.id).status == ProjectStatus.LIVE
    assert ctx.queues["monitor"].counts().delayed == 2


# ---------------------------------------------------------------------------
# Rebuild
# ---------------------------------------------------------------------------

def test_rebuild_regenerates_and_updates_existing_pages(ctx, project, router, target, run_until_idle):
    ctx.machine.start(project.id)
    run_until_idle()
    remote_ids = {u.slug: u.remote_id for u in _units(ctx, project.id).values()}
    updates_before = len(target.updated)

    correlation_id = ctx.machine.rebuild(project.id)
    assert correlation_id.startswith("rebuild-")
    assert ctx.store.get_project(project.id).status == ProjectStatus.RESEARCHING
    assert all(u.status == UnitStatus.DRAFT for u in _units(ctx, project.id).values())

    run_until_idle()

    units = _units(ctx, project.id)
    assert ctx.store.get_project(project.id).status == ProjectStatus.LIVE
    assert all(u.status == UnitStatus.PUBLISHED for u in units.values())
    assert {slug: u.remote_id for slug, u in units.items()} == remote_ids
    assert len(target.created) == 3
    rebuilt = {u["remote_id"] for u in target.updated[updates_before:]}
    assert set(remote_ids.values()) <= rebuilt
    assert router.counts()["market_research"] == 2
    assert router.counts()["page_builder"] == 6


def test_rebuild_needs_a_started_project(ctx, project):
    with pytest.raises(InvalidTransition):
        ctx.machine.rebuild(project.id)


def test_analytics_window_ends_on_the_utc_date():
    start, end = _window()
    today = datetime.now(timezone.utc).date()
    assert end == today.isoformat()
    assert start == (today - timedelta(days=ANALYTICS_WINDOW_DAYS)).isoformat()
