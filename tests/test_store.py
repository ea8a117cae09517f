from sitepilot.models import (
    AgentRunRecord,
    AnalyticsSnapshot,
    Artifact,
    Capability,
    ContentUnit,
    Project,
    ProjectSettings,
    ProjectStatus,
)
from sitepilot.store import InMemoryContentStore, JsonFileContentStore


def _project(**kwargs) -> Project:
    return Project(name="Trail Site", domain="https://trail.example", settings=ProjectSettings(niche="trail"), **kwargs)


def test_returned_models_are_copies():
    store = InMemoryContentStore()
    saved = store.save_project(_project())

    saved.status = ProjectStatus.LIVE
    assert store.get_project(saved.id).status == ProjectStatus.DRAFT


def test_units_are_listed_per_project():
    store = InMemoryContentStore()
    store.save_units([
        ContentUnit(project_id="p1", title="Home", slug="home"),
        ContentUnit(project_id="p1", title="Guide", slug="guide"),
        ContentUnit(project_id="p2", title="Other", slug="other"),
    ])
    assert sorted(u.slug for u in store.list_content_units("p1")) == ["guide", "home"]


def test_artifacts_are_keyed_by_unit():
    store = InMemoryContentStore()
    store.save_artifact(Artifact(project_id="p1", kind="page_builder", unit_id="u1", data={"n": 1}))
    store.save_artifact(Artifact(project_id="p1", kind="market_research", data={"n": 2}))

    assert store.get_artifact("p1", "page_builder") is None
    assert store.get_artifact("p1", "page_builder", "u1").data == {"n": 1}
    assert store.get_artifact("p1", "market_research").data == {"n": 2}


def test_runs_filter_by_correlation():
    store = InMemoryContentStore()
    store.save_run(AgentRunRecord(project_id="p1", capability=Capability.MONITOR, correlation_id="run-a"))
    store.save_run(AgentRunRecord(project_id="p1", capability=Capability.MONITOR, correlation_id="run-b"))
    store.save_run(AgentRunRecord(project_id="p2", capability=Capability.MONITOR, correlation_id="run-a"))

    assert len(store.list_runs("p1")) == 2
    assert len(store.list_runs(correlation_id="run-a")) == 2
    assert len(store.list_runs("p1", "run-a")) == 1


def test_snapshots_newest_first_and_limited():
    store = InMemoryContentStore()
    for day in range(1, 21):
        store.save_snapshot(AnalyticsSnapshot(project_id="p1", date=f"2026-01-{day:02d}"))

    latest = store.list_snapshots("p1")
    assert len(latest) == 14
    assert latest[0].date == "2026-01-20"
    assert store.list_snapshots("p1", limit=2)[1].date == "2026-01-19"


def test_json_store_survives_restart(tmp_path):
    path = tmp_path / "state" / "store.json"
    store = JsonFileContentStore(path)
    project = store.save_project(_project())
    store.save_unit(ContentUnit(project_id=project.id, title="Home", slug="home"))

    reopened = JsonFileContentStore(path)
    assert reopened.get_project(project.id).name == "Trail Site"
    assert [u.slug for u in reopened.list_content_units(project.id)] == ["home"]
    assert not path.with_suffix(".json.tmp").exists()


def test_status_update_only_applies_from_the_expected_status(tmp_path):
    store = JsonFileContentStore(tmp_path / "store.json")
    project = store.save_project(_project(status=ProjectStatus.BUILDING))

    moved = store.update_status(project.id, ProjectStatus.BUILDING, ProjectStatus.PUBLISHING)
    assert moved.status == ProjectStatus.PUBLISHING
    assert store.update_status(project.id, ProjectStatus.BUILDING, ProjectStatus.PUBLISHING) is None
    assert store.update_status("missing", ProjectStatus.BUILDING, ProjectStatus.PUBLISHING) is None

    assert JsonFileContentStore(tmp_path / "store.json").get_project(project.id).status == ProjectStatus.PUBLISHING
