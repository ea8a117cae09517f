"""
SitePilot Content Store.

Phase logic only talks to the `ContentStore` port. Two adapters ship:
an in-memory store for tests and one-shot runs, and a JSON-file store that
writes a full snapshot after every change for single-host deployments.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Protocol

from loguru import logger
from pydantic import BaseModel, Field

from sitepilot.models import (
    AgentRunRecord,
    AnalyticsSnapshot,
    Artifact,
    ContentUnit,
    Project,
    ProjectStatus,
    utc_now,
)


class ContentStore(Protocol):
    def get_project(self, project_id: str) -> Project | None: ...
    def list_projects(self) -> list[Project]: ...
    def save_project(self, project: Project) -> Project: ...
    def update_status(
        self, project_id: str, expected: ProjectStatus, status: ProjectStatus,
    ) -> Project | None: ...

    def list_content_units(self, project_id: str) -> list[ContentUnit]: ...
    def get_unit(self, unit_id: str) -> ContentUnit | None: ...
    def save_unit(self, unit: ContentUnit) -> ContentUnit: ...
    def save_units(self, units: list[ContentUnit]) -> list[ContentUnit]: ...

    def save_artifact(self, artifact: Artifact) -> Artifact: ...
    def get_artifact(self, project_id: str, kind: str, unit_id: str | None = None) -> Artifact | None: ...

    def save_run(self, record: AgentRunRecord) -> AgentRunRecord: ...
    def list_runs(self, project_id: str | None = None, correlation_id: str | None = None) -> list[AgentRunRecord]: ...

    def save_snapshot(self, snapshot: AnalyticsSnapshot) -> AnalyticsSnapshot: ...
    def list_snapshots(self, project_id: str, limit: int = 14) -> list[AnalyticsSnapshot]: ...


def _artifact_key(project_id: str, kind: str, unit_id: str | None) -> str:
    return f"{project_id}:{kind}:{unit_id or ''}"


class StoreSnapshot(BaseModel):
    """Serialized form of the whole store."""
    projects: dict[str, Project] = Field(default_factory=dict)
    units: dict[str, ContentUnit] = Field(default_factory=dict)
    artifacts: dict[str, Artifact] = Field(default_factory=dict)
    runs: dict[str, AgentRunRecord] = Field(default_factory=dict)
    snapshots: list[AnalyticsSnapshot] = Field(default_factory=list)


class InMemoryContentStore:
    """Thread-safe dict-backed store. Returned models are copies."""

    def __init__(self, data: StoreSnapshot | None = None):
        self._data = data or StoreSnapshot()
        self._lock = threading.RLock()

    def _committed(self) -> None:
        """Hook run after every write while the lock is held."""

    # -- projects -----------------------------------------------------------

    def get_project(self, project_id: str) -> Project | None:
        with self._lock:
            project = self._data.projects.get(project_id)
            return project.model_copy(deep=True) if project else None

    def list_projects(self) -> list[Project]:
        with self._lock:
            return [p.model_copy(deep=True) for p in self._data.projects.values()]

    def save_project(self, project: Project) -> Project:
        with self._lock:
            stored = project.model_copy(deep=True, update={"updated_at": utc_now()})
            self._data.projects[project.id] = stored
            self._committed()
            return stored.model_copy(deep=True)

    def update_status(
        self, project_id: str, expected: ProjectStatus, status: ProjectStatus,
    ) -> Project | None:
        """Set the status only if it still equals `expected`. None when another writer got there first."""
        with self._lock:
            current = self._data.projects.get(project_id)
            if current is None or current.status != expected:
                return None
            stored = current.model_copy(deep=True, update={"status": status, "updated_at": utc_now()})
            self._data.projects[project_id] = stored
            self._committed()
            return stored.model_copy(deep=True)

    # -- content units ------------------------------------------------------

    def list_content_units(self, project_id: str) -> list[ContentUnit]:
        with self._lock:
            return [
                u.model_copy(deep=True)
                for u in self._data.units.values()
                if u.project_id == project_id
            ]

    def get_unit(self, unit_id: str) -> ContentUnit | None:
        with self._lock:
            unit = self._data.units.get(unit_id)
            return unit.model_copy(deep=True) if unit else None

    def save_unit(self, unit: ContentUnit) -> ContentUnit:
        return self.save_units([unit])[0]

    def save_units(self, units: list[ContentUnit]) -> list[ContentUnit]:
        with self._lock:
            saved = []
            for unit in units:
                stored = unit.model_copy(deep=True, update={"updated_at": utc_now()})
                self._data.units[unit.id] = stored
                saved.append(stored.model_copy(deep=True))
            self._committed()
            return saved

    # -- artifacts ----------------------------------------------------------

    def save_artifact(self, artifact: Artifact) -> Artifact:
        with self._lock:
            key = _artifact_key(artifact.project_id, artifact.kind, artifact.unit_id)
            self._data.artifacts[key] = artifact.model_copy(deep=True)
            self._committed()
            return artifact

    def get_artifact(self, project_id: str, kind: str, unit_id: str | None = None) -> Artifact | None:
        with self._lock:
            artifact = self._data.artifacts.get(_artifact_key(project_id, kind, unit_id))
            return artifact.model_copy(deep=True) if artifact else None

    # -- run history --------------------------------------------------------

    def save_run(self, record: AgentRunRecord) -> AgentRunRecord:
        with self._lock:
            self._data.runs[record.id] = record.model_copy(deep=True)
            self._committed()
            return record

    def list_runs(
        self,
        project_id: str | None = None,
        correlation_id: str | None = None,
    ) -> list[AgentRunRecord]:
        with self._lock:
            return [
                r.model_copy(deep=True)
                for r in self._data.runs.values()
                if (project_id is None or r.project_id == project_id)
                and (correlation_id is None or r.correlation_id == correlation_id)
            ]

    # -- analytics ----------------------------------------------------------

    def save_snapshot(self, snapshot: AnalyticsSnapshot) -> AnalyticsSnapshot:
        with self._lock:
            self._data.snapshots.append(snapshot.model_copy(deep=True))
            self._committed()
            return snapshot

    def list_snapshots(self, project_id: str, limit: int = 14) -> list[AnalyticsSnapshot]:
        """Most recent first."""
        with self._lock:
            rows = [s for s in self._data.snapshots if s.project_id == project_id]
            rows.sort(key=lambda s: s.date, reverse=True)
            return [s.model_copy(deep=True) for s in rows[:limit]]


class JsonFileContentStore(InMemoryContentStore):
    """In-memory store that rewrites one JSON file after every change."""

    def __init__(self, path: Path | str):
        self.path = Path(path)
        data = None
        if self.path.exists():
            data = StoreSnapshot.model_validate_json(self.path.read_text())
            logger.debug(f"[STORE] Loaded {len(data.projects)} projects from {self.path}")
        super().__init__(data)

    def _committed(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(self._data.model_dump_json(indent=2))
        tmp.replace(self.path)
