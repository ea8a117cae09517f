"""
SitePilot Phase State Machine

Drives a project through its lifecycle:

    draft → researching → architecting → building → publishing → live

and, once live, through the monitor ↔ optimize and audit → fix loops.
`paused` is reachable from every state and resumes into `paused_from`.

It is NOT smart. Every phase handler:
  1. loads the project and defers if it is paused
  2. checks declared prerequisites of each capability it calls
  3. invokes capabilities through the registry
  4. persists the output
  5. advances the project status
  6. schedules the next phase

Handlers are stateless per invocation. Everything that must survive
between tasks lives in the store or the queue. Capability failures
propagate untouched; the queue decides whether to try again.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Literal

from loguru import logger
from pydantic import BaseModel, Field

from sitepilot.capabilities import CapabilityContext
from sitepilot.config_loader import ScheduleConfig
from sitepilot.errors import (
    DependencyNotReady,
    IntegrationMissing,
    InvalidTransition,
    ProjectNotFound,
    PublishRejected,
    ValidationError,
)
from sitepilot.integrations import IntegrationResolver, ProjectIntegrations, best_effort
from sitepilot.linking import apply_link_suggestions
from sitepilot.models import (
    AnalyticsSnapshot,
    Artifact,
    Capability,
    ContentUnit,
    CorrelationContext,
    Project,
    ProjectStatus,
    UnitStatus,
    utc_now,
)
from sitepilot.queue import Job
from sitepilot.registry import CapabilityRegistry
from sitepilot.scheduler import Scheduler
from sitepilot.store import ContentStore

TRANSITIONS: dict[ProjectStatus, frozenset[ProjectStatus]] = {
    ProjectStatus.DRAFT: frozenset({ProjectStatus.RESEARCHING}),
    ProjectStatus.RESEARCHING: frozenset({ProjectStatus.ARCHITECTING}),
    ProjectStatus.ARCHITECTING: frozenset({ProjectStatus.BUILDING}),
    ProjectStatus.BUILDING: frozenset({ProjectStatus.PUBLISHING}),
    ProjectStatus.PUBLISHING: frozenset({ProjectStatus.LIVE}),
    ProjectStatus.LIVE: frozenset({ProjectStatus.LIVE}),
}

ANALYTICS_WINDOW_DAYS = 28
HIGH_IMPACT_ISSUES = {"critical"}


class PhaseResult(BaseModel):
    phase: str
    status: Literal["completed", "deferred", "skipped"] = "completed"
    detail: dict[str, Any] = Field(default_factory=dict)


def _window() -> tuple[str, str]:
    end = datetime.now(timezone.utc).date()
    start = end - timedelta(days=ANALYTICS_WINDOW_DAYS)
    return start.isoformat(), end.isoformat()


class PhaseStateMachine:
    def __init__(
        self,
        registry: CapabilityRegistry,
        scheduler: Scheduler,
        store: ContentStore,
        integrations: IntegrationResolver,
        schedule: ScheduleConfig | None = None,
    ):
        self.registry = registry
        self.scheduler = scheduler
        self.store = store
        self.integrations = integrations
        self.schedule = schedule or ScheduleConfig()
        self._handlers: dict[str, Callable[[Project, Job], PhaseResult]] = {
            "research": self._research,
            "architecture": self._architecture,
            "content": self._content,
            "publish": self._publish,
            "monitor": self._monitor,
            "audit": self._audit,
            "optimize": self._optimize,
            "fix": self._fix,
            "capability": self._capability,
        }

    # -----------------------------------------------------------------------
    # Administrative entry points
    # -----------------------------------------------------------------------

    def start(self, project_id: str) -> str:
        """Kick off a draft project. Returns the workflow's correlation id."""
        project = self._load(project_id)
        correlation = CorrelationContext.new("run")
        self._transition(project, ProjectStatus.RESEARCHING)
        self.scheduler.schedule_phase("research", {"project_id": project_id}, str(correlation))
        logger.bind(project_id=project_id, correlation_id=str(correlation)).info(
            f"[PHASE] Project {project.name} started"
        )
        return str(correlation)

    def pause(self, project_id: str) -> Project:
        project = self._load(project_id)
        if project.status == ProjectStatus.PAUSED:
            raise InvalidTransition(f"Project {project_id} is already paused")
        paused = project.model_copy(update={
            "status": ProjectStatus.PAUSED,
            "paused_from": project.status,
        })
        logger.info(f"[PHASE] Project {project_id} paused from {project.status.value}")
        return self.store.save_project(paused)

    def resume(self, project_id: str) -> Project:
        """Restore `paused_from` and re-schedule the work that state implies."""
        project = self._load(project_id)
        if project.status != ProjectStatus.PAUSED or project.paused_from is None:
            raise InvalidTransition(f"Project {project_id} is not paused")

        resumed = self.store.save_project(project.model_copy(update={
            "status": project.paused_from,
            "paused_from": None,
        }))
        correlation = str(CorrelationContext.new("resume"))
        payload = {"project_id": project_id}

        if resumed.status == ProjectStatus.RESEARCHING:
            self.scheduler.schedule_phase("research", payload, correlation)
        elif resumed.status == ProjectStatus.ARCHITECTING:
            self.scheduler.schedule_phase("architecture", payload, correlation)
        elif resumed.status == ProjectStatus.BUILDING:
            if not self._schedule_content(resumed, correlation, delay_ms=0):
                # every unit was built before the pause landed
                resumed = self._transition(resumed, ProjectStatus.PUBLISHING)
                self._schedule_publish(resumed, correlation)
        elif resumed.status == ProjectStatus.PUBLISHING:
            if not self._schedule_publish(resumed, correlation):
                resumed = self._transition(resumed, ProjectStatus.LIVE)
                self._schedule_monitoring(resumed, correlation)
        elif resumed.status == ProjectStatus.LIVE:
            self.scheduler.schedule_phase("monitor", payload, correlation)

        logger.info(f"[PHASE] Project {project_id} resumed into {resumed.status.value}")
        return resumed

    def retry_failed(self, project_id: str) -> list[Job]:
        """Re-enqueue every terminally failed task of a project with a fresh correlation id."""
        self._load(project_id)
        retried: list[Job] = []
        for queue_name in self.scheduler.names:
            for job in self.scheduler.failed_jobs(queue_name):
                if job.project_id != project_id:
                    continue
                fresh = self.scheduler.enqueue(
                    queue_name,
                    job.name,
                    job.payload,
                    str(CorrelationContext.new("retry")),
                )
                self.scheduler.remove(queue_name, job.id)
                retried.append(fresh)
        logger.info(f"[PHASE] Re-enqueued {len(retried)} failed tasks for {project_id}")
        return retried

    def rebuild(self, project_id: str) -> str:
        """Send a started project back through research and regenerate every page.

        Units keep their remote ids, so the publish phase updates the existing
        pages instead of creating new ones.
        """
        project = self._load(project_id)
        if project.status in (ProjectStatus.DRAFT, ProjectStatus.PAUSED):
            raise InvalidTransition(
                f"Cannot rebuild a project that is {project.status.value}",
                {"status": project.status.value},
            )
        units = self.store.list_content_units(project_id)
        self.store.save_units([u.model_copy(update={"status": UnitStatus.DRAFT}) for u in units])
        self.store.save_project(project.model_copy(update={"status": ProjectStatus.RESEARCHING}))

        correlation = str(CorrelationContext.new("rebuild"))
        self.scheduler.schedule_phase("research", {"project_id": project_id}, correlation)
        logger.bind(project_id=project_id, correlation_id=correlation).info(
            f"[PHASE] Full rebuild scheduled from {project.status.value} ({len(units)} units reset)"
        )
        return correlation

    def run_capability(
        self,
        project_id: str,
        capability: Capability,
        payload: dict[str, Any],
        correlation_id: str | None = None,
    ) -> Job:
        """Queue an ad hoc capability invocation on the agent-tasks queue."""
        self._load(project_id)
        return self.scheduler.schedule_phase(
            "capability",
            {"project_id": project_id, "capability": capability.value, "input": payload},
            correlation_id or str(CorrelationContext.new("task")),
        )

    # -----------------------------------------------------------------------
    # Task dispatch
    # -----------------------------------------------------------------------

    def handle(self, job: Job) -> PhaseResult:
        handler = self._handlers.get(job.name)
        if handler is None:
            raise ValidationError(f"Unknown phase: {job.name}")
        project_id = job.project_id
        if not project_id:
            raise ValidationError(f"{job.name} task {job.id} has no project_id")

        project = self._load(project_id)
        log = logger.bind(project_id=project_id, correlation_id=job.correlation_id)
        if project.status == ProjectStatus.PAUSED:
            log.info(f"[PHASE] {job.name} deferred, project paused")
            return PhaseResult(phase=job.name, status="deferred")

        log.info(f"[PHASE] {job.name} starting (attempt {job.attempts_made})")
        result = handler(project, job)
        log.info(f"[PHASE] {job.name} {result.status}")
        return result

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    def _load(self, project_id: str) -> Project:
        project = self.store.get_project(project_id)
        if project is None:
            raise ProjectNotFound(f"Project not found: {project_id}")
        return project

    def _transition(self, project: Project, target: ProjectStatus) -> Project:
        allowed = TRANSITIONS.get(project.status, frozenset())
        if target not in allowed:
            raise InvalidTransition(
                f"Illegal transition {project.status.value} → {target.value}",
                {"from": project.status.value, "to": target.value},
            )
        if project.status == target:
            return project
        logger.info(f"[PHASE] {project.id}: {project.status.value} → {target.value}")
        return self.store.save_project(project.model_copy(update={"status": target}))

    def _claim(self, project_id: str, expected: ProjectStatus, target: ProjectStatus) -> Project | None:
        """Compare-and-set transition. Only one of several racing tasks gets the project back."""
        if target not in TRANSITIONS.get(expected, frozenset()):
            raise InvalidTransition(
                f"Illegal transition {expected.value} → {target.value}",
                {"from": expected.value, "to": target.value},
            )
        claimed = self.store.update_status(project_id, expected, target)
        if claimed is not None:
            logger.info(f"[PHASE] {project_id}: {expected.value} → {target.value}")
        return claimed

    def _expect(self, project: Project, phase: str, *statuses: ProjectStatus) -> None:
        if project.status not in statuses:
            raise InvalidTransition(
                f"{phase} cannot run while project is {project.status.value}",
                {"status": project.status.value, "phase": phase},
            )

    def _available(self, project_id: str, unit_id: str | None = None) -> set[str]:
        """Capabilities whose results are on record for this project (and unit)."""
        found = set()
        for capability in Capability:
            if self.store.get_artifact(project_id, capability.value) is not None:
                found.add(capability.value)
            elif unit_id and self.store.get_artifact(project_id, capability.value, unit_id) is not None:
                found.add(capability.value)
        return found

    def _require(self, capability: Capability, available: set[str]) -> None:
        missing = [
            dep.value for dep in self.registry.get_dependencies(capability)
            if dep.value not in available
        ]
        if missing:
            raise DependencyNotReady(capability.value, missing)

    def _invoke(
        self,
        capability: Capability,
        project: Project,
        job: Job,
        payload: dict[str, Any],
        available: set[str],
    ) -> dict[str, Any]:
        self._require(capability, available)
        context = CapabilityContext(
            project_id=project.id,
            correlation_id=job.correlation_id,
            retry_count=max(0, job.attempts_made - 1),
        )
        output = self.registry.execute(capability, project.id, payload, context)
        available.add(capability.value)
        return output

    def _save_artifact(
        self,
        project: Project,
        kind: Capability | str,
        data: Any,
        job: Job,
        unit_id: str | None = None,
    ) -> None:
        self.store.save_artifact(Artifact(
            project_id=project.id,
            kind=kind.value if isinstance(kind, Capability) else kind,
            unit_id=unit_id,
            data=data,
            correlation_id=job.correlation_id,
        ))

    def _artifact_data(self, project_id: str, kind: Capability) -> dict[str, Any]:
        artifact = self.store.get_artifact(project_id, kind.value)
        return artifact.data if artifact and isinstance(artifact.data, dict) else {}

    def _unit(self, project: Project, job: Job) -> ContentUnit:
        unit_id = job.payload.get("unit_id")
        unit = self.store.get_unit(unit_id) if unit_id else None
        if unit is None or unit.project_id != project.id:
            raise ValidationError(f"{job.name} task {job.id} names unknown unit {unit_id}")
        return unit

    def _resolve(self, project: Project) -> ProjectIntegrations:
        return self.integrations(project.id)

    def _schedule_content(self, project: Project, correlation_id: str, delay_ms: int) -> int:
        drafts = [u for u in self.store.list_content_units(project.id) if u.status == UnitStatus.DRAFT]
        for unit in drafts:
            self.scheduler.schedule_phase(
                "content",
                {"project_id": project.id, "unit_id": unit.id},
                correlation_id,
                delay_ms=delay_ms,
            )
        return len(drafts)

    def _schedule_publish(self, project: Project, correlation_id: str) -> int:
        pending = [
            u for u in self.store.list_content_units(project.id)
            if u.status != UnitStatus.PUBLISHED
        ]
        delay = self.schedule.content_to_publish_ms
        for unit in pending:
            self.scheduler.schedule_phase(
                "publish",
                {"project_id": project.id, "unit_id": unit.id},
                correlation_id,
                delay_ms=delay,
            )
            delay += self.schedule.publish_stagger_ms
        return len(pending)

    def _schedule_monitoring(self, project: Project, correlation_id: str) -> None:
        payload = {"project_id": project.id}
        delay = self.schedule.live_to_monitor_ms
        self.scheduler.schedule_phase("monitor", payload, correlation_id, delay_ms=delay)
        self.scheduler.schedule_phase("audit", payload, correlation_id, delay_ms=delay)

    def _page_summaries(self, units: list[ContentUnit]) -> list[dict[str, Any]]:
        return [
            {
                "slug": u.slug,
                "title": u.title,
                "url": u.url,
                "target_keyword": u.target_keyword,
                "status": u.status.value,
            }
            for u in units
        ]

    def _apply_update(
        self,
        unit: ContentUnit,
        integrations: ProjectIntegrations,
        content_html: str | None,
        meta_title: str | None,
        meta_description: str | None,
    ) -> ContentUnit:
        """Write new content/meta to a unit and push it to the live page if published."""
        if not (content_html or meta_title or meta_description):
            return unit

        was_published = bool(unit.remote_id and unit.published_at)
        updates: dict[str, Any] = {"status": UnitStatus.OPTIMIZING}
        if content_html:
            updates["content_html"] = content_html
        if meta_title:
            updates["meta_title"] = meta_title
        if meta_description:
            updates["meta_description"] = meta_description
        target = integrations.publish_target
        if was_published and target is None:
            raise IntegrationMissing(f"No publish target to republish {unit.slug}")
        unit = self.store.save_unit(unit.model_copy(update=updates))

        restored = UnitStatus.PUBLISHED if was_published else UnitStatus.READY
        try:
            if was_published:
                target.update_page(
                    unit.remote_id,
                    content_html=unit.content_html,
                    meta_title=unit.meta_title,
                    meta_description=unit.meta_description,
                )
        finally:
            unit = self.store.save_unit(unit.model_copy(update={"status": restored}))
        return unit

    # -----------------------------------------------------------------------
    # Phase: research
    # -----------------------------------------------------------------------

    def _research(self, project: Project, job: Job) -> PhaseResult:
        self._expect(project, "research", ProjectStatus.RESEARCHING)
        available = self._available(project.id)
        settings = project.settings

        research = self._invoke(Capability.MARKET_RESEARCH, project, job, {
            "niche": settings.niche or "General",
            "target_audience": settings.target_audience or "General audience",
            "keywords": settings.keywords,
        }, available)
        self._save_artifact(project, Capability.MARKET_RESEARCH, research, job)

        self._transition(project, ProjectStatus.ARCHITECTING)
        self.scheduler.schedule_phase(
            "architecture",
            {"project_id": project.id},
            job.correlation_id,
            delay_ms=self.schedule.research_to_architecture_ms,
        )
        return PhaseResult(
            phase="research",
            detail={"keywords": len(research.get("keyword_opportunities", []))},
        )

    # -----------------------------------------------------------------------
    # Phase: architecture
    # -----------------------------------------------------------------------

    def _architecture(self, project: Project, job: Job) -> PhaseResult:
        self._expect(project, "architecture", ProjectStatus.ARCHITECTING)
        available = self._available(project.id)
        settings = project.settings

        architecture = self._invoke(Capability.SITE_ARCHITECT, project, job, {
            "niche": settings.niche,
            "target_audience": settings.target_audience,
            "domain": project.domain,
            "market_research": self._artifact_data(project.id, Capability.MARKET_RESEARCH),
        }, available)
        self._save_artifact(project, Capability.SITE_ARCHITECT, architecture, job)

        structure = architecture["site_structure"]
        existing = {u.slug for u in self.store.list_content_units(project.id)}
        homepage = structure["homepage"]
        planned = [ContentUnit(
            project_id=project.id,
            title=homepage["title"],
            slug="home",
            meta_description=homepage.get("meta_description", ""),
            category="home",
        )]
        for category in structure.get("categories", []):
            for page in category.get("pages", []):
                planned.append(ContentUnit(
                    project_id=project.id,
                    title=page["title"],
                    slug=page["slug"].strip("/"),
                    target_keyword=page.get("target_keyword", ""),
                    category=category.get("slug", ""),
                ))

        units: list[ContentUnit] = []
        for unit in planned:
            if unit.slug in existing:
                continue
            existing.add(unit.slug)
            units.append(unit)
        self.store.save_units(units)

        project = self._transition(project, ProjectStatus.BUILDING)
        scheduled = self._schedule_content(
            project, job.correlation_id, delay_ms=self.schedule.architecture_to_content_ms,
        )
        return PhaseResult(phase="architecture", detail={"units": len(units), "scheduled": scheduled})

    # -----------------------------------------------------------------------
    # Phase: content (one unit per task)
    # -----------------------------------------------------------------------

    def _content(self, project: Project, job: Job) -> PhaseResult:
        self._expect(project, "content", ProjectStatus.BUILDING)
        unit = self._unit(project, job)
        if unit.status != UnitStatus.DRAFT:
            self._finish_building(project, job)
            return PhaseResult(phase="content", status="skipped", detail={"unit": unit.slug})

        available = self._available(project.id, unit.id)
        settings = project.settings
        siblings = [u for u in self.store.list_content_units(project.id) if u.id != unit.id]

        page = self._invoke(Capability.PAGE_BUILDER, project, job, {
            "title": unit.title,
            "slug": unit.slug,
            "target_keyword": unit.target_keyword or unit.title,
            "niche": settings.niche,
            "tone": settings.content_tone,
            "word_count": settings.word_count,
            "available_internal_links": [f"/{s.slug}" for s in siblings],
        }, available)
        self._save_artifact(project, Capability.PAGE_BUILDER, page, job, unit_id=unit.id)

        content = page["content_html"]
        linked: list[str] = []
        if siblings:
            suggestions = self._invoke(Capability.INTERNAL_LINKER, project, job, {
                "title": unit.title,
                "slug": unit.slug,
                "content": content,
                "existing_pages": [
                    {"title": s.title, "slug": s.slug, "target_keyword": s.target_keyword}
                    for s in siblings
                ],
            }, available)
            content, linked = apply_link_suggestions(
                content, suggestions.get("links_to_add", []), [s.slug for s in siblings],
            )

        self.store.save_unit(unit.model_copy(update={
            "content_html": content,
            "meta_title": page["meta_title"],
            "meta_description": page["meta_description"] or unit.meta_description,
            "layout": page.get("layout"),
            "internal_links": linked,
            "status": UnitStatus.READY,
        }))

        remaining = self._finish_building(project, job)
        return PhaseResult(
            phase="content",
            detail={"unit": unit.slug, "links": len(linked), "remaining": remaining},
        )

    def _finish_building(self, project: Project, job: Job) -> int:
        """Move to publishing once no draft unit is left. Returns drafts remaining."""
        units = self.store.list_content_units(project.id)
        remaining = sum(1 for u in units if u.status == UnitStatus.DRAFT)
        if remaining:
            return remaining
        current = self._claim(project.id, ProjectStatus.BUILDING, ProjectStatus.PUBLISHING)
        if current is not None:
            self._schedule_publish(current, job.correlation_id)
        return 0

    # -----------------------------------------------------------------------
    # Phase: publish (one unit per task)
    # -----------------------------------------------------------------------

    def _publish(self, project: Project, job: Job) -> PhaseResult:
        self._expect(project, "publish", ProjectStatus.PUBLISHING, ProjectStatus.LIVE)
        unit = self._unit(project, job)
        if unit.status == UnitStatus.PUBLISHED:
            self._finish_publishing(project, job)
            return PhaseResult(phase="publish", status="skipped", detail={"unit": unit.slug})
        if unit.status == UnitStatus.DRAFT or not unit.content_html:
            raise ValidationError(f"Unit {unit.slug} has no content to publish")

        integrations = self._resolve(project)
        target = integrations.publish_target
        if target is None:
            raise IntegrationMissing(f"No publish target connected for {project.id}")

        available = self._available(project.id, unit.id)
        verdict = self._invoke(Capability.PUBLISHER, project, job, {
            "page_title": unit.title,
            "page_slug": unit.slug,
            "content_html": unit.content_html,
            "meta_title": unit.meta_title,
            "meta_description": unit.meta_description,
            "target_keyword": unit.target_keyword or unit.title,
        }, available)
        if not verdict.get("publish_ready"):
            checklist = verdict.get("seo_checklist", [])
            logger.bind(project_id=project.id, correlation_id=job.correlation_id).warning(
                f"[PHASE] {unit.slug} not ready to publish"
            )
            raise PublishRejected(f"Unit {unit.slug} failed pre-publish checks", checklist)

        meta_title = verdict.get("final_meta_title") or unit.meta_title
        meta_description = verdict.get("final_meta_description") or unit.meta_description
        unit = self.store.save_unit(unit.model_copy(update={"status": UnitStatus.PUBLISHING}))

        if unit.remote_id:
            page = target.update_page(
                unit.remote_id,
                content_html=unit.content_html,
                meta_title=meta_title,
                meta_description=meta_description,
            )
        else:
            page = target.create_page(
                title=unit.title,
                slug=unit.slug,
                content_html=unit.content_html,
                meta_title=meta_title,
                meta_description=meta_description,
                layout=unit.layout,
            )

        unit = self.store.save_unit(unit.model_copy(update={
            "status": UnitStatus.PUBLISHED,
            "remote_id": page.remote_id,
            "url": page.url,
            "meta_title": meta_title,
            "meta_description": meta_description,
            "published_at": utc_now(),
        }))

        notifier = integrations.index_notifier
        if notifier is not None:
            best_effort(f"index notify {page.url}", lambda: notifier.submit_url(page.url))

        self._finish_publishing(project, job)
        return PhaseResult(phase="publish", detail={"unit": unit.slug, "url": page.url})

    def _finish_publishing(self, project: Project, job: Job) -> None:
        units = self.store.list_content_units(project.id)
        if any(u.status != UnitStatus.PUBLISHED for u in units):
            return
        current = self._claim(project.id, ProjectStatus.PUBLISHING, ProjectStatus.LIVE)
        if current is not None:
            self._schedule_monitoring(current, job.correlation_id)

    # -----------------------------------------------------------------------
    # Phase: monitor
    # -----------------------------------------------------------------------

    def _reschedule_monitor(self, project: Project, job: Job) -> None:
        if not project.settings.autopilot:
            return
        self.scheduler.schedule_phase(
            "monitor",
            {"project_id": project.id},
            job.correlation_id,
            delay_ms=self.schedule.cadence_for(project.settings.run_cadence),
        )

    def _monitor(self, project: Project, job: Job) -> PhaseResult:
        self._expect(project, "monitor", ProjectStatus.LIVE)
        log = logger.bind(project_id=project.id, correlation_id=job.correlation_id)
        analytics = self._resolve(project).analytics
        if analytics is None:
            log.warning("[PHASE] No analytics source connected, skipping monitoring")
            self._reschedule_monitor(project, job)
            return PhaseResult(phase="monitor", status="skipped", detail={"reason": "no analytics"})

        start, end = _window()
        data = analytics.fetch_snapshot(start, end)
        self.store.save_snapshot(AnalyticsSnapshot(
            project_id=project.id,
            date=end,
            total_clicks=data.get("total_clicks", 0),
            total_impressions=data.get("total_impressions", 0),
            average_ctr=data.get("average_ctr", 0.0),
            average_position=data.get("average_position", 0.0),
            data={"queries": data.get("queries", []), "pages": data.get("pages", [])},
        ))

        units = self.store.list_content_units(project.id)
        snapshots = self.store.list_snapshots(project.id)
        report = self._invoke(Capability.MONITOR, project, job, {
            "project_id": project.id,
            "snapshots": [s.model_dump(exclude={"project_id", "data"}) for s in snapshots],
            "pages": self._page_summaries(units),
        }, self._available(project.id))
        self._save_artifact(project, Capability.MONITOR, report, job)

        by_slug = {u.slug: u for u in units}
        scheduled = 0
        for candidate in report.get("optimization_candidates", []):
            if candidate.get("priority") != "high":
                continue
            unit = by_slug.get(candidate.get("page_slug", "").strip("/"))
            if unit is None:
                continue
            self.scheduler.schedule_phase("optimize", {
                "project_id": project.id,
                "unit_id": unit.id,
                "reason": candidate.get("reason") or "performance_drop",
            }, job.correlation_id)
            scheduled += 1

        self._reschedule_monitor(project, job)
        log.info(f"[PHASE] Health score {report.get('health_score')}, {scheduled} optimizations queued")
        return PhaseResult(
            phase="monitor",
            detail={"health_score": report.get("health_score"), "optimizations": scheduled},
        )

    # -----------------------------------------------------------------------
    # Phase: audit
    # -----------------------------------------------------------------------

    def _audit(self, project: Project, job: Job) -> PhaseResult:
        self._expect(project, "audit", ProjectStatus.LIVE)
        units = self.store.list_content_units(project.id)
        audit = self._invoke(Capability.TECHNICAL_SEO, project, job, {
            "domain": project.domain,
            "pages": self._page_summaries(units),
        }, self._available(project.id))
        self._save_artifact(project, Capability.TECHNICAL_SEO, audit, job)

        actionable = [
            issue for issue in audit.get("issues", [])
            if issue.get("type") in HIGH_IMPACT_ISSUES or issue.get("impact") == "high"
        ]
        if actionable:
            self.scheduler.schedule_phase("fix", {"project_id": project.id}, job.correlation_id)
        return PhaseResult(
            phase="audit",
            detail={"score": audit.get("score"), "actionable": len(actionable)},
        )

    # -----------------------------------------------------------------------
    # Phase: optimize (one unit per task)
    # -----------------------------------------------------------------------

    def _optimize(self, project: Project, job: Job) -> PhaseResult:
        self._expect(project, "optimize", ProjectStatus.LIVE)
        unit = self._unit(project, job)
        integrations = self._resolve(project)
        if integrations.analytics is None:
            raise IntegrationMissing(f"No analytics source connected for {project.id}")

        start, end = _window()
        page_url = unit.url or f"{project.domain.rstrip('/')}/{unit.slug}"
        rows = integrations.analytics.page_performance(page_url, start, end)

        result = self._invoke(Capability.OPTIMIZER, project, job, {
            "page_slug": unit.slug,
            "title": unit.title,
            "target_keyword": unit.target_keyword,
            "current_content": unit.content_html,
            "reason": job.payload.get("reason", ""),
            "query_data": rows,
        }, self._available(project.id, unit.id))
        self._save_artifact(project, Capability.OPTIMIZER, result, job, unit_id=unit.id)

        self._apply_update(
            unit,
            integrations,
            result.get("updated_content"),
            result.get("updated_meta_title"),
            result.get("updated_meta_description"),
        )
        return PhaseResult(
            phase="optimize",
            detail={"unit": unit.slug, "recommendations": len(result.get("recommendations", []))},
        )

    # -----------------------------------------------------------------------
    # Phase: fix
    # -----------------------------------------------------------------------

    def _fix(self, project: Project, job: Job) -> PhaseResult:
        self._expect(project, "fix", ProjectStatus.LIVE)
        units = self.store.list_content_units(project.id)
        audit = self._artifact_data(project.id, Capability.TECHNICAL_SEO)

        result = self._invoke(Capability.FIXER, project, job, {
            "domain": project.domain,
            "issues": audit.get("issues", []),
            "pages": self._page_summaries(units),
        }, self._available(project.id))
        self._save_artifact(project, Capability.FIXER, result, job)

        integrations = self._resolve(project)
        by_slug = {u.slug: u for u in units}
        applied = 0
        for fix in result.get("fixes", []):
            unit = by_slug.get(fix.get("page_slug", "").strip("/"))
            if unit is None:
                continue
            self._apply_update(
                unit,
                integrations,
                fix.get("updated_content"),
                fix.get("updated_meta_title"),
                fix.get("updated_meta_description"),
            )
            applied += 1

        if result.get("requires_manual_review"):
            logger.bind(project_id=project.id, correlation_id=job.correlation_id).warning(
                "[PHASE] Fixer flagged issues for manual review"
            )
        return PhaseResult(phase="fix", detail={"applied": applied})

    # -----------------------------------------------------------------------
    # Phase: ad hoc capability
    # -----------------------------------------------------------------------

    def _capability(self, project: Project, job: Job) -> PhaseResult:
        try:
            capability = Capability(job.payload.get("capability"))
        except ValueError:
            raise ValidationError(f"Unknown capability: {job.payload.get('capability')}") from None

        unit_id = job.payload.get("unit_id")
        output = self._invoke(
            capability,
            project,
            job,
            job.payload.get("input", {}),
            self._available(project.id, unit_id),
        )
        self._save_artifact(project, capability, output, job, unit_id=unit_id)
        return PhaseResult(phase="capability", detail={"capability": capability.value})
