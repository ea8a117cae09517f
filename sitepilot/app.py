"""
SitePilot application context.

Everything the process needs, wired once at start-up and passed around by
reference. Nothing in the package keeps module-level state.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from loguru import logger

from sitepilot.capabilities import build_capabilities
from sitepilot.config_loader import SitePilotConfig
from sitepilot.enforcer import StructuredOutputEnforcer
from sitepilot.event_bus import EventBus
from sitepilot.event_log import EventLog
from sitepilot.integrations import IntegrationResolver, StaticIntegrations
from sitepilot.lifecycle import QueueManager
from sitepilot.orchestrator import PhaseStateMachine
from sitepilot.queue import JobQueue
from sitepilot.registry import CapabilityRegistry
from sitepilot.router import Router
from sitepilot.scheduler import Scheduler, build_queues
from sitepilot.store import ContentStore, JsonFileContentStore
from sitepilot.worker import Worker


@dataclass
class AppContext:
    config: SitePilotConfig
    store: ContentStore
    bus: EventBus
    queues: dict[str, JobQueue]
    scheduler: Scheduler
    router: Router
    enforcer: StructuredOutputEnforcer
    registry: CapabilityRegistry
    machine: PhaseStateMachine
    manager: QueueManager
    workers: dict[str, Worker] = field(default_factory=dict)

    def build_workers(self) -> dict[str, Worker]:
        """One worker per queue, each routing jobs into the state machine."""
        for name, queue in self.queues.items():
            if name in self.workers:
                continue
            worker = Worker(
                queue,
                self.machine.handle,
                concurrency=self.config.queues.concurrency_for(name),
                bus=self.bus,
                poll_interval_s=self.config.queues.poll_interval_s,
            )
            self.workers[name] = worker
            self.manager.register_worker(worker)
        return self.workers

    def start_workers(self) -> None:
        for worker in self.build_workers().values():
            worker.start()

    def shutdown(self) -> bool:
        return self.manager.graceful_shutdown()


def build_context(
    config: SitePilotConfig,
    store: ContentStore | None = None,
    integrations: IntegrationResolver | None = None,
    router: Router | None = None,
    queues: dict[str, JobQueue] | None = None,
    event_log: Path | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> AppContext:
    """Wire the whole application from config. Any collaborator can be swapped in."""
    store = store if store is not None else JsonFileContentStore(config.store.path)
    bus = EventBus()
    if event_log is not None:
        bus.subscribe(EventLog(event_log, batch_size=1).log)

    queues = queues if queues is not None else build_queues(config.queues)
    scheduler = Scheduler(queues, config.queues)
    router = router if router is not None else Router(config)
    enforcer = StructuredOutputEnforcer(router, config.enforcer, sleep=sleep)

    registry = CapabilityRegistry()
    registry.initialize(build_capabilities(enforcer, store))

    machine = PhaseStateMachine(
        registry,
        scheduler,
        store,
        integrations if integrations is not None else StaticIntegrations(),
        config.schedule,
    )
    manager = QueueManager(queues, config.lifecycle, bus=bus, sleep=sleep)

    logger.debug(f"[APP] Context ready: {len(queues)} queues, store {type(store).__name__}")
    return AppContext(
        config=config,
        store=store,
        bus=bus,
        queues=queues,
        scheduler=scheduler,
        router=router,
        enforcer=enforcer,
        registry=registry,
        machine=machine,
        manager=manager,
    )
