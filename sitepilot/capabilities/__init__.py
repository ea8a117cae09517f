"""
SitePilot Capability Roster

Each capability is:
  - A system prompt
  - A typed input model
  - A constrained output schema

Capabilities are stateless between runs. State lives in the store.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from loguru import logger
from pydantic import BaseModel, Field
from pydantic import ValidationError as SchemaError

from sitepilot.enforcer import StructuredOutputEnforcer
from sitepilot.errors import ValidationError
from sitepilot.models import AgentRunRecord, Capability, RunStatus

if TYPE_CHECKING:
    from sitepilot.store import ContentStore


class CapabilityContext(BaseModel):
    """Shared context passed to every capability invocation."""
    project_id: str
    correlation_id: str = ""
    retry_count: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)


class BaseCapability(ABC):
    """
    Base class for all SitePilot capabilities.

    Subclasses define:
      - kind: Capability (decides the model category)
      - system_prompt: instructions sent with every call
      - input_model / output_model: the typed contract
      - build_prompt(): renders the validated input as the user message
    """

    kind: Capability
    name: str = "unknown"
    description: str = ""
    version: str = "1.0.0"
    system_prompt: str = "You are a helpful assistant."
    input_model: type[BaseModel] | None = None
    output_model: type[BaseModel]
    temperature: float | None = None
    max_tokens: int | None = None

    def __init__(self, enforcer: StructuredOutputEnforcer, store: ContentStore | None = None):
        self.enforcer = enforcer
        self.store = store

    def run(
        self,
        project_id: str,
        payload: dict[str, Any],
        context: CapabilityContext | None = None,
    ) -> dict[str, Any]:
        """Execute the capability: validate input → enforce JSON → validate output.

        Every call writes its own run record; a retried call writes a new one.
        """
        context = context or CapabilityContext(project_id=project_id)
        record = AgentRunRecord(
            project_id=project_id,
            capability=self.kind,
            input=payload,
            retry_count=context.retry_count,
            correlation_id=context.correlation_id,
        )
        self._save_run(record)
        start = time.monotonic()

        try:
            data: Any = payload
            if self.input_model is not None:
                data = self.input_model.model_validate(payload)
            result = self.enforcer.enforce_result(
                self.kind,
                self.system_prompt,
                self.build_prompt(data),
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
            record = record.model_copy(update={"model": result.model})
            output = self.output_model.model_validate(result.value).model_dump()
        except SchemaError as e:
            self._save_run(record.finish(RunStatus.FAILED, self._elapsed(start), error=str(e)))
            raise ValidationError(
                f"{self.kind.value} failed schema validation",
                {"errors": e.errors(include_url=False)},
            ) from e
        except Exception as e:
            self._save_run(record.finish(RunStatus.FAILED, self._elapsed(start), error=str(e)))
            raise

        self._save_run(record.finish(RunStatus.COMPLETED, self._elapsed(start), output=output))
        logger.debug(f"[{self.name.upper()}] run {record.id} complete")
        return output

    @abstractmethod
    def build_prompt(self, data: Any) -> str:
        """Render the user message for one call."""
        ...

    def _save_run(self, record: AgentRunRecord) -> None:
        if self.store is not None:
            self.store.save_run(record)

    @staticmethod
    def _elapsed(start: float) -> int:
        return int((time.monotonic() - start) * 1000)


def _bullets(items: list[str], empty: str = "- None specified") -> str:
    return "\n".join(f"- {item}" for item in items) if items else empty


def build_capabilities(
    enforcer: StructuredOutputEnforcer,
    store: ContentStore | None = None,
) -> dict[Capability, BaseCapability]:
    """Instantiate the complete capability roster."""
    from sitepilot.capabilities.build import (
        ContentBuilder,
        InternalLinker,
        LayoutBuilder,
        PageBuilder,
    )
    from sitepilot.capabilities.monitor import Fixer, Monitor, Optimizer, TechnicalSEO
    from sitepilot.capabilities.publish import Publisher
    from sitepilot.capabilities.research import MarketResearch, SiteArchitect

    classes: list[type[BaseCapability]] = [
        MarketResearch,
        SiteArchitect,
        ContentBuilder,
        LayoutBuilder,
        InternalLinker,
        PageBuilder,
        Publisher,
        Optimizer,
        Monitor,
        Fixer,
        TechnicalSEO,
    ]
    return {cls.kind: cls(enforcer, store) for cls in classes}
