"""
SitePilot Capability Registry.

Maps a capability kind to its implementation and a descriptor, and knows
the static prerequisite graph between capabilities. Built once at process
start and passed around by reference; after `initialize()` it is read-only
until `reset()`.
"""

from __future__ import annotations

from typing import Any, Mapping

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from sitepilot.capabilities import BaseCapability, CapabilityContext
from sitepilot.errors import CapabilityNotFound, MissingCapabilities, RegistryNotInitialized
from sitepilot.models import DEEP_REASONING_CAPABILITIES, Capability, CapabilityCategory

REQUIRED_CAPABILITIES: tuple[Capability, ...] = tuple(Capability)

DEPENDENCIES: dict[Capability, tuple[Capability, ...]] = {
    Capability.SITE_ARCHITECT: (Capability.MARKET_RESEARCH,),
    Capability.CONTENT_BUILDER: (Capability.MARKET_RESEARCH, Capability.SITE_ARCHITECT),
    Capability.LAYOUT_BUILDER: (Capability.CONTENT_BUILDER,),
    Capability.PAGE_BUILDER: (Capability.MARKET_RESEARCH, Capability.SITE_ARCHITECT),
    Capability.INTERNAL_LINKER: (Capability.SITE_ARCHITECT, Capability.PAGE_BUILDER),
    Capability.PUBLISHER: (Capability.PAGE_BUILDER,),
    Capability.OPTIMIZER: (Capability.MONITOR,),
    Capability.TECHNICAL_SEO: (Capability.SITE_ARCHITECT,),
    Capability.FIXER: (Capability.TECHNICAL_SEO,),
}

MIN_PROMPT_LENGTH = 50


class CapabilityDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str
    name: str
    description: str = ""
    category: CapabilityCategory
    version: str = "1.0.0"
    dependencies: tuple[str, ...] = ()
    input_schema: dict[str, Any] = Field(default_factory=dict)
    output_schema: dict[str, Any] = Field(default_factory=dict)


def _key(kind: Capability | str) -> str:
    return kind.value if isinstance(kind, Capability) else str(kind)


def _schema_of(model: type[BaseModel] | None) -> dict[str, Any]:
    return model.model_json_schema() if model is not None else {}


class CapabilityRegistry:
    def __init__(self) -> None:
        self._impls: dict[str, BaseCapability] = {}
        self._descriptors: dict[str, CapabilityDescriptor] = {}
        self._initialized = False

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    def initialize(self, mapping: Mapping[Capability | str, BaseCapability]) -> None:
        """Register every entry and validate the required set.

        Raises:
            MissingCapabilities: names every required kind absent from `mapping`.
        """
        if self._initialized:
            logger.warning("[REGISTRY] Already initialized, ignoring")
            return

        impls: dict[str, BaseCapability] = {}
        descriptors: dict[str, CapabilityDescriptor] = {}
        for kind, impl in mapping.items():
            key = _key(kind)
            impls[key] = impl
            descriptors[key] = self._describe(key, impl)
            logger.debug(f"[REGISTRY] Registered {key}")

        missing = [c.value for c in REQUIRED_CAPABILITIES if c.value not in impls]
        if missing:
            logger.error(f"[REGISTRY] Missing required capabilities: {missing}")
            raise MissingCapabilities(missing)

        for key, impl in impls.items():
            prompt = getattr(impl, "system_prompt", "") or ""
            if len(prompt) < MIN_PROMPT_LENGTH:
                logger.warning(f"[REGISTRY] {key} has a suspiciously short system prompt")

        self._impls = impls
        self._descriptors = descriptors
        self._initialized = True
        logger.info(f"[REGISTRY] Initialized with {len(impls)} capabilities")

    def _describe(self, key: str, impl: BaseCapability) -> CapabilityDescriptor:
        category = (
            CapabilityCategory.DEEP_REASONING
            if key in {c.value for c in DEEP_REASONING_CAPABILITIES}
            else CapabilityCategory.FAST_EXECUTION
        )
        return CapabilityDescriptor(
            kind=key,
            name=getattr(impl, "name", key),
            description=getattr(impl, "description", ""),
            category=category,
            version=getattr(impl, "version", "1.0.0"),
            dependencies=tuple(d.value for d in self.get_dependencies(key)),
            input_schema=_schema_of(getattr(impl, "input_model", None)),
            output_schema=_schema_of(getattr(impl, "output_model", None)),
        )

    def reset(self) -> None:
        self._impls.clear()
        self._descriptors.clear()
        self._initialized = False
        logger.info("[REGISTRY] Reset")

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # -----------------------------------------------------------------------
    # Lookup
    # -----------------------------------------------------------------------

    def get(self, kind: Capability | str) -> BaseCapability | None:
        return self._impls.get(_key(kind))

    def get_or_throw(self, kind: Capability | str) -> BaseCapability:
        impl = self.get(kind)
        if impl is None:
            raise CapabilityNotFound(f"Capability not found: {_key(kind)}")
        return impl

    def has(self, kind: Capability | str) -> bool:
        return _key(kind) in self._impls

    def get_descriptor(self, kind: Capability | str) -> CapabilityDescriptor | None:
        return self._descriptors.get(_key(kind))

    def list_descriptors(self) -> list[CapabilityDescriptor]:
        return list(self._descriptors.values())

    def list_by_category(self, category: CapabilityCategory) -> list[CapabilityDescriptor]:
        return [d for d in self._descriptors.values() if d.category == category]

    @staticmethod
    def get_dependencies(kind: Capability | str) -> list[Capability]:
        """Declared prerequisites of `kind`. Empty for leaves and unknown kinds."""
        try:
            capability = Capability(_key(kind))
        except ValueError:
            return []
        return list(DEPENDENCIES.get(capability, ()))

    # -----------------------------------------------------------------------
    # Execution
    # -----------------------------------------------------------------------

    def execute(
        self,
        kind: Capability | str,
        project_id: str,
        payload: dict[str, Any],
        context: CapabilityContext | None = None,
    ) -> dict[str, Any]:
        if not self._initialized:
            raise RegistryNotInitialized("Capability registry not initialized")
        return self.get_or_throw(kind).run(project_id, payload, context)
