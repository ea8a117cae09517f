"""
SitePilot error taxonomy.

Every error carries a `retryable` flag. Workers consult it to decide whether
a failed job goes back to the queue for another attempt or is failed
terminally on the spot.
"""

from __future__ import annotations

from typing import Any


class SitePilotError(Exception):
    """Base class for everything raised by the orchestration core."""

    retryable: bool = True


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

class TransportError(SitePilotError):
    """Network failure or timeout talking to an external service."""


class StructuredOutputError(SitePilotError):
    """The generator answered, but not with usable structured data."""


class EmptyResponse(StructuredOutputError):
    pass


class MalformedOutput(StructuredOutputError):
    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


# ---------------------------------------------------------------------------
# Domain
# ---------------------------------------------------------------------------

class ValidationError(SitePilotError):
    """Shape mismatch after parse, or a failed domain precondition.

    Never retried: looping on a missing integration or a rejected page
    only burns generation budget.
    """

    retryable = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.details = details or {}


class PublishRejected(ValidationError):
    """The pre-publish validator returned a negative verdict."""

    def __init__(self, message: str, checklist: list[dict[str, Any]] | None = None):
        super().__init__(message, {"checklist": checklist or []})
        self.checklist = checklist or []


class InvalidTransition(ValidationError):
    pass


class IntegrationMissing(ValidationError):
    pass


class ProjectNotFound(SitePilotError):
    retryable = False


class DependencyNotReady(SitePilotError):
    """A capability was invoked before its prerequisites produced results."""

    def __init__(self, capability: str, missing: list[str]):
        super().__init__(f"{capability} is waiting on: {', '.join(missing)}")
        self.capability = capability
        self.missing = missing


class RetriesExhausted(SitePilotError):
    retryable = False

    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts


# ---------------------------------------------------------------------------
# Registry / queues
# ---------------------------------------------------------------------------

class CapabilityNotFound(SitePilotError):
    retryable = False


class RegistryError(SitePilotError):
    retryable = False


class RegistryNotInitialized(RegistryError):
    pass


class MissingCapabilities(RegistryError):
    def __init__(self, missing: list[str]):
        super().__init__(f"Missing required capabilities: {', '.join(missing)}")
        self.missing = missing


class QueueNotFound(SitePilotError):
    retryable = False


def is_retryable(exc: BaseException) -> bool:
    """Anything outside the taxonomy is assumed transient."""
    return getattr(exc, "retryable", True)
