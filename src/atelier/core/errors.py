"""Exception hierarchy for Atelier.

Flat hierarchy: every error derives from AtelierError so callers can catch
broadly or narrowly. Per-image service failures are not raised across the
orchestrator boundary; they are converted into sentinel results by the
evaluation, polish and fingerprint helpers.
"""

from __future__ import annotations


class AtelierError(Exception):
    """Base exception for all Atelier errors."""


class StateTransitionError(AtelierError):
    """Raised when a state machine transition is called from an illegal state.

    The state is left untouched.
    """

    def __init__(self, operation: str, status: str) -> None:
        self.operation = operation
        self.status = status
        super().__init__(f"{operation}() is not allowed while autoplay is '{status}'")


class AutoplayStartError(AtelierError):
    """Raised when autoplay cannot start.

    Covers poster mode, a missing base image and an already running loop.
    """


class ConfigurationError(AtelierError):
    """Raised when a configuration file cannot be read or validated."""


class ServiceError(AtelierError):
    """Raised by service clients for transport, HTTP status, or payload failures."""

    def __init__(self, service: str, message: str, status_code: int | None = None) -> None:
        self.service = service
        self.status_code = status_code
        super().__init__(f"{service}: {message}")


class OperationCancelled(AtelierError):
    """Raised when a cancellation token fires while an operation is in flight."""

    def __init__(self, reason: str = "cancelled") -> None:
        self.reason = reason
        super().__init__(reason)
