"""Error taxonomy shared by the runner, reclaimer, jury and API layers."""
from __future__ import annotations

from typing import Any


class JuryError(Exception):
    """Base class; ``detail`` carries diagnostic state for the caller."""

    status_code = 500

    def __init__(self, message: str, detail: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class InputValidationError(JuryError):
    """Bad input, rejected before any job or slot is created."""
    status_code = 400


class NotFound(JuryError):
    status_code = 404


class Conflict(JuryError):
    """Duplicate trigger, out-of-order layer, or results requested too early."""
    status_code = 409


class AlreadyRunning(Conflict):
    pass


class CapacityExceeded(JuryError):
    """Governor denied admission; ``detail`` holds the governor status."""
    status_code = 503


class ExternalBackendFailure(JuryError):
    """The analysis backend errored or returned unusable output."""
    status_code = 502


class JobTimeout(JuryError):
    status_code = 504
