"""Error types shared by the reconciliation engine."""

from __future__ import annotations

from typing import Optional


class MetalError(Exception):
    """Base class for controller errors."""


class NotFoundError(MetalError):
    """A lookup legitimately matched nothing."""


class APIError(MetalError):
    """The infrastructure API answered with a non-success status."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ConfigurationError(MetalError):
    """Configuration or input that cannot be acted upon."""


class NoHealthyCandidateError(MetalError):
    """No control plane node answered its health check."""


class InvariantViolation(MetalError):
    """State that requires manual operator intervention."""
