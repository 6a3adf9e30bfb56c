"""
Exception hierarchy for the tracing core.

Estimators report failures as values (see `alignment.transform.TransformFit`);
these exceptions are raised for invalid arguments, bad configuration, or when a
caller explicitly asks for a failure to be raised.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class TracerError(Exception):
    """Base class for every error raised by this package."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": type(self).__name__, "message": self.message, "details": self.details}


class InsufficientInput(TracerError):
    """Too few points, seeds or pixels to compute anything meaningful."""


class InsufficientPoints(InsufficientInput):
    """Fewer correspondences than the minimal sample size of an estimator."""

    def __init__(self, required: int, got: int):
        super().__init__(
            f"need at least {required} points, got {got}",
            {"required": required, "got": got},
        )
        self.required = required
        self.got = got


class RansacFailure(TracerError):
    """Best RANSAC hypothesis had fewer inliers than the minimal sample size."""


class DegenerateGeometry(TracerError):
    """Singular system or zero-variance data with no usable fallback."""


class ConfigError(TracerError):
    """Malformed or unknown configuration entries."""
