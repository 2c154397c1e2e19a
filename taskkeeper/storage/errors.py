from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class BackendError(Exception):
    """The backend answered, but with something a write cannot accept."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class BackendUnavailable(BackendError):
    """The backend could not be reached; the lookup outcome is unknown."""


class MalformedResponse(BackendError):
    """The backend answered with data that does not decode."""


__all__ = ["ConstraintViolation", "BackendError", "BackendUnavailable", "MalformedResponse"]
