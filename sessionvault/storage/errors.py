from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Base class for key-value store failures."""

    def __init__(self, message: str, *, operation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation


class StoreUnavailableError(StoreError):
    """The store could not be reached or did not answer in time.

    Retryable. Never to be read as "key not found" or "invalid credential".
    """


class StoreCommandError(StoreError):
    """The store answered but rejected the command (wrong type, OOM, ...)."""


class ConstraintViolation(Exception):
    """Raised when a user-directory uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


__all__ = [
    "StoreError",
    "StoreUnavailableError",
    "StoreCommandError",
    "ConstraintViolation",
]
