from __future__ import annotations

from typing import Any, Dict, Optional


class StoreUnavailable(Exception):
    """Raised when the session store cannot be reached after bounded retries.

    ``namespace`` is the key prefix of the failed operation; full keys embed
    token values and are never attached to the exception.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        namespace: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.namespace = namespace
        self.detail = detail or {}


class ConstraintViolation(Exception):
    """Raised when a user-directory uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


__all__ = ["ConstraintViolation", "StoreUnavailable"]
