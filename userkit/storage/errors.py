from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Base class for failures raised by a backing store."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StoreError):
    """Raised when a storage-layer uniqueness or primary key constraint is violated."""


class UnknownTable(StoreError):
    """Raised when an operation names a table or column outside the registry."""


__all__ = ["StoreError", "ConstraintViolation", "UnknownTable"]
