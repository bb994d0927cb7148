from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each class carries a stable ``error_code`` so callers can map failures
    onto their own responses without matching on messages.
    """

    error_code: str = "server_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Input rejected: a bad identifier, a non-scalar preference, an unsaved user."""
    error_code = "validation_error"


__all__ = ["ServiceError", "ValidationError"]
