from __future__ import annotations

from typing import Any, Dict, Optional

from campusauth.service.errors import ServiceError


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StorageUnavailable(ServiceError):
    """Cache or relational store failed or timed out.

    Not retried inside this package; callers apply their own policy.
    """

    error_code = "storage_unavailable"

    def __init__(self, backend: str, operation: str, *, cause: Optional[str] = None) -> None:
        super().__init__(
            "Service temporarily unavailable",
            detail={"backend": backend, "operation": operation},
        )
        self.backend = backend
        self.operation = operation
        self.cause = cause


__all__ = ["ConstraintViolation", "StorageUnavailable"]
