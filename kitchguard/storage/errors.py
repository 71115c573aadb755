from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        kind: str = "unique",
    ):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}
        self.kind = kind


class StoreUnavailable(Exception):
    """Raised when the backing store cannot be reached or the pool is exhausted."""


__all__ = ["ConstraintViolation", "StoreUnavailable"]
