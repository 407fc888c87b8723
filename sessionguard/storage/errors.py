from __future__ import annotations

from typing import Any, Dict, Optional


class StoreUnavailable(Exception):
    """Raised when a backing store cannot be reached or answers with an error.

    Store implementations wrap driver exceptions into this type so callers can
    decide between failing open and failing closed without knowing the backend.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(Exception):
    """Raised when a write would break a storage-level uniqueness rule."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


__all__ = ["StoreUnavailable", "ConstraintViolation"]
