from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for credential/session store failures."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """A uniqueness or foreign-key rule rejected the write (duplicate email, orphan session)."""


class StoreUnavailable(StorageError):
    """The backing database could not be reached or its schema is incomplete."""


__all__ = ["StorageError", "ConstraintViolation", "StoreUnavailable"]
