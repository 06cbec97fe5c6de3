from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ProfileNotFound(Exception):
    """Raised when a write targets a uid without a profile."""

    def __init__(self, uid: str):
        super().__init__(f"profile {uid} not found")
        self.uid = uid


__all__ = ["ConstraintViolation", "ProfileNotFound"]
