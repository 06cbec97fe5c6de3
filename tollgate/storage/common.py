"""Contract and helpers shared between the memory and postgres profile stores."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from tollgate.storage.models import PROFILE_FIELDS, LocalProfile


def normalize_email(email: str) -> str:
    return email.strip().lower()


def filter_profile_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Drop unknown keys and empty values from caller supplied profile fields."""
    return {k: v for k, v in fields.items() if k in PROFILE_FIELDS and v is not None}


class ProfileStore(Protocol):
    def create_profile(self, uid: str, email: str, **fields: Any) -> LocalProfile: ...

    def get_profile(self, uid: str) -> Optional[LocalProfile]: ...

    def get_profile_by_email(self, email: str) -> Optional[LocalProfile]: ...

    def set_pending_email_change(
        self, uid: str, pending_email: str, token: str, requested_at: datetime
    ) -> LocalProfile: ...

    def clear_pending_email_change(self, uid: str) -> LocalProfile: ...

    def complete_email_change(self, uid: str, new_email: str) -> LocalProfile: ...

    def mark_email_verified(self, uid: str, verified: bool = True) -> LocalProfile: ...

    def ping(self) -> bool: ...
