from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from tollgate.logging import get_logger
from tollgate.storage.common import filter_profile_fields, normalize_email
from tollgate.storage.errors import ConstraintViolation, ProfileNotFound
from tollgate.storage.models import LocalProfile


class MemoryProfileStore:
    """In-process profile store for tests and single-instance development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.profiles: Dict[str, LocalProfile] = {}
        # RLock for all data operations; nested acquisition happens in _update
        self._data_lock = threading.RLock()

    def _email_taken(self, email: str, *, exclude_uid: Optional[str] = None) -> bool:
        return any(
            p.email == email and p.uid != exclude_uid for p in self.profiles.values()
        )

    def _update(self, uid: str, **changes: Any) -> LocalProfile:
        with self._data_lock:
            current = self.profiles.get(uid)
            if current is None:
                raise ProfileNotFound(uid)
            # Profiles are swapped whole so readers never see a half applied change
            updated = replace(current, updated_at=datetime.now(timezone.utc), **changes)
            self.profiles[uid] = updated
            return updated

    def create_profile(self, uid: str, email: str, **fields: Any) -> LocalProfile:
        email = normalize_email(email)
        with self._data_lock:
            if uid in self.profiles:
                raise ConstraintViolation("profile already exists", {"field": "uid"})
            if self._email_taken(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            profile = LocalProfile(uid=uid, email=email, **filter_profile_fields(fields))
            self.profiles[uid] = profile
            return profile

    def get_profile(self, uid: str) -> Optional[LocalProfile]:
        with self._data_lock:
            return self.profiles.get(uid)

    def get_profile_by_email(self, email: str) -> Optional[LocalProfile]:
        email = normalize_email(email)
        with self._data_lock:
            return next((p for p in self.profiles.values() if p.email == email), None)

    def set_pending_email_change(
        self, uid: str, pending_email: str, token: str, requested_at: datetime
    ) -> LocalProfile:
        return self._update(
            uid,
            pending_email=normalize_email(pending_email),
            email_change_token=token,
            email_change_requested_at=requested_at,
        )

    def clear_pending_email_change(self, uid: str) -> LocalProfile:
        return self._update(
            uid, pending_email=None, email_change_token=None, email_change_requested_at=None
        )

    def complete_email_change(self, uid: str, new_email: str) -> LocalProfile:
        new_email = normalize_email(new_email)
        with self._data_lock:
            if self._email_taken(new_email, exclude_uid=uid):
                raise ConstraintViolation("email already exists", {"field": "email"})
            return self._update(
                uid,
                email=new_email,
                email_verified=True,
                pending_email=None,
                email_change_token=None,
                email_change_requested_at=None,
            )

    def mark_email_verified(self, uid: str, verified: bool = True) -> LocalProfile:
        return self._update(uid, email_verified=verified)

    def ping(self) -> bool:
        return True
