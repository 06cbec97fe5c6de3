from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Fields a caller may set on a profile at registration time
PROFILE_FIELDS = (
    "first_name",
    "last_name",
    "visa_type",
    "current_location",
    "occupation",
    "employer",
    "timezone",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class LocalProfile:
    uid: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    visa_type: Optional[str] = None
    current_location: Dict[str, Any] | None = None
    occupation: Optional[str] = None
    employer: Optional[str] = None
    timezone: Optional[str] = None
    email_verified: bool = False
    # pending_email and email_change_token are set and cleared together
    pending_email: Optional[str] = None
    email_change_token: Optional[str] = None
    email_change_requested_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def has_pending_email_change(self) -> bool:
        return bool(self.pending_email and self.email_change_token)

    @property
    def display_name(self) -> Optional[str]:
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) or None

    def to_public(self) -> Dict[str, Any]:
        """Profile as returned to the account owner; never includes the change code."""
        return {
            "id": self.uid,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "visa_type": self.visa_type,
            "current_location": self.current_location,
            "occupation": self.occupation,
            "employer": self.employer,
            "timezone": self.timezone,
            "email_verified": self.email_verified,
            "pending_email": self.pending_email,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
