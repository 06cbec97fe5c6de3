from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tollgate.logging import get_logger
from tollgate.storage.common import filter_profile_fields, normalize_email
from tollgate.storage.errors import ConstraintViolation, ProfileNotFound
from tollgate.storage.models import LocalProfile

_PROFILE_COLUMNS = (
    "uid, email, first_name, last_name, visa_type, current_location, occupation, "
    "employer, timezone, email_verified, pending_email, email_change_token, "
    "email_change_requested_at, created_at, updated_at"
)


class PostgresProfileStore:
    """Postgres-backed profile store keyed by the identity provider uid."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_profile_table()

    def _connect(self):
        return self.pool.connection()

    def _ensure_profile_table(self) -> None:
        """Create the ``user_profile`` table if it is missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_profile (
                    uid TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    first_name TEXT,
                    last_name TEXT,
                    visa_type TEXT,
                    current_location JSONB,
                    occupation TEXT,
                    employer TEXT,
                    timezone TEXT,
                    email_verified BOOLEAN NOT NULL DEFAULT FALSE,
                    pending_email TEXT,
                    email_change_token TEXT,
                    email_change_requested_at TIMESTAMPTZ,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    CHECK ((pending_email IS NULL) = (email_change_token IS NULL))
                )
                """
            )

    @staticmethod
    def _profile_from_row(row: Dict[str, Any]) -> LocalProfile:
        location = row.get("current_location")
        if isinstance(location, str):
            location = json.loads(location)
        return LocalProfile(
            uid=row["uid"],
            email=row["email"],
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            visa_type=row.get("visa_type"),
            current_location=location,
            occupation=row.get("occupation"),
            employer=row.get("employer"),
            timezone=row.get("timezone"),
            email_verified=bool(row.get("email_verified")),
            pending_email=row.get("pending_email"),
            email_change_token=row.get("email_change_token"),
            email_change_requested_at=row.get("email_change_requested_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _update(self, uid: str, assignments: str, params: tuple) -> LocalProfile:
        # A single UPDATE statement so every listed column changes together
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE user_profile SET {assignments}, updated_at = now() "
                    f"WHERE uid = %s RETURNING {_PROFILE_COLUMNS}",
                    (*params, uid),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        if not row:
            raise ProfileNotFound(uid)
        return self._profile_from_row(row)

    def create_profile(self, uid: str, email: str, **fields: Any) -> LocalProfile:
        email = normalize_email(email)
        values = filter_profile_fields(fields)
        location = values.get("current_location")
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO user_profile (
                        uid, email, first_name, last_name, visa_type, current_location,
                        occupation, employer, timezone
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_PROFILE_COLUMNS}
                    """,
                    (
                        uid,
                        email,
                        values.get("first_name"),
                        values.get("last_name"),
                        values.get("visa_type"),
                        json.dumps(location) if location else None,
                        values.get("occupation"),
                        values.get("employer"),
                        values.get("timezone"),
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._profile_from_row(row)

    def get_profile(self, uid: str) -> Optional[LocalProfile]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_PROFILE_COLUMNS} FROM user_profile WHERE uid = %s", (uid,)
            ).fetchone()
        return self._profile_from_row(row) if row else None

    def get_profile_by_email(self, email: str) -> Optional[LocalProfile]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_PROFILE_COLUMNS} FROM user_profile WHERE email = %s",
                (normalize_email(email),),
            ).fetchone()
        return self._profile_from_row(row) if row else None

    def set_pending_email_change(
        self, uid: str, pending_email: str, token: str, requested_at: datetime
    ) -> LocalProfile:
        return self._update(
            uid,
            "pending_email = %s, email_change_token = %s, email_change_requested_at = %s",
            (normalize_email(pending_email), token, requested_at),
        )

    def clear_pending_email_change(self, uid: str) -> LocalProfile:
        return self._update(
            uid,
            "pending_email = NULL, email_change_token = NULL, email_change_requested_at = NULL",
            (),
        )

    def complete_email_change(self, uid: str, new_email: str) -> LocalProfile:
        return self._update(
            uid,
            "email = %s, email_verified = TRUE, pending_email = NULL, "
            "email_change_token = NULL, email_change_requested_at = NULL",
            (normalize_email(new_email),),
        )

    def mark_email_verified(self, uid: str, verified: bool = True) -> LocalProfile:
        return self._update(uid, "email_verified = %s", (verified,))

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1")
        return True
