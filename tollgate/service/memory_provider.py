"""In-process identity provider used by tests and single-node development.

Mirrors the hosted provider's observable behavior: argon2 password checks,
short-lived custom tokens, HS256 ID tokens and opaque refresh tokens that are
rotated on every redemption.
"""

from __future__ import annotations

import secrets
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import jwt
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from tollgate.logging import get_logger
from tollgate.service.gateway import (
    ExternalIdentity,
    Identity,
    IdentityAlreadyExists,
    IdentityNotFound,
    InvalidIdToken,
    ProviderRejected,
    SessionTokenPair,
    normalize_identity,
)
from tollgate.storage.common import normalize_email

logger = get_logger(__name__)

_ALGORITHM = "HS256"
_CUSTOM_TOKEN_TTL = timedelta(hours=1)
_ACTION_CODE_TTL = timedelta(hours=1)
MIN_PASSWORD_LENGTH = 6


@dataclass
class _Account:
    uid: str
    email: str
    password_hash: str
    email_verified: bool = False
    display_name: Optional[str] = None
    custom_claims: Dict[str, Any] = field(default_factory=dict)
    # ID tokens issued before this instant are no longer accepted
    valid_since: int = 0

    def to_external(self) -> ExternalIdentity:
        return ExternalIdentity(
            uid=self.uid,
            email=self.email,
            email_verified=self.email_verified,
            display_name=self.display_name,
            custom_claims=dict(self.custom_claims),
        )


class MemoryIdentityProvider:
    def __init__(
        self,
        secret: str,
        *,
        id_token_ttl: timedelta = timedelta(hours=1),
        refresh_token_ttl: timedelta = timedelta(days=30),
        app_base_url: str = "http://localhost:3000",
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._secret = secret
        self.id_token_ttl = id_token_ttl
        self.refresh_token_ttl = refresh_token_ttl
        self.app_base_url = app_base_url.rstrip("/")
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Hash verified for unknown emails so both rejection paths cost the same
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self._state_lock = threading.Lock()
        self.accounts: Dict[str, _Account] = {}
        self.refresh_tokens: Dict[str, tuple[str, datetime]] = {}
        self.action_codes: Dict[str, tuple[str, str, datetime]] = {}

    def _now(self) -> datetime:
        return self._clock()

    def _find_by_email(self, email: str) -> Optional[_Account]:
        return next((a for a in self.accounts.values() if a.email == email), None)

    def _require(self, uid: str) -> _Account:
        account = self.accounts.get(uid)
        if account is None:
            raise IdentityNotFound("no identity for uid", reason="USER_NOT_FOUND")
        return account

    def _encode(self, payload: Dict[str, Any]) -> str:
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM)

    def _issue_pair(self, account: _Account) -> SessionTokenPair:
        now = self._now()
        issued_at = int(now.timestamp())
        id_token = self._encode(
            {
                "sub": account.uid,
                "user_id": account.uid,
                "email": account.email,
                "email_verified": account.email_verified,
                "token_type": "id",
                "iat": issued_at,
                "auth_time": issued_at,
                "exp": int((now + self.id_token_ttl).timestamp()),
                "jti": uuid.uuid4().hex,
                **account.custom_claims,
            }
        )
        refresh_token = secrets.token_urlsafe(48)
        with self._state_lock:
            self.refresh_tokens[refresh_token] = (account.uid, now + self.refresh_token_ttl)
        return SessionTokenPair(
            id_token=id_token,
            refresh_token=refresh_token,
            expires_in=int(self.id_token_ttl.total_seconds()),
        )

    async def verify_password(self, email: str, password: str) -> Identity:
        account = self._find_by_email(normalize_email(email))
        if account is None:
            try:
                self._pwd_hasher.verify(self._dummy_hash, password)
            except (VerifyMismatchError, InvalidHash):
                pass
            raise ProviderRejected("unknown email", reason="EMAIL_NOT_FOUND")
        try:
            self._pwd_hasher.verify(account.password_hash, password)
        except (VerifyMismatchError, InvalidHash):
            raise ProviderRejected("password mismatch", reason="INVALID_PASSWORD")
        return normalize_identity(
            {
                "localId": account.uid,
                "email": account.email,
                "emailVerified": account.email_verified,
            }
        )

    async def create_identity(
        self,
        email: str,
        password: str,
        *,
        display_name: Optional[str] = None,
        email_verified: bool = False,
    ) -> ExternalIdentity:
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ProviderRejected("password too weak", reason="WEAK_PASSWORD")
        email = normalize_email(email)
        password_hash = self._pwd_hasher.hash(password)
        with self._state_lock:
            if self._find_by_email(email):
                raise IdentityAlreadyExists("email already registered", reason="EMAIL_EXISTS")
            account = _Account(
                uid=uuid.uuid4().hex[:28],
                email=email,
                password_hash=password_hash,
                email_verified=email_verified,
                display_name=display_name,
            )
            self.accounts[account.uid] = account
        return account.to_external()

    async def get_identity(self, uid: str) -> ExternalIdentity:
        return self._require(uid).to_external()

    async def get_identity_by_email(self, email: str) -> Optional[ExternalIdentity]:
        account = self._find_by_email(normalize_email(email))
        return account.to_external() if account else None

    async def update_identity(
        self,
        uid: str,
        *,
        email: Optional[str] = None,
        email_verified: Optional[bool] = None,
    ) -> ExternalIdentity:
        with self._state_lock:
            account = self._require(uid)
            changes: Dict[str, Any] = {}
            if email is not None:
                email = normalize_email(email)
                other = self._find_by_email(email)
                if other and other.uid != uid:
                    raise IdentityAlreadyExists("email already registered", reason="EMAIL_EXISTS")
                changes["email"] = email
            if email_verified is not None:
                changes["email_verified"] = email_verified
            account = replace(account, **changes)
            self.accounts[uid] = account
        return account.to_external()

    async def delete_identity(self, uid: str) -> None:
        with self._state_lock:
            self._require(uid)
            self.accounts.pop(uid, None)
            self.refresh_tokens = {
                token: entry for token, entry in self.refresh_tokens.items() if entry[0] != uid
            }

    async def mint_custom_token(self, uid: str) -> str:
        self._require(uid)
        now = self._now()
        return self._encode(
            {
                "uid": uid,
                "token_type": "custom",
                "iat": int(now.timestamp()),
                "exp": int((now + _CUSTOM_TOKEN_TTL).timestamp()),
            }
        )

    async def exchange_custom_token(self, custom_token: str) -> SessionTokenPair:
        try:
            payload = jwt.decode(
                custom_token,
                self._secret,
                algorithms=[_ALGORITHM],
                options={"require": ["exp", "uid"], "verify_exp": False, "verify_iat": False},
            )
        except jwt.InvalidTokenError as exc:
            raise ProviderRejected("custom token rejected", reason="INVALID_CUSTOM_TOKEN") from exc
        if payload.get("token_type") != "custom":
            raise ProviderRejected("custom token rejected", reason="INVALID_CUSTOM_TOKEN")
        if payload["exp"] <= int(self._now().timestamp()):
            raise ProviderRejected("custom token expired", reason="TOKEN_EXPIRED")
        account = self.accounts.get(payload["uid"])
        if account is None:
            raise ProviderRejected("custom token rejected", reason="USER_NOT_FOUND")
        return self._issue_pair(account)

    async def redeem_refresh_token(self, refresh_token: str) -> tuple[SessionTokenPair, str]:
        with self._state_lock:
            # Popping under the lock makes a second redemption of the same token fail
            entry = self.refresh_tokens.pop(refresh_token, None)
        if entry is None:
            raise ProviderRejected("refresh token not recognised", reason="INVALID_REFRESH_TOKEN")
        uid, expires_at = entry
        if expires_at <= self._now():
            raise ProviderRejected("refresh token expired", reason="TOKEN_EXPIRED")
        account = self.accounts.get(uid)
        if account is None:
            raise ProviderRejected("identity removed", reason="USER_NOT_FOUND")
        return self._issue_pair(account), uid

    async def verify_id_token(self, id_token: str) -> Dict[str, Any]:
        try:
            claims = jwt.decode(
                id_token,
                self._secret,
                algorithms=[_ALGORITHM],
                options={"require": ["exp", "iat", "sub"], "verify_exp": False, "verify_iat": False},
            )
        except jwt.InvalidTokenError as exc:
            raise InvalidIdToken("id token rejected", reason="INVALID_ID_TOKEN") from exc
        if claims.get("token_type") != "id":
            raise InvalidIdToken("id token rejected", reason="INVALID_ID_TOKEN")
        if claims["exp"] <= int(self._now().timestamp()):
            raise InvalidIdToken("id token expired", reason="TOKEN_EXPIRED")
        account = self.accounts.get(claims["sub"])
        if account is None:
            raise InvalidIdToken("identity removed", reason="USER_NOT_FOUND")
        if claims["iat"] < account.valid_since:
            raise InvalidIdToken("id token revoked", reason="TOKEN_REVOKED")
        return claims

    async def revoke_refresh_tokens(self, uid: str) -> None:
        with self._state_lock:
            account = self._require(uid)
            self.accounts[uid] = replace(account, valid_since=int(self._now().timestamp()))
            self.refresh_tokens = {
                token: entry for token, entry in self.refresh_tokens.items() if entry[0] != uid
            }
        logger.info("refresh_tokens_revoked", uid=uid)

    def _action_link(self, email: str, mode: str, path: str) -> str:
        code = secrets.token_urlsafe(32)
        now = self._now()
        with self._state_lock:
            self.action_codes = {
                key: entry for key, entry in self.action_codes.items() if entry[2] > now
            }
            self.action_codes[code] = (email, mode, now + _ACTION_CODE_TTL)
        return f"{self.app_base_url}/{path}?mode={mode}&oobCode={code}"

    async def generate_email_verification_link(self, email: str) -> str:
        account = self._find_by_email(normalize_email(email))
        if account is None:
            raise IdentityNotFound("no identity for email", reason="EMAIL_NOT_FOUND")
        return self._action_link(account.email, "verifyEmail", "verify-email")

    async def generate_password_reset_link(self, email: str) -> str:
        account = self._find_by_email(normalize_email(email))
        if account is None:
            raise IdentityNotFound("no identity for email", reason="EMAIL_NOT_FOUND")
        return self._action_link(account.email, "resetPassword", "reset-password")
