"""Request-level checks that run before any account handler.

Bearer validation resolves ``Authorization: Bearer <id token>`` into an
:class:`Identity`. The CSRF check covers every state-changing request except
the routes that run before a session exists; those still get the Origin
check in production.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional

from tollgate.config import Settings
from tollgate.logging import get_logger
from tollgate.service import csrf
from tollgate.service.errors import AuthenticationError, AuthenticationFailed
from tollgate.service.gateway import (
    CredentialGateway,
    Identity,
    InvalidIdToken,
    ProviderError,
    normalize_identity,
)

logger = get_logger(__name__)

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})

# Pre-session routes: no CSRF token can exist yet when these are called
CSRF_EXEMPT_PATHS = frozenset(
    {
        "/auth/register",
        "/auth/login",
        "/auth/refresh-token",
        "/auth/reset-password",
        "/healthz",
    }
)
CSRF_EXEMPT_PREFIXES = ("/internal/",)

CSRF_MISSING = "CSRF token missing. Request rejected for security reasons."
CSRF_INVALID = "Invalid CSRF token. Request rejected for security reasons."
ORIGIN_INVALID = "Invalid origin. Request rejected for security reasons."


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


async def authenticate_bearer(
    gateway: CredentialGateway, authorization: Optional[str]
) -> Identity:
    token = extract_bearer(authorization)
    if not token:
        raise AuthenticationError("Missing or malformed bearer token")
    try:
        claims = await gateway.verify_id_token(token)
    except InvalidIdToken as exc:
        logger.info("bearer_rejected", reason=exc.reason)
        raise AuthenticationError("Invalid or expired token") from exc
    except ProviderError as exc:
        logger.error("bearer_verification_failed", reason=exc.reason)
        raise AuthenticationFailed() from exc
    return normalize_identity(claims)


@dataclass(frozen=True)
class MintedCsrf:
    secret: str
    token: str
    new_secret: bool


class CsrfGuard:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.allowed_origins = settings.origin_allow_list

    @staticmethod
    def is_exempt(path: str) -> bool:
        normalized = path.rstrip("/") or "/"
        return normalized in CSRF_EXEMPT_PATHS or path.startswith(CSRF_EXEMPT_PREFIXES)

    def mint(self, existing_secret: Optional[str]) -> MintedCsrf:
        """New token for the caller, reusing its secret cookie when it has one."""
        if existing_secret:
            return MintedCsrf(existing_secret, csrf.create_token(existing_secret), False)
        secret = csrf.create_secret()
        return MintedCsrf(secret, csrf.create_token(secret), True)

    def _origin_rejection(self, path: str, headers: Mapping[str, str]) -> Optional[str]:
        origin = headers.get("origin")
        referer = headers.get("referer")
        if csrf.origin_allowed(origin, referer, self.allowed_origins):
            return None
        if self.settings.is_production:
            logger.warning("csrf_origin_rejected", path=path, origin=origin, referer=referer)
            return ORIGIN_INVALID
        logger.warning("csrf_origin_unverified", path=path, origin=origin, referer=referer)
        return None

    def check(
        self,
        method: str,
        path: str,
        headers: Mapping[str, str],
        cookies: Mapping[str, str],
        body_token: Optional[str] = None,
    ) -> Optional[str]:
        """Return a rejection message, or ``None`` when the request may proceed."""
        if method.upper() in SAFE_METHODS:
            return None
        if self.is_exempt(path):
            return self._origin_rejection(path, headers)

        token = headers.get(self.settings.csrf_header_name.lower()) or body_token
        secret = cookies.get(self.settings.csrf_cookie_name)
        if not token or not secret:
            logger.warning(
                "csrf_token_missing", path=path, has_token=bool(token), has_secret=bool(secret)
            )
            return CSRF_MISSING
        if not csrf.verify_token(secret, token):
            logger.warning("csrf_token_invalid", path=path)
            return CSRF_INVALID
        return self._origin_rejection(path, headers)
