"""Contract for the external identity provider.

Orchestrators only talk to the provider through :class:`CredentialGateway`.
Implementations raise :class:`ProviderError` subclasses; translating those
into user facing errors is the orchestrators' job.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Protocol

from tollgate.service.errors import AuthenticationFailed

# Claim names the provider has been seen to carry the uid under, in priority order
UID_CLAIMS = ("uid", "user_id", "sub", "localId")


class ProviderError(Exception):
    """Base class for failures reported by the identity provider."""

    def __init__(self, message: str, *, reason: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.reason = reason


class ProviderRejected(ProviderError):
    """The provider understood the request and refused it."""


class ProviderUnavailable(ProviderError):
    """Timeout, connection failure or a 5xx from the provider."""


class IdentityNotFound(ProviderError):
    pass


class IdentityAlreadyExists(ProviderError):
    pass


class InvalidIdToken(ProviderError):
    """ID token failed signature, expiry or audience checks."""


# Rejection reasons that mean "wrong email or password"
CREDENTIAL_REJECTIONS = frozenset(
    {"INVALID_PASSWORD", "EMAIL_NOT_FOUND", "INVALID_LOGIN_CREDENTIALS", "INVALID_EMAIL"}
)


@dataclass(frozen=True)
class Identity:
    """A caller as established by the provider, whatever token shape it came from."""

    uid: str
    email: Optional[str] = None
    email_verified: bool = False
    claims: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ExternalIdentity:
    uid: str
    email: str
    email_verified: bool = False
    display_name: Optional[str] = None
    custom_claims: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SessionTokenPair:
    id_token: str
    refresh_token: str
    expires_in: int = 3600

    def __repr__(self) -> str:
        return f"SessionTokenPair(expires_in={self.expires_in})"


def normalize_identity(claims: Mapping[str, Any]) -> Identity:
    """Build an :class:`Identity` from any provider payload.

    Custom tokens, ID tokens, refresh responses and admin lookups each name
    the uid differently; the first non-empty string among :data:`UID_CLAIMS`
    wins. Payloads without one are rejected as a failed authentication.
    """
    if not isinstance(claims, Mapping):
        raise AuthenticationFailed()
    for key in UID_CLAIMS:
        value = claims.get(key)
        if isinstance(value, str) and value.strip():
            email = claims.get("email")
            return Identity(
                uid=value.strip(),
                email=email if isinstance(email, str) else None,
                email_verified=bool(
                    claims.get("email_verified", claims.get("emailVerified", False))
                ),
                claims=dict(claims),
            )
    raise AuthenticationFailed()


class CredentialGateway(Protocol):
    async def verify_password(self, email: str, password: str) -> Identity: ...

    async def create_identity(
        self,
        email: str,
        password: str,
        *,
        display_name: Optional[str] = None,
        email_verified: bool = False,
    ) -> ExternalIdentity: ...

    async def get_identity(self, uid: str) -> ExternalIdentity: ...

    async def get_identity_by_email(self, email: str) -> Optional[ExternalIdentity]: ...

    async def update_identity(
        self,
        uid: str,
        *,
        email: Optional[str] = None,
        email_verified: Optional[bool] = None,
    ) -> ExternalIdentity: ...

    async def delete_identity(self, uid: str) -> None: ...

    async def mint_custom_token(self, uid: str) -> str: ...

    async def exchange_custom_token(self, custom_token: str) -> SessionTokenPair: ...

    async def redeem_refresh_token(
        self, refresh_token: str
    ) -> tuple[SessionTokenPair, str]: ...

    async def verify_id_token(self, id_token: str) -> Dict[str, Any]: ...

    async def revoke_refresh_tokens(self, uid: str) -> None: ...

    async def generate_email_verification_link(self, email: str) -> str: ...

    async def generate_password_reset_link(self, email: str) -> str: ...


__all__ = [
    "CREDENTIAL_REJECTIONS",
    "CredentialGateway",
    "ExternalIdentity",
    "Identity",
    "IdentityAlreadyExists",
    "IdentityNotFound",
    "InvalidIdToken",
    "ProviderError",
    "ProviderRejected",
    "ProviderUnavailable",
    "SessionTokenPair",
    "normalize_identity",
]
