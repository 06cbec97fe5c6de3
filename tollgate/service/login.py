from __future__ import annotations

from dataclasses import dataclass

from tollgate.logging import get_logger
from tollgate.service.errors import (
    AccountIncomplete,
    AuthenticationFailed,
    InvalidCredentials,
    ValidationError,
)
from tollgate.service.gateway import (
    CREDENTIAL_REJECTIONS,
    CredentialGateway,
    Identity,
    ProviderError,
    ProviderRejected,
    SessionTokenPair,
)
from tollgate.storage.common import ProfileStore, normalize_email
from tollgate.storage.models import LocalProfile

logger = get_logger(__name__)


@dataclass
class LoginResult:
    profile: LocalProfile
    tokens: SessionTokenPair


async def check_password(gateway: CredentialGateway, email: str, password: str) -> Identity:
    """Verify a password, folding unknown email and wrong password into one error."""
    try:
        return await gateway.verify_password(email, password)
    except ProviderRejected as exc:
        if exc.reason in CREDENTIAL_REJECTIONS:
            raise InvalidCredentials() from None
        logger.warning("password_check_rejected", reason=exc.reason)
        raise AuthenticationFailed() from exc
    except ProviderError as exc:
        logger.error("password_check_failed", reason=exc.reason)
        raise AuthenticationFailed() from exc


async def issue_session(gateway: CredentialGateway, uid: str) -> SessionTokenPair:
    """Bridge a verified identity to application session tokens via a custom token."""
    try:
        custom_token = await gateway.mint_custom_token(uid)
        return await gateway.exchange_custom_token(custom_token)
    except ProviderError as exc:
        logger.error("session_issue_failed", uid=uid, reason=exc.reason)
        raise AuthenticationFailed() from exc


class LoginService:
    def __init__(self, gateway: CredentialGateway, profiles: ProfileStore) -> None:
        self.gateway = gateway
        self.profiles = profiles

    async def login(self, email: str, password: str) -> LoginResult:
        email = normalize_email(email or "")
        if not email or not password:
            raise ValidationError("Email and password are required")

        identity = await check_password(self.gateway, email, password)
        tokens = await issue_session(self.gateway, identity.uid)

        profile = self.profiles.get_profile(identity.uid)
        if profile is None:
            # Identity without a profile: registration stopped halfway
            logger.error("login_profile_missing", uid=identity.uid)
            raise AccountIncomplete(detail={"uid": identity.uid})

        logger.info("login_succeeded", uid=identity.uid)
        return LoginResult(profile=profile, tokens=tokens)
