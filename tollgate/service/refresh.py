from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from tollgate.logging import get_logger
from tollgate.service.errors import RefreshTokenError
from tollgate.service.gateway import CredentialGateway, ProviderError, SessionTokenPair
from tollgate.storage.common import ProfileStore
from tollgate.storage.models import LocalProfile

logger = get_logger(__name__)

MISSING_COOKIE_MESSAGE = "refresh token cookie missing"


@dataclass
class RefreshResult:
    profile: LocalProfile
    tokens: SessionTokenPair


class TokenRefreshService:
    """Trades a refresh token for a new pair.

    The provider rotates refresh tokens, so the returned pair replaces the
    caller's cookie and the presented token must never be used again. Every
    failure, including a provider timeout or a uid without a profile, is a
    :class:`RefreshTokenError` telling the client to log in again.
    """

    def __init__(self, gateway: CredentialGateway, profiles: ProfileStore) -> None:
        self.gateway = gateway
        self.profiles = profiles

    async def refresh(self, refresh_token: Optional[str]) -> RefreshResult:
        token = (refresh_token or "").strip()
        if not token:
            raise RefreshTokenError(MISSING_COOKIE_MESSAGE)

        try:
            tokens, uid = await self.gateway.redeem_refresh_token(token)
        except ProviderError as exc:
            logger.info("refresh_token_rejected", reason=exc.reason)
            raise RefreshTokenError() from exc

        profile = self.profiles.get_profile(uid)
        if profile is None:
            logger.warning("refresh_profile_missing", uid=uid)
            raise RefreshTokenError()

        logger.info("refresh_token_rotated", uid=uid)
        return RefreshResult(profile=profile, tokens=tokens)
