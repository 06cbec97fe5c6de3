from __future__ import annotations

from tollgate.logging import get_logger
from tollgate.service.email import EmailService
from tollgate.service.errors import AccountIncomplete, DownstreamServiceError
from tollgate.service.gateway import CredentialGateway, ProviderError
from tollgate.storage.common import ProfileStore, normalize_email
from tollgate.storage.models import LocalProfile

logger = get_logger(__name__)


class AccountService:
    """Smaller account actions: address verification, password reset, logout."""

    def __init__(
        self, gateway: CredentialGateway, profiles: ProfileStore, notifier: EmailService
    ) -> None:
        self.gateway = gateway
        self.profiles = profiles
        self.notifier = notifier

    def get_profile(self, uid: str) -> LocalProfile:
        profile = self.profiles.get_profile(uid)
        if profile is None:
            raise AccountIncomplete(detail={"uid": uid})
        return profile

    async def verify_email(self, uid: str) -> LocalProfile:
        self.get_profile(uid)
        try:
            await self.gateway.update_identity(uid, email_verified=True)
        except ProviderError as exc:
            logger.error("email_verify_failed", uid=uid, reason=exc.reason)
            raise DownstreamServiceError("Unable to verify email") from exc
        logger.info("email_verified", uid=uid)
        return self.profiles.mark_email_verified(uid, True)

    async def request_password_reset(self, email: str) -> None:
        """Mail a reset link if the address is known. Callers always report success."""
        email = normalize_email(email or "")
        if not email:
            return
        try:
            link = await self.gateway.generate_password_reset_link(email)
        except ProviderError as exc:
            logger.info("password_reset_link_skipped", reason=exc.reason)
            return
        sent = await self.notifier.send(self.notifier.send_password_reset, email, link)
        logger.info("password_reset_requested", delivered=sent)

    async def logout(self, uid: str) -> None:
        try:
            await self.gateway.revoke_refresh_tokens(uid)
        except ProviderError as exc:
            logger.warning("logout_revoke_failed", uid=uid, reason=exc.reason)
        else:
            logger.info("logout_succeeded", uid=uid)
