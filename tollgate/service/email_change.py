"""Two-phase change of a user's email address.

A user with no pending change may request one; the request stores the new
address, a numeric code and the request time on the profile and mails the
code to the new address. Submitting the right code within the time limit
moves the address on both the identity provider and the profile. An expired
request is cleared when it is found, so the stale code stops working.

Only the most recent request is kept: asking again replaces the pending
address, code and timestamp in a single write, and only the newest code
verifies.
"""

from __future__ import annotations

import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from tollgate.logging import get_logger
from tollgate.service.email import EmailService
from tollgate.service.errors import (
    AccountIncomplete,
    DownstreamServiceError,
    EmailInUseError,
    InvalidCredentials,
    InvalidTokenError,
    NoPendingChangeError,
    TokenExpiredError,
    ValidationError,
)
from tollgate.service.gateway import (
    CredentialGateway,
    IdentityAlreadyExists,
    ProviderError,
)
from tollgate.service.login import check_password
from tollgate.storage.common import ProfileStore, normalize_email
from tollgate.storage.errors import ConstraintViolation
from tollgate.storage.models import LocalProfile
from tollgate.tracking import report_exception

logger = get_logger(__name__)


def generate_code(length: int = 6) -> str:
    """Uniform numeric code, zero padded to ``length`` digits."""
    return f"{secrets.randbelow(10 ** length):0{length}d}"


class EmailChangeService:
    def __init__(
        self,
        gateway: CredentialGateway,
        profiles: ProfileStore,
        notifier: EmailService,
        *,
        code_length: int = 6,
        ttl: timedelta = timedelta(hours=24),
        clock: Optional[Callable[[], datetime]] = None,
        reporter: Callable[..., None] = report_exception,
    ) -> None:
        self.gateway = gateway
        self.profiles = profiles
        self.notifier = notifier
        self.code_length = code_length
        self.ttl = ttl
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.reporter = reporter

    def _now(self) -> datetime:
        return self._clock()

    def _require_profile(self, uid: str) -> LocalProfile:
        profile = self.profiles.get_profile(uid)
        if profile is None:
            logger.error("email_change_profile_missing", uid=uid)
            raise AccountIncomplete(detail={"uid": uid})
        return profile

    async def _ensure_available(self, uid: str, new_email: str) -> None:
        try:
            existing = await self.gateway.get_identity_by_email(new_email)
        except ProviderError as exc:
            logger.error("email_lookup_failed", reason=exc.reason)
            raise DownstreamServiceError("Unable to verify email availability") from exc
        if existing is not None and existing.uid != uid:
            raise EmailInUseError()
        holder = self.profiles.get_profile_by_email(new_email)
        if holder is not None and holder.uid != uid:
            raise EmailInUseError()

    async def initiate(self, uid: str, new_email: str, password: str) -> LocalProfile:
        """Start (or restart) a change to ``new_email`` for the signed-in ``uid``.

        Nothing is stored unless the verification email was handed off, since
        that email is the only way to learn the code.
        """
        new_email = normalize_email(new_email or "")
        if not new_email or not password:
            raise ValidationError("New email and password are required")
        profile = self._require_profile(uid)
        if new_email == profile.email:
            raise ValidationError("New email must be different from the current email")

        identity = await check_password(self.gateway, profile.email, password)
        if identity.uid != uid:
            raise InvalidCredentials()
        await self._ensure_available(uid, new_email)

        code = generate_code(self.code_length)
        sent = await self.notifier.send(
            self.notifier.send_email_change_verification,
            new_email,
            code,
            expires_hours=int(self.ttl.total_seconds() // 3600),
        )
        if not sent:
            logger.error("email_change_code_undelivered", uid=uid, email=new_email)
            raise DownstreamServiceError("Failed to send verification email")

        updated = self.profiles.set_pending_email_change(uid, new_email, code, self._now())
        logger.info("email_change_requested", uid=uid, replaced=profile.has_pending_email_change)
        return updated

    def _is_expired(self, profile: LocalProfile) -> bool:
        requested_at = profile.email_change_requested_at
        if requested_at is None:
            return True
        if requested_at.tzinfo is None:
            requested_at = requested_at.replace(tzinfo=timezone.utc)
        return self._now() - requested_at > self.ttl

    async def verify(self, uid: str, submitted_code: str) -> LocalProfile:
        """Complete the pending change if ``submitted_code`` matches and is fresh."""
        profile = self._require_profile(uid)
        if not profile.has_pending_email_change:
            raise NoPendingChangeError()

        submitted = (submitted_code or "").strip()
        if not hmac.compare_digest(
            submitted.encode("utf-8"), profile.email_change_token.encode("utf-8")
        ):
            logger.info("email_change_code_mismatch", uid=uid)
            raise InvalidTokenError()

        if self._is_expired(profile):
            self.profiles.clear_pending_email_change(uid)
            logger.info("email_change_expired", uid=uid)
            raise TokenExpiredError()

        old_email = profile.email
        new_email = profile.pending_email
        try:
            await self.gateway.update_identity(uid, email=new_email, email_verified=True)
        except IdentityAlreadyExists as exc:
            # Someone claimed the address after the request; the code is useless now
            self.profiles.clear_pending_email_change(uid)
            raise EmailInUseError() from exc
        except ProviderError as exc:
            logger.error("email_change_identity_update_failed", uid=uid, reason=exc.reason)
            raise DownstreamServiceError("Failed to update email address") from exc

        try:
            updated = self.profiles.complete_email_change(uid, new_email)
        except ConstraintViolation as exc:
            await self._restore_identity(uid, old_email, profile.email_verified)
            self.profiles.clear_pending_email_change(uid)
            raise EmailInUseError() from exc
        except Exception:
            await self._restore_identity(uid, old_email, profile.email_verified)
            raise

        logger.info("email_change_completed", uid=uid)
        for recipient in (new_email, old_email):
            self.notifier.dispatch(
                self.notifier.send(
                    self.notifier.send_email_changed_notice,
                    recipient,
                    old_email=old_email,
                    new_email=new_email,
                ),
                label="email_changed_notice",
            )
        return updated

    async def _restore_identity(self, uid: str, email: str, verified: bool) -> None:
        try:
            await self.gateway.update_identity(uid, email=email, email_verified=verified)
        except ProviderError as exc:
            logger.error("email_change_identity_restore_failed", uid=uid, reason=exc.reason)
            self.reporter(exc, stage="email_change_restore", uid=uid)
