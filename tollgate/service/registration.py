from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

from tollgate.logging import get_logger
from tollgate.service.email import EmailService
from tollgate.service.errors import (
    DownstreamServiceError,
    DuplicateAccountError,
    ValidationError,
)
from tollgate.service.gateway import (
    CredentialGateway,
    ExternalIdentity,
    IdentityAlreadyExists,
    ProviderError,
    ProviderRejected,
    SessionTokenPair,
)
from tollgate.service.saga import Saga
from tollgate.storage.common import ProfileStore, normalize_email
from tollgate.storage.errors import ConstraintViolation
from tollgate.storage.models import LocalProfile
from tollgate.tracking import report_exception

logger = get_logger(__name__)

REGISTERED_AND_LOGGED_IN = "User registered and logged in successfully."
REGISTERED_PLEASE_LOG_IN = "User registered successfully. Please log in."

_REJECTION_MESSAGES = {
    "WEAK_PASSWORD": "Password should be at least 6 characters",
    "INVALID_EMAIL": "Invalid email address",
    "MISSING_PASSWORD": "Password is required",
}


@dataclass
class RegistrationResult:
    profile: LocalProfile
    tokens: Optional[SessionTokenPair] = None

    @property
    def logged_in(self) -> bool:
        return self.tokens is not None

    @property
    def message(self) -> str:
        return REGISTERED_AND_LOGGED_IN if self.logged_in else REGISTERED_PLEASE_LOG_IN


class RegistrationService:
    """Creates the provider identity and the local profile as one unit.

    The identity is created first so the profile can be keyed by its uid. A
    duplicate email at the profile layer undoes the identity. Any other
    profile failure is raised as-is and leaves the identity in place.
    """

    def __init__(
        self,
        gateway: CredentialGateway,
        profiles: ProfileStore,
        notifier: EmailService,
        *,
        reporter: Callable[..., None] = report_exception,
    ) -> None:
        self.gateway = gateway
        self.profiles = profiles
        self.notifier = notifier
        self.reporter = reporter

    async def _create_identity(
        self, email: str, password: str, display_name: Optional[str]
    ) -> ExternalIdentity:
        try:
            return await self.gateway.create_identity(
                email, password, display_name=display_name, email_verified=False
            )
        except IdentityAlreadyExists as exc:
            raise DuplicateAccountError() from exc
        except ProviderRejected as exc:
            message = _REJECTION_MESSAGES.get(exc.reason or "")
            if message:
                raise ValidationError(message) from exc
            raise DownstreamServiceError("Unable to create account") from exc
        except ProviderError as exc:
            raise DownstreamServiceError("Unable to create account") from exc

    async def register(self, email: str, password: str, **profile_fields: Any) -> RegistrationResult:
        email = normalize_email(email or "")
        if not email or not password:
            raise ValidationError("Email and password are required")

        display_name = " ".join(
            p for p in (profile_fields.get("first_name"), profile_fields.get("last_name")) if p
        ) or None
        saga = Saga("registration", reporter=self.reporter)
        identity = await saga.step(
            "create_identity",
            lambda: self._create_identity(email, password, display_name),
            compensation=lambda created: self.gateway.delete_identity(created.uid),
        )
        try:
            profile = await saga.step(
                "create_profile",
                lambda: self.profiles.create_profile(identity.uid, email, **profile_fields),
            )
        except ConstraintViolation as exc:
            logger.warning(
                "registration_profile_conflict", uid=identity.uid, field=exc.detail.get("field")
            )
            failed = await saga.compensate()
            if failed:
                logger.error("registration_orphaned_identity", uid=identity.uid)
            raise DuplicateAccountError() from exc
        except Exception as exc:
            logger.error(
                "registration_profile_failed",
                uid=identity.uid,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        logger.info("registration_succeeded", uid=identity.uid)
        tokens = await self._auto_login(identity.uid)
        self.notifier.dispatch(
            self._send_verification_link(profile.email), label="registration_verification"
        )
        return RegistrationResult(profile=profile, tokens=tokens)

    async def _auto_login(self, uid: str) -> Optional[SessionTokenPair]:
        # The account exists at this point; a session is a convenience only
        try:
            custom_token = await self.gateway.mint_custom_token(uid)
            return await self.gateway.exchange_custom_token(custom_token)
        except ProviderError as exc:
            logger.warning("registration_auto_login_failed", uid=uid, reason=exc.reason)
            self.reporter(exc, stage="registration_auto_login", uid=uid)
            return None

    async def _send_verification_link(self, email: str) -> bool:
        try:
            link = await self.gateway.generate_email_verification_link(email)
        except ProviderError as exc:
            logger.warning("verification_link_failed", email=email, reason=exc.reason)
            return False
        return await self.notifier.send(self.notifier.send_email_verification, email, link)
