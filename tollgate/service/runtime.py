from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from tollgate.config import IdentityBackend, Settings, get_settings, reset_settings_cache
from tollgate.logging import get_logger
from tollgate.service.account import AccountService
from tollgate.service.email import EmailService
from tollgate.service.email_change import EmailChangeService
from tollgate.service.gateway import CredentialGateway
from tollgate.service.guard import CsrfGuard
from tollgate.service.identity_toolkit import IdentityToolkitGateway
from tollgate.service.login import LoginService
from tollgate.service.memory_provider import MemoryIdentityProvider
from tollgate.service.rate_limit import (
    MemoryCounterStore,
    RateLimiter,
    RateLimitRule,
    RedisCounterStore,
)
from tollgate.service.refresh import TokenRefreshService
from tollgate.service.registration import RegistrationService
from tollgate.storage.memory import MemoryProfileStore
from tollgate.storage.postgres import PostgresProfileStore
from tollgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def _build_gateway(settings: Settings) -> CredentialGateway:
    if settings.identity_backend == IdentityBackend.IDENTITY_TOOLKIT:
        missing = [
            name
            for name in (
                "identity_api_key",
                "identity_project_id",
                "service_account_email",
                "service_account_private_key",
            )
            if not getattr(settings, name)
        ]
        if missing:
            raise RuntimeError(f"identity_toolkit backend requires: {', '.join(missing)}")
        return IdentityToolkitGateway(
            api_key=settings.identity_api_key,
            project_id=settings.identity_project_id,
            service_account_email=settings.service_account_email,
            service_account_private_key=settings.service_account_private_key,
            timeout=settings.identity_timeout_seconds,
        )
    if settings.is_production:
        raise RuntimeError("the in-memory identity provider cannot run in production")
    return MemoryIdentityProvider(
        settings.token_secret,
        id_token_ttl=timedelta(minutes=settings.id_token_ttl_minutes),
        refresh_token_ttl=timedelta(days=settings.refresh_token_ttl_days),
        app_base_url=settings.app_base_url,
    )


class RateLimits:
    """Per-route rules built from settings."""

    def __init__(self, settings: Settings) -> None:
        self.login = RateLimitRule(
            "login",
            settings.login_rate_limit,
            settings.login_rate_window,
            "Too many login attempts, please try again later",
        )
        self.register = RateLimitRule(
            "register",
            settings.register_rate_limit,
            settings.register_rate_window,
            "Too many accounts created from this IP, please try again later",
        )
        self.refresh = RateLimitRule(
            "refresh", settings.refresh_rate_limit, settings.refresh_rate_window
        )
        self.reset_password = RateLimitRule(
            "reset_password",
            settings.reset_password_rate_limit,
            settings.reset_password_rate_window,
            "Too many password reset attempts, please try again later",
        )
        self.change_email = RateLimitRule(
            "change_email", settings.change_email_rate_limit, settings.change_email_rate_window
        )
        self.verify_email_change = RateLimitRule(
            "verify_email_change",
            settings.verify_email_change_rate_limit,
            settings.verify_email_change_rate_window,
            "Too many verification attempts, please try again later",
        )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            identity_backend=self.settings.identity_backend.value,
            test_mode=self.settings.test_mode,
        )

        try:
            self.profiles = (
                MemoryProfileStore()
                if self.settings.use_memory_store
                else PostgresProfileStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message="Rate limit counters are in-memory and per-instance only.",
            )

        self.rate_limiter = RateLimiter(
            RedisCounterStore(self.cache) if self.cache else MemoryCounterStore()
        )
        self.rate_limits = RateLimits(self.settings)

        self.gateway = _build_gateway(self.settings)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.csrf = CsrfGuard(self.settings)
        self.registration = RegistrationService(self.gateway, self.profiles, self.email)
        self.login = LoginService(self.gateway, self.profiles)
        self.refresh = TokenRefreshService(self.gateway, self.profiles)
        self.email_change = EmailChangeService(
            self.gateway,
            self.profiles,
            self.email,
            code_length=self.settings.email_change_code_length,
            ttl=timedelta(hours=self.settings.email_change_ttl_hours),
        )
        self.account = AccountService(self.gateway, self.profiles, self.email)

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            production=self.settings.is_production,
        )

    async def close(self) -> None:
        await self.email.drain()
        if isinstance(self.gateway, IdentityToolkitGateway):
            await self.gateway.aclose()
        if self.cache is not None:
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the unlocked check serves the common case and the
    locked one prevents two threads building competing runtimes.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                asyncio.get_running_loop().create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
