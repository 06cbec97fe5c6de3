from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from tollgate.api.schemas import (
    AuthResponse,
    ChangeEmailRequest,
    CsrfTokenResponse,
    Envelope,
    LoginRequest,
    MessageResponse,
    RegisterRequest,
    ResetPasswordRequest,
    VerifyEmailChangeRequest,
)
from tollgate.logging import get_logger
from tollgate.service.gateway import Identity, SessionTokenPair
from tollgate.service.guard import authenticate_bearer
from tollgate.service.rate_limit import RateLimitRule
from tollgate.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/auth")

RESET_PASSWORD_MESSAGE = (
    "If an account exists for that email, a password reset link has been sent."
)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _enforce_rate_limit(
    runtime: Runtime, rule: RateLimitRule, *owner_parts: str, response: Optional[Response] = None
) -> None:
    decision = await runtime.rate_limiter.enforce(rule, *owner_parts)
    if response is not None:
        response.headers["X-RateLimit-Limit"] = str(rule.limit)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)


def _set_refresh_cookie(runtime: Runtime, response: Response, tokens: SessionTokenPair) -> None:
    # The refresh token only ever travels in this cookie, never in a body
    settings = runtime.settings
    response.set_cookie(
        settings.refresh_cookie_name,
        tokens.refresh_token,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        max_age=settings.refresh_token_ttl_days * 24 * 60 * 60,
        path="/",
    )


def _clear_refresh_cookie(runtime: Runtime, response: Response) -> None:
    response.delete_cookie(
        runtime.settings.refresh_cookie_name,
        path="/",
        httponly=True,
        secure=runtime.settings.is_production,
        samesite="lax",
    )


async def get_identity(authorization: Optional[str] = Header(default=None)) -> Identity:
    """Resolve the bearer ID token; raises 401 before the handler runs."""
    return await authenticate_bearer(get_runtime().gateway, authorization)


@router.post("/register", response_model=Envelope, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create the identity and profile, then try to sign the new user in.

    A failed sign-in still reports success without a token; the client then
    sends the user to the login form.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, runtime.rate_limits.register, _client_ip(request))
    result = await runtime.registration.register(
        body.email, body.password, **body.profile_fields()
    )
    if result.tokens is not None:
        _set_refresh_cookie(runtime, response, result.tokens)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=result.profile.to_public(),
            token=result.tokens.id_token if result.tokens else None,
            expires_in=result.tokens.expires_in if result.tokens else None,
            message=result.message,
        ),
    )


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, runtime.rate_limits.login, _client_ip(request), body.email, response=response
    )
    result = await runtime.login.login(body.email, body.password)
    _set_refresh_cookie(runtime, response, result.tokens)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=result.profile.to_public(),
            token=result.tokens.id_token,
            expires_in=result.tokens.expires_in,
            message="Login successful",
        ),
    )


@router.post("/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(request: Request, response: Response):
    """Rotate the refresh cookie and return a new ID token.

    Only the cookie is read. Any failure clears it and answers 401.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, runtime.rate_limits.refresh, _client_ip(request))
    result = await runtime.refresh.refresh(
        request.cookies.get(runtime.settings.refresh_cookie_name)
    )
    _set_refresh_cookie(runtime, response, result.tokens)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=result.profile.to_public(),
            token=result.tokens.id_token,
            expires_in=result.tokens.expires_in,
            message="Token refreshed successfully",
        ),
    )


@router.post("/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    profile = await runtime.account.verify_email(identity.uid)
    return Envelope(
        status="ok",
        data=MessageResponse(message="Email verified successfully", user=profile.to_public()),
    )


@router.post("/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request):
    """Always answers 200 so the response does not reveal registered emails."""
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, runtime.rate_limits.reset_password, _client_ip(request))
    await runtime.account.request_password_reset(body.email)
    return Envelope(status="ok", data=MessageResponse(message=RESET_PASSWORD_MESSAGE))


@router.post("/change-email", response_model=Envelope, tags=["auth"])
async def change_email(body: ChangeEmailRequest, identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, runtime.rate_limits.change_email, identity.uid)
    profile = await runtime.email_change.initiate(identity.uid, body.new_email, body.password)
    return Envelope(
        status="ok",
        data=MessageResponse(
            message="Verification code sent to the new email address",
            user=profile.to_public(),
        ),
    )


@router.post("/verify-email-change", response_model=Envelope, tags=["auth"])
async def verify_email_change(
    body: VerifyEmailChangeRequest, identity: Identity = Depends(get_identity)
):
    runtime = get_runtime()
    # A 6-digit code is only as strong as the cap on guesses per user
    await _enforce_rate_limit(runtime, runtime.rate_limits.verify_email_change, identity.uid)
    profile = await runtime.email_change.verify(identity.uid, body.verification_token)
    return Envelope(
        status="ok",
        data=MessageResponse(message="Email changed successfully", user=profile.to_public()),
    )


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    await runtime.account.logout(identity.uid)
    _clear_refresh_cookie(runtime, response)
    return Envelope(status="ok", data=MessageResponse(message="Logged out"))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    profile = runtime.account.get_profile(identity.uid)
    return Envelope(status="ok", data={"user": profile.to_public()})


@router.get("/csrf-token", response_model=Envelope, tags=["auth"])
async def csrf_token(request: Request):
    """Expose the token minted for this request in the body as well as the header."""
    token = getattr(request.state, "csrf_token", None)
    return Envelope(status="ok", data=CsrfTokenResponse(csrf_token=token or ""))
