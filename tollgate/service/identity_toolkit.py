"""Credential gateway backed by the hosted Identity Toolkit REST API.

Client facing calls (password sign-in, custom token exchange, refresh) use the
project API key. Admin calls authenticate with an OAuth access token obtained
from a service account JWT assertion, and custom tokens are signed with the
same service account key.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Dict, Optional

import httpx
import jwt

from tollgate.logging import get_logger
from tollgate.service.gateway import (
    ExternalIdentity,
    Identity,
    IdentityAlreadyExists,
    IdentityNotFound,
    InvalidIdToken,
    ProviderError,
    ProviderRejected,
    ProviderUnavailable,
    SessionTokenPair,
    normalize_identity,
)

logger = get_logger(__name__)

IDENTITY_TOOLKIT_BASE = "https://identitytoolkit.googleapis.com/v1"
SECURE_TOKEN_URL = "https://securetoken.googleapis.com/v1/token"
OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
ID_TOKEN_JWKS_URL = (
    "https://www.googleapis.com/service_accounts/v1/jwk/securetoken@system.gserviceaccount.com"
)
CUSTOM_TOKEN_AUDIENCE = (
    "https://identitytoolkit.googleapis.com/google.identity.identitytoolkit.v1.IdentityToolkit"
)
ADMIN_SCOPES = (
    "https://www.googleapis.com/auth/identitytoolkit "
    "https://www.googleapis.com/auth/cloud-platform"
)

_ALREADY_EXISTS = {"EMAIL_EXISTS", "DUPLICATE_EMAIL", "DUPLICATE_LOCAL_ID"}
_NOT_FOUND = {"USER_NOT_FOUND"}
_ACCESS_TOKEN_REFRESH_MARGIN = 60
_JWKS_CACHE_SECONDS = 3600


class IdentityToolkitGateway:
    def __init__(
        self,
        *,
        api_key: str,
        project_id: str,
        service_account_email: str,
        service_account_private_key: str,
        timeout: float = 8.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.project_id = project_id
        self.service_account_email = service_account_email
        # Keys pasted into env files usually carry literal "\n" sequences
        self._private_key = service_account_private_key.replace("\\n", "\n")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._access_token: Optional[tuple[str, float]] = None
        self._jwks: Optional[tuple[jwt.PyJWKSet, float]] = None
        self._token_lock = asyncio.Lock()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create an HTTP client for provider calls."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 5.0)),
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def _admin_base(self) -> str:
        return f"{IDENTITY_TOOLKIT_BASE}/projects/{self.project_id}"

    @staticmethod
    def _error_reason(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return f"HTTP_{response.status_code}"
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            message = error.get("message") or ""
        else:
            message = str(error or "")
        # Messages look like "TOKEN_EXPIRED" or "WEAK_PASSWORD : Password should be ..."
        return message.split(" ", 1)[0].strip() or f"HTTP_{response.status_code}"

    async def _request(
        self,
        operation: str,
        url: str,
        *,
        payload: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        client = await self._get_client()
        try:
            # wait_for bounds the whole exchange, httpx timeouts are per phase
            response = await asyncio.wait_for(
                client.post(url, json=payload, data=data, params=params, headers=headers),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            logger.error("identity_provider_timeout", operation=operation, timeout=self.timeout)
            raise ProviderUnavailable(f"{operation} timed out", reason="TIMEOUT") from exc
        except httpx.HTTPError as exc:
            logger.error("identity_provider_connect_error", operation=operation, error=str(exc))
            raise ProviderUnavailable(f"{operation} failed", reason="CONNECT_ERROR") from exc

        if response.status_code >= 500:
            logger.error(
                "identity_provider_server_error",
                operation=operation,
                status_code=response.status_code,
            )
            raise ProviderUnavailable(
                f"{operation} failed", reason=f"HTTP_{response.status_code}"
            )
        if response.status_code >= 400:
            reason = self._error_reason(response)
            logger.info("identity_provider_rejected", operation=operation, reason=reason)
            if reason in _ALREADY_EXISTS:
                raise IdentityAlreadyExists(f"{operation} rejected", reason=reason)
            if reason in _NOT_FOUND:
                raise IdentityNotFound(f"{operation} rejected", reason=reason)
            raise ProviderRejected(f"{operation} rejected", reason=reason)
        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderUnavailable(f"{operation} returned invalid JSON") from exc
        return body if isinstance(body, dict) else {}

    async def _public_call(self, operation: str, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request(
            operation,
            f"{IDENTITY_TOOLKIT_BASE}/accounts:{endpoint}",
            payload=payload,
            params={"key": self.api_key},
        )

    def _sign_service_jwt(self, claims: Dict[str, Any]) -> str:
        now = int(time.time())
        payload = {
            "iss": self.service_account_email,
            "sub": self.service_account_email,
            "iat": now,
            "exp": now + 3600,
            **claims,
        }
        return jwt.encode(payload, self._private_key, algorithm="RS256")

    async def _admin_token(self) -> str:
        async with self._token_lock:
            cached = self._access_token
            if cached and cached[1] - _ACCESS_TOKEN_REFRESH_MARGIN > time.time():
                return cached[0]
            assertion = self._sign_service_jwt({"aud": OAUTH_TOKEN_URL, "scope": ADMIN_SCOPES})
            body = await self._request(
                "service_account_token",
                OAUTH_TOKEN_URL,
                data={
                    "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
                    "assertion": assertion,
                },
            )
            token = body.get("access_token")
            if not token:
                raise ProviderUnavailable("service account token missing", reason="NO_ACCESS_TOKEN")
            self._access_token = (token, time.time() + int(body.get("expires_in", 3600)))
            return token

    async def _admin_call(self, operation: str, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        token = await self._admin_token()
        return await self._request(
            operation,
            f"{self._admin_base}/{endpoint}",
            payload=payload,
            headers={"Authorization": f"Bearer {token}"},
        )

    @staticmethod
    def _to_external(record: Dict[str, Any]) -> ExternalIdentity:
        identity = normalize_identity(record)
        claims = record.get("customAttributes")
        if isinstance(claims, str):
            try:
                claims = json.loads(claims) if claims else {}
            except ValueError as exc:
                raise ProviderRejected(
                    "custom attributes are not valid JSON", reason="MALFORMED_RESPONSE"
                ) from exc
        return ExternalIdentity(
            uid=identity.uid,
            email=record.get("email", ""),
            email_verified=bool(record.get("emailVerified", False)),
            display_name=record.get("displayName"),
            custom_claims=claims or {},
        )

    @staticmethod
    def _token_pair(body: Dict[str, Any], *, id_key: str, refresh_key: str) -> SessionTokenPair:
        id_token = body.get(id_key)
        refresh_token = body.get(refresh_key)
        if not id_token or not refresh_token:
            raise ProviderRejected("token response incomplete", reason="MALFORMED_RESPONSE")
        return SessionTokenPair(
            id_token=id_token,
            refresh_token=refresh_token,
            expires_in=int(body.get("expiresIn") or body.get("expires_in") or 3600),
        )

    async def verify_password(self, email: str, password: str) -> Identity:
        body = await self._public_call(
            "sign_in_with_password",
            "signInWithPassword",
            {"email": email, "password": password, "returnSecureToken": True},
        )
        return normalize_identity(body)

    async def create_identity(
        self,
        email: str,
        password: str,
        *,
        display_name: Optional[str] = None,
        email_verified: bool = False,
    ) -> ExternalIdentity:
        payload: Dict[str, Any] = {
            "email": email,
            "password": password,
            "emailVerified": email_verified,
        }
        if display_name:
            payload["displayName"] = display_name
        body = await self._admin_call("create_identity", "accounts", payload)
        return ExternalIdentity(
            uid=normalize_identity(body).uid,
            email=body.get("email", email),
            email_verified=email_verified,
            display_name=display_name,
        )

    async def _lookup(self, payload: Dict[str, Any]) -> Optional[ExternalIdentity]:
        body = await self._admin_call("lookup_identity", "accounts:lookup", payload)
        users = body.get("users") or []
        return self._to_external(users[0]) if users else None

    async def get_identity(self, uid: str) -> ExternalIdentity:
        found = await self._lookup({"localId": [uid]})
        if found is None:
            raise IdentityNotFound("no identity for uid", reason="USER_NOT_FOUND")
        return found

    async def get_identity_by_email(self, email: str) -> Optional[ExternalIdentity]:
        return await self._lookup({"email": [email]})

    async def update_identity(
        self,
        uid: str,
        *,
        email: Optional[str] = None,
        email_verified: Optional[bool] = None,
    ) -> ExternalIdentity:
        payload: Dict[str, Any] = {"localId": uid}
        if email is not None:
            payload["email"] = email
        if email_verified is not None:
            payload["emailVerified"] = email_verified
        await self._admin_call("update_identity", "accounts:update", payload)
        return await self.get_identity(uid)

    async def delete_identity(self, uid: str) -> None:
        await self._admin_call("delete_identity", "accounts:delete", {"localId": uid})

    async def mint_custom_token(self, uid: str) -> str:
        try:
            return self._sign_service_jwt({"aud": CUSTOM_TOKEN_AUDIENCE, "uid": uid})
        except (ValueError, TypeError, jwt.PyJWTError) as exc:
            logger.error("custom_token_sign_failed", error=str(exc))
            raise ProviderUnavailable("unable to sign custom token", reason="SIGNING_FAILED") from exc

    async def exchange_custom_token(self, custom_token: str) -> SessionTokenPair:
        body = await self._public_call(
            "sign_in_with_custom_token",
            "signInWithCustomToken",
            {"token": custom_token, "returnSecureToken": True},
        )
        return self._token_pair(body, id_key="idToken", refresh_key="refreshToken")

    async def redeem_refresh_token(self, refresh_token: str) -> tuple[SessionTokenPair, str]:
        body = await self._request(
            "refresh_token",
            SECURE_TOKEN_URL,
            data={"grant_type": "refresh_token", "refresh_token": refresh_token},
            params={"key": self.api_key},
        )
        pair = self._token_pair(body, id_key="id_token", refresh_key="refresh_token")
        uid = body.get("user_id")
        if not uid:
            raise ProviderRejected("token response incomplete", reason="MALFORMED_RESPONSE")
        return pair, uid

    async def _signing_keys(self) -> jwt.PyJWKSet:
        cached = self._jwks
        if cached and cached[1] > time.time():
            return cached[0]
        client = await self._get_client()
        try:
            response = await asyncio.wait_for(client.get(ID_TOKEN_JWKS_URL), timeout=self.timeout)
            response.raise_for_status()
            keys = jwt.PyJWKSet.from_dict(response.json())
        except (asyncio.TimeoutError, httpx.HTTPError, ValueError, jwt.PyJWTError) as exc:
            logger.error("id_token_keys_unavailable", error=str(exc))
            raise ProviderUnavailable("signing keys unavailable", reason="JWKS_UNAVAILABLE") from exc
        self._jwks = (keys, time.time() + _JWKS_CACHE_SECONDS)
        return keys

    async def verify_id_token(self, id_token: str) -> Dict[str, Any]:
        try:
            kid = jwt.get_unverified_header(id_token).get("kid")
        except jwt.PyJWTError as exc:
            raise InvalidIdToken("id token malformed", reason="INVALID_ID_TOKEN") from exc
        keys = await self._signing_keys()
        try:
            key = keys[kid]
        except KeyError as exc:
            raise InvalidIdToken("unknown signing key", reason="INVALID_ID_TOKEN") from exc
        try:
            return jwt.decode(
                id_token,
                key.key,
                algorithms=["RS256"],
                audience=self.project_id,
                issuer=f"https://securetoken.google.com/{self.project_id}",
                options={"require": ["exp", "iat", "sub"]},
                leeway=60,
            )
        except jwt.ExpiredSignatureError as exc:
            raise InvalidIdToken("id token expired", reason="TOKEN_EXPIRED") from exc
        except jwt.PyJWTError as exc:
            raise InvalidIdToken("id token rejected", reason="INVALID_ID_TOKEN") from exc

    async def revoke_refresh_tokens(self, uid: str) -> None:
        await self._admin_call(
            "revoke_refresh_tokens",
            "accounts:update",
            {"localId": uid, "validSince": str(int(time.time()))},
        )

    async def _oob_link(self, request_type: str, email: str) -> str:
        body = await self._admin_call(
            "send_oob_code",
            "accounts:sendOobCode",
            {"requestType": request_type, "email": email, "returnOobLink": True},
        )
        link = body.get("oobLink")
        if not link:
            raise ProviderError("action link missing", reason="NO_OOB_LINK")
        return link

    async def generate_email_verification_link(self, email: str) -> str:
        return await self._oob_link("VERIFY_EMAIL", email)

    async def generate_password_reset_link(self, email: str) -> str:
        return await self._oob_link("PASSWORD_RESET", email)
