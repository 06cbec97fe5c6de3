"""Identity Toolkit gateway against a mocked HTTP transport."""

import asyncio
import json
from urllib.parse import parse_qs

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from tollgate.service.gateway import (
    IdentityAlreadyExists,
    IdentityNotFound,
    ProviderRejected,
    ProviderUnavailable,
)
from tollgate.service.identity_toolkit import (
    CUSTOM_TOKEN_AUDIENCE,
    OAUTH_TOKEN_URL,
    IdentityToolkitGateway,
)


@pytest.fixture(scope="module")
def private_key_pem():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")


def _gateway(handler, private_key_pem, timeout=8.0):
    return IdentityToolkitGateway(
        api_key="api-key",
        project_id="demo-project",
        service_account_email="svc@demo-project.iam.gserviceaccount.com",
        service_account_private_key=private_key_pem,
        timeout=timeout,
        transport=httpx.MockTransport(handler),
    )


def _error(status, message):
    return httpx.Response(status, json={"error": {"code": status, "message": message}})


async def test_verify_password_sends_api_key(private_key_pem):
    seen = {}

    def handler(request):
        seen["url"] = request.url
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"localId": "uid-1", "email": "a@example.com"})

    gateway = _gateway(handler, private_key_pem)
    identity = await gateway.verify_password("a@example.com", "pw")
    await gateway.aclose()

    assert identity.uid == "uid-1"
    assert seen["url"].params["key"] == "api-key"
    assert seen["url"].path.endswith("accounts:signInWithPassword")
    assert seen["body"]["returnSecureToken"] is True


@pytest.mark.parametrize(
    "message, error_type",
    [
        ("INVALID_PASSWORD", ProviderRejected),
        ("EMAIL_EXISTS", IdentityAlreadyExists),
        ("USER_NOT_FOUND", IdentityNotFound),
        ("WEAK_PASSWORD : Password should be at least 6 characters", ProviderRejected),
    ],
)
async def test_client_errors_are_classified(private_key_pem, message, error_type):
    gateway = _gateway(lambda request: _error(400, message), private_key_pem)

    with pytest.raises(error_type) as excinfo:
        await gateway.verify_password("a@example.com", "pw")
    await gateway.aclose()

    assert excinfo.value.reason == message.split(" ")[0]


async def test_server_error_is_unavailable(private_key_pem):
    gateway = _gateway(lambda request: _error(503, "BACKEND_ERROR"), private_key_pem)

    with pytest.raises(ProviderUnavailable):
        await gateway.verify_password("a@example.com", "pw")
    await gateway.aclose()


async def test_slow_provider_times_out(private_key_pem):
    async def handler(request):
        await asyncio.sleep(1)
        return httpx.Response(200, json={})

    gateway = _gateway(handler, private_key_pem, timeout=0.05)

    with pytest.raises(ProviderUnavailable) as excinfo:
        await gateway.verify_password("a@example.com", "pw")
    await gateway.aclose()

    assert excinfo.value.reason == "TIMEOUT"


async def test_connection_error_is_unavailable(private_key_pem):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    gateway = _gateway(handler, private_key_pem)

    with pytest.raises(ProviderUnavailable):
        await gateway.verify_password("a@example.com", "pw")
    await gateway.aclose()


async def test_refresh_uses_form_encoding_and_returns_uid(private_key_pem):
    seen = {}

    def handler(request):
        seen["form"] = parse_qs(request.content.decode())
        return httpx.Response(
            200,
            json={
                "id_token": "new-id",
                "refresh_token": "new-refresh",
                "expires_in": "3600",
                "user_id": "uid-1",
            },
        )

    gateway = _gateway(handler, private_key_pem)
    pair, uid = await gateway.redeem_refresh_token("old-refresh")
    await gateway.aclose()

    assert uid == "uid-1"
    assert pair.refresh_token == "new-refresh"
    assert pair.expires_in == 3600
    assert seen["form"] == {"grant_type": ["refresh_token"], "refresh_token": ["old-refresh"]}


async def test_refresh_response_without_tokens_is_rejected(private_key_pem):
    gateway = _gateway(lambda request: httpx.Response(200, json={"user_id": "uid-1"}), private_key_pem)

    with pytest.raises(ProviderRejected):
        await gateway.redeem_refresh_token("old-refresh")
    await gateway.aclose()


async def test_admin_calls_carry_service_account_token(private_key_pem):
    calls = []

    def handler(request):
        calls.append(request)
        if str(request.url) == OAUTH_TOKEN_URL:
            return httpx.Response(200, json={"access_token": "admin-token", "expires_in": 3600})
        return httpx.Response(200, json={"localId": "uid-9", "email": "new@example.com"})

    gateway = _gateway(handler, private_key_pem)
    created = await gateway.create_identity("new@example.com", "CorrectHorse1")
    await gateway.delete_identity(created.uid)
    await gateway.aclose()

    assert created.uid == "uid-9"
    # One token exchange, reused for both admin calls
    token_calls = [c for c in calls if str(c.url) == OAUTH_TOKEN_URL]
    admin_calls = [c for c in calls if str(c.url) != OAUTH_TOKEN_URL]
    assert len(token_calls) == 1
    assert all(c.headers["Authorization"] == "Bearer admin-token" for c in admin_calls)
    assert admin_calls[0].url.path.endswith("/projects/demo-project/accounts")


async def test_malformed_custom_attributes_are_rejected(private_key_pem):
    def handler(request):
        if str(request.url) == OAUTH_TOKEN_URL:
            return httpx.Response(200, json={"access_token": "admin-token", "expires_in": 3600})
        user = {"localId": "uid-9", "email": "taken@example.com", "customAttributes": "{not json"}
        return httpx.Response(200, json={"users": [user]})

    gateway = _gateway(handler, private_key_pem)

    with pytest.raises(ProviderRejected) as excinfo:
        await gateway.get_identity_by_email("taken@example.com")
    await gateway.aclose()

    assert excinfo.value.reason == "MALFORMED_RESPONSE"

async def test_custom_token_is_signed_by_service_account(private_key_pem):
    gateway = _gateway(lambda request: httpx.Response(500), private_key_pem)

    token = await gateway.mint_custom_token("uid-1")

    public_key = serialization.load_pem_private_key(
        private_key_pem.encode("ascii"), password=None
    ).public_key()
    claims = jwt.decode(token, public_key, algorithms=["RS256"], audience=CUSTOM_TOKEN_AUDIENCE)
    assert claims["uid"] == "uid-1"
    assert claims["iss"] == "svc@demo-project.iam.gserviceaccount.com"
