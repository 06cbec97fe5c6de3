import pytest

from tollgate.service.errors import (
    AccountIncomplete,
    AuthenticationFailed,
    InvalidCredentials,
    RefreshTokenError,
)
from tollgate.service.gateway import ProviderUnavailable
from tollgate.service.login import LoginService
from tollgate.service.refresh import MISSING_COOKIE_MESSAGE, TokenRefreshService
from tollgate.service.registration import RegistrationService


@pytest.fixture
def login_service(provider, profiles):
    return LoginService(provider, profiles)


@pytest.fixture
def refresh_service(provider, profiles):
    return TokenRefreshService(provider, profiles)


async def _register(provider, profiles, notifier, email="member@example.com"):
    service = RegistrationService(provider, profiles, notifier, reporter=lambda *a, **k: None)
    result = await service.register(email, "CorrectHorse1")
    await notifier.drain()
    return result


class TestLogin:
    async def test_login_returns_profile_and_tokens(self, login_service, provider, profiles, notifier):
        registered = await _register(provider, profiles, notifier)

        result = await login_service.login("Member@Example.com", "CorrectHorse1")

        assert result.profile.uid == registered.profile.uid
        claims = await provider.verify_id_token(result.tokens.id_token)
        assert claims["email"] == "member@example.com"

    async def test_wrong_password_and_unknown_email_look_identical(
        self, login_service, provider, profiles, notifier
    ):
        await _register(provider, profiles, notifier)

        with pytest.raises(InvalidCredentials) as wrong_password:
            await login_service.login("member@example.com", "WrongHorse1")
        with pytest.raises(InvalidCredentials) as unknown_email:
            await login_service.login("nobody@example.com", "CorrectHorse1")

        assert wrong_password.value.message == unknown_email.value.message
        assert wrong_password.value.status_code == unknown_email.value.status_code == 401
        assert wrong_password.value.track is False

    async def test_identity_without_profile_is_incomplete_account(self, login_service, provider):
        identity = await provider.create_identity("half@example.com", "CorrectHorse1")

        with pytest.raises(AccountIncomplete) as excinfo:
            await login_service.login("half@example.com", "CorrectHorse1")

        assert excinfo.value.status_code == 500
        assert excinfo.value.detail == {"uid": identity.uid}

    async def test_provider_outage_is_server_failure(self, login_service, provider):
        async def unavailable(email, password):
            raise ProviderUnavailable("timed out", reason="TIMEOUT")

        provider.verify_password = unavailable

        with pytest.raises(AuthenticationFailed) as excinfo:
            await login_service.login("member@example.com", "CorrectHorse1")

        assert excinfo.value.status_code == 500
        assert excinfo.value.track is True


class TestRefresh:
    async def test_refresh_rotates_token(self, refresh_service, provider, profiles, notifier):
        registered = await _register(provider, profiles, notifier)
        original = registered.tokens.refresh_token

        result = await refresh_service.refresh(original)

        assert result.profile.uid == registered.profile.uid
        assert result.tokens.refresh_token != original
        await provider.verify_id_token(result.tokens.id_token)

    async def test_redeemed_token_cannot_be_replayed(self, refresh_service, provider, profiles, notifier):
        registered = await _register(provider, profiles, notifier)
        await refresh_service.refresh(registered.tokens.refresh_token)

        with pytest.raises(RefreshTokenError):
            await refresh_service.refresh(registered.tokens.refresh_token)

    @pytest.mark.parametrize("token", [None, "", "   "])
    async def test_missing_token(self, refresh_service, token):
        with pytest.raises(RefreshTokenError) as excinfo:
            await refresh_service.refresh(token)

        assert excinfo.value.message == MISSING_COOKIE_MESSAGE
        assert excinfo.value.status_code == 401

    async def test_unknown_token(self, refresh_service):
        with pytest.raises(RefreshTokenError):
            await refresh_service.refresh("not-a-real-token")

    async def test_provider_outage_is_refresh_error(self, refresh_service, provider):
        async def unavailable(token):
            raise ProviderUnavailable("timed out", reason="TIMEOUT")

        provider.redeem_refresh_token = unavailable

        with pytest.raises(RefreshTokenError):
            await refresh_service.refresh("anything")

    async def test_uid_without_profile_is_refresh_error(self, refresh_service, provider):
        identity = await provider.create_identity("half@example.com", "CorrectHorse1")
        pair = await provider.exchange_custom_token(await provider.mint_custom_token(identity.uid))

        with pytest.raises(RefreshTokenError):
            await refresh_service.refresh(pair.refresh_token)
