"""Error responses share one envelope: status, error code and message, request id."""

import json

import pytest
from pydantic import ValidationError

from tollgate.api.error_handling import _STATUS_TO_CODE, _error_code_for_status, _error_response
from tollgate.api.schemas import (
    ChangeEmailRequest,
    Envelope,
    ErrorBody,
    RegisterRequest,
    VerifyEmailChangeRequest,
)


class TestErrorBody:
    def test_rejects_unknown_codes(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="no")

    @pytest.mark.parametrize("code", sorted(set(_STATUS_TO_CODE.values())))
    def test_mapped_codes_are_valid(self, code):
        assert ErrorBody(code=code, message="m").code == code


def test_unknown_status_maps_to_server_error():
    assert _error_code_for_status(418) == "server_error"


def test_error_response_shape():
    response = _error_response(429, "slow down", {"retry_after": 30})
    body = json.loads(response.body)

    assert response.status_code == 429
    assert body["status"] == "error"
    assert body["error"] == {"code": "rate_limited", "message": "slow down", "details": {"retry_after": 30}}
    assert body["request_id"]


def test_envelope_status_is_constrained():
    with pytest.raises(ValidationError):
        Envelope(status="maybe")


class TestRequestModels:
    def test_register_accepts_camel_case_profile_fields(self):
        body = RegisterRequest.model_validate(
            {
                "email": " New@Example.com ",
                "password": "CorrectHorse1",
                "firstName": "Ada",
                "visaType": "H1B",
                "currentLocation": {"city": "Austin", "country": "US"},
            }
        )

        assert body.email == "new@example.com"
        assert body.profile_fields() == {
            "first_name": "Ada",
            "visa_type": "H1B",
            "current_location": {"city": "Austin", "country": "US"},
        }

    @pytest.mark.parametrize("email", ["plain", "a@b", "a b@example.com", "@example.com"])
    def test_register_rejects_bad_email(self, email):
        with pytest.raises(ValidationError):
            RegisterRequest(email=email, password="CorrectHorse1")

    def test_password_length_bounds(self):
        with pytest.raises(ValidationError):
            RegisterRequest(email="a@example.com", password="short")
        with pytest.raises(ValidationError):
            RegisterRequest(email="a@example.com", password="x" * 129)

    def test_change_email_accepts_both_spellings(self):
        assert ChangeEmailRequest.model_validate({"newEmail": "a@example.com", "password": "p"}).new_email == "a@example.com"
        assert ChangeEmailRequest.model_validate({"new_email": "a@example.com", "password": "p"}).new_email == "a@example.com"

    def test_verification_token_required(self):
        with pytest.raises(ValidationError):
            VerifyEmailChangeRequest.model_validate({"verificationToken": ""})
