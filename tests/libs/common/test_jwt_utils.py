"""Tests for bearer token validation."""

from __future__ import annotations

from datetime import timedelta

import pytest
from jose import jwt as jose_jwt

from common.core.app_error import AppException, Errors
from common.core.config_service import AuthSection
from common.core.jwt_utils import JWTValidator, create_access_token

AUTH = AuthSection(jwt_secret="unit-test-secret", jwt_audience="authenticated", admin_role="admin")


def test_valid_token_yields_user() -> None:
    token = create_access_token(AUTH, "user-1", email="a@example.com")

    data = JWTValidator(AUTH).validate_token(token)

    assert data.user_id == "user-1"
    assert data.email == "a@example.com"
    assert data.is_admin is False


def test_admin_role_from_app_metadata() -> None:
    token = create_access_token(AUTH, "ops-1", role="admin")

    data = JWTValidator(AUTH).validate_token(token)

    assert data.role == "admin"
    assert data.is_admin is True


def test_top_level_role_is_a_fallback() -> None:
    token = jose_jwt.encode({"sub": "u", "aud": "authenticated", "role": "authenticated"}, AUTH.jwt_secret, algorithm="HS256")

    data = JWTValidator(AUTH).validate_token(token)

    assert data.role == "authenticated"
    assert data.is_admin is False


@pytest.mark.parametrize(
    "token",
    [
        create_access_token(AUTH, "user-1", expires_in=timedelta(seconds=-30)),
        create_access_token(AUTH.model_copy(update={"jwt_secret": "other"}), "user-1"),
        create_access_token(AUTH.model_copy(update={"jwt_audience": "someone-else"}), "user-1"),
        jose_jwt.encode({"aud": "authenticated"}, AUTH.jwt_secret, algorithm="HS256"),
        "garbage",
    ],
)
def test_invalid_tokens_are_unauthorized(token: str) -> None:
    with pytest.raises(AppException) as exc_info:
        JWTValidator(AUTH).validate_token(token)
    assert Errors.Auth.UNAUTHORIZED.is_(exc_info.value)


def test_unconfigured_secret_rejects_everything() -> None:
    token = create_access_token(AUTH, "user-1")

    with pytest.raises(AppException) as exc_info:
        JWTValidator(AuthSection(jwt_secret="")).validate_token(token)
    assert Errors.Auth.UNAUTHORIZED.is_(exc_info.value)


def test_audience_check_can_be_disabled() -> None:
    auth = AUTH.model_copy(update={"jwt_audience": None})
    token = jose_jwt.encode({"sub": "user-1"}, auth.jwt_secret, algorithm="HS256")

    assert JWTValidator(auth).validate_token(token).user_id == "user-1"
