"""Unit tests for auth and entitlement dependencies."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from jose import jwt

from app.api.deps.auth import (
    AuthenticatedUser,
    decode_access_token,
    get_current_user,
)
from app.api.deps.entitlement import SUBSCRIPTION_REQUIRED, require_premium
from app.core.exceptions import ForbiddenError, UnauthorizedError

SECRET = "test-jwt-secret"


def _token(claims: dict, secret: str = SECRET) -> str:
    return jwt.encode(claims, secret, algorithm="HS256")


def _credentials(token: str) -> MagicMock:
    creds = MagicMock()
    creds.credentials = token
    return creds


@pytest.fixture(autouse=True)
def jwt_settings():
    with patch("app.api.deps.auth.settings") as mock_settings:
        mock_settings.jwt_secret = SECRET
        mock_settings.jwt_algorithm = "HS256"
        yield mock_settings


class TestDecodeAccessToken:
    def test_valid_token(self):
        user = decode_access_token(_token({"sub": "user-42", "email": "a@b.com"}))
        assert user == AuthenticatedUser(id="user-42", email="a@b.com")

    def test_numeric_subject_becomes_string(self):
        assert decode_access_token(_token({"sub": "42"})).id == "42"

    def test_wrong_secret(self):
        with pytest.raises(UnauthorizedError):
            decode_access_token(_token({"sub": "user-42"}, secret="other"))

    def test_expired_token(self):
        expired = datetime.now(UTC) - timedelta(minutes=1)
        with pytest.raises(UnauthorizedError):
            decode_access_token(_token({"sub": "user-42", "exp": int(expired.timestamp())}))

    def test_missing_subject(self):
        with pytest.raises(UnauthorizedError):
            decode_access_token(_token({"email": "a@b.com"}))

    def test_garbage_token(self):
        with pytest.raises(UnauthorizedError):
            decode_access_token("not-a-jwt")

    def test_unconfigured_secret_rejects(self, jwt_settings):
        jwt_settings.jwt_secret = ""
        with pytest.raises(UnauthorizedError):
            decode_access_token(_token({"sub": "user-42"}))


class TestGetCurrentUser:
    @pytest.mark.asyncio
    async def test_no_credentials_unauthorized(self):
        with pytest.raises(UnauthorizedError) as exc_info:
            await get_current_user(None)
        assert exc_info.value.status_code == 401
        assert exc_info.value.detail["code"] == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_returns_user(self):
        user = await get_current_user(_credentials(_token({"sub": "user-42"})))
        assert user.id == "user-42"
