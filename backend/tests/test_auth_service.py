"""
Tests for credential token authentication
"""
from datetime import timedelta

import jwt
import pytest

from app.core.config import settings
from app.core.exceptions import Unauthorized
from app.core.security import create_access_token, decode_access_token
from app.services.auth_service import AuthService, SocketUser

from conftest import ADMIN_ID, CANDIDATE_ID


@pytest.fixture
def auth_service(repository, fake_cache):
    return AuthService(repository, fake_cache)


class TestTokens:

    def test_round_trip_subject(self):
        payload = decode_access_token(create_access_token(42))

        assert payload["sub"] == "42"
        assert payload["type"] == "access"

    def test_wrong_token_type_is_rejected(self):
        token = jwt.encode({"sub": "42", "type": "refresh"}, settings.secret_key, algorithm=settings.algorithm)

        with pytest.raises(jwt.InvalidTokenError):
            decode_access_token(token)


class TestAuthenticate:
    """Handshake authentication"""

    @pytest.mark.asyncio
    async def test_valid_token_resolves_user(self, auth_service, fake_cache):
        user = await auth_service.authenticate(create_access_token(ADMIN_ID))

        assert user == SocketUser(id=ADMIN_ID, type="admin")
        fake_cache.aset.assert_awaited_once_with(f"socket_user:{ADMIN_ID}", {"id": ADMIN_ID, "type": "admin"})

    @pytest.mark.asyncio
    async def test_cached_user_skips_repository(self, repository, fake_cache):
        fake_cache.aget.return_value = {"id": CANDIDATE_ID, "type": "candidate"}
        repository.users.clear()

        user = await AuthService(repository, fake_cache).authenticate(create_access_token(CANDIDATE_ID))

        assert user.is_candidate

    @pytest.mark.asyncio
    @pytest.mark.parametrize("token, message", [
        (None, "Unauthorized access"),
        ("", "Unauthorized access"),
        ("garbage", "Invalid token"),
    ])
    async def test_bad_tokens(self, auth_service, token, message):
        with pytest.raises(Unauthorized) as excinfo:
            await auth_service.authenticate(token)

        assert excinfo.value.message == message

    @pytest.mark.asyncio
    async def test_expired_token(self, auth_service):
        token = create_access_token(ADMIN_ID, expires_delta=timedelta(seconds=-5))

        with pytest.raises(Unauthorized) as excinfo:
            await auth_service.authenticate(token)

        assert excinfo.value.message == "Token has expired"

    @pytest.mark.asyncio
    async def test_unknown_user(self, auth_service):
        with pytest.raises(Unauthorized) as excinfo:
            await auth_service.authenticate(create_access_token(12345))

        assert excinfo.value.message == "User not found"
