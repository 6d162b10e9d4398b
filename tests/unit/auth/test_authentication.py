"""
Tests for bearer token authentication.

Tests authenticate_token and authenticate_admin_token against the
settings attached to the application.
"""

from types import SimpleNamespace

import pytest
from fastapi.security import HTTPAuthorizationCredentials

from lognexus.core.auth import authenticate_admin_token, authenticate_token
from lognexus.core.exceptions import AuthenticationError


def make_request(settings):
    return SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace(settings=settings)))


def tokens(settings):
    """Active API key, inactive API key and admin token from settings."""
    keys = settings.security.api_keys
    active = next(k for k, info in keys.items() if info.get("active"))
    inactive = next(k for k, info in keys.items() if not info.get("active"))
    return active, inactive, settings.security.admin_token


def bearer(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


class TestAuthenticateToken:
    """API key authentication."""

    @pytest.mark.asyncio
    async def test_valid_token(self, test_settings):
        active, _, _ = tokens(test_settings)
        assert await authenticate_token(make_request(test_settings), bearer(active)) == active

    @pytest.mark.asyncio
    async def test_missing_credentials(self, test_settings):
        with pytest.raises(AuthenticationError, match="Missing"):
            await authenticate_token(make_request(test_settings), None)

    @pytest.mark.asyncio
    async def test_empty_token(self, test_settings):
        with pytest.raises(AuthenticationError):
            await authenticate_token(make_request(test_settings), bearer(""))

    @pytest.mark.asyncio
    async def test_unknown_token(self, test_settings):
        with pytest.raises(AuthenticationError, match="Invalid"):
            await authenticate_token(make_request(test_settings), bearer("unknown_token_123456"))

    @pytest.mark.asyncio
    async def test_inactive_token(self, test_settings):
        with pytest.raises(AuthenticationError, match="inactive"):
            await authenticate_token(make_request(test_settings), bearer(tokens(test_settings)[1]))

    @pytest.mark.asyncio
    async def test_error_maps_to_401(self, test_settings):
        with pytest.raises(AuthenticationError) as exc_info:
            await authenticate_token(make_request(test_settings), bearer("unknown_token_123456"))
        assert exc_info.value.status_code == 401
        assert exc_info.value.error_code == "authentication_error"


class TestAuthenticateAdminToken:
    """Admin token authentication for rule and audit management."""

    @pytest.mark.asyncio
    async def test_admin_token(self, test_settings):
        _, _, admin = tokens(test_settings)
        assert await authenticate_admin_token(make_request(test_settings), bearer(admin)) == admin

    @pytest.mark.asyncio
    async def test_api_key_is_not_admin(self, test_settings):
        with pytest.raises(AuthenticationError, match="admin"):
            await authenticate_admin_token(make_request(test_settings), bearer(tokens(test_settings)[0]))

    @pytest.mark.asyncio
    async def test_rejected_without_configured_admin_token(self, test_settings):
        settings = test_settings.model_copy(
            update={"security": test_settings.security.model_copy(update={"admin_token": ""})}
        )
        with pytest.raises(AuthenticationError):
            await authenticate_admin_token(make_request(settings), bearer(tokens(test_settings)[2]))
