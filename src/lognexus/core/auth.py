"""
Bearer token authentication for the HTTP surface.

Ingestion uses configured API keys; rule and audit management use the
admin token.
"""

import hmac
from typing import Optional

import structlog
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..config import SecuritySettings, get_settings
from .exceptions import AuthenticationError

logger = structlog.get_logger(__name__)
security = HTTPBearer(auto_error=False)


def _security_settings(request: Request) -> SecuritySettings:
    settings = getattr(request.app.state, "settings", None) or get_settings()
    return settings.security


def _mask(token: str) -> str:
    return token[:8] + "..." if len(token) >= 8 else "invalid"


def _credentials(token: Optional[HTTPAuthorizationCredentials]) -> str:
    if not token or not token.credentials:
        raise AuthenticationError("Missing authentication token")
    return token.credentials.strip()


async def authenticate_token(
    request: Request,
    token: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """
    Authenticate bearer token against configured API keys.

    Validates the token exists in config and is active.
    """
    token_value = _credentials(token)

    valid_keys = _security_settings(request).api_keys

    if token_value not in valid_keys:
        logger.warning("Authentication failed: unknown token", token=_mask(token_value))
        raise AuthenticationError("Invalid authentication token")

    key_info = valid_keys[token_value]
    if not key_info.get("active", False):
        logger.warning(
            "Authentication failed: inactive token",
            token=_mask(token_value),
            key_name=key_info.get("name", "unknown"),
        )
        raise AuthenticationError("Authentication token is inactive")

    logger.debug(
        "Token authenticated successfully",
        token=_mask(token_value),
        key_name=key_info.get("name", "unknown"),
    )
    return token_value


async def authenticate_admin_token(
    request: Request,
    token: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """Authenticate the admin bearer token; rejected when no admin token is configured."""
    token_value = _credentials(token)

    admin_token = _security_settings(request).admin_token
    if not admin_token or not hmac.compare_digest(token_value.encode(), admin_token.encode()):
        logger.warning("Admin authentication failed", token=_mask(token_value))
        raise AuthenticationError("Invalid admin token")

    return token_value
