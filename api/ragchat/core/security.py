"""
Security module for Microsoft Entra ID identities.

HTTP routes receive identities pre-validated by EasyAuth / APIM and only
parse the forwarded principal headers. WebSocket connections carry an
access token in the ``token`` query parameter, which is verified here
against the tenant's signing keys before the connection is registered.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import jwt
from fastapi import Depends, HTTPException, Request, status

from ragchat.core.config import Settings
from ragchat.core.errors import AuthenticationError

logger = logging.getLogger(__name__)

DEV_USER_ID = "dev-user-001"


@dataclass
class UserClaims:
    """Caller identity from the Entra ID principal."""

    user_id: str


def get_current_user(request: Request) -> UserClaims:
    """
    Extract user claims from the request.

    In production with EasyAuth / APIM, the validated identity is
    forwarded via headers (X-MS-CLIENT-PRINCIPAL-*). For local
    development, a mock user is returned when no auth headers are present.
    """
    # EasyAuth forwards the principal id as a header
    user_id = request.headers.get("X-MS-CLIENT-PRINCIPAL-ID")
    if user_id:
        return UserClaims(user_id=user_id)

    # Local development fallback
    return UserClaims(user_id=DEV_USER_ID)


def require_authenticated_user(
    user: UserClaims = Depends(get_current_user),
) -> UserClaims:
    """Dependency that rejects unauthenticated users in strict mode."""
    if not user.user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return user


class TokenVerifier(ABC):
    """Verifies an opaque bearer credential and returns a stable subject."""

    @abstractmethod
    async def verify(self, token: str | None) -> str:
        """
        Raises:
            AuthenticationError: The token is missing or not valid.
        """


class EntraTokenVerifier(TokenVerifier):
    """Validates Entra ID access tokens against the tenant JWKS."""

    def __init__(self, settings: Settings) -> None:
        self._audience = settings.entra_audience
        self._issuer = settings.entra_issuer
        self._jwks = jwt.PyJWKClient(settings.entra_jwks_url, cache_keys=True)

    async def verify(self, token: str | None) -> str:
        if not token:
            raise AuthenticationError("Token is not set.")
        # PyJWKClient fetches keys over blocking HTTP
        return await asyncio.to_thread(self._decode, token)

    def _decode(self, token: str) -> str:
        try:
            signing_key = self._jwks.get_signing_key_from_jwt(token)
            payload = jwt.decode(
                token,
                signing_key.key,
                algorithms=["RS256"],
                audience=self._audience,
                issuer=self._issuer,
            )
        except jwt.PyJWTError as exc:
            raise AuthenticationError(f"Token is not valid: {exc}") from exc

        subject = payload.get("oid") or payload.get("sub")
        if not subject:
            raise AuthenticationError("Token carries no subject claim.")
        return subject


class DevTokenVerifier(TokenVerifier):
    """Local development verifier: every connection is the mock user."""

    async def verify(self, token: str | None) -> str:
        return DEV_USER_ID


def build_token_verifier(settings: Settings) -> TokenVerifier:
    if not settings.auth_enabled:
        logger.warning("Authentication disabled. All connections map to %s.", DEV_USER_ID)
        return DevTokenVerifier()
    return EntraTokenVerifier(settings)
