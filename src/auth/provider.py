"""Bearer-token resolution against the hosted auth provider (Supabase).

Endpoint: GET {supabase_url}/auth/v1/user
Auth: `apikey` header (anon key) + the caller's `Authorization: Bearer` token
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod

import httpx

from src.config import AuthSettings
from src.lifecycle.errors import AuthenticationError, CollaboratorError

logger = logging.getLogger(__name__)

_BEARER_PREFIX = "Bearer "


class AuthProvider(ABC):
    """Resolves an opaque access token to a user id."""

    @abstractmethod
    async def resolve(self, token: str) -> uuid.UUID:
        """Return the token's user id.

        Raises:
            AuthenticationError: Token missing, invalid or expired.
            CollaboratorError: Auth provider unreachable.
        """


class SupabaseAuthProvider(AuthProvider):
    """Thin async wrapper around Supabase's `/auth/v1/user` endpoint."""

    def __init__(self, auth: AuthSettings, client: httpx.AsyncClient | None = None) -> None:
        self._base_url = auth.supabase_url.rstrip("/")
        self._anon_key = auth.supabase_anon_key
        self._timeout = httpx.Timeout(auth.auth_timeout, connect=5.0)
        self._client = client

    async def resolve(self, token: str) -> uuid.UUID:
        if not token:
            raise AuthenticationError("Missing access token")
        if not self._base_url:
            raise CollaboratorError("Auth provider not configured")

        try:
            if self._client is not None:
                response = await self._fetch_user(self._client, token)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await self._fetch_user(client, token)
        except httpx.TimeoutException as exc:
            logger.warning("Auth provider timeout")
            raise CollaboratorError("Auth provider timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning("Auth provider request failed: %s", exc)
            raise CollaboratorError("Auth provider unavailable") from exc

        if response.status_code in (401, 403):
            raise AuthenticationError("Invalid or expired token")
        if response.status_code >= 400:
            logger.warning("Auth provider HTTP error %s", response.status_code)
            raise CollaboratorError(f"Auth provider returned {response.status_code}")

        payload: dict = response.json()
        try:
            return uuid.UUID(str(payload["id"]))
        except (KeyError, ValueError) as exc:
            raise AuthenticationError("Invalid or expired token") from exc

    async def _fetch_user(self, client: httpx.AsyncClient, token: str) -> httpx.Response:
        return await client.get(
            f"{self._base_url}/auth/v1/user",
            headers={
                "apikey": self._anon_key,
                "Authorization": f"{_BEARER_PREFIX}{token}",
            },
        )


def parse_bearer(header: str | None) -> str:
    """Extract the token from an `Authorization: Bearer <token>` header."""
    if not header or not header.startswith(_BEARER_PREFIX):
        raise AuthenticationError("No token provided")
    token = header[len(_BEARER_PREFIX):].strip()
    if not token:
        raise AuthenticationError("No token provided")
    return token
