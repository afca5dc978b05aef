"""Tests for Supabase bearer-token resolution.

Covers:
- Valid token: user id parsed from /auth/v1/user
- Invalid / expired token: 401 → AuthenticationError
- Provider outage and timeout → CollaboratorError
- Missing configuration and malformed Authorization headers
"""

from __future__ import annotations

import uuid

import httpx
import pytest

from src.auth.provider import SupabaseAuthProvider, parse_bearer
from src.config import AuthSettings
from src.lifecycle.errors import AuthenticationError, CollaboratorError

# ── Helpers ──────────────────────────────────────────────────────────


def _make_settings(url: str = "https://proj.supabase.co") -> AuthSettings:
    return AuthSettings(supabase_url=url, supabase_anon_key="anon-key", auth_timeout=2.0)


def _make_provider(handler, settings: AuthSettings | None = None) -> SupabaseAuthProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SupabaseAuthProvider(settings or _make_settings(), client=client)


# ── Resolution ───────────────────────────────────────────────────────


class TestSupabaseAuthProvider:

    @pytest.mark.asyncio()
    async def test_valid_token(self):
        user_id = uuid.uuid4()
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": str(user_id), "email": "a@b.c"})

        provider = _make_provider(handler)

        assert await provider.resolve("jwt-token") == user_id
        assert seen[0].url == "https://proj.supabase.co/auth/v1/user"
        assert seen[0].headers["Authorization"] == "Bearer jwt-token"
        assert seen[0].headers["apikey"] == "anon-key"

    @pytest.mark.asyncio()
    async def test_expired_token(self):
        provider = _make_provider(lambda request: httpx.Response(401, json={"msg": "expired"}))

        with pytest.raises(AuthenticationError):
            await provider.resolve("old-token")

    @pytest.mark.asyncio()
    async def test_payload_without_id(self):
        provider = _make_provider(lambda request: httpx.Response(200, json={}))

        with pytest.raises(AuthenticationError):
            await provider.resolve("weird-token")

    @pytest.mark.asyncio()
    async def test_provider_error(self):
        provider = _make_provider(lambda request: httpx.Response(502))

        with pytest.raises(CollaboratorError):
            await provider.resolve("token")

    @pytest.mark.asyncio()
    async def test_provider_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        provider = _make_provider(handler)

        with pytest.raises(CollaboratorError):
            await provider.resolve("token")

    @pytest.mark.asyncio()
    async def test_unconfigured(self):
        provider = _make_provider(lambda request: httpx.Response(200), settings=_make_settings(url=""))

        with pytest.raises(CollaboratorError):
            await provider.resolve("token")

    @pytest.mark.asyncio()
    async def test_empty_token(self):
        provider = _make_provider(lambda request: httpx.Response(200))

        with pytest.raises(AuthenticationError):
            await provider.resolve("")


class TestParseBearer:

    def test_extracts_token(self):
        assert parse_bearer("Bearer abc.def") == "abc.def"

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer ", "bearer abc"])
    def test_rejects_malformed(self, header):
        with pytest.raises(AuthenticationError):
            parse_bearer(header)
