"""Tests for TokenRefreshService."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import sqlalchemy as sa

from loam.coordination.single_flight import SingleFlightRegistry
from loam.database.tables.oauth_tokens_table import OAuthTokens
from loam.database.tables.users_table import Users
from loam.main.models import OAuthProvider
from loam.tokens.token_refresh import (
    ProviderConfig,
    TokenRefreshService,
    build_token_services,
)

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class FakeTokenEndpoint:
    """aiohttp session stand-in whose POST blocks until ``release`` is set."""

    def __init__(self, status=200, payload=None, block=False):
        self.status = status
        self.payload = payload or {}
        self.release = asyncio.Event()
        if not block:
            self.release.set()
        self.calls = []

    def __call__(self):
        return self

    def post(self, url, data=None):
        self.calls.append((url, data))
        endpoint = self

        class _Context:
            async def __aenter__(self):
                await endpoint.release.wait()
                response = MagicMock()
                response.status = endpoint.status
                response.json = AsyncMock(return_value=endpoint.payload)
                response.text = AsyncMock(return_value="invalid_grant")
                return response

            async def __aexit__(self, *exc):
                return False

        return _Context()


async def add_token(session_factory, *, expires_at, refresh_token="refresh-1", provider="whoop"):
    user_id = uuid4()
    async with session_factory() as session, session.begin():
        session.add(Users(id=user_id, email=f"{user_id}@example.com"))
        await session.flush()
        session.add(
            OAuthTokens(
                id=uuid4(),
                user_id=user_id,
                provider=provider,
                access_token="access-1",
                refresh_token=refresh_token,
                expires_at=expires_at,
            )
        )
    return user_id


async def load_token(session_factory, user_id):
    async with session_factory() as session, session.begin():
        return await session.scalar(sa.select(OAuthTokens).where(OAuthTokens.user_id == user_id))


def make_service(session_factory, endpoint, provider=OAuthProvider.WHOOP):
    config = ProviderConfig(
        provider=provider,
        token_url="https://auth.example.test/token",
        client_id="client",
        client_secret="secret",
    )
    return TokenRefreshService(
        config,
        SingleFlightRegistry(name="test"),
        session=endpoint,
        session_factory=session_factory,
        clock=lambda: NOW,
    )


class TestGetValidToken:
    async def test_fresh_token_is_returned_without_refresh(self, session_factory):
        user_id = await add_token(session_factory, expires_at=NOW + timedelta(hours=1))
        endpoint = FakeTokenEndpoint()

        token = await make_service(session_factory, endpoint).get_valid_token(user_id)

        assert token == "access-1"
        assert endpoint.calls == []

    async def test_unknown_user_has_no_token(self, session_factory):
        assert await make_service(session_factory, FakeTokenEndpoint()).get_valid_token(uuid4()) is None

    async def test_token_inside_buffer_is_refreshed(self, session_factory):
        user_id = await add_token(session_factory, expires_at=NOW + timedelta(minutes=2))
        endpoint = FakeTokenEndpoint(
            payload={"access_token": "access-2", "refresh_token": "refresh-2", "expires_in": 3600}
        )

        token = await make_service(session_factory, endpoint).get_valid_token(user_id)

        assert token == "access-2"
        url, form = endpoint.calls[0]
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "refresh-1"
        assert form["client_secret"] == "secret"
        row = await load_token(session_factory, user_id)
        assert row.access_token == "access-2"
        assert row.refresh_token == "refresh-2"
        assert row.expires_at.replace(tzinfo=timezone.utc) == NOW + timedelta(hours=1)

    async def test_concurrent_callers_share_one_refresh(self, session_factory):
        user_id = await add_token(session_factory, expires_at=NOW - timedelta(minutes=1))
        endpoint = FakeTokenEndpoint(
            payload={"access_token": "access-2", "refresh_token": "refresh-2", "expires_in": 3600},
            block=True,
        )
        service = make_service(session_factory, endpoint)

        callers = [asyncio.create_task(service.get_valid_token(user_id)) for _ in range(5)]
        while not endpoint.calls:
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.05)
        endpoint.release.set()
        results = await asyncio.gather(*callers)

        assert results == ["access-2"] * 5
        assert len(endpoint.calls) == 1

    async def test_failed_refresh_returns_none(self, session_factory):
        user_id = await add_token(session_factory, expires_at=NOW - timedelta(minutes=1))
        endpoint = FakeTokenEndpoint(status=400)

        token = await make_service(session_factory, endpoint).get_valid_token(user_id)

        assert token is None
        assert (await load_token(session_factory, user_id)).access_token == "access-1"

    async def test_missing_refresh_token_returns_none(self, session_factory):
        user_id = await add_token(
            session_factory, expires_at=NOW - timedelta(minutes=1), refresh_token=""
        )
        endpoint = FakeTokenEndpoint()

        assert await make_service(session_factory, endpoint).get_valid_token(user_id) is None
        assert endpoint.calls == []

    async def test_strava_absolute_expiry(self, session_factory):
        user_id = await add_token(
            session_factory, expires_at=NOW - timedelta(minutes=1), provider="strava"
        )
        expires_at = NOW + timedelta(hours=6)
        endpoint = FakeTokenEndpoint(
            payload={"access_token": "access-2", "expires_at": int(expires_at.timestamp())}
        )

        await make_service(session_factory, endpoint, OAuthProvider.STRAVA).get_valid_token(user_id)

        row = await load_token(session_factory, user_id)
        assert row.expires_at.replace(tzinfo=timezone.utc) == expires_at
        # No rotated refresh token in the response, the old one is kept
        assert row.refresh_token == "refresh-1"


class TestBuildTokenServices:
    def test_one_service_per_provider(self, test_settings):
        registry = SingleFlightRegistry()

        services = build_token_services(registry, test_settings)

        assert set(services) == set(OAuthProvider)
        assert services[OAuthProvider.STRAVA].config.client_id == "strava-client"
        assert services[OAuthProvider.WHOOP].registry is registry
