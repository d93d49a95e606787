"""OAuth access-token refresh for the ride data providers.

Providers rotate the refresh token on every refresh (WHOOP invalidates the
old one immediately), so two concurrent refreshes for one user would leave
one of them holding a dead token. Refreshes are therefore single-flighted
per provider and user.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from uuid import UUID

import aiohttp
import sqlalchemy as sa
from pydantic import BaseModel, ConfigDict

from loam.coordination.claims import SessionFactory
from loam.coordination.single_flight import SingleFlightRegistry
from loam.database.database import sessionmanager
from loam.database.tables.oauth_tokens_table import OAuthTokens
from loam.main.aiohttp_client import aiohttp_client
from loam.main.config import Settings, get_settings
from loam.main.logging import get_logger
from loam.main.models import OAuthProvider

logger = get_logger(__name__)

DEFAULT_EXPIRES_IN_SECONDS = 3600


@dataclass(frozen=True)
class ProviderConfig:
    provider: OAuthProvider
    token_url: Optional[str]
    client_id: Optional[str]
    client_secret: Optional[str] = None

    @classmethod
    def from_settings(cls, provider: OAuthProvider, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        prefix = provider.value
        return cls(
            provider=provider,
            token_url=getattr(settings, f"{prefix}_token_url"),
            client_id=getattr(settings, f"{prefix}_client_id"),
            client_secret=getattr(settings, f"{prefix}_client_secret"),
        )


class StoredToken(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: UUID
    provider: OAuthProvider
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: datetime


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenRefreshService:
    """Hands out valid access tokens, refreshing expired ones at most once at a time.

    Args:
        config: Provider endpoint and client credentials.
        registry: Single-flight registry shared by every service in the process.
        session: Callable returning the shared aiohttp session.
        session_factory: Async context manager factory yielding a DB session.
        expiry_buffer: Tokens expiring within this window are refreshed early.
    """

    def __init__(
        self,
        config: ProviderConfig,
        registry: SingleFlightRegistry,
        session: Callable[[], aiohttp.ClientSession] = aiohttp_client,
        session_factory: Optional[SessionFactory] = None,
        expiry_buffer: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.config = config
        self.registry = registry
        self._session = session
        self._session_factory = session_factory or sessionmanager.session
        self._expiry_buffer = expiry_buffer
        self._clock = clock

    @property
    def provider(self) -> OAuthProvider:
        return self.config.provider

    def _is_fresh(self, token: StoredToken) -> bool:
        return self._clock() < _as_utc(token.expires_at) - self._expiry_buffer

    async def _load(self, user_id: UUID) -> Optional[StoredToken]:
        stmt = (
            sa.select(OAuthTokens)
            .where(OAuthTokens.user_id == user_id)
            .where(OAuthTokens.provider == self.provider.value)
        )
        async with self._session_factory() as session, session.begin():
            row = await session.scalar(stmt)
            return StoredToken.model_validate(row) if row is not None else None

    async def get_valid_token(self, user_id: UUID) -> Optional[str]:
        """Return a usable access token, or None if the user has none or refresh failed."""
        token = await self._load(user_id)
        if token is None:
            return None

        if self._is_fresh(token):
            return token.access_token

        if not token.refresh_token:
            logger.error(
                f"No refresh token available for {self.provider.value}",
                extra={"user_id": str(user_id)},
            )
            return None

        return await self.registry.run_exclusive(
            f"{self.provider.value}:{user_id}",
            lambda: self._refresh_if_stale(user_id),
        )

    async def _refresh_if_stale(self, user_id: UUID) -> Optional[str]:
        # A flight that finished just before this one started may already
        # have stored a fresh token
        token = await self._load(user_id)
        if token is None or not token.refresh_token:
            return None
        if self._is_fresh(token):
            return token.access_token
        return await self._refresh(user_id, token.refresh_token)

    async def _refresh(self, user_id: UUID, refresh_token: str) -> Optional[str]:
        if not self.config.token_url or not self.config.client_id:
            logger.error(f"Missing token URL or client id for {self.provider.value}")
            return None

        logger.info(
            f"Refreshing expired {self.provider.value} token",
            extra={"user_id": str(user_id)},
        )

        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.config.client_id,
        }
        if self.config.client_secret:
            form["client_secret"] = self.config.client_secret

        try:
            async with self._session().post(self.config.token_url, data=form) as response:
                if response.status >= 400:
                    text = await response.text()
                    logger.error(
                        f"{self.provider.value} token refresh failed: {response.status}",
                        extra={"user_id": str(user_id), "error": text[:200]},
                    )
                    return None
                data = await response.json(content_type=None)

            access_token = data["access_token"]
            values = {
                "access_token": access_token,
                "expires_at": self._expires_at(data),
                "updated_at": sa.func.now(),
            }
            if data.get("refresh_token"):
                values["refresh_token"] = data["refresh_token"]

            stmt = (
                sa.update(OAuthTokens)
                .where(OAuthTokens.user_id == user_id)
                .where(OAuthTokens.provider == self.provider.value)
                .values(**values)
            )
            async with self._session_factory() as session, session.begin():
                await session.execute(stmt)
        except Exception as exc:
            logger.error(
                f"{self.provider.value} token refresh error",
                exc_info=True,
                extra={"user_id": str(user_id), "error": str(exc)},
            )
            return None

        logger.info(f"{self.provider.value} token refreshed", extra={"user_id": str(user_id)})
        return access_token

    def _expires_at(self, data: dict) -> datetime:
        # Strava reports an absolute unix timestamp, the others a lifetime
        if data.get("expires_at"):
            return datetime.fromtimestamp(int(data["expires_at"]), tz=timezone.utc)
        expires_in = data.get("expires_in") or DEFAULT_EXPIRES_IN_SECONDS
        return self._clock() + timedelta(seconds=int(expires_in))


def build_token_services(
    registry: SingleFlightRegistry,
    settings: Optional[Settings] = None,
    session_factory: Optional[SessionFactory] = None,
) -> dict[OAuthProvider, TokenRefreshService]:
    settings = settings or get_settings()
    return {
        provider: TokenRefreshService(
            ProviderConfig.from_settings(provider, settings),
            registry,
            session_factory=session_factory,
            expiry_buffer=timedelta(seconds=settings.token_expiry_buffer_seconds),
        )
        for provider in OAuthProvider
    }
