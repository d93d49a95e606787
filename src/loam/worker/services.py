"""Process-wide coordination state, built once per worker process.

Everything that must be shared within a process (the Nominatim and email
gates, the token single-flight registry, the geocode cache) lives on one
``BackgroundServices`` instance instead of module globals, so tests can
build as many independent copies as they like.
"""

from typing import Optional

import redis.asyncio as aioredis

from loam.coordination.claims import SessionFactory
from loam.coordination.coordinator import PeriodicCoordinator
from loam.coordination.rate_gate import RateLimitedGate
from loam.coordination.single_flight import SingleFlightRegistry
from loam.emails.email_scheduler import build_email_scheduler
from loam.emails.email_sender import EmailSender, ResendEmailSender
from loam.geocoding.reverse_geocoder import ReverseGeocoder, build_reverse_geocoder
from loam.imports.import_session_checker import build_import_session_checker
from loam.main.aiohttp_client import AioHttpClient, aiohttp_client
from loam.main.config import Settings, get_settings
from loam.main.logging import get_logger
from loam.main.models import OAuthProvider
from loam.redis.connection import close_redis_client, create_redis_client
from loam.tokens.token_refresh import TokenRefreshService, build_token_services

logger = get_logger(__name__)


class BackgroundServices:
    def __init__(
        self,
        settings: Settings,
        redis_client: Optional[aioredis.Redis],
        *,
        email_sender: Optional[EmailSender] = None,
        session_factory: Optional[SessionFactory] = None,
        http_client: AioHttpClient = aiohttp_client,
    ):
        self.settings = settings
        self.redis = redis_client
        self.http_client = http_client

        self.geocode_gate = RateLimitedGate(
            settings.geocode_min_interval_seconds, name="nominatim"
        )
        self.email_gate = RateLimitedGate(settings.email_send_interval_seconds, name="email")
        self.token_registry = SingleFlightRegistry(
            max_age_seconds=settings.token_refresh_timeout_seconds,
            sweep_interval_seconds=settings.token_refresh_sweep_interval_seconds,
            name="token_refresh",
        )

        self.geocoder: ReverseGeocoder = build_reverse_geocoder(
            redis_client, gate=self.geocode_gate, settings=settings
        )
        self.token_services: dict[OAuthProvider, TokenRefreshService] = build_token_services(
            self.token_registry, settings=settings, session_factory=session_factory
        )

        self.coordinators: list[PeriodicCoordinator] = []
        if settings.email_scheduler_enabled:
            self.coordinators.append(
                build_email_scheduler(
                    redis_client,
                    email_sender or ResendEmailSender(settings=settings),
                    self.email_gate,
                    settings=settings,
                    session_factory=session_factory,
                )
            )
        if settings.import_session_checker_enabled:
            self.coordinators.append(
                build_import_session_checker(
                    redis_client, settings=settings, session_factory=session_factory
                )
            )

    @classmethod
    def create(cls, settings: Optional[Settings] = None, **kwargs) -> "BackgroundServices":
        settings = settings or get_settings()
        try:
            redis_client = create_redis_client(settings)
        except Exception as exc:
            # Every Redis call site has a documented fallback
            logger.warning(f"Redis client unavailable, continuing without it: {exc}")
            redis_client = None
        return cls(settings, redis_client, **kwargs)

    def token_service(self, provider: OAuthProvider) -> TokenRefreshService:
        return self.token_services[provider]

    async def start(self) -> None:
        if self.http_client.session is None:
            self.http_client.start()
        self.token_registry.start_sweeper()
        for coordinator in self.coordinators:
            coordinator.start()
        logger.info(
            "Background services started",
            extra={"coordinators": [c.name for c in self.coordinators]},
        )

    async def stop(self) -> None:
        for coordinator in self.coordinators:
            await coordinator.stop()
        await self.token_registry.stop_sweeper()
        await self.http_client.stop()
        await close_redis_client(self.redis)
        logger.info("Background services stopped")
