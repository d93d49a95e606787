import fnmatch

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from loam.database.tables import (  # noqa: F401
    import_sessions_table,
    oauth_tokens_table,
    rides_table,
    scheduled_emails_table,
    users_table,
)
from loam.database.tables.base_class import Base
from loam.main.config import Settings, reset_settings, set_settings
from loam.redis.lua_scripts import LuaScripts


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Create test settings with explicit values for unit tests.

    Provides a clean, isolated configuration that doesn't depend on the .env
    file or environment variables.
    """
    return Settings(
        # Minimal database settings (unit tests use SQLite)
        postgres_user="unit_test_user",
        postgres_host="localhost",
        postgres_password="unit_test_password",
        postgres_port=5432,
        postgres_db="unit_test_db",

        # Redis settings (unit tests use FakeRedis)
        redis_host="localhost",
        redis_port=6379,

        # Security
        session_secret="unit-test-session-secret-with-enough-entropy",
        resend_api_key="re_unit_test",

        # Provider credentials
        strava_client_id="strava-client",
        strava_client_secret="strava-secret",
        whoop_client_id="whoop-client",
        whoop_client_secret="whoop-secret",

        # Testing mode
        testing=True,
        dev=True,
    )


@pytest.fixture(autouse=True)
def use_test_settings(test_settings):
    """Install test settings for the duration of each test, then reset."""
    set_settings(test_settings)
    yield
    reset_settings()


class FakeRedis:
    """In-memory Redis with the subset of commands the coordination layer uses.

    Expiry is driven by ``advance()`` rather than wall time, so lease TTL
    behaviour is deterministic.
    """

    def __init__(self):
        self.store: dict[str, str] = {}
        self.expires_at: dict[str, float] = {}
        self.now = 0.0

    def advance(self, seconds: float) -> None:
        self.now += seconds
        for key in [k for k, t in self.expires_at.items() if t <= self.now]:
            self.store.pop(key, None)
            self.expires_at.pop(key, None)

    def ttl(self, key: str) -> float | None:
        if key not in self.expires_at:
            return None
        return self.expires_at[key] - self.now

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = value
        if ex is not None:
            self.expires_at[key] = self.now + ex
        else:
            self.expires_at.pop(key, None)
        return True

    async def get(self, key):
        return self.store.get(key)

    async def delete(self, *keys):
        deleted = 0
        for key in keys:
            if key in self.store:
                deleted += 1
                self.store.pop(key)
                self.expires_at.pop(key, None)
        return deleted

    async def eval(self, script, numkeys, *args):
        key, token = args[0], args[1]
        owned = self.store.get(key) == token
        if script == LuaScripts.RELEASE_LEASE:
            if owned:
                return await self.delete(key)
            return 0
        if script == LuaScripts.REFRESH_LEASE:
            if owned:
                self.expires_at[key] = self.now + int(args[2])
                return 1
            return 0
        raise AssertionError("Unexpected Lua script")

    async def scan_iter(self, match=None, count=None):
        for key in list(self.store):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def aclose(self):
        return None


class FailingRedis:
    """Redis stand-in where every command fails as if the server were down."""

    def __init__(self, error: Exception | None = None):
        self.error = error or ConnectionError("Connection refused")
        self.calls = 0

    async def _fail(self, *args, **kwargs):
        self.calls += 1
        raise self.error

    set = get = delete = eval = _fail

    def scan_iter(self, *args, **kwargs):
        raise self.error

    async def aclose(self):
        return None


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def failing_redis():
    return FailingRedis()


@pytest.fixture
async def session_factory(tmp_path):
    """Session factory over a file-backed SQLite database.

    A file (rather than ``:memory:``) gives every session its own connection,
    so concurrent claims really contend for the same rows.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'loam.db'}",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, autobegin=False)
    yield factory

    await engine.dispose()
