import logging
import os
import sys
from typing import Optional

from pydantic import computed_field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from loam.main.models import OnUnavailable


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="allow")

    # Infrastructure dependencies
    postgres_user: str
    postgres_host: str
    postgres_password: str
    postgres_port: int
    postgres_db: str
    redis_host: str
    redis_port: int

    # Redis connection resilience
    redis_db: Optional[int] = None
    redis_conn_timeout: int = 5
    redis_conn_retries: int = 5
    redis_conn_retry_delay: int = 1
    redis_retry_on_timeout: bool = True
    redis_socket_keepalive: bool = True
    redis_health_check_interval: int = 30
    redis_max_connections: Optional[int] = None

    # Public URLs used in outgoing emails
    api_url: str = "http://localhost:4000"
    frontend_url: str = "http://localhost:5173"

    # Background worker configuration
    worker_max_jobs: int = 10
    worker_job_timeout_seconds: int = 300

    # Scheduled email dispatcher
    email_scheduler_enabled: bool = True
    email_scheduler_interval_seconds: int = 60
    email_scheduler_lock_ttl_seconds: int = 120  # Longer than the check interval
    email_scheduler_batch_size: int = 10  # Max scheduled emails per scan
    email_scheduler_shutdown_wait_seconds: int = 30
    email_recipient_batch_size: int = 50
    email_send_interval_seconds: float = 1.1  # Provider allows 1 email/second
    # Claims on scheduled_emails are the second line of defense, so availability wins
    email_scheduler_lock_policy: OnUnavailable = OnUnavailable.PROCEED_UNLOCKED

    # Import session reaper
    import_session_checker_enabled: bool = True
    import_session_checker_interval_seconds: int = 60
    import_session_checker_lock_ttl_seconds: int = 120
    import_session_checker_batch_size: int = 100
    import_session_checker_shutdown_wait_seconds: int = 10  # Keep container shutdown fast
    import_session_idle_minutes: int = 10
    import_session_stale_minutes: int = 30
    import_session_stuck_hours: int = 24
    # Completing a session is not cheaply idempotent, so exclusivity wins
    import_session_checker_lock_policy: OnUnavailable = OnUnavailable.SKIP

    coordinator_shutdown_poll_seconds: float = 1.0

    # Email delivery
    resend_api_key: Optional[str] = None
    resend_api_url: str = "https://api.resend.com/emails"
    email_from_address: str = "Loam Logger <hello@loamlogger.app>"
    session_secret: Optional[str] = None
    unsubscribe_token_expiry_days: int = 90

    # Reverse geocoding (Nominatim usage policy: 1 req/sec, User-Agent required)
    geocode_api_url: str = "https://nominatim.openstreetmap.org/reverse"
    geocode_user_agent: str = "LoamLogger/1.0 (bike ride tracking app)"
    geocode_min_interval_seconds: float = 1.1
    geocode_cache_ttl_seconds: int = 60 * 60 * 24 * 30  # Locations rarely change
    geocode_memory_cache_max_size: int = 1000
    geocode_coordinate_precision: int = 3  # ~111m cells

    # OAuth token refresh
    token_refresh_timeout_seconds: int = 30
    token_refresh_sweep_interval_seconds: int = 60
    token_expiry_buffer_seconds: int = 5 * 60
    garmin_token_url: Optional[str] = None
    garmin_client_id: Optional[str] = None
    garmin_client_secret: Optional[str] = None
    strava_token_url: str = "https://www.strava.com/oauth/token"
    strava_client_id: Optional[str] = None
    strava_client_secret: Optional[str] = None
    whoop_token_url: str = "https://api.prod.whoop.com/oauth/oauth2/token"
    whoop_client_id: Optional[str] = None
    whoop_client_secret: Optional[str] = None

    # Dev
    testing: bool = False
    dev: bool = False

    @model_validator(mode="after")
    def validate_coordinator_settings(self):
        """Ensure scheduling and lease values are sane."""
        positive = {
            "EMAIL_SCHEDULER_INTERVAL_SECONDS": self.email_scheduler_interval_seconds,
            "EMAIL_SCHEDULER_LOCK_TTL_SECONDS": self.email_scheduler_lock_ttl_seconds,
            "EMAIL_SCHEDULER_BATCH_SIZE": self.email_scheduler_batch_size,
            "EMAIL_RECIPIENT_BATCH_SIZE": self.email_recipient_batch_size,
            "IMPORT_SESSION_CHECKER_INTERVAL_SECONDS": self.import_session_checker_interval_seconds,
            "IMPORT_SESSION_CHECKER_LOCK_TTL_SECONDS": self.import_session_checker_lock_ttl_seconds,
            "IMPORT_SESSION_CHECKER_BATCH_SIZE": self.import_session_checker_batch_size,
            "EMAIL_SCHEDULER_SHUTDOWN_WAIT_SECONDS": self.email_scheduler_shutdown_wait_seconds,
            "IMPORT_SESSION_CHECKER_SHUTDOWN_WAIT_SECONDS": self.import_session_checker_shutdown_wait_seconds,
            "COORDINATOR_SHUTDOWN_POLL_SECONDS": self.coordinator_shutdown_poll_seconds,
            "TOKEN_REFRESH_TIMEOUT_SECONDS": self.token_refresh_timeout_seconds,
            "WORKER_MAX_JOBS": self.worker_max_jobs,
        }
        for name, value in positive.items():
            if value <= 0:
                logging.error(
                    "%s must be greater than zero. Current value: %s", name, value
                )
                sys.exit(1)

        if self.geocode_min_interval_seconds < 0 or self.email_send_interval_seconds < 0:
            logging.error(
                "Rate limit intervals cannot be negative (GEOCODE_MIN_INTERVAL_SECONDS=%s, "
                "EMAIL_SEND_INTERVAL_SECONDS=%s)",
                self.geocode_min_interval_seconds,
                self.email_send_interval_seconds,
            )
            sys.exit(1)

        if self.email_scheduler_lock_ttl_seconds < self.email_scheduler_interval_seconds:
            logging.warning(
                "EMAIL_SCHEDULER_LOCK_TTL_SECONDS (%s) is shorter than the scan interval (%s). "
                "The lease may expire before a slow scan finishes.",
                self.email_scheduler_lock_ttl_seconds,
                self.email_scheduler_interval_seconds,
            )

        if (
            self.import_session_checker_lock_ttl_seconds
            < self.import_session_checker_interval_seconds
        ):
            logging.warning(
                "IMPORT_SESSION_CHECKER_LOCK_TTL_SECONDS (%s) is shorter than the scan interval (%s).",
                self.import_session_checker_lock_ttl_seconds,
                self.import_session_checker_interval_seconds,
            )

        return self

    @computed_field
    @property
    def sync_database_url(self) -> str:
        return (
            f"postgresql://{self.postgres_user}:"
            f"{self.postgres_password}@{self.postgres_host}:"
            f"{self.postgres_port}/{self.postgres_db}"
        )

    @computed_field
    @property
    def database_url(self) -> str:
        return (
            f"postgresql+asyncpg://{self.postgres_user}:"
            f"{self.postgres_password}@{self.postgres_host}:"
            f"{self.postgres_port}/{self.postgres_db}"
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get settings singleton, creating it if needed.

    Returns:
        Settings: The application settings instance.
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def set_settings(settings: Settings) -> None:
    """Override settings (primarily for testing).

    Args:
        settings: The Settings instance to use.
    """
    global _settings
    _settings = settings


def reset_settings() -> None:
    """Reset settings to None (for test cleanup)."""
    global _settings
    _settings = None


def get_loglevel():
    loglevel = os.getenv("LOGLEVEL", "INFO")

    match loglevel:
        case "INFO":
            return logging.INFO
        case "WARNING":
            return logging.WARNING
        case "ERROR":
            return logging.ERROR
        case "CRITICAL":
            return logging.CRITICAL
        case "DEBUG":
            return logging.DEBUG
        case _:
            return logging.INFO
