"""Application settings and configuration.

This module defines all configuration options for the DonorGuard service.
Settings are loaded from environment variables with sensible defaults.
"""

from enum import Enum

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FailurePolicy(str, Enum):
    """What a component does when one of its dependencies is unreachable."""

    OPEN = "open"      # allow the action
    CLOSED = "closed"  # deny the action


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="DonorGuard", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Operator authentication
    secret_key: str = Field(default="change-me", alias="SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    admin_scope: str = Field(default="abuse:admin", alias="ADMIN_SCOPE")
    admin_token_ttl_minutes: int = Field(default=60, alias="ADMIN_TOKEN_TTL_MINUTES")
    verification_token_ttl_seconds: int = Field(
        default=900, alias="VERIFICATION_TOKEN_TTL_SECONDS"
    )

    # Database configuration (donor accounts, abuse events)
    database_url: str = Field(default="sqlite:///./donorguard.db", alias="DATABASE_URL")
    test_database_url: str | None = Field(default=None, alias="TEST_DATABASE_URL")
    use_testing_database: bool = Field(default=False, alias="USE_TEST_DATABASE")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # Shared counter store
    counter_store_backend: str = Field(default="redis", alias="COUNTER_STORE_BACKEND")
    redis_url: str = Field(default="redis://localhost:6379", alias="REDIS_URL")
    redis_socket_timeout_seconds: float = Field(default=2.0, alias="REDIS_SOCKET_TIMEOUT_SECONDS")

    # One-time passwords
    otp_ttl_seconds: int = Field(default=600, alias="OTP_TTL_SECONDS")
    otp_cooldown_seconds: int = Field(default=120, alias="OTP_COOLDOWN_SECONDS")
    otp_max_attempts: int = Field(default=3, alias="OTP_MAX_ATTEMPTS")
    otp_length: int = Field(default=6, alias="OTP_LENGTH")

    # Bot verification (Cloudflare Turnstile compatible)
    captcha_secret_key: str = Field(default="", alias="CAPTCHA_SECRET_KEY")
    captcha_verify_url: str = Field(
        default="https://challenges.cloudflare.com/turnstile/v0/siteverify",
        alias="CAPTCHA_VERIFY_URL",
    )
    captcha_timeout_seconds: float = Field(default=10.0, alias="CAPTCHA_TIMEOUT_SECONDS")
    captcha_min_token_length: int = Field(default=10, alias="CAPTCHA_MIN_TOKEN_LENGTH")
    captcha_max_token_length: int = Field(default=2048, alias="CAPTCHA_MAX_TOKEN_LENGTH")
    captcha_rate_limit: int = Field(default=10, alias="CAPTCHA_RATE_LIMIT")
    captcha_rate_window_seconds: int = Field(default=900, alias="CAPTCHA_RATE_WINDOW_SECONDS")
    captcha_failure_policy: FailurePolicy = Field(
        default=FailurePolicy.CLOSED, alias="CAPTCHA_FAILURE_POLICY"
    )

    # Replay protection; must exceed the upstream token lifetime
    replay_ttl_seconds: int = Field(default=86_400, alias="REPLAY_TTL_SECONDS")

    # Rate limiting
    rate_limit_failure_policy: FailurePolicy = Field(
        default=FailurePolicy.OPEN, alias="RATE_LIMIT_FAILURE_POLICY"
    )
    api_rate_limit: int = Field(default=100, alias="API_RATE_LIMIT")
    api_rate_window_seconds: int = Field(default=900, alias="API_RATE_WINDOW_SECONDS")
    api_rate_limit_enabled: bool = Field(default=True, alias="API_RATE_LIMIT_ENABLED")

    # Abuse monitoring
    abuse_event_retention_days: int = Field(default=7, alias="ABUSE_EVENT_RETENTION_DAYS")
    abuse_default_block_seconds: int = Field(default=1800, alias="ABUSE_DEFAULT_BLOCK_SECONDS")

    # Automatic abuse guards on the OTP routes
    subject_min_interval_seconds: int = Field(default=30, alias="SUBJECT_MIN_INTERVAL_SECONDS")
    subject_frequency_ttl_seconds: int = Field(default=180, alias="SUBJECT_FREQUENCY_TTL_SECONDS")
    otp_failure_lockout_threshold: int = Field(default=8, alias="OTP_FAILURE_LOCKOUT_THRESHOLD")
    otp_failure_lockout_seconds: int = Field(default=900, alias="OTP_FAILURE_LOCKOUT_SECONDS")
    pattern_history_size: int = Field(default=20, alias="PATTERN_HISTORY_SIZE")
    pattern_history_ttl_seconds: int = Field(default=86_400, alias="PATTERN_HISTORY_TTL_SECONDS")
    pattern_max_requests_per_hour: int = Field(default=25, alias="PATTERN_MAX_REQUESTS_PER_HOUR")
    pattern_max_distinct_subjects: int = Field(default=12, alias="PATTERN_MAX_DISTINCT_SUBJECTS")
    pattern_max_user_agents: int = Field(default=8, alias="PATTERN_MAX_USER_AGENTS")
    pattern_block_seconds: int = Field(default=1800, alias="PATTERN_BLOCK_SECONDS")
    pattern_enumeration_block_seconds: int = Field(
        default=1200, alias="PATTERN_ENUMERATION_BLOCK_SECONDS"
    )

    # Notification delivery
    notifier_backend: str = Field(default="log", alias="NOTIFIER_BACKEND")
    notifier_webhook_url: str | None = Field(default=None, alias="NOTIFIER_WEBHOOK_URL")
    notifier_webhook_token: str | None = Field(default=None, alias="NOTIFIER_WEBHOOK_TOKEN")
    notifier_timeout_seconds: float = Field(default=5.0, alias="NOTIFIER_TIMEOUT_SECONDS")
    otp_message_template: str = Field(
        default="Your verification code is {code}", alias="OTP_MESSAGE_TEMPLATE"
    )

    # CORS configuration for web frontend access
    cors_origins: list[str] = Field(default=["*"], alias="CORS_ORIGINS")
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")

    # Honour X-Forwarded-For when running behind a trusted reverse proxy
    trust_proxy_headers: bool = Field(default=False, alias="TRUST_PROXY_HEADERS")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )

    @property
    def database_url_sync(self) -> str:
        """Return a sync-compatible database URL for tooling such as Alembic."""
        url = self.effective_database_url
        if url.startswith("postgresql+asyncpg"):
            return url.replace("postgresql+asyncpg", "postgresql+psycopg", 1)
        return url

    @property
    def effective_database_url(self) -> str:
        """Return the database URL respecting testing overrides."""
        if self.use_testing_database and self.test_database_url:
            return self.test_database_url
        return self.database_url


settings = Settings()
