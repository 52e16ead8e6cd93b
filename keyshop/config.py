"""Centralized application configuration for all environments."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Final

from dotenv import load_dotenv

BASE_DIR: Final[Path] = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"

# Load environment variables once, prioritizing runtime env over file values
load_dotenv(dotenv_path=ENV_PATH, override=False)

G2A_SANDBOX_URL: Final[str] = "https://sandboxapi.g2a.com/v1"
G2A_PRODUCTION_URL: Final[str] = "https://api.g2a.com/integration-api/v1"


def _str_to_bool(value: str | bool | None, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _determine_database_url() -> str:
    """
    Return a connection string using the following precedence:
    1. Explicit DATABASE_URL
    2. Individual DB_* components (for PostgreSQL)
    3. Local SQLite fallback (for onboarding / tests)
    """
    explicit_url = os.getenv("DATABASE_URL")
    if explicit_url:
        return explicit_url

    username = os.getenv("DB_USERNAME")
    password = os.getenv("DB_PASSWORD")
    host = os.getenv("DB_HOST")
    port = os.getenv("DB_PORT")
    name = os.getenv("DB_NAME")

    if all([username, password, host, port, name]):
        driver = os.getenv("DB_DRIVER", "postgresql+psycopg2")
        return f"{driver}://{username}:{password}@{host}:{port}/{name}"

    # SQLite dev fallback stored under /db/app.db to keep repo tidy
    fallback_path = BASE_DIR / "db" / "app.db"
    fallback_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{fallback_path.as_posix()}"


def normalize_g2a_url(raw_url: str | None, env: str = "sandbox") -> str:
    """
    Return the reseller API base URL with the path the environment expects.

    Sandbox hosts serve the API under ``/v1``; every other host serves it
    under ``/integration-api/v1``.
    """
    if not raw_url or not raw_url.strip():
        return G2A_PRODUCTION_URL if env == "live" else G2A_SANDBOX_URL

    url = raw_url.strip()
    if not url.startswith("http"):
        url = f"https://{url}"
    url = url.rstrip("/")

    if "sandboxapi.g2a.com" in url:
        return url if url.endswith("/v1") else f"{url}/v1"
    if "/integration-api/v1" in url:
        return url
    if url.endswith("/integration-api"):
        return f"{url}/v1"
    if url.endswith("/v1"):
        url = url[: -len("/v1")]
    return f"{url}/integration-api/v1"


class Config:
    """Default runtime configuration shared across Flask, services, and scripts."""

    APP_NAME: Final[str] = os.getenv("APP_NAME", "Keyshop")
    APP_ENV: Final[str] = os.getenv("APP_ENV", "development")

    SECRET_KEY: Final[str] = os.getenv("SECRET_KEY", "change-me-in-prod")
    DEBUG: Final[bool] = _str_to_bool(os.getenv("FLASK_DEBUG"), default=APP_ENV == "development")
    TESTING: Final[bool] = _str_to_bool(os.getenv("FLASK_TESTING"), default=False)

    # Flask run configuration (used by run.py)
    FLASK_RUN_HOST: Final[str] = os.getenv("FLASK_RUN_HOST", "0.0.0.0")
    FLASK_RUN_PORT: Final[int] = int(os.getenv("FLASK_RUN_PORT", "5000"))

    # Database
    DATABASE_URL: Final[str] = _determine_database_url()
    SQL_ECHO: Final[bool] = _str_to_bool(os.getenv("SQL_ECHO"), default=False)
    DB_POOL_SIZE: Final[int] = int(os.getenv("DB_POOL_SIZE", "10"))
    DB_MAX_OVERFLOW: Final[int] = int(os.getenv("DB_MAX_OVERFLOW", "20"))

    # Cache / lock store; empty means in-process store
    REDIS_URL: Final[str] = os.getenv("REDIS_URL", "").strip()

    # Reseller (G2A) integration
    G2A_ENV: Final[str] = "live" if os.getenv("G2A_ENV", "sandbox").strip().lower() == "live" else "sandbox"
    G2A_API_URL: Final[str] = normalize_g2a_url(os.getenv("G2A_API_URL"), G2A_ENV)
    G2A_API_KEY: Final[str] = os.getenv("G2A_API_KEY", "").strip()
    # G2A_API_SECRET is the deprecated name of the client secret
    G2A_API_HASH: Final[str] = (os.getenv("G2A_API_HASH") or os.getenv("G2A_API_SECRET") or "").strip()
    G2A_EMAIL: Final[str] = os.getenv("G2A_EMAIL", "").strip()
    G2A_TIMEOUT_MS: Final[int] = int(os.getenv("G2A_TIMEOUT_MS", "8000"))
    # Retries on top of the first attempt for catalog reads
    G2A_RETRY_MAX: Final[int] = int(os.getenv("G2A_RETRY_MAX", "2"))
    G2A_ORDER_AUTH_MODE: Final[str] = os.getenv("G2A_ORDER_AUTH_MODE", "oauth2").strip().lower()
    G2A_MOCK_FALLBACK_ENABLED: Final[bool] = _str_to_bool(os.getenv("G2A_MOCK_FALLBACK_ENABLED"), default=False)
    # Per-operation circuit breaker around every upstream call
    G2A_CIRCUIT_BREAKER_ENABLED: Final[bool] = _str_to_bool(os.getenv("G2A_CIRCUIT_BREAKER_ENABLED"), default=True)
    G2A_CIRCUIT_FAILURE_THRESHOLD: Final[int] = int(os.getenv("G2A_CIRCUIT_FAILURE_THRESHOLD", "5"))
    G2A_CIRCUIT_WINDOW_SECONDS: Final[float] = float(os.getenv("G2A_CIRCUIT_WINDOW_SECONDS", "60"))
    G2A_CIRCUIT_RESET_SECONDS: Final[float] = float(os.getenv("G2A_CIRCUIT_RESET_SECONDS", "30"))
    G2A_CIRCUIT_HALF_OPEN_SUCCESSES: Final[int] = int(os.getenv("G2A_CIRCUIT_HALF_OPEN_SUCCESSES", "2"))
    # Client-side token bucket shared by all operations
    G2A_RATE_LIMIT_ENABLED: Final[bool] = _str_to_bool(os.getenv("G2A_RATE_LIMIT_ENABLED"), default=True)
    G2A_RATE_LIMIT_PER_SECOND: Final[float] = float(os.getenv("G2A_RATE_LIMIT_PER_SECOND", "10"))
    G2A_RATE_LIMIT_BURST: Final[int] = int(os.getenv("G2A_RATE_LIMIT_BURST", "20"))

    # Pricing
    MARKUP_PERCENTAGE: Final[float] = float(os.getenv("MARKUP_PERCENTAGE", "2"))
    DEFAULT_CURRENCY: Final[str] = os.getenv("DEFAULT_CURRENCY", "EUR")

    # Catalog sync knobs
    SYNC_PAGE_SIZE: Final[int] = int(os.getenv("SYNC_PAGE_SIZE", "100"))
    SYNC_BATCH_SIZE: Final[int] = int(os.getenv("SYNC_BATCH_SIZE", "50"))
    SYNC_REQUEST_DELAY_MS: Final[int] = int(os.getenv("SYNC_REQUEST_DELAY_MS", "200"))
    SYNC_LOCK_TTL_SECONDS: Final[int] = int(os.getenv("SYNC_LOCK_TTL_SECONDS", "3600"))
    SYNC_PROGRESS_TTL_SECONDS: Final[int] = int(os.getenv("SYNC_PROGRESS_TTL_SECONDS", "3600"))
    SYNC_DEFAULT_CATEGORY: Final[str] = os.getenv("SYNC_DEFAULT_CATEGORY", "games")
    SYNC_SCHEDULE_INTERVAL_SECONDS: Final[int] = int(os.getenv("SYNC_SCHEDULE_INTERVAL_SECONDS", "0"))
    # Keep stock flags of products missing from a partial fetch (failed or demo pages, id-scoped runs)
    SYNC_SKIP_REMOVALS_ON_INCOMPLETE: Final[bool] = _str_to_bool(
        os.getenv("SYNC_SKIP_REMOVALS_ON_INCOMPLETE"), default=False
    )

    # Order workflow knobs
    ORDER_IDEMPOTENCY_WINDOW_SECONDS: Final[int] = int(os.getenv("ORDER_IDEMPOTENCY_WINDOW_SECONDS", "300"))
    ORDER_PAY_RETRY_DELAY_MS: Final[int] = int(os.getenv("ORDER_PAY_RETRY_DELAY_MS", "2000"))
    ORDER_KEY_WAIT_MS: Final[int] = int(os.getenv("ORDER_KEY_WAIT_MS", "1000"))
    ORDER_CHECKOUT_DEADLINE_SECONDS: Final[int] = int(os.getenv("ORDER_CHECKOUT_DEADLINE_SECONDS", "30"))

    # Outbound email
    SMTP_HOST: Final[str] = os.getenv("SMTP_HOST", "").strip()
    SMTP_PORT: Final[int] = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USERNAME: Final[str] = os.getenv("SMTP_USERNAME", "")
    SMTP_PASSWORD: Final[str] = os.getenv("SMTP_PASSWORD", "")
    SMTP_USE_TLS: Final[bool] = _str_to_bool(os.getenv("SMTP_USE_TLS"), default=True)
    EMAIL_FROM: Final[str] = os.getenv("EMAIL_FROM", "noreply@keyshop.local")

    # Observability and reliability
    STRUCTURED_LOGS_ENABLED: Final[bool] = _str_to_bool(os.getenv("STRUCTURED_LOGS_ENABLED"), default=True)
    LOG_LEVEL: Final[str] = os.getenv("LOG_LEVEL", "INFO")
    REQUEST_ID_HEADER: Final[str] = os.getenv("REQUEST_ID_HEADER", "X-Request-ID")
    OBSERVABILITY_ENABLED: Final[bool] = _str_to_bool(os.getenv("OBSERVABILITY_ENABLED"), default=True)

    @classmethod
    def has_g2a_credentials(cls) -> bool:
        return bool(cls.G2A_API_KEY and cls.G2A_API_HASH)

    @classmethod
    def configure_app(cls, app: Any) -> None:
        """Apply core configuration to a Flask app instance."""
        app.config["SECRET_KEY"] = cls.SECRET_KEY
        app.config["ENV"] = cls.APP_ENV
        app.config["DEBUG"] = cls.DEBUG
        app.config["TESTING"] = cls.TESTING
        app.config["SQLALCHEMY_DATABASE_URI"] = cls.DATABASE_URL
        app.config["SQLALCHEMY_ECHO"] = cls.SQL_ECHO
        app.config["G2A_ENV"] = cls.G2A_ENV
        app.config["G2A_API_URL"] = cls.G2A_API_URL
        app.config["MARKUP_PERCENTAGE"] = cls.MARKUP_PERCENTAGE
        app.config["STRUCTURED_LOGS_ENABLED"] = cls.STRUCTURED_LOGS_ENABLED
        app.config["OBSERVABILITY_ENABLED"] = cls.OBSERVABILITY_ENABLED
