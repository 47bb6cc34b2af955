from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

def _get_env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value


def _get_env_bool(name: str, default: bool) -> bool:
    raw = _get_env(name, None)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _get_env_int(name: str, default: int) -> int:
    raw = _get_env(name, None)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _get_env_list(name: str, default: list[str]) -> tuple[str, ...]:
    raw = _get_env(name, None)
    if raw is None:
        return tuple(default)
    values = [item.strip() for item in raw.split(",")]
    clean = [item for item in values if item]
    return tuple(clean) if clean else tuple(default)


@dataclass(frozen=True)
class Settings:
    api_key: str | None
    app_env: str
    log_level: str
    sentry_dsn: str | None
    rate_limit: str
    rate_limit_enabled: bool
    payment_rate_limit: str
    cors_allowed_origins: tuple[str, ...]
    cors_allow_origin_regex: str | None
    cors_allow_credentials: bool
    stripe_secret_key: str | None
    stripe_webhook_secret: str | None
    stripe_api_version: str
    stripe_webhook_tolerance_s: int
    stripe_retries: int
    stripe_backoff_ms: int
    stripe_timeout_s: int
    billing_db_path: str
    welcome_credits: int
    webhook_event_retention_days: int
    checkout_success_url: str
    checkout_cancel_url: str
    default_currency: str

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"


settings = Settings(
    api_key=_get_env("API_KEY"),
    app_env=(_get_env("APP_ENV", "production") or "production").strip().lower(),
    log_level=_get_env("LOG_LEVEL", "INFO") or "INFO",
    sentry_dsn=_get_env("SENTRY_DSN"),
    rate_limit=_get_env("RATE_LIMIT", "120/minute") or "120/minute",
    rate_limit_enabled=_get_env_bool("RATE_LIMIT_ENABLED", True),
    payment_rate_limit=_get_env("PAYMENT_RATE_LIMIT", "20/minute") or "20/minute",
    cors_allowed_origins=_get_env_list(
        "CORS_ALLOWED_ORIGINS",
        [
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:3000",
        ],
    ),
    cors_allow_origin_regex=_get_env("CORS_ALLOW_ORIGIN_REGEX"),
    cors_allow_credentials=_get_env_bool("CORS_ALLOW_CREDENTIALS", False),
    stripe_secret_key=_get_env("STRIPE_SECRET_KEY"),
    stripe_webhook_secret=_get_env("STRIPE_WEBHOOK_SECRET"),
    stripe_api_version=_get_env("STRIPE_API_VERSION", "2024-11-20.acacia") or "2024-11-20.acacia",
    stripe_webhook_tolerance_s=_get_env_int("STRIPE_WEBHOOK_TOLERANCE_S", 300),
    stripe_retries=max(1, _get_env_int("STRIPE_RETRIES", 3)),
    stripe_backoff_ms=max(0, _get_env_int("STRIPE_BACKOFF_MS", 1000)),
    stripe_timeout_s=_get_env_int("STRIPE_TIMEOUT_S", 30),
    billing_db_path=_get_env("BILLING_DB_PATH", "data/billing.db") or "data/billing.db",
    welcome_credits=max(0, _get_env_int("WELCOME_CREDITS", 0)),
    webhook_event_retention_days=_get_env_int("WEBHOOK_EVENT_RETENTION_DAYS", 30),
    checkout_success_url=_get_env("CHECKOUT_SUCCESS_URL", "http://localhost:5173/dashboard?payment=success")
    or "http://localhost:5173/dashboard?payment=success",
    checkout_cancel_url=_get_env("CHECKOUT_CANCEL_URL", "http://localhost:5173/pricing?payment=cancelled")
    or "http://localhost:5173/pricing?payment=cancelled",
    default_currency=(_get_env("DEFAULT_CURRENCY", "usd") or "usd").strip().lower(),
)

if settings.app_env not in {"development", "test", "staging", "production"}:
    raise RuntimeError("APP_ENV must be one of development, test, staging or production.")
