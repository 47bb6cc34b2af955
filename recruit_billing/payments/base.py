from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

import stripe

from recruit_billing.core.config import settings
from recruit_billing.core.errors import NotConfiguredError
from recruit_billing.core.observability import log_error, log_external_api

logger = logging.getLogger(__name__)

T = TypeVar("T")

_stripe_configured = False


@dataclass(frozen=True)
class ServiceConfig:
    retries: int = 3
    timeout_s: int = 30
    backoff_delay_ms: int = 1000


def configure_stripe() -> None:
    global _stripe_configured
    if _stripe_configured:
        return
    stripe.api_key = settings.stripe_secret_key
    # Webhook handlers read invoice.subscription and subscription.current_period_end.
    stripe.api_version = settings.stripe_api_version
    # Retries are driven by BasePaymentService.with_retry.
    stripe.max_network_retries = 0
    stripe.default_http_client = stripe.RequestsClient(timeout=settings.stripe_timeout_s)
    _stripe_configured = True


def error_status(exc: BaseException) -> int | None:
    status = getattr(exc, "http_status", None)
    if status is None:
        status = getattr(exc, "status_code", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def metadata_value(metadata: Any, key: str, default: str | None = None) -> str | None:
    if not metadata:
        return default
    try:
        value = metadata[key]
    except (KeyError, TypeError):
        value = getattr(metadata, key, None)
    if value is None or value == "":
        return default
    return str(value)


def field_value(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def invoice_subscription_id(invoice: Any) -> str | None:
    subscription = field_value(invoice, "subscription")
    if subscription is None:
        details = field_value(field_value(invoice, "parent"), "subscription_details")
        subscription = field_value(details, "subscription")
    if subscription is not None and not isinstance(subscription, str):
        subscription = field_value(subscription, "id")
    return subscription or None


def subscription_period_end(subscription: Any) -> int | None:
    period_end = field_value(subscription, "current_period_end")
    if period_end is None:
        items = field_value(field_value(subscription, "items"), "data") or []
        if items:
            period_end = field_value(items[0], "current_period_end")
    return int(period_end) if period_end is not None else None


def parse_int(value: Any, default: int = 0) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


class BasePaymentService:
    """Shared Stripe plumbing: configuration, retry with backoff and health check."""

    def __init__(self, config: ServiceConfig | None = None, sleep: Callable[[float], None] | None = None):
        configure_stripe()
        self.webhook_secret = settings.stripe_webhook_secret
        self.service_config = config or ServiceConfig(
            retries=settings.stripe_retries,
            timeout_s=settings.stripe_timeout_s,
            backoff_delay_ms=settings.stripe_backoff_ms,
        )
        self._sleep = sleep or time.sleep
        logger.debug("payment_service_initialized service=%s", type(self).__name__)

    def with_retry(self, operation: Callable[[], T], operation_name: str, retries: int | None = None) -> T:
        if not settings.stripe_secret_key:
            raise NotConfiguredError("Stripe is not configured")

        attempts = max(1, retries if retries is not None else self.service_config.retries)
        start = time.monotonic()

        for attempt in range(1, attempts + 1):
            try:
                result = operation()
            except Exception as exc:
                duration_ms = int((time.monotonic() - start) * 1000)
                status = error_status(exc)
                log_external_api(
                    "stripe",
                    operation_name,
                    duration_ms,
                    False,
                    attempt=attempt,
                    error=str(exc),
                    status=status,
                )

                if attempt == attempts:
                    log_error(exc, operation=operation_name, attempts=attempts)
                    raise

                # Client errors will not succeed on retry.
                if status is not None and 400 <= status < 500:
                    raise

                delay_ms = self.service_config.backoff_delay_ms * (2 ** (attempt - 1))
                self._sleep(delay_ms / 1000)
                continue

            duration_ms = int((time.monotonic() - start) * 1000)
            log_external_api("stripe", operation_name, duration_ms, True, attempt=attempt)
            return result

        raise RuntimeError(f"Failed after {attempts} attempts")

    def health_check(self) -> bool:
        try:
            stripe.Account.retrieve()
            return True
        except Exception as exc:  # noqa: BLE001 - health checks report, never raise
            log_error(exc, operation="stripe_health_check")
            return False
