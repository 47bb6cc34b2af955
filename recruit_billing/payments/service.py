from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from recruit_billing.payments.base import ServiceConfig
from recruit_billing.payments.credits import CreditManagementService
from recruit_billing.payments.customers import CustomerManagementService
from recruit_billing.payments.processing import PaymentProcessingService
from recruit_billing.payments.subscriptions import SubscriptionService
from recruit_billing.payments.webhooks import WebhookHandlerService

logger = logging.getLogger(__name__)

SERVICE_NAMES = ("payment_processing", "customer_management", "credit_management", "webhook_handler", "subscriptions")

_started_at = time.monotonic()


class PaymentService:
    """Entry point composing the payment sub-services behind one object."""

    def __init__(self, config: ServiceConfig | None = None, sleep=None):
        self.customers = CustomerManagementService(config, sleep)
        self.credits = CreditManagementService(config, sleep)
        self.payments = PaymentProcessingService(
            config,
            sleep,
            customer_service=self.customers,
            credit_service=self.credits,
        )
        self.webhooks = WebhookHandlerService(config, sleep, credit_service=self.credits)
        self.subscriptions = SubscriptionService(config, sleep, customer_service=self.customers)
        logger.info("payment_service_initialized services=%s", ",".join(SERVICE_NAMES))

    def health_check(self) -> dict[str, Any]:
        checks = (self.payments, self.customers, self.credits, self.webhooks, self.subscriptions)
        try:
            with ThreadPoolExecutor(max_workers=len(checks)) as pool:
                results = list(pool.map(lambda service: service.health_check(), checks))
        except Exception as exc:  # noqa: BLE001 - health endpoint must answer
            logger.error("payment_service_health_check_failed error=%s", exc)
            return {"overall": False, "services": {name: False for name in SERVICE_NAMES}}

        services = dict(zip(SERVICE_NAMES, results))
        return {"overall": all(services.values()), "services": services}

    def get_service_stats(self) -> dict[str, Any]:
        return {
            "uptime": round(time.monotonic() - _started_at, 3),
            "services": list(SERVICE_NAMES),
            "health_status": self.health_check(),
        }


_payment_service: PaymentService | None = None


def get_payment_service() -> PaymentService:
    global _payment_service
    if _payment_service is None:
        _payment_service = PaymentService()
    return _payment_service
