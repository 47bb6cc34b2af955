from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable

import stripe

from recruit_billing.core.config import settings
from recruit_billing.core.errors import UserNotFoundError, WebhookVerificationError
from recruit_billing.core.observability import log_error, log_external_api
from recruit_billing.payments.base import (
    BasePaymentService,
    ServiceConfig,
    field_value,
    invoice_subscription_id,
    metadata_value,
    parse_int,
    subscription_period_end,
)
from recruit_billing.payments.credits import CreditManagementService
from recruit_billing.schemas.payment import WebhookEvent
from recruit_billing.store import ledger

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], None]


def _invoice_user_id(invoice: dict[str, Any]) -> str | None:
    user_id = metadata_value(invoice.get("metadata"), "userId")
    if user_id:
        return user_id
    details = field_value(invoice.get("parent"), "subscription_details")
    return metadata_value(field_value(details, "metadata"), "userId")


class WebhookHandlerService(BasePaymentService):
    """Verifies Stripe webhook deliveries and routes them by event type.

    Events are recorded once handled, so a redelivery of the same event id is
    acknowledged without touching the ledger again. A handler failure
    propagates and leaves the event unrecorded, which makes Stripe retry it.
    """

    def __init__(
        self,
        config: ServiceConfig | None = None,
        sleep=None,
        credit_service: CreditManagementService | None = None,
    ):
        super().__init__(config, sleep)
        self.credit_service = credit_service or CreditManagementService(config, sleep)
        self._handlers: dict[str, Handler] = {
            "payment_intent.succeeded": self._payment_intent_succeeded,
            "payment_intent.payment_failed": self._payment_intent_failed,
            "payment_intent.canceled": self._payment_intent_canceled,
            "checkout.session.completed": self._checkout_session_completed,
            "invoice.payment_succeeded": self._invoice_payment_succeeded,
            "invoice.payment_failed": self._invoice_payment_failed,
            "customer.subscription.created": self._subscription_created,
            "customer.subscription.updated": self._subscription_updated,
            "customer.subscription.deleted": self._subscription_deleted,
            "customer.created": self._customer_created,
            "customer.updated": self._customer_updated,
            "payment_method.attached": self._payment_method_attached,
        }

    @property
    def handled_event_types(self) -> tuple[str, ...]:
        return tuple(self._handlers)

    def verify_event(self, raw_body: bytes | str, signature: str) -> dict[str, Any]:
        if not self.webhook_secret:
            raise WebhookVerificationError("Webhook secret is not configured")
        if not signature:
            raise WebhookVerificationError("Missing Stripe signature", code="MISSING_SIGNATURE")

        payload = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
        try:
            stripe.WebhookSignature.verify_header(
                payload,
                signature,
                self.webhook_secret,
                settings.stripe_webhook_tolerance_s,
            )
        except stripe.SignatureVerificationError as exc:
            raise WebhookVerificationError("Webhook signature verification failed") from exc

        try:
            event = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise WebhookVerificationError("Invalid JSON payload") from exc

        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise WebhookVerificationError("Malformed webhook event")
        return event

    def handle_webhook(self, raw_body: bytes | str, signature: str) -> WebhookEvent:
        start = time.monotonic()
        try:
            event = self.verify_event(raw_body, signature)
        except WebhookVerificationError as exc:
            log_external_api(
                "stripe",
                "webhook_verification",
                int((time.monotonic() - start) * 1000),
                False,
                error=str(exc),
            )
            raise

        event_id = str(event["id"])
        event_type = str(event["type"])
        log_external_api(
            "stripe",
            "webhook_verified",
            int((time.monotonic() - start) * 1000),
            True,
            event_type=event_type,
            event_id=event_id,
        )
        logger.info("stripe_webhook_received type=%s id=%s", event_type, event_id)

        data = event.get("data") or {}
        result = WebhookEvent(id=event_id, type=event_type, data=data, created=event.get("created"))

        if ledger.has_processed_event(event_id):
            logger.info("stripe_webhook_duplicate type=%s id=%s", event_type, event_id)
            return result

        self.process_event(event)
        ledger.record_webhook_event(event_id, event_type)
        return result

    def process_event(self, event: dict[str, Any]) -> None:
        event_type = str(event.get("type"))
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info("unhandled_webhook_event_type type=%s", event_type)
            return

        obj = (event.get("data") or {}).get("object") or {}
        try:
            handler(obj)
        except UserNotFoundError:
            # Redelivery cannot fix a missing profile.
            logger.warning("webhook_user_not_found type=%s id=%s", event_type, event.get("id"))
        except Exception as exc:
            log_error(exc, operation="process_webhook_event", event_type=event_type, event_id=event.get("id"))
            raise

    def _payment_intent_succeeded(self, payment_intent: dict[str, Any]) -> None:
        metadata = payment_intent.get("metadata")
        user_id = metadata_value(metadata, "userId")
        credits = parse_int(metadata_value(metadata, "credits", "0"))

        if user_id and credits > 0:
            self.credit_service.handle_successful_payment(user_id, credits, payment_intent["id"])
        ledger.update_payment_status(payment_intent["id"], "succeeded")

        logger.info(
            "payment_intent_succeeded payment_intent_id=%s user_id=%s credits=%s amount=%s",
            payment_intent.get("id"),
            user_id,
            credits,
            payment_intent.get("amount"),
        )

    def _payment_intent_failed(self, payment_intent: dict[str, Any]) -> None:
        last_error = payment_intent.get("last_payment_error") or {}
        ledger.update_payment_status(payment_intent["id"], "failed")
        logger.warning(
            "payment_failed payment_intent_id=%s user_id=%s amount=%s last_payment_error=%s",
            payment_intent.get("id"),
            metadata_value(payment_intent.get("metadata"), "userId"),
            payment_intent.get("amount"),
            last_error.get("message"),
        )

    def _payment_intent_canceled(self, payment_intent: dict[str, Any]) -> None:
        ledger.update_payment_status(payment_intent["id"], "canceled")
        logger.info(
            "payment_intent_canceled payment_intent_id=%s user_id=%s amount=%s",
            payment_intent.get("id"),
            metadata_value(payment_intent.get("metadata"), "userId"),
            payment_intent.get("amount"),
        )

    def _checkout_session_completed(self, session: dict[str, Any]) -> None:
        metadata = session.get("metadata")
        user_id = metadata_value(metadata, "user_id")
        package_id = metadata_value(metadata, "package_id")
        credits = parse_int(metadata_value(metadata, "credits", "0"))
        package_name = metadata_value(metadata, "package_name", "")

        if not user_id or not package_id or credits <= 0:
            raise WebhookVerificationError("Missing required metadata in session")

        # Stripe retries the delivery until the profile exists.
        if ledger.get_profile(user_id) is None:
            raise WebhookVerificationError("User profile not found", code="USER_NOT_FOUND")

        mutation = ledger.apply_credit_delta(
            user_id,
            credits,
            "purchase",
            f"Purchase completed: {package_name} - {credits} credits",
            reference=session["id"],
            meta={"package_id": parse_int(package_id)},
        )
        if not ledger.update_payment_status(session["id"], "completed"):
            logger.warning("checkout_payment_record_missing session_id=%s", session.get("id"))
        logger.info(
            "checkout_session_completed session_id=%s user_id=%s previous_balance=%s added_credits=%s new_balance=%s",
            session.get("id"),
            user_id,
            mutation.previous_balance,
            mutation.applied_amount,
            mutation.new_balance,
        )

    def _invoice_payment_succeeded(self, invoice: dict[str, Any]) -> None:
        logger.info(
            "invoice_payment_succeeded invoice_id=%s subscription_id=%s amount=%s",
            invoice.get("id"),
            invoice_subscription_id(invoice),
            invoice.get("amount_paid"),
        )
        if invoice_subscription_id(invoice) and _invoice_user_id(invoice):
            self._process_subscription_credits(invoice)

    def _invoice_payment_failed(self, invoice: dict[str, Any]) -> None:
        logger.warning(
            "invoice_payment_failed invoice_id=%s subscription_id=%s amount=%s",
            invoice.get("id"),
            invoice_subscription_id(invoice),
            invoice.get("amount_due"),
        )

    def _sync_subscription(self, subscription: dict[str, Any], status: str | None = None) -> None:
        ledger.upsert_subscription(
            subscription_id=subscription["id"],
            status=status or subscription.get("status") or "unknown",
            user_id=metadata_value(subscription.get("metadata"), "userId"),
            customer_id=subscription.get("customer"),
            current_period_end=subscription_period_end(subscription),
        )

    def _subscription_created(self, subscription: dict[str, Any]) -> None:
        self._sync_subscription(subscription)
        logger.info(
            "subscription_created subscription_id=%s user_id=%s status=%s",
            subscription.get("id"),
            metadata_value(subscription.get("metadata"), "userId"),
            subscription.get("status"),
        )

    def _subscription_updated(self, subscription: dict[str, Any]) -> None:
        self._sync_subscription(subscription)
        logger.info(
            "subscription_updated subscription_id=%s user_id=%s status=%s",
            subscription.get("id"),
            metadata_value(subscription.get("metadata"), "userId"),
            subscription.get("status"),
        )
        status = subscription.get("status")
        if status == "active":
            self._process_subscription_activation(subscription)
        elif status == "canceled":
            self._process_subscription_cancellation(subscription)

    def _subscription_deleted(self, subscription: dict[str, Any]) -> None:
        self._sync_subscription(subscription, status="canceled")
        logger.info(
            "subscription_deleted subscription_id=%s user_id=%s",
            subscription.get("id"),
            metadata_value(subscription.get("metadata"), "userId"),
        )
        self._process_subscription_cancellation(subscription)

    def _customer_created(self, customer: dict[str, Any]) -> None:
        logger.info(
            "customer_created customer_id=%s user_id=%s email=%s",
            customer.get("id"),
            metadata_value(customer.get("metadata"), "userId"),
            customer.get("email"),
        )

    def _customer_updated(self, customer: dict[str, Any]) -> None:
        logger.info(
            "customer_updated customer_id=%s user_id=%s email=%s",
            customer.get("id"),
            metadata_value(customer.get("metadata"), "userId"),
            customer.get("email"),
        )

    def _payment_method_attached(self, payment_method: dict[str, Any]) -> None:
        logger.info(
            "payment_method_attached payment_method_id=%s customer_id=%s type=%s",
            payment_method.get("id"),
            payment_method.get("customer"),
            payment_method.get("type"),
        )

    def _process_subscription_credits(self, invoice: dict[str, Any]) -> None:
        user_id = _invoice_user_id(invoice)
        if not user_id:
            return
        credits = self.credit_service.calculate_credits_for_amount(
            parse_int(invoice.get("amount_paid")),
            invoice.get("currency") or "usd",
        )
        if credits > 0:
            self.credit_service.add_credits(
                user_id,
                credits,
                f"Subscription credits for invoice {invoice.get('id')}",
                reference=invoice.get("id"),
            )

    def _process_subscription_activation(self, subscription: dict[str, Any]) -> None:
        user_id = metadata_value(subscription.get("metadata"), "userId")
        if not user_id:
            return
        logger.info("subscription_activation subscription_id=%s user_id=%s", subscription.get("id"), user_id)

    def _process_subscription_cancellation(self, subscription: dict[str, Any]) -> None:
        user_id = metadata_value(subscription.get("metadata"), "userId")
        if not user_id:
            return
        logger.info("subscription_cancellation subscription_id=%s user_id=%s", subscription.get("id"), user_id)
