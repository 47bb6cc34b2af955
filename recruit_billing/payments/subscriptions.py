from __future__ import annotations

import logging
import time
from typing import Any

import stripe

from recruit_billing.core.errors import InvalidRequestError
from recruit_billing.payments.base import BasePaymentService, ServiceConfig, subscription_period_end
from recruit_billing.payments.customers import CustomerManagementService
from recruit_billing.schemas.payment import SubscriptionRequest
from recruit_billing.store import ledger

logger = logging.getLogger(__name__)


def _drop_none(params: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in params.items() if value is not None}


class SubscriptionService(BasePaymentService):
    def __init__(
        self,
        config: ServiceConfig | None = None,
        sleep=None,
        customer_service: CustomerManagementService | None = None,
    ):
        super().__init__(config, sleep)
        self.customer_service = customer_service or CustomerManagementService(config, sleep)

    def create_subscription(self, request: SubscriptionRequest) -> Any:
        if not request.price_id:
            raise InvalidRequestError("Price ID is required", code="MISSING_PRICE_ID")

        customer_id = request.customer_id
        if not customer_id:
            customer_id = self.customer_service.create_or_get_customer_by_user_id(request.user_id).id
        if not customer_id:
            raise InvalidRequestError("Customer ID is required for subscription")

        subscription = self.with_retry(
            lambda: stripe.Subscription.create(
                customer=customer_id,
                items=[{"price": request.price_id}],
                metadata={**request.metadata, "userId": request.user_id},
                payment_behavior="default_incomplete",
                payment_settings={"save_default_payment_method": "on_subscription"},
                expand=["latest_invoice.payment_intent"],
            ),
            "create_subscription",
        )

        ledger.upsert_subscription(
            subscription_id=subscription.id,
            status=subscription.status,
            user_id=request.user_id,
            customer_id=customer_id,
            price_id=request.price_id,
            current_period_end=subscription_period_end(subscription),
        )
        logger.info("subscription_created subscription_id=%s user_id=%s", subscription.id, request.user_id)
        return subscription

    def get_subscription(self, subscription_id: str) -> Any:
        return self.with_retry(lambda: stripe.Subscription.retrieve(subscription_id), "get_subscription")

    def update_subscription(self, subscription_id: str, **updates: Any) -> Any:
        return self.with_retry(
            lambda: stripe.Subscription.modify(subscription_id, **updates),
            "update_subscription",
        )

    def cancel_subscription(self, subscription_id: str) -> Any:
        subscription = self.with_retry(
            lambda: stripe.Subscription.cancel(subscription_id),
            "cancel_subscription",
        )
        ledger.upsert_subscription(subscription_id=subscription.id, status=subscription.status)
        logger.info("subscription_cancelled subscription_id=%s", subscription_id)
        return subscription

    def list_subscriptions(
        self,
        *,
        limit: int | None = None,
        starting_after: str | None = None,
        ending_before: str | None = None,
        status: str | None = None,
        price: str | None = None,
    ) -> Any:
        params = _drop_none(
            {
                "limit": limit,
                "starting_after": starting_after,
                "ending_before": ending_before,
                "status": status,
                "price": price,
            }
        )
        return self.with_retry(lambda: stripe.Subscription.list(**params), "list_subscriptions")

    def list_customer_subscriptions(self, customer_id: str) -> Any:
        return self.with_retry(
            lambda: stripe.Subscription.list(customer=customer_id, status="all"),
            "list_customer_subscriptions",
        )

    def pause_subscription(self, subscription_id: str) -> Any:
        return self.with_retry(
            lambda: stripe.Subscription.modify(subscription_id, pause_collection={"behavior": "keep_as_draft"}),
            "pause_subscription",
        )

    def resume_subscription(self, subscription_id: str) -> Any:
        # An empty string unsets the field in the Stripe API.
        return self.with_retry(
            lambda: stripe.Subscription.modify(subscription_id, pause_collection=""),
            "resume_subscription",
        )

    def change_subscription_plan(self, subscription_id: str, new_price_id: str) -> Any:
        subscription = self.get_subscription(subscription_id)
        items = subscription["items"]["data"]
        if not items:
            raise InvalidRequestError("Subscription has no items to change")
        current_item = items[0]

        return self.with_retry(
            lambda: stripe.Subscription.modify(
                subscription_id,
                items=[{"id": current_item["id"], "price": new_price_id}],
                proration_behavior="create_prorations",
            ),
            "change_subscription_plan",
        )

    def add_subscription_item(self, subscription_id: str, price_id: str, quantity: int = 1) -> Any:
        return self.with_retry(
            lambda: stripe.SubscriptionItem.create(
                subscription=subscription_id,
                price=price_id,
                quantity=quantity,
            ),
            "add_subscription_item",
        )

    def remove_subscription_item(self, subscription_item_id: str) -> Any:
        return self.with_retry(
            lambda: stripe.SubscriptionItem.delete(subscription_item_id),
            "remove_subscription_item",
        )

    def get_upcoming_invoice(self, customer_id: str, subscription_id: str | None = None) -> Any:
        params = _drop_none({"customer": customer_id, "subscription": subscription_id})
        return self.with_retry(lambda: stripe.Invoice.create_preview(**params), "get_upcoming_invoice")

    def preview_subscription_changes(self, subscription_id: str, items: list[dict[str, Any]]) -> Any:
        subscription = self.get_subscription(subscription_id)
        return self.with_retry(
            lambda: stripe.Invoice.create_preview(
                customer=subscription["customer"],
                subscription=subscription_id,
                subscription_details={
                    "items": items,
                    "proration_date": int(time.time()),
                },
            ),
            "preview_subscription_changes",
        )
