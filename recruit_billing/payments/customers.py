from __future__ import annotations

import logging
from typing import Any

import stripe

from recruit_billing.core.errors import InvalidRequestError, UserNotFoundError
from recruit_billing.payments.base import BasePaymentService
from recruit_billing.schemas.payment import CustomerData
from recruit_billing.store import ledger

logger = logging.getLogger(__name__)


class CustomerManagementService(BasePaymentService):
    def create_or_get_customer(self, customer_data: CustomerData) -> Any:
        existing = self.with_retry(
            lambda: stripe.Customer.list(email=customer_data.email, limit=1),
            "list_customers",
        )
        if existing.data:
            return existing.data[0]

        params: dict[str, Any] = {
            "email": customer_data.email,
            "metadata": {"userId": customer_data.user_id, **customer_data.metadata},
        }
        if customer_data.name:
            params["name"] = customer_data.name

        customer = self.with_retry(lambda: stripe.Customer.create(**params), "create_customer")
        logger.info("stripe_customer_created customer_id=%s user_id=%s", customer.id, customer_data.user_id)
        return customer

    def create_or_get_customer_by_user_id(self, user_id: str) -> Any:
        profile = ledger.get_profile(user_id)
        if not profile:
            raise UserNotFoundError()
        return self.create_or_get_customer(
            CustomerData(user_id=user_id, email=profile["email"], name=profile.get("full_name") or None)
        )

    def get_customer(self, customer_id: str) -> Any:
        customer = self.with_retry(lambda: stripe.Customer.retrieve(customer_id), "get_customer")
        if getattr(customer, "deleted", False):
            raise InvalidRequestError("Customer has been deleted", code="CUSTOMER_DELETED")
        return customer

    def update_customer(
        self,
        customer_id: str,
        *,
        email: str | None = None,
        name: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> Any:
        updates: dict[str, Any] = {}
        if email:
            updates["email"] = email
        if name:
            updates["name"] = name
        if metadata:
            updates["metadata"] = metadata
        return self.with_retry(lambda: stripe.Customer.modify(customer_id, **updates), "update_customer")

    def delete_customer(self, customer_id: str) -> Any:
        return self.with_retry(lambda: stripe.Customer.delete(customer_id), "delete_customer")

    def list_customers(
        self,
        *,
        limit: int | None = None,
        starting_after: str | None = None,
        ending_before: str | None = None,
        email: str | None = None,
    ) -> Any:
        params = {
            key: value
            for key, value in {
                "limit": limit,
                "starting_after": starting_after,
                "ending_before": ending_before,
                "email": email,
            }.items()
            if value is not None
        }
        return self.with_retry(lambda: stripe.Customer.list(**params), "list_customers")

    def search_customers_by_user_id(self, user_id: str) -> list[Any]:
        safe_id = user_id.replace('"', "")
        result = self.with_retry(
            lambda: stripe.Customer.search(query=f'metadata["userId"]:"{safe_id}"'),
            "search_customers",
        )
        return list(result.data)

    def get_customer_payment_methods(self, customer_id: str, type: str = "card") -> list[Any]:
        result = self.with_retry(
            lambda: stripe.PaymentMethod.list(customer=customer_id, type=type),
            "get_customer_payment_methods",
        )
        return list(result.data)

    def attach_payment_method(self, payment_method_id: str, customer_id: str) -> Any:
        return self.with_retry(
            lambda: stripe.PaymentMethod.attach(payment_method_id, customer=customer_id),
            "attach_payment_method",
        )

    def detach_payment_method(self, payment_method_id: str) -> Any:
        return self.with_retry(
            lambda: stripe.PaymentMethod.detach(payment_method_id),
            "detach_payment_method",
        )

    def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> Any:
        return self.with_retry(
            lambda: stripe.Customer.modify(
                customer_id,
                invoice_settings={"default_payment_method": payment_method_id},
            ),
            "set_default_payment_method",
        )
