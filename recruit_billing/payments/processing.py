from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any

import stripe

from recruit_billing.core.config import settings
from recruit_billing.core.errors import InvalidRequestError, PermissionDeniedError, UserNotFoundError
from recruit_billing.core.observability import log_external_api
from recruit_billing.payments.base import BasePaymentService, ServiceConfig, metadata_value
from recruit_billing.payments.credits import CreditManagementService
from recruit_billing.payments.customers import CustomerManagementService
from recruit_billing.schemas.payment import PaymentRequest, PaymentResult, RefundRequest, RefundResult
from recruit_billing.store import ledger

logger = logging.getLogger(__name__)


class PaymentProcessingService(BasePaymentService):
    def __init__(
        self,
        config: ServiceConfig | None = None,
        sleep=None,
        customer_service: CustomerManagementService | None = None,
        credit_service: CreditManagementService | None = None,
    ):
        super().__init__(config, sleep)
        self.customer_service = customer_service or CustomerManagementService(config, sleep)
        self.credit_service = credit_service or CreditManagementService(config, sleep)

    def process_payment(self, request: PaymentRequest) -> PaymentResult:
        start = time.monotonic()
        logger.info(
            "processing_payment user_id=%s amount=%s credits=%s", request.user_id, request.amount, request.credits
        )
        currency = (request.currency or settings.default_currency).lower()
        try:
            customer_id = request.customer_id
            if not customer_id:
                customer_id = self.customer_service.create_or_get_customer_by_user_id(request.user_id).id

            params: dict[str, Any] = {
                "amount": request.amount,
                "currency": currency,
                "customer": customer_id,
                "description": request.description,
                "confirm": bool(request.payment_method_id),
                "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
                "metadata": {
                    **request.metadata,
                    "userId": request.user_id,
                    "credits": str(request.credits),
                },
            }
            if request.payment_method_id:
                params["payment_method"] = request.payment_method_id

            payment_intent = self.with_retry(
                lambda: stripe.PaymentIntent.create(**params),
                "create_payment_intent",
            )
        except Exception as exc:
            log_external_api(
                "stripe",
                "process_payment",
                int((time.monotonic() - start) * 1000),
                False,
                error=str(exc),
                user_id=request.user_id,
            )
            raise

        log_external_api(
            "stripe",
            "create_payment_intent",
            int((time.monotonic() - start) * 1000),
            True,
            payment_intent_id=payment_intent.id,
            status=payment_intent.status,
            amount=request.amount,
        )

        ledger.record_payment(
            user_id=request.user_id,
            provider_ref=payment_intent.id,
            kind="payment_intent",
            amount=request.amount,
            currency=currency,
            credits=request.credits,
            status=payment_intent.status,
        )

        transaction_id = None
        if payment_intent.status == "succeeded" and request.credits > 0:
            mutation = self.credit_service.handle_successful_payment(
                request.user_id, request.credits, payment_intent.id
            )
            transaction_id = mutation.transaction_id

        return PaymentResult(
            payment_intent_id=payment_intent.id,
            client_secret=getattr(payment_intent, "client_secret", None) or None,
            status=payment_intent.status,
            amount=request.amount,
            currency=currency,
            credits=request.credits,
            transaction_id=transaction_id,
        )

    def process_refund(self, request: RefundRequest) -> RefundResult:
        start = time.monotonic()
        logger.info(
            "processing_refund payment_intent_id=%s amount=%s user_id=%s",
            request.payment_intent_id,
            request.amount,
            request.user_id,
        )
        payment_intent = self.get_payment_intent(request.payment_intent_id)
        owner_id = metadata_value(payment_intent.metadata, "userId")
        if not owner_id or owner_id != request.user_id:
            raise PermissionDeniedError("Access denied")

        params: dict[str, Any] = {
            "payment_intent": request.payment_intent_id,
            "metadata": {
                "userId": owner_id,
                "processedAt": datetime.now(timezone.utc).isoformat(),
            },
        }
        if request.amount is not None:
            params["amount"] = request.amount
        if request.reason:
            params["reason"] = request.reason

        try:
            refund = self.with_retry(lambda: stripe.Refund.create(**params), "process_refund")
        except Exception as exc:
            log_external_api(
                "stripe",
                "process_refund",
                int((time.monotonic() - start) * 1000),
                False,
                error=str(exc),
                payment_intent_id=request.payment_intent_id,
            )
            raise

        log_external_api(
            "stripe",
            "process_refund",
            int((time.monotonic() - start) * 1000),
            True,
            refund_id=refund.id,
            status=refund.status,
            amount=refund.amount,
        )

        if refund.status == "succeeded":
            self.credit_service.handle_refund_credits(
                owner_id,
                request.payment_intent_id,
                refund.amount,
                refund_id=refund.id,
                payment_intent=payment_intent,
            )
            ledger.record_refund(request.payment_intent_id, refund.amount)

        return RefundResult(
            refund_id=refund.id,
            status=refund.status,
            amount=refund.amount,
            reason=request.reason or "requested_by_customer",
        )

    def create_checkout_session(
        self,
        *,
        user_id: str,
        package_id: int,
        customer_email: str | None = None,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> Any:
        package = ledger.get_credit_package(package_id)
        if not package:
            raise InvalidRequestError("Package not found", code="PACKAGE_NOT_FOUND")

        profile = ledger.get_profile(user_id)
        if not profile:
            raise UserNotFoundError()

        credits = int(package["credits"])
        name = package["name"]
        session = self.with_retry(
            lambda: stripe.checkout.Session.create(
                mode="payment",
                payment_method_types=["card"],
                success_url=success_url or settings.checkout_success_url,
                cancel_url=cancel_url or settings.checkout_cancel_url,
                customer_email=customer_email or profile["email"],
                client_reference_id=user_id,
                line_items=[
                    {
                        "price_data": {
                            "currency": package["currency"],
                            "unit_amount": int(package["price_cents"]),
                            "product_data": {
                                "name": f"{name} - {credits} Credits",
                                "description": f"{name} credit package with {credits} credits",
                            },
                        },
                        "quantity": 1,
                    }
                ],
                metadata={
                    "user_id": user_id,
                    "package_id": str(package["id"]),
                    "credits": str(credits),
                    "package_name": name,
                },
            ),
            "create_checkout_session",
        )

        ledger.record_payment(
            user_id=user_id,
            provider_ref=session.id,
            kind="checkout_session",
            package_id=int(package["id"]),
            amount=int(package["price_cents"]),
            currency=package["currency"],
            credits=credits,
            status="pending",
        )
        logger.info("checkout_session_created session_id=%s user_id=%s package_id=%s", session.id, user_id, package_id)
        return session

    def get_payment_intent(self, payment_intent_id: str) -> Any:
        return self.with_retry(
            lambda: stripe.PaymentIntent.retrieve(payment_intent_id),
            "get_payment_intent",
        )

    def create_setup_intent(self, customer_id: str) -> Any:
        return self.with_retry(
            lambda: stripe.SetupIntent.create(
                customer=customer_id,
                automatic_payment_methods={"enabled": True},
            ),
            "create_setup_intent",
        )

    def list_payment_methods(self, customer_id: str) -> list[Any]:
        result = self.with_retry(
            lambda: stripe.PaymentMethod.list(customer=customer_id, type="card"),
            "list_payment_methods",
        )
        return list(result.data)

    def cancel_payment_intent(self, payment_intent_id: str) -> Any:
        return self.with_retry(
            lambda: stripe.PaymentIntent.cancel(payment_intent_id),
            "cancel_payment_intent",
        )

    def confirm_payment_intent(self, payment_intent_id: str, payment_method_id: str | None = None) -> Any:
        params: dict[str, Any] = {}
        if payment_method_id:
            params["payment_method"] = payment_method_id
        return self.with_retry(
            lambda: stripe.PaymentIntent.confirm(payment_intent_id, **params),
            "confirm_payment_intent",
        )
