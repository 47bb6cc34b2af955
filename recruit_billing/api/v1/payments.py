import logging
import time
from datetime import datetime, timezone
from typing import NoReturn

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool

from recruit_billing.core.config import settings
from recruit_billing.core.errors import (
    BillingError,
    PaymentProviderError,
    PermissionDeniedError,
    WebhookVerificationError,
    to_http_exception,
)
from recruit_billing.core.observability import log_error, log_performance
from recruit_billing.core.rate_limit import payment_rate_limit
from recruit_billing.core.security import current_user_id
from recruit_billing.payments.base import field_value, metadata_value, parse_int, subscription_period_end
from recruit_billing.payments.service import PaymentService, get_payment_service
from recruit_billing.schemas.payment import (
    CheckoutRequest,
    PaymentRequest,
    RefundRequest,
    SubscriptionRequest,
)
from recruit_billing.store import ledger

router = APIRouter()
logger = logging.getLogger(__name__)


def _fail(exc: Exception, *, operation: str, code: str, message: str, user_id: str | None = None) -> NoReturn:
    if isinstance(exc, BillingError):
        raise to_http_exception(exc) from exc

    log_error(exc, operation=operation, user_id=user_id)
    if not isinstance(exc, stripe.StripeError):
        raise exc

    http_exc = to_http_exception(PaymentProviderError(message, code=code))
    if settings.is_development:
        http_exc.detail["message"] = str(exc)
    raise http_exc from exc


@router.post("/payment/process")
@payment_rate_limit()
def process_payment(
    request: Request,
    payload: PaymentRequest,
    user_id: str = Depends(current_user_id),
    service: PaymentService = Depends(get_payment_service),
):
    start = time.monotonic()
    logger.info(
        "payment_processing_requested user_id=%s amount=%s currency=%s credits=%s has_payment_method=%s",
        user_id,
        payload.amount,
        payload.currency,
        payload.credits,
        bool(payload.payment_method_id),
    )
    try:
        result = service.payments.process_payment(payload.model_copy(update={"user_id": user_id}))
    except Exception as exc:
        _fail(
            exc,
            operation="payment_processing_endpoint",
            code="PAYMENT_PROCESSING_ERROR",
            message="Payment could not be processed",
            user_id=user_id,
        )

    duration_ms = int((time.monotonic() - start) * 1000)
    log_performance(
        "payment_processing_complete",
        duration_ms,
        user_id=user_id,
        payment_intent_id=result.payment_intent_id,
        status=result.status,
        amount=payload.amount,
    )
    return {"success": True, "data": result.model_dump(), "processing_time": duration_ms}


@router.post("/payment/refund")
@payment_rate_limit()
def process_refund(
    request: Request,
    payload: RefundRequest,
    user_id: str = Depends(current_user_id),
    service: PaymentService = Depends(get_payment_service),
):
    start = time.monotonic()
    logger.info(
        "refund_processing_requested user_id=%s payment_intent_id=%s amount=%s reason=%s",
        user_id,
        payload.payment_intent_id,
        payload.amount,
        payload.reason,
    )
    try:
        result = service.payments.process_refund(payload.model_copy(update={"user_id": user_id}))
    except Exception as exc:
        _fail(
            exc,
            operation="refund_processing_endpoint",
            code="REFUND_PROCESSING_ERROR",
            message="Refund could not be processed",
            user_id=user_id,
        )

    duration_ms = int((time.monotonic() - start) * 1000)
    log_performance(
        "refund_processing_complete",
        duration_ms,
        user_id=user_id,
        refund_id=result.refund_id,
        status=result.status,
        amount=result.amount,
    )
    return {"success": True, "data": result.model_dump(), "processing_time": duration_ms}


@router.post("/payment/setup-intent")
@payment_rate_limit()
def create_setup_intent(
    request: Request,
    user_id: str = Depends(current_user_id),
    service: PaymentService = Depends(get_payment_service),
):
    try:
        customer = service.customers.create_or_get_customer_by_user_id(user_id)
        setup_intent = service.payments.create_setup_intent(customer.id)
    except Exception as exc:
        _fail(exc, operation="setup_intent_endpoint", code="SETUP_INTENT_ERROR", message="Setup intent creation failed", user_id=user_id)

    logger.info(
        "setup_intent_created user_id=%s customer_id=%s setup_intent_id=%s", user_id, customer.id, setup_intent.id
    )
    return {
        "success": True,
        "data": {
            "setup_intent_id": setup_intent.id,
            "client_secret": setup_intent.client_secret,
            "customer_id": customer.id,
        },
    }


@router.get("/payment/payment-methods")
@payment_rate_limit()
def list_payment_methods(
    request: Request,
    user_id: str = Depends(current_user_id),
    service: PaymentService = Depends(get_payment_service),
):
    try:
        customer = service.customers.create_or_get_customer_by_user_id(user_id)
        methods = service.payments.list_payment_methods(customer.id)
    except Exception as exc:
        _fail(
            exc,
            operation="list_payment_methods_endpoint",
            code="LIST_PAYMENT_METHODS_ERROR",
            message="Failed to list payment methods",
            user_id=user_id,
        )

    data = []
    for method in methods:
        card = getattr(method, "card", None)
        data.append(
            {
                "id": method.id,
                "type": method.type,
                "card": {
                    "brand": card.brand,
                    "last4": card.last4,
                    "exp_month": card.exp_month,
                    "exp_year": card.exp_year,
                }
                if card
                else None,
                "created": getattr(method, "created", None),
            }
        )
    return {"success": True, "data": data}


@router.get("/payment/status/{payment_intent_id}")
@payment_rate_limit()
def payment_status(
    request: Request,
    payment_intent_id: str,
    user_id: str = Depends(current_user_id),
    service: PaymentService = Depends(get_payment_service),
):
    try:
        intent = service.payments.get_payment_intent(payment_intent_id)
    except Exception as exc:
        _fail(exc, operation="payment_status_endpoint", code="PAYMENT_STATUS_ERROR", message="Failed to get payment status", user_id=user_id)

    if metadata_value(intent.metadata, "userId") != user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"success": False, "code": "ACCESS_DENIED", "error": "Access denied"},
        )

    return {
        "success": True,
        "data": {
            "id": intent.id,
            "status": intent.status,
            "amount": intent.amount,
            "currency": intent.currency,
            "created": getattr(intent, "created", None),
            "credits": parse_int(metadata_value(intent.metadata, "credits", "0")),
        },
    }


@router.get("/payment/packages")
def list_packages():
    return {"success": True, "data": ledger.list_credit_packages()}


@router.post("/payment/checkout")
@payment_rate_limit()
def create_checkout(
    request: Request,
    payload: CheckoutRequest,
    user_id: str = Depends(current_user_id),
    service: PaymentService = Depends(get_payment_service),
):
    try:
        session = service.payments.create_checkout_session(
            user_id=user_id,
            package_id=payload.package_id,
            customer_email=payload.customer_email,
            success_url=payload.return_url,
            cancel_url=payload.return_url,
        )
    except Exception as exc:
        _fail(exc, operation="checkout_endpoint", code="CHECKOUT_ERROR", message="Unable to initialize payment session", user_id=user_id)

    return {"success": True, "data": {"checkout_url": session.url, "session_id": session.id}}


@router.post("/payment/subscription")
@payment_rate_limit()
def create_subscription(
    request: Request,
    payload: SubscriptionRequest,
    user_id: str = Depends(current_user_id),
    service: PaymentService = Depends(get_payment_service),
):
    if not payload.price_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"success": False, "code": "MISSING_PRICE_ID", "error": "Price ID is required"},
        )

    logger.info("subscription_creation_requested user_id=%s price_id=%s", user_id, payload.price_id)
    try:
        subscription = service.subscriptions.create_subscription(payload.model_copy(update={"user_id": user_id}))
    except Exception as exc:
        _fail(
            exc,
            operation="create_subscription_endpoint",
            code="SUBSCRIPTION_CREATION_ERROR",
            message="Subscription creation failed",
            user_id=user_id,
        )

    client_secret = None
    latest_invoice = getattr(subscription, "latest_invoice", None)
    payment_intent = getattr(latest_invoice, "payment_intent", None) if latest_invoice else None
    if payment_intent is not None and not isinstance(payment_intent, str):
        client_secret = getattr(payment_intent, "client_secret", None)

    return {
        "success": True,
        "data": {
            "subscription_id": subscription.id,
            "status": subscription.status,
            "current_period_end": subscription_period_end(subscription),
            "client_secret": client_secret,
        },
    }


@router.post("/payment/subscription/{subscription_id}/cancel")
@payment_rate_limit()
def cancel_subscription(
    request: Request,
    subscription_id: str,
    user_id: str = Depends(current_user_id),
    service: PaymentService = Depends(get_payment_service),
):
    logger.info("subscription_cancellation_requested user_id=%s subscription_id=%s", user_id, subscription_id)
    record = ledger.get_subscription_record(subscription_id)
    owner_id = record.get("user_id") if record else None
    try:
        if not owner_id:
            remote = service.subscriptions.get_subscription(subscription_id)
            owner_id = metadata_value(field_value(remote, "metadata"), "userId")
        if owner_id != user_id:
            raise PermissionDeniedError("Access denied")
        subscription = service.subscriptions.cancel_subscription(subscription_id)
    except Exception as exc:
        _fail(
            exc,
            operation="cancel_subscription_endpoint",
            code="SUBSCRIPTION_CANCELLATION_ERROR",
            message="Subscription cancellation failed",
            user_id=user_id,
        )

    return {
        "success": True,
        "data": {
            "subscription_id": subscription.id,
            "status": subscription.status,
            "canceled_at": getattr(subscription, "canceled_at", None),
        },
    }


@router.post("/payment/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    service: PaymentService = Depends(get_payment_service),
):
    if not stripe_signature:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"success": False, "code": "MISSING_SIGNATURE", "error": "Missing Stripe signature"},
        )

    payload = await request.body()
    try:
        event = await run_in_threadpool(service.webhooks.handle_webhook, payload, stripe_signature)
    except WebhookVerificationError as exc:
        log_error(exc, operation="stripe_webhook_endpoint")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"success": False, "code": "WEBHOOK_ERROR", "error": "Webhook processing failed", "message": str(exc)},
        ) from exc

    logger.info("webhook_processed event_type=%s event_id=%s", event.type, event.id)
    return {"success": True, "received": True, "event_id": event.id}


@router.get("/payment/history")
def payment_history(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    user_id: str = Depends(current_user_id),
):
    payments, total = ledger.list_payments(user_id, limit=limit, offset=(page - 1) * limit)
    return {
        "success": True,
        "data": {
            "payments": payments,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        },
    }


@router.get("/payment/health")
def payment_health(service: PaymentService = Depends(get_payment_service)):
    health = service.health_check()
    return {
        "success": True,
        "service": "Payment Services",
        "status": "healthy" if health["overall"] else "unhealthy",
        "services": health["services"],
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
