import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from recruit_billing.core.errors import BillingError, to_http_exception
from recruit_billing.core.rate_limit import rate_limit
from recruit_billing.core.security import current_user_id
from recruit_billing.payments.service import PaymentService, get_payment_service
from recruit_billing.schemas.credits import DeductCreditsRequest, UsageLogRequest, ValidateCreditsRequest

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/credits/balance")
def credit_balance(
    user_id: str = Depends(current_user_id),
    service: PaymentService = Depends(get_payment_service),
):
    try:
        credits = service.credits.get_credit_balance(user_id)
    except BillingError as exc:
        raise to_http_exception(exc) from exc
    return {"success": True, "data": {"user_id": user_id, "credits": credits}}


@router.post("/credits/validate")
def validate_credits(
    payload: ValidateCreditsRequest,
    user_id: str = Depends(current_user_id),
    service: PaymentService = Depends(get_payment_service),
):
    validation = service.credits.validate_credit_transaction(user_id, payload.amount)
    return {"success": True, "data": validation.model_dump()}


@router.post("/credits/deduct")
@rate_limit()
def deduct_credits(
    request: Request,
    payload: DeductCreditsRequest,
    user_id: str = Depends(current_user_id),
    service: PaymentService = Depends(get_payment_service),
):
    logger.info(
        "deduct_credits_requested user_id=%s amount=%s service_used=%s", user_id, payload.amount, payload.service_used
    )
    try:
        result = service.credits.deduct_credits(
            user_id,
            payload.amount,
            payload.description,
            service_used=payload.service_used,
        )
    except BillingError as exc:
        raise to_http_exception(exc) from exc

    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "success": False,
                "code": "INSUFFICIENT_CREDITS",
                "error": "Insufficient credits. Please purchase more credits to continue.",
                "credits": result.new_balance,
            },
        )

    return {
        "success": True,
        "data": {
            "remaining_credits": result.new_balance,
            "deducted_amount": payload.amount,
            "previous_balance": result.new_balance + payload.amount,
            "service_used": payload.service_used,
            "description": payload.description,
            "transaction_id": result.transaction_id,
        },
    }


@router.post("/credits/usage")
def log_credit_usage(
    payload: UsageLogRequest,
    user_id: str = Depends(current_user_id),
    service: PaymentService = Depends(get_payment_service),
):
    try:
        entry = service.credits.log_usage(user_id, payload.service, payload.amount)
    except BillingError as exc:
        raise to_http_exception(exc) from exc
    return {
        "success": True,
        "data": {
            "log_id": entry["id"],
            "user_id": user_id,
            "service": payload.service,
            "amount": payload.amount,
            "timestamp": entry["usage_date"],
            "description": payload.description,
        },
    }


@router.get("/credits/transactions")
def credit_transactions(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    user_id: str = Depends(current_user_id),
    service: PaymentService = Depends(get_payment_service),
):
    transactions, total = service.credits.list_transactions(user_id, limit=limit, offset=(page - 1) * limit)
    return {
        "success": True,
        "data": {
            "transactions": transactions,
            "usage": service.credits.list_usage(user_id, limit=limit),
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        },
    }
