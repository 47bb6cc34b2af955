from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from recruit_billing.core.errors import BillingError, to_http_exception
from recruit_billing.core.security import current_user_id
from recruit_billing.payments.service import PaymentService, get_payment_service
from recruit_billing.schemas.credits import AdminCreditAdjustRequest

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/admin/credits/grant")
def admin_grant_credits(
    payload: AdminCreditAdjustRequest,
    admin_id: str = Depends(current_user_id),
    service: PaymentService = Depends(get_payment_service),
):
    try:
        result = service.credits.admin_adjust_credits(
            admin_id,
            payload.user_id,
            payload.amount,
            payload.reason,
            payload.type,
        )
    except BillingError as exc:
        logger.warning("admin_credit_adjustment_rejected admin_id=%s code=%s: %s", admin_id, exc.code, exc)
        raise to_http_exception(exc) from exc
    return {"success": True, "data": result}
