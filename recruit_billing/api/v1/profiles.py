from __future__ import annotations

from fastapi import APIRouter, Depends

from recruit_billing.core.config import settings
from recruit_billing.core.security import require_service
from recruit_billing.schemas.credits import ProfileCreateRequest
from recruit_billing.store import ledger

router = APIRouter()


@router.post("/profiles")
def create_profile(payload: ProfileCreateRequest, _: None = Depends(require_service)):
    profile = ledger.create_profile(
        user_id=payload.user_id,
        email=payload.email,
        full_name=payload.full_name,
        credits=settings.welcome_credits,
    )
    return {"success": True, "data": profile}
