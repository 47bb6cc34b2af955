from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class CreditValidation(BaseModel):
    valid: bool
    current_credits: int
    message: str | None = None


class CreditOperationResult(BaseModel):
    success: bool
    new_balance: int
    transaction_id: int | None = None


class DeductCreditsRequest(BaseModel):
    amount: int = Field(gt=0)
    description: str = Field(default="Credits used", max_length=500)
    service_used: str = Field(default="unknown", min_length=1, max_length=100)


class ValidateCreditsRequest(BaseModel):
    amount: int = Field(gt=0)


class UsageLogRequest(BaseModel):
    service: str = Field(min_length=1, max_length=100)
    amount: int = Field(gt=0)
    description: str = Field(default="", max_length=500)


class AdminCreditAdjustRequest(BaseModel):
    user_id: str = Field(min_length=1)
    amount: int
    reason: str = ""
    type: Literal["grant", "deduct"] = "grant"


class ProfileCreateRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=100)
    email: str = Field(min_length=3, max_length=200)
    full_name: str | None = Field(default=None, max_length=200)
