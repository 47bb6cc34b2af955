from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


RefundReason = Literal["duplicate", "fraudulent", "requested_by_customer"]


class PaymentRequest(BaseModel):
    amount: int = Field(ge=100, le=100000, description="Amount in the smallest currency unit (cents).")
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    user_id: str = ""
    description: str = Field(default="Credit purchase", min_length=5, max_length=200)
    credits: int = Field(ge=1, le=1000)
    metadata: dict[str, str] = Field(default_factory=dict)
    payment_method_id: str | None = None
    customer_id: str | None = None


class PaymentResult(BaseModel):
    payment_intent_id: str
    client_secret: str | None = None
    status: str
    amount: int
    currency: str
    credits: int
    transaction_id: int | None = None


class RefundRequest(BaseModel):
    payment_intent_id: str = Field(min_length=1)
    amount: int | None = Field(default=None, gt=0)
    reason: RefundReason | None = None
    user_id: str = ""


class RefundResult(BaseModel):
    refund_id: str
    status: str
    amount: int
    reason: str


class CustomerData(BaseModel):
    user_id: str
    email: str
    name: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


class SubscriptionRequest(BaseModel):
    user_id: str = ""
    price_id: str | None = None
    customer_id: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


class CheckoutRequest(BaseModel):
    package_id: int = Field(gt=0)
    customer_email: str | None = Field(default=None, max_length=200)
    return_url: str | None = Field(default=None, max_length=2000)


class WebhookEvent(BaseModel):
    id: str
    type: str
    data: dict[str, Any]
    created: int | None = None
