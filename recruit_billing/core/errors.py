from __future__ import annotations

from fastapi import HTTPException, status


class BillingError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "BILLING_ERROR"

    def __init__(self, message: str, *, code: str | None = None, status_code: int | None = None):
        super().__init__(message)
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code


class InvalidRequestError(BillingError):
    code = "INVALID_REQUEST"


class UserNotFoundError(BillingError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "USER_NOT_FOUND"

    def __init__(self, message: str = "User not found"):
        super().__init__(message)


class UserSuspendedError(BillingError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "USER_SUSPENDED"


class PermissionDeniedError(BillingError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "ACCESS_DENIED"


class InsufficientCreditsError(BillingError):
    status_code = status.HTTP_402_PAYMENT_REQUIRED
    code = "INSUFFICIENT_CREDITS"

    def __init__(self, required: int, available: int):
        super().__init__(f"Insufficient credits. Required: {required}, Available: {available}")
        self.required = required
        self.available = available


class WebhookVerificationError(BillingError):
    code = "WEBHOOK_ERROR"


class PaymentProviderError(BillingError):
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "PAYMENT_PROVIDER_ERROR"


class NotConfiguredError(BillingError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "NOT_CONFIGURED"


def to_http_exception(exc: BillingError) -> HTTPException:
    return HTTPException(
        status_code=exc.status_code,
        detail={"success": False, "code": exc.code, "error": str(exc)},
    )
