from __future__ import annotations

import logging
import math
from typing import Any

import stripe

from recruit_billing.core.errors import (
    InvalidRequestError,
    PermissionDeniedError,
    UserNotFoundError,
    UserSuspendedError,
)
from recruit_billing.payments.base import BasePaymentService, metadata_value, parse_int
from recruit_billing.schemas.credits import CreditOperationResult, CreditValidation
from recruit_billing.store import ledger

logger = logging.getLogger(__name__)

# Smallest currency unit per credit.
CREDIT_RATES = {
    "usd": 100,
    "eur": 110,
}

ADMIN_CREDIT_ROLES = frozenset({"super_admin", "admin", "finance_manager"})


def _credit_rate(currency: str | None) -> int:
    return CREDIT_RATES.get((currency or "usd").lower(), CREDIT_RATES["usd"])


class CreditManagementService(BasePaymentService):
    def handle_successful_payment(self, user_id: str, credits: int, payment_intent_id: str) -> ledger.CreditMutation:
        mutation = ledger.apply_credit_delta(
            user_id,
            credits,
            "purchase",
            f"Credit purchase via Stripe payment {payment_intent_id}",
            reference=payment_intent_id,
        )
        if mutation.duplicate:
            logger.info(
                "credits_already_applied user_id=%s payment_intent_id=%s", user_id, payment_intent_id
            )
            return mutation

        logger.info(
            "credits_added user_id=%s credits_added=%s new_total=%s payment_intent_id=%s",
            user_id,
            credits,
            mutation.new_balance,
            payment_intent_id,
        )
        return mutation

    def handle_refund_credits(
        self,
        user_id: str,
        payment_intent_id: str,
        refund_amount: int,
        refund_id: str | None = None,
        payment_intent: Any = None,
    ) -> None:
        try:
            if payment_intent is None:
                payment_intent = self.with_retry(
                    lambda: stripe.PaymentIntent.retrieve(payment_intent_id),
                    "get_payment_intent",
                )
            # Credits come back from the account that bought them.
            user_id = metadata_value(payment_intent.metadata, "userId", user_id)
            original_credits = parse_int(metadata_value(payment_intent.metadata, "credits", "0"))
            intent_amount = parse_int(payment_intent.amount)
            if original_credits <= 0 or intent_amount <= 0:
                return

            credits_to_deduct = math.floor(original_credits * refund_amount / intent_amount)
            if credits_to_deduct <= 0:
                return

            if ledger.get_profile(user_id) is None:
                return

            mutation = ledger.apply_credit_delta(
                user_id,
                -credits_to_deduct,
                "refund",
                f"Credit deduction for refund {payment_intent_id}",
                reference=refund_id,
                floor_at_zero=True,
            )
            logger.info(
                "credits_deducted_for_refund user_id=%s credits_deducted=%s new_total=%s payment_intent_id=%s",
                user_id,
                credits_to_deduct,
                mutation.new_balance,
                payment_intent_id,
            )
        except Exception as exc:  # noqa: BLE001 - the refund itself already went through
            logger.exception(
                "refund_credit_adjustment_failed user_id=%s payment_intent_id=%s: %s",
                user_id,
                payment_intent_id,
                exc,
            )

    def calculate_credits_for_amount(self, amount: int, currency: str = "usd") -> int:
        return math.floor(amount / _credit_rate(currency))

    def calculate_amount_for_credits(self, credits: int, currency: str = "usd") -> int:
        return credits * _credit_rate(currency)

    def validate_credit_transaction(self, user_id: str, credits_required: int) -> CreditValidation:
        profile = ledger.get_profile(user_id)
        if not profile:
            return CreditValidation(valid=False, current_credits=0, message="User not found")

        current = int(profile["credits"])
        if current < credits_required:
            return CreditValidation(
                valid=False,
                current_credits=current,
                message=f"Insufficient credits. Required: {credits_required}, Available: {current}",
            )
        return CreditValidation(valid=True, current_credits=current)

    def deduct_credits(
        self,
        user_id: str,
        credits: int,
        operation: str,
        service_used: str | None = None,
    ) -> CreditOperationResult:
        if credits <= 0:
            raise InvalidRequestError("Valid credit amount is required")

        validation = self.validate_credit_transaction(user_id, credits)
        if not validation.valid:
            return CreditOperationResult(success=False, new_balance=validation.current_credits)

        mutation = ledger.apply_credit_delta(
            user_id,
            -credits,
            "deduction",
            f"Credits deducted for {operation}",
            require_sufficient=True,
            meta={"service_used": service_used} if service_used else None,
        )

        try:
            ledger.log_credit_usage(user_id, service_used or operation, credits)
        except Exception as exc:  # noqa: BLE001 - credits are already deducted
            logger.exception("credit_usage_log_failed user_id=%s: %s", user_id, exc)

        logger.info(
            "credits_deducted user_id=%s credits_deducted=%s new_balance=%s operation=%s",
            user_id,
            credits,
            mutation.new_balance,
            operation,
        )
        return CreditOperationResult(
            success=True,
            new_balance=mutation.new_balance,
            transaction_id=mutation.transaction_id,
        )

    def add_credits(
        self,
        user_id: str,
        credits: int,
        reason: str,
        *,
        reference: str | None = None,
    ) -> CreditOperationResult:
        if credits <= 0:
            raise InvalidRequestError("Valid credit amount is required")

        mutation = ledger.apply_credit_delta(user_id, credits, "addition", reason, reference=reference)
        logger.info(
            "credits_added user_id=%s credits_added=%s new_balance=%s reason=%s",
            user_id,
            credits,
            mutation.new_balance,
            reason,
        )
        return CreditOperationResult(
            success=True,
            new_balance=mutation.new_balance,
            transaction_id=mutation.transaction_id,
        )

    def get_credit_balance(self, user_id: str) -> int:
        profile = ledger.get_profile(user_id)
        if not profile:
            raise UserNotFoundError()
        return int(profile["credits"])

    def admin_adjust_credits(
        self,
        admin_id: str,
        user_id: str,
        amount: int,
        reason: str,
        type: str = "grant",
    ) -> dict[str, Any]:
        admin = ledger.get_profile(admin_id)
        if not admin or admin["is_suspended"]:
            raise PermissionDeniedError("Account is suspended or does not exist.")
        if admin["role"] not in ADMIN_CREDIT_ROLES:
            raise PermissionDeniedError("Not authorized to manage user credits.")

        if not user_id or not amount or not reason:
            raise InvalidRequestError("User id, credit amount and reason are required.")
        if amount <= 0:
            raise InvalidRequestError("Credit amount must be a positive number.")
        if len(reason.strip()) < 5:
            raise InvalidRequestError("Reason must be at least 5 characters long.")
        if type not in {"grant", "deduct"}:
            raise InvalidRequestError("Operation type must be grant or deduct.")

        target = ledger.get_profile(user_id)
        if not target:
            raise UserNotFoundError()
        if target["is_suspended"]:
            raise UserSuspendedError("Cannot manage credits of a suspended account.")

        if type == "grant":
            mutation = ledger.apply_credit_delta(
                user_id, amount, "admin_grant", reason.strip(), meta={"admin_id": admin_id}
            )
        else:
            mutation = ledger.apply_credit_delta(
                user_id,
                -amount,
                "admin_deduct",
                reason.strip(),
                floor_at_zero=True,
                meta={"admin_id": admin_id},
            )

        try:
            ledger.record_admin_log(
                admin_user_id=admin_id,
                action="GRANT_CREDITS" if type == "grant" else "DEDUCT_CREDITS",
                target_id=user_id,
                details={
                    "target_user_name": target.get("full_name"),
                    "target_user_email": target.get("email"),
                    "amount": amount,
                    "reason": reason.strip(),
                    "previous_credits": mutation.previous_balance,
                    "new_credits": mutation.new_balance,
                    "credit_change": mutation.applied_amount,
                    "transaction_id": mutation.transaction_id,
                },
            )
        except Exception as exc:  # noqa: BLE001 - the adjustment is already committed
            logger.exception("admin_log_failed admin_id=%s user_id=%s: %s", admin_id, user_id, exc)

        logger.info(
            "admin_credit_adjustment admin_id=%s user_id=%s type=%s amount=%s previous=%s new=%s",
            admin_id,
            user_id,
            type,
            amount,
            mutation.previous_balance,
            mutation.new_balance,
        )
        return {
            "user_id": user_id,
            "type": type,
            "amount": amount,
            "previous_credits": mutation.previous_balance,
            "new_credits": mutation.new_balance,
            "transaction_id": mutation.transaction_id,
        }

    def log_usage(self, user_id: str, service: str, amount: int) -> dict[str, Any]:
        if not service or amount <= 0:
            raise InvalidRequestError("Service name and valid amount are required")
        if ledger.get_profile(user_id) is None:
            raise UserNotFoundError()
        return ledger.log_credit_usage(user_id, service, amount)

    def list_transactions(self, user_id: str, *, limit: int = 20, offset: int = 0) -> tuple[list[dict[str, Any]], int]:
        return ledger.list_credit_transactions(user_id, limit=limit, offset=offset)

    def list_usage(self, user_id: str, *, limit: int = 20) -> list[dict[str, Any]]:
        return ledger.list_credit_usage(user_id, limit=limit)
