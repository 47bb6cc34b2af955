import unittest
from dataclasses import replace
from types import SimpleNamespace
from unittest.mock import patch

import billing_env  # noqa: F401
from billing_env import event_payload, sign_payload

import stripe
from fastapi.testclient import TestClient

from recruit_billing.core.config import settings
from recruit_billing.main import app
from recruit_billing.store import ledger


def _headers(user_id="user-1"):
    return {"X-User-Id": user_id}


class PaymentApiTests(unittest.TestCase):
    def setUp(self):
        ledger.clear_billing_data()
        ledger.create_profile(user_id="user-1", email="user1@example.com", credits=3)
        self.client = TestClient(app)

    def test_health(self):
        response = self.client.get("/v1/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "healthy")

    def test_requests_without_user_are_rejected(self):
        response = self.client.get("/v1/credits/balance")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["detail"]["code"], "AUTH_REQUIRED")

    def test_process_payment_credits_user_and_records_history(self):
        intent = SimpleNamespace(id="pi_api", status="succeeded", client_secret="pi_api_secret")
        with patch("stripe.PaymentIntent.create", return_value=intent) as create:
            response = self.client.post(
                "/v1/payment/process",
                json={"amount": 2000, "credits": 20, "customer_id": "cus_1", "payment_method_id": "pm_card"},
                headers=_headers(),
            )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["data"]["payment_intent_id"], "pi_api")
        self.assertIsNotNone(body["data"]["transaction_id"])

        params = create.call_args.kwargs
        self.assertEqual(params["metadata"]["userId"], "user-1")
        self.assertEqual(params["metadata"]["credits"], "20")
        self.assertTrue(params["confirm"])

        balance = self.client.get("/v1/credits/balance", headers=_headers()).json()
        self.assertEqual(balance["data"]["credits"], 23)

        history = self.client.get("/v1/payment/history", headers=_headers()).json()
        self.assertEqual(history["data"]["pagination"]["total"], 1)
        self.assertEqual(history["data"]["payments"][0]["provider_ref"], "pi_api")

    def test_process_payment_rejects_invalid_amount(self):
        response = self.client.post("/v1/payment/process", json={"amount": 0, "credits": 1}, headers=_headers())
        self.assertEqual(response.status_code, 422)

    def test_stripe_failures_map_to_bad_gateway(self):
        declined = stripe.CardError("Your card was declined.", None, "card_declined", http_status=402)
        with patch("stripe.PaymentIntent.create", side_effect=declined):
            response = self.client.post(
                "/v1/payment/process",
                json={"amount": 500, "credits": 5, "customer_id": "cus_1"},
                headers=_headers(),
            )
        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.json()["detail"]["code"], "PAYMENT_PROCESSING_ERROR")

    def test_caller_metadata_cannot_override_user_or_credits(self):
        intent = SimpleNamespace(id="pi_meta", status="requires_payment_method", client_secret="pi_meta_secret")
        with patch("stripe.PaymentIntent.create", return_value=intent) as create:
            response = self.client.post(
                "/v1/payment/process",
                json={
                    "amount": 1000,
                    "credits": 10,
                    "customer_id": "cus_1",
                    "metadata": {"userId": "someone-else", "credits": "1000", "campaign": "spring"},
                },
                headers=_headers(),
            )

        self.assertEqual(response.status_code, 200)
        metadata = create.call_args.kwargs["metadata"]
        self.assertEqual(metadata["userId"], "user-1")
        self.assertEqual(metadata["credits"], "10")
        self.assertEqual(metadata["campaign"], "spring")

    def test_process_payment_enforces_bounds(self):
        for body in (
            {"amount": 1, "credits": 1},
            {"amount": 1000, "credits": 1000000},
            {"amount": 1000000, "credits": 10},
            {"amount": 1000, "credits": 10, "currency": "dollars"},
        ):
            response = self.client.post("/v1/payment/process", json=body, headers=_headers())
            self.assertEqual(response.status_code, 422, body)

    def test_process_payment_uses_default_currency(self):
        intent = SimpleNamespace(id="pi_eur", status="requires_payment_method", client_secret="pi_eur_secret")
        with patch(
            "recruit_billing.payments.processing.settings", replace(settings, default_currency="eur")
        ), patch("stripe.PaymentIntent.create", return_value=intent) as create:
            response = self.client.post(
                "/v1/payment/process",
                json={"amount": 1100, "credits": 10, "customer_id": "cus_1"},
                headers=_headers(),
            )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(create.call_args.kwargs["currency"], "eur")
        self.assertEqual(response.json()["data"]["currency"], "eur")
        payments, _ = ledger.list_payments("user-1")
        self.assertEqual(payments[0]["currency"], "eur")

    def test_refund_of_another_users_payment_is_denied(self):
        ledger.create_profile(user_id="user-2", email="user2@example.com", credits=40)
        intent = SimpleNamespace(id="pi_theirs", amount=4000, metadata={"userId": "user-2", "credits": "40"})
        with patch("stripe.PaymentIntent.retrieve", return_value=intent), patch("stripe.Refund.create") as create:
            response = self.client.post(
                "/v1/payment/refund", json={"payment_intent_id": "pi_theirs"}, headers=_headers()
            )

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["detail"]["code"], "ACCESS_DENIED")
        create.assert_not_called()
        self.assertEqual(ledger.get_profile("user-1")["credits"], 3)
        self.assertEqual(ledger.get_profile("user-2")["credits"], 40)

    def test_cancel_subscription_checks_owner(self):
        ledger.upsert_subscription(subscription_id="sub_mirror", status="active", user_id="user-2")
        with patch("stripe.Subscription.cancel") as cancel:
            response = self.client.post("/v1/payment/subscription/sub_mirror/cancel", headers=_headers())
        self.assertEqual(response.status_code, 403)
        cancel.assert_not_called()

    def test_cancel_unmirrored_subscription_checks_stripe_owner(self):
        remote = {"id": "sub_remote", "status": "active", "metadata": {"userId": "user-2"}}
        with patch("stripe.Subscription.retrieve", return_value=remote), patch("stripe.Subscription.cancel") as cancel:
            response = self.client.post("/v1/payment/subscription/sub_remote/cancel", headers=_headers())
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["detail"]["code"], "ACCESS_DENIED")
        cancel.assert_not_called()

        own = dict(remote, metadata={"userId": "user-1"})
        canceled = SimpleNamespace(id="sub_remote", status="canceled", canceled_at=1900000000)
        with patch("stripe.Subscription.retrieve", return_value=own), patch(
            "stripe.Subscription.cancel", return_value=canceled
        ):
            response = self.client.post("/v1/payment/subscription/sub_remote/cancel", headers=_headers())
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["data"]["status"], "canceled")
        self.assertEqual(ledger.get_subscription_record("sub_remote")["status"], "canceled")

    def test_missing_stripe_key_returns_service_unavailable(self):
        with patch("recruit_billing.payments.base.settings", replace(settings, stripe_secret_key=None)), patch(
            "stripe.PaymentIntent.retrieve"
        ) as retrieve:
            response = self.client.get("/v1/payment/status/pi_any", headers=_headers())
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["detail"]["code"], "NOT_CONFIGURED")
        retrieve.assert_not_called()

    def test_provider_message_is_only_exposed_in_development(self):
        declined = stripe.CardError("Your card was declined.", None, "card_declined", http_status=402)
        body = {"amount": 500, "credits": 5, "customer_id": "cus_1"}

        with patch("stripe.PaymentIntent.create", side_effect=declined):
            response = self.client.post("/v1/payment/process", json=body, headers=_headers())
        self.assertEqual(response.status_code, 502)
        self.assertNotIn("message", response.json()["detail"])

        with patch("recruit_billing.api.v1.payments.settings", replace(settings, app_env="development")), patch(
            "stripe.PaymentIntent.create", side_effect=declined
        ):
            response = self.client.post("/v1/payment/process", json=body, headers=_headers())
        self.assertEqual(response.status_code, 502)
        self.assertIn("card was declined", response.json()["detail"]["message"])

    def test_payment_status_of_another_user_is_denied(self):
        intent = SimpleNamespace(
            id="pi_other",
            status="succeeded",
            amount=100,
            currency="usd",
            created=1,
            metadata={"userId": "someone-else", "credits": "1"},
        )
        with patch("stripe.PaymentIntent.retrieve", return_value=intent):
            response = self.client.get("/v1/payment/status/pi_other", headers=_headers())
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["detail"]["code"], "ACCESS_DENIED")

    def test_packages_and_checkout(self):
        packages = self.client.get("/v1/payment/packages").json()["data"]
        self.assertEqual([package["name"] for package in packages], ["Basic", "Professional", "Enterprise"])

        session = SimpleNamespace(id="cs_api", url="https://checkout.stripe.com/c/pay/cs_api")
        with patch("stripe.checkout.Session.create", return_value=session) as create:
            response = self.client.post(
                "/v1/payment/checkout",
                json={"package_id": packages[0]["id"]},
                headers=_headers(),
            )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["data"]["session_id"], "cs_api")
        metadata = create.call_args.kwargs["metadata"]
        self.assertEqual(metadata["credits"], "500")
        self.assertEqual(metadata["package_name"], "Basic")

        payments, _ = ledger.list_payments("user-1")
        self.assertEqual(payments[0]["status"], "pending")

    def test_checkout_for_unknown_package(self):
        response = self.client.post("/v1/payment/checkout", json={"package_id": 9999}, headers=_headers())
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"]["code"], "PACKAGE_NOT_FOUND")

    def test_subscription_requires_price(self):
        response = self.client.post("/v1/payment/subscription", json={}, headers=_headers())
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"]["code"], "MISSING_PRICE_ID")

    def test_webhook_endpoint(self):
        response = self.client.post("/v1/payment/webhook", content=b"{}")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"]["code"], "MISSING_SIGNATURE")

        payload = event_payload(
            "evt_api",
            "payment_intent.succeeded",
            {"id": "pi_hook", "amount": 700, "metadata": {"userId": "user-1", "credits": "7"}},
        )
        response = self.client.post(
            "/v1/payment/webhook",
            content=payload,
            headers={"Stripe-Signature": sign_payload(payload, secret="whsec_wrong")},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"]["code"], "WEBHOOK_ERROR")

        response = self.client.post(
            "/v1/payment/webhook",
            content=payload,
            headers={"Stripe-Signature": sign_payload(payload)},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["event_id"], "evt_api")
        self.assertEqual(ledger.get_profile("user-1")["credits"], 10)


class CreditApiTests(unittest.TestCase):
    def setUp(self):
        ledger.clear_billing_data()
        ledger.create_profile(user_id="user-1", email="user1@example.com", credits=3)
        self.client = TestClient(app)

    def test_deduct_and_validate(self):
        validation = self.client.post("/v1/credits/validate", json={"amount": 5}, headers=_headers()).json()
        self.assertFalse(validation["data"]["valid"])

        response = self.client.post(
            "/v1/credits/deduct",
            json={"amount": 5, "service_used": "cv-analysis"},
            headers=_headers(),
        )
        self.assertEqual(response.status_code, 402)
        self.assertEqual(response.json()["detail"]["code"], "INSUFFICIENT_CREDITS")
        self.assertEqual(response.json()["detail"]["credits"], 3)

        response = self.client.post(
            "/v1/credits/deduct",
            json={"amount": 2, "service_used": "cv-analysis", "description": "CV analysis"},
            headers=_headers(),
        )
        self.assertEqual(response.status_code, 200)
        data = response.json()["data"]
        self.assertEqual(data["remaining_credits"], 1)
        self.assertEqual(data["previous_balance"], 3)

        history = self.client.get("/v1/credits/transactions", headers=_headers()).json()["data"]
        self.assertEqual(history["pagination"]["total"], 2)
        self.assertEqual(history["usage"][0]["service_used"], "cv-analysis")

    def test_usage_log_requires_known_user(self):
        response = self.client.post(
            "/v1/credits/usage",
            json={"service": "talent-search", "amount": 1},
            headers=_headers("ghost"),
        )
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["detail"]["code"], "USER_NOT_FOUND")

    def test_profile_creation_is_idempotent(self):
        payload = {"user_id": "new-user", "email": "new@example.com", "full_name": "New User"}
        first = self.client.post("/v1/profiles", json=payload)
        second = self.client.post("/v1/profiles", json=payload)
        self.assertEqual(first.status_code, 200)
        self.assertEqual(second.json()["data"]["id"], "new-user")
        self.assertEqual(second.json()["data"]["credits"], 0)

    def test_admin_grant(self):
        ledger.create_profile(user_id="admin-1", email="admin@example.com", role="admin")
        payload = {"user_id": "user-1", "amount": 10, "reason": "Conference voucher"}

        denied = self.client.post("/v1/admin/credits/grant", json=payload, headers=_headers("user-1"))
        self.assertEqual(denied.status_code, 403)

        granted = self.client.post("/v1/admin/credits/grant", json=payload, headers=_headers("admin-1"))
        self.assertEqual(granted.status_code, 200)
        self.assertEqual(granted.json()["data"]["new_credits"], 13)

        short_reason = dict(payload, reason="abc")
        response = self.client.post("/v1/admin/credits/grant", json=short_reason, headers=_headers("admin-1"))
        self.assertEqual(response.status_code, 400)


if __name__ == "__main__":
    unittest.main()
