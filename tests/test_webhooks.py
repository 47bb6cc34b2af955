import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import billing_env
from billing_env import event_payload, sign_payload

from recruit_billing.core.errors import WebhookVerificationError
from recruit_billing.payments.base import ServiceConfig
from recruit_billing.payments.webhooks import WebhookHandlerService
from recruit_billing.store import ledger


class WebhookHandlerTests(unittest.TestCase):
    def setUp(self):
        ledger.clear_billing_data()
        ledger.create_profile(user_id="user-1", email="user1@example.com")
        self.service = WebhookHandlerService(config=ServiceConfig(retries=1, backoff_delay_ms=0))

    def _deliver(self, event_id, event_type, obj):
        payload = event_payload(event_id, event_type, obj)
        return self.service.handle_webhook(payload.encode("utf-8"), sign_payload(payload))

    def _balance(self):
        return ledger.get_profile("user-1")["credits"]

    def test_payment_intent_succeeded_credits_user_once(self):
        ledger.record_payment(
            user_id="user-1",
            provider_ref="pi_100",
            kind="payment_intent",
            amount=2500,
            currency="usd",
            credits=25,
            status="requires_payment_method",
        )
        obj = {"id": "pi_100", "amount": 2500, "metadata": {"userId": "user-1", "credits": "25"}}

        event = self._deliver("evt_1", "payment_intent.succeeded", obj)
        self.assertEqual(event.type, "payment_intent.succeeded")
        self.assertEqual(self._balance(), 25)

        # Stripe redelivery of the same event.
        self._deliver("evt_1", "payment_intent.succeeded", obj)
        # A different event about the same payment intent.
        self._deliver("evt_2", "payment_intent.succeeded", obj)
        self.assertEqual(self._balance(), 25)

        payments, _ = ledger.list_payments("user-1")
        self.assertEqual(payments[0]["status"], "succeeded")
        self.assertIsNotNone(payments[0]["completed_at"])

    def test_checkout_session_completed_applies_package_credits(self):
        ledger.record_payment(
            user_id="user-1",
            provider_ref="cs_test_1",
            kind="checkout",
            amount=5000,
            currency="usd",
            credits=500,
            status="pending",
            package_id=1,
        )
        session = {
            "id": "cs_test_1",
            "metadata": {"user_id": "user-1", "package_id": "1", "credits": "500", "package_name": "Basic"},
        }
        self._deliver("evt_checkout", "checkout.session.completed", session)
        self.assertEqual(self._balance(), 500)

        transactions, _ = ledger.list_credit_transactions("user-1")
        self.assertEqual(transactions[0]["transaction_type"], "purchase")
        self.assertEqual(transactions[0]["description"], "Purchase completed: Basic - 500 credits")
        payments, _ = ledger.list_payments("user-1")
        self.assertEqual(payments[0]["status"], "completed")

    def test_checkout_session_without_metadata_is_rejected(self):
        with self.assertRaises(WebhookVerificationError):
            self._deliver("evt_bad_checkout", "checkout.session.completed", {"id": "cs_2", "metadata": {}})
        self.assertFalse(ledger.has_processed_event("evt_bad_checkout"))

    def test_invoice_payment_grants_subscription_credits(self):
        invoice = {
            "id": "in_1",
            "subscription": "sub_1",
            "amount_paid": 2200,
            "currency": "eur",
            "metadata": {"userId": "user-1"},
        }
        self._deliver("evt_invoice", "invoice.payment_succeeded", invoice)
        self.assertEqual(self._balance(), 20)

    def test_subscription_lifecycle_is_mirrored(self):
        subscription = {
            "id": "sub_9",
            "customer": "cus_9",
            "status": "active",
            "current_period_end": 1900000000,
            "metadata": {"userId": "user-1"},
        }
        self._deliver("evt_sub_created", "customer.subscription.created", subscription)
        record = ledger.get_subscription_record("sub_9")
        self.assertEqual(record["status"], "active")
        self.assertEqual(record["user_id"], "user-1")
        self.assertEqual(record["customer_id"], "cus_9")

        self._deliver("evt_sub_deleted", "customer.subscription.deleted", subscription)
        self.assertEqual(ledger.get_subscription_record("sub_9")["status"], "canceled")

    def test_unknown_user_is_acknowledged(self):
        obj = {"id": "pi_ghost", "amount": 100, "metadata": {"userId": "ghost", "credits": "1"}}
        self._deliver("evt_ghost", "payment_intent.succeeded", obj)
        self.assertTrue(ledger.has_processed_event("evt_ghost"))

    def test_unhandled_event_type_is_recorded(self):
        self._deliver("evt_other", "charge.dispute.created", {"id": "dp_1"})
        self.assertTrue(ledger.has_processed_event("evt_other"))

    def test_rejects_bad_signatures(self):
        payload = event_payload("evt_sig", "payment_intent.succeeded", {"id": "pi_sig"})
        with self.assertRaises(WebhookVerificationError) as ctx:
            self.service.handle_webhook(payload, "")
        self.assertEqual(ctx.exception.code, "MISSING_SIGNATURE")

        with self.assertRaises(WebhookVerificationError):
            self.service.handle_webhook(payload, sign_payload(payload, secret="whsec_wrong"))

        with self.assertRaises(WebhookVerificationError):
            self.service.handle_webhook(payload, sign_payload(payload, timestamp=1))

    def test_rejects_unparseable_payloads(self):
        payload = "not json"
        with self.assertRaises(WebhookVerificationError):
            self.service.handle_webhook(payload, sign_payload(payload))

    def test_handles_every_documented_event_type(self):
        expected = {
            "payment_intent.succeeded",
            "payment_intent.payment_failed",
            "payment_intent.canceled",
            "checkout.session.completed",
            "invoice.payment_succeeded",
            "invoice.payment_failed",
            "customer.subscription.created",
            "customer.subscription.updated",
            "customer.subscription.deleted",
            "customer.created",
            "customer.updated",
            "payment_method.attached",
        }
        self.assertEqual(set(self.service.handled_event_types), expected)
        self.assertEqual(billing_env.WEBHOOK_SECRET, self.service.webhook_secret)

    def test_checkout_for_missing_profile_is_retried_until_it_exists(self):
        ledger.record_payment(
            user_id="late-user",
            provider_ref="cs_late",
            kind="checkout_session",
            amount=5000,
            currency="usd",
            credits=500,
            status="pending",
            package_id=1,
        )
        session = {
            "id": "cs_late",
            "metadata": {"user_id": "late-user", "package_id": "1", "credits": "500", "package_name": "Basic"},
        }
        with self.assertRaises(WebhookVerificationError) as ctx:
            self._deliver("evt_late", "checkout.session.completed", session)
        self.assertEqual(ctx.exception.code, "USER_NOT_FOUND")
        self.assertFalse(ledger.has_processed_event("evt_late"))
        self.assertEqual(ledger.get_payment("cs_late")["status"], "pending")

        ledger.create_profile(user_id="late-user", email="late@example.com")
        self._deliver("evt_late", "checkout.session.completed", session)
        self.assertEqual(ledger.get_profile("late-user")["credits"], 500)
        self.assertEqual(ledger.get_payment("cs_late")["status"], "completed")

    def test_failed_and_canceled_intents_update_payment_status(self):
        for ref in ("pi_fail", "pi_cancel"):
            ledger.record_payment(
                user_id="user-1",
                provider_ref=ref,
                kind="payment_intent",
                amount=1000,
                currency="usd",
                credits=10,
                status="requires_payment_method",
            )
        self._deliver(
            "evt_fail",
            "payment_intent.payment_failed",
            {"id": "pi_fail", "amount": 1000, "last_payment_error": {"message": "Card declined"}},
        )
        self._deliver("evt_cancel", "payment_intent.canceled", {"id": "pi_cancel", "amount": 1000})

        self.assertEqual(ledger.get_payment("pi_fail")["status"], "failed")
        self.assertEqual(ledger.get_payment("pi_cancel")["status"], "canceled")
        self.assertEqual(self._balance(), 0)

    def test_subscription_updates_run_lifecycle_hooks(self):
        subscription = {"id": "sub_hooks", "customer": "cus_1", "status": "active", "metadata": {"userId": "user-1"}}
        with self.assertLogs("recruit_billing.payments.webhooks", level="INFO") as logs:
            self._deliver("evt_active", "customer.subscription.updated", subscription)
        self.assertTrue(any("subscription_activation" in line for line in logs.output))

        canceled = dict(subscription, status="canceled")
        with self.assertLogs("recruit_billing.payments.webhooks", level="INFO") as logs:
            self._deliver("evt_canceled", "customer.subscription.updated", canceled)
        self.assertTrue(any("subscription_cancellation" in line for line in logs.output))
        self.assertEqual(ledger.get_subscription_record("sub_hooks")["status"], "canceled")

    def test_invoice_with_parent_subscription_details(self):
        invoice = {
            "id": "in_2",
            "amount_paid": 1500,
            "currency": "usd",
            "parent": {"subscription_details": {"subscription": "sub_2", "metadata": {"userId": "user-1"}}},
        }
        self._deliver("evt_invoice_parent", "invoice.payment_succeeded", invoice)
        self.assertEqual(self._balance(), 15)

    def test_subscription_period_end_read_from_items(self):
        subscription = {
            "id": "sub_items",
            "customer": "cus_1",
            "status": "active",
            "items": {"data": [{"id": "si_1", "current_period_end": 1950000000}]},
            "metadata": {"userId": "user-1"},
        }
        self._deliver("evt_items", "customer.subscription.created", subscription)
        self.assertEqual(ledger.get_subscription_record("sub_items")["current_period_end"], 1950000000)


class WebhookRetentionTests(unittest.TestCase):
    def setUp(self):
        ledger.clear_billing_data()

    def test_purge_drops_only_expired_event_ids(self):
        ledger.record_webhook_event("evt_old", "payment_intent.succeeded")
        later = datetime.now(timezone.utc) + timedelta(days=31)
        with patch("recruit_billing.store.ledger._utc_now", return_value=later):
            ledger.record_webhook_event("evt_recent", "payment_intent.succeeded")
            deleted = ledger.purge_old_webhook_events(retention_days=30)

        self.assertEqual(deleted, 1)
        self.assertFalse(ledger.has_processed_event("evt_old"))
        self.assertTrue(ledger.has_processed_event("evt_recent"))


if __name__ == "__main__":
    unittest.main()
