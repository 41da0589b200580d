from decimal import Decimal
from unittest.mock import patch

from django.contrib.auth.models import User
from django.core import mail
from django.core.cache import cache
from django.db import DatabaseError
from django.test import TestCase, TransactionTestCase
from django.urls import reverse

from orders.models import Order, PaymentStatusEntry

from .errors import PersistenceError
from .integrations import payway as gateway
from .services import initiate_payment


class CallbackTests(TestCase):
    def setUp(self):
        cache.clear()
        self.user = User.objects.create_user("alice", "alice@example.com", "pw")
        self.order = Order.objects.create(
            user=self.user,
            items_price=Decimal("10.00"),
            total_price=Decimal("10.00"),
        )
        self.ref = initiate_payment(self.order.pk, self.user).merchant_ref_no

    def _post(self, **fields):
        data = {"tran_id": self.ref, "status": "0", "apv": "10.00"}
        data.update(fields)
        if "hash" not in data:
            data["hash"] = gateway.callback_hash(tran_id=data["tran_id"], status=data["status"], apv=data["apv"])
        return self.client.post(reverse("payway:callback"), data)

    def test_initiated_order_is_not_paid_yet(self):
        self.order.refresh_from_db()
        self.assertEqual(self.order.aba_merchant_ref_no, self.ref)
        self.assertFalse(self.order.is_paid)
        self.assertIsNone(self.order.paid_at)

    def test_valid_callback_marks_paid_once(self):
        with self.captureOnCommitCallbacks(execute=True):
            resp = self._post()
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {
            "success": True,
            "message": "Callback processed successfully",
            "orderId": self.order.pk,
            "status": "success",
        })
        self.order.refresh_from_db()
        self.assertTrue(self.order.is_paid)
        self.assertEqual(self.order.payment_result, {
            "id": self.ref,
            "status": "COMPLETED",
            "email_address": "alice@example.com",
            "pricePaid": "10.00",
        })
        paid_at = self.order.paid_at
        self.assertEqual(len(mail.outbox), 2)

        # Gateway redelivery
        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            resp = self._post()
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["message"], "Order already processed")
        self.assertEqual(callbacks, [])
        self.order.refresh_from_db()
        self.assertEqual(self.order.paid_at, paid_at)
        self.assertEqual(len(mail.outbox), 2)
        self.assertEqual(PaymentStatusEntry.objects.filter(order=self.order, status="completed").count(), 1)

    def test_late_failure_does_not_downgrade_paid_order(self):
        with self.captureOnCommitCallbacks(execute=True):
            self._post()
        resp = self._post(status="3", apv="0.00")
        self.assertEqual(resp.status_code, 200)
        self.order.refresh_from_db()
        self.assertTrue(self.order.is_paid)
        self.assertEqual(self.order.payment_result["status"], "COMPLETED")

    def test_amount_within_tolerance_is_accepted(self):
        with self.captureOnCommitCallbacks(execute=True):
            resp = self._post(apv="10.01")
        self.assertEqual(resp.status_code, 200)
        self.order.refresh_from_db()
        self.assertTrue(self.order.is_paid)

    def test_amount_mismatch_is_rejected(self):
        with self.assertLogs("payway.services", level="ERROR"):
            resp = self._post(apv="5.00")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["code"], "AMOUNT_MISMATCH")
        self.order.refresh_from_db()
        self.assertFalse(self.order.is_paid)
        self.assertIsNone(self.order.paid_at)
        self.assertFalse(PaymentStatusEntry.objects.exists())

    def test_bad_signature_is_rejected_without_writes(self):
        with self.assertLogs("payway.audit", level="WARNING"):
            resp = self._post(hash="bm90IGEgcmVhbCBzaWduYXR1cmU=")
        self.assertEqual(resp.status_code, 400)
        body = resp.json()
        self.assertEqual(body, {
            "success": False,
            "error": "Invalid callback signature",
            "code": "INVALID_SIGNATURE",
            "retryable": False,
        })
        self.assertNotIn(b"test_secret_key", resp.content)
        self.order.refresh_from_db()
        self.assertFalse(self.order.is_paid)
        self.assertFalse(self.order.aba_callback_received)
        self.assertFalse(PaymentStatusEntry.objects.exists())

    def test_signature_from_another_amount_is_rejected(self):
        forged = gateway.callback_hash(tran_id=self.ref, status="0", apv="1.00")
        resp = self._post(hash=forged)
        self.assertEqual(resp.status_code, 400)
        self.order.refresh_from_db()
        self.assertFalse(self.order.is_paid)

    def test_unknown_ref_is_rejected(self):
        resp = self._post(tran_id="ORD-NOPE-ZZZZZZ")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["code"], "ORDER_NOT_FOUND")
        self.order.refresh_from_db()
        self.assertFalse(self.order.is_paid)
        self.assertFalse(PaymentStatusEntry.objects.exists())

    def test_malformed_payload_is_rejected(self):
        resp = self.client.post(reverse("payway:callback"), {"tran_id": self.ref, "status": "0"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["code"], "INVALID_PAYLOAD")

        resp = self._post(status="zero", hash="x")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["code"], "INVALID_PAYLOAD")

    def test_get_is_not_allowed(self):
        resp = self.client.get(reverse("payway:callback"))
        self.assertEqual(resp.status_code, 405)

    def test_cancel_is_recorded_and_can_be_retried(self):
        resp = self._post(status="1", apv="0.00")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "cancelled")
        self.order.refresh_from_db()
        self.assertFalse(self.order.is_paid)
        self.assertEqual(self.order.aba_payment_status, "cancelled")
        self.assertEqual(self.order.payment_result["status"], "CANCELLED")
        self.assertTrue(self.order.aba_callback_received)

        retry = initiate_payment(self.order.pk, self.user)
        self.assertEqual(retry.merchant_ref_no, self.ref)
        with self.captureOnCommitCallbacks(execute=True):
            resp = self._post()
        self.assertEqual(resp.status_code, 200)
        self.order.refresh_from_db()
        self.assertTrue(self.order.is_paid)

    def test_declined_is_recorded_as_failed(self):
        resp = self._post(status="2", apv="0.00")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "failed")
        self.order.refresh_from_db()
        self.assertEqual(self.order.aba_payment_status, "failed")
        self.assertEqual(self.order.aba_status_code, 2)

    def test_unmapped_code_leaves_order_pending(self):
        resp = self._post(status="9", apv="0.00")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "pending")
        self.order.refresh_from_db()
        self.assertFalse(self.order.is_paid)
        self.assertEqual(self.order.aba_payment_status, "processing")

    def test_storage_failure_asks_gateway_to_retry(self):
        with patch("payway.services.mark_order_paid", side_effect=PersistenceError()):
            resp = self._post()
        self.assertEqual(resp.status_code, 503)
        self.assertEqual(resp.json()["code"], "DATABASE_ERROR")
        self.assertTrue(resp.json()["retryable"])
        self.order.refresh_from_db()
        self.assertFalse(self.order.is_paid)

    def test_status_endpoint_reflects_payment_after_callback(self):
        self.client.force_login(self.user)
        status_url = reverse("orders:status", args=[self.order.pk])
        self.assertFalse(self.client.get(status_url).json()["isPaid"])

        with self.captureOnCommitCallbacks(execute=True):
            self._post()

        body = self.client.get(status_url).json()
        self.assertTrue(body["isPaid"])
        self.assertEqual(body["paymentResult"]["status"], "COMPLETED")


class CallbackCommitTests(TransactionTestCase):
    """Runs against real commits so on_commit hooks fire inside the request."""

    def setUp(self):
        cache.clear()
        self.user = User.objects.create_user("alice", "alice@example.com", "pw")
        self.order = Order.objects.create(
            user=self.user,
            items_price=Decimal("10.00"),
            total_price=Decimal("10.00"),
        )
        self.ref = initiate_payment(self.order.pk, self.user).merchant_ref_no

    def _post(self):
        data = {"tran_id": self.ref, "status": "0", "apv": "10.00"}
        data["hash"] = gateway.callback_hash(tran_id=self.ref, status="0", apv="10.00")
        return self.client.post(reverse("payway:callback"), data)

    def test_receipt_is_sent_once_across_redelivery(self):
        self.assertEqual(self._post().status_code, 200)
        self.assertEqual(len(mail.outbox), 2)

        resp = self._post()
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["message"], "Order already processed")
        self.assertEqual(len(mail.outbox), 2)

    def test_notification_failure_does_not_turn_a_committed_payment_into_a_retry(self):
        with patch("orders.services.send_payment_confirmation", side_effect=DatabaseError("gone")), \
                self.assertLogs("orders.services", level="ERROR"):
            resp = self._post()

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "success")
        self.order.refresh_from_db()
        self.assertTrue(self.order.is_paid)
        self.assertEqual(PaymentStatusEntry.objects.filter(order=self.order, status="completed").count(), 1)
