from decimal import Decimal
from unittest.mock import patch

from django.contrib.auth.models import User
from django.core import mail
from django.core.cache import cache
from django.db import DatabaseError
from django.test import TestCase
from django.urls import reverse

from payway.errors import OrderNotPaid, PersistenceError

from .models import Order, OrderItem, PaymentStatusEntry, Product
from .services import (
    mark_order_delivered, mark_order_paid, order_status_snapshot, record_payment_outcome,
)

PAYMENT_RESULT = {"id": "ORD-00000001-ABC123", "status": "COMPLETED", "pricePaid": "10.00"}


class OrderFixtureMixin:
    def setUp(self):
        cache.clear()
        self.user = User.objects.create_user("alice", "alice@example.com", "pw")
        self.product = Product.objects.create(sku="TEE-1", name="T-shirt", price=Decimal("5.00"), count_in_stock=10)
        self.order = Order.objects.create(
            user=self.user,
            items_price=Decimal("10.00"),
            total_price=Decimal("10.00"),
            aba_merchant_ref_no="ORD-00000001-ABC123",
        )
        OrderItem.objects.create(order=self.order, product=self.product, name="T-shirt", quantity=2, price=Decimal("5.00"))


class MarkOrderPaidTests(OrderFixtureMixin, TestCase):
    def test_first_call_transitions_and_fires_side_effects_once(self):
        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            self.assertTrue(mark_order_paid(self.order.pk, PAYMENT_RESULT, transaction_id="ORD-00000001-ABC123", status_code=0))
        self.assertEqual(len(callbacks), 1)

        self.order.refresh_from_db()
        self.assertTrue(self.order.is_paid)
        self.assertIsNotNone(self.order.paid_at)
        self.assertEqual(self.order.payment_result, PAYMENT_RESULT)
        self.assertEqual(self.order.aba_payment_status, "completed")
        self.assertTrue(self.order.aba_callback_received)
        self.product.refresh_from_db()
        self.assertEqual(self.product.count_in_stock, 8)
        # customer receipt + admin notice
        self.assertEqual(len(mail.outbox), 2)
        self.assertEqual(mail.outbox[0].to, ["alice@example.com"])

    def test_second_call_is_a_no_op(self):
        with self.captureOnCommitCallbacks(execute=True):
            mark_order_paid(self.order.pk, PAYMENT_RESULT)
        paid_at = Order.objects.get(pk=self.order.pk).paid_at

        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            self.assertFalse(mark_order_paid(self.order.pk, {"id": "other", "status": "COMPLETED"}))

        self.assertEqual(callbacks, [])
        self.order.refresh_from_db()
        self.assertEqual(self.order.paid_at, paid_at)
        self.assertEqual(self.order.payment_result, PAYMENT_RESULT)
        self.product.refresh_from_db()
        self.assertEqual(self.product.count_in_stock, 8)
        self.assertEqual(len(mail.outbox), 2)
        self.assertEqual(self.order.status_history.filter(status="completed").count(), 1)

    def test_order_without_merchant_ref_is_never_paid(self):
        Order.objects.filter(pk=self.order.pk).update(aba_merchant_ref_no=None)
        self.assertFalse(mark_order_paid(self.order.pk, PAYMENT_RESULT))
        self.order.refresh_from_db()
        self.assertFalse(self.order.is_paid)

    def test_paid_transition_invalidates_cached_status(self):
        self.assertFalse(order_status_snapshot(self.order.pk)["isPaid"])
        with self.captureOnCommitCallbacks(execute=True):
            mark_order_paid(self.order.pk, PAYMENT_RESULT)
        snapshot = order_status_snapshot(self.order.pk)
        self.assertTrue(snapshot["isPaid"])
        self.assertEqual(snapshot["paymentResult"], PAYMENT_RESULT)

    def test_notification_failure_after_commit_is_logged_not_raised(self):
        with patch("orders.services.send_payment_confirmation", side_effect=DatabaseError("gone")), \
                self.assertLogs("orders.services", level="ERROR"), \
                self.captureOnCommitCallbacks(execute=True):
            self.assertTrue(mark_order_paid(self.order.pk, PAYMENT_RESULT))
        self.order.refresh_from_db()
        self.assertTrue(self.order.is_paid)

    def test_database_error_surfaces_as_retryable_persistence_error(self):
        with patch("orders.services.Order.objects.filter", side_effect=DatabaseError("locked")):
            with self.assertRaises(PersistenceError) as cm:
                mark_order_paid(self.order.pk, PAYMENT_RESULT)
        self.assertTrue(cm.exception.retryable)
        self.order.refresh_from_db()
        self.assertFalse(self.order.is_paid)
        self.assertIsNone(self.order.paid_at)


class RecordPaymentOutcomeTests(OrderFixtureMixin, TestCase):
    def test_failure_is_recorded_for_display(self):
        recorded = record_payment_outcome(
            self.order.pk, status="cancelled", status_code=1, source="callback",
            payment_result={"id": "x", "status": "CANCELLED"}, details="Payment cancelled by user",
        )
        self.assertTrue(recorded)
        self.order.refresh_from_db()
        self.assertFalse(self.order.is_paid)
        self.assertEqual(self.order.aba_payment_status, "cancelled")
        self.assertEqual(self.order.payment_result["status"], "CANCELLED")
        entry = PaymentStatusEntry.objects.get(order=self.order)
        self.assertEqual((entry.status, entry.status_code, entry.source), ("cancelled", 1, "callback"))

    def test_cached_status_is_dropped_only_on_commit(self):
        self.assertIsNone(order_status_snapshot(self.order.pk)["paymentStatus"])
        with self.captureOnCommitCallbacks() as callbacks:
            record_payment_outcome(self.order.pk, status="failed", status_code=2, source="callback")
        self.assertEqual(len(callbacks), 1)
        self.assertIsNone(order_status_snapshot(self.order.pk)["paymentStatus"])

        callbacks[0]()
        self.assertEqual(order_status_snapshot(self.order.pk)["paymentStatus"], "failed")

    def test_paid_order_is_not_downgraded(self):
        with self.captureOnCommitCallbacks(execute=True):
            mark_order_paid(self.order.pk, PAYMENT_RESULT)
        recorded = record_payment_outcome(self.order.pk, status="failed", status_code=2, source="callback")
        self.assertFalse(recorded)
        self.order.refresh_from_db()
        self.assertEqual(self.order.aba_payment_status, "completed")
        self.assertEqual(self.order.status_history.count(), 1)


class MarkOrderDeliveredTests(OrderFixtureMixin, TestCase):
    def test_unpaid_order_cannot_be_delivered(self):
        with self.assertRaises(OrderNotPaid):
            mark_order_delivered(self.order.pk)
        self.order.refresh_from_db()
        self.assertFalse(self.order.is_delivered)

    def test_paid_order_is_delivered_once(self):
        with self.captureOnCommitCallbacks(execute=True):
            mark_order_paid(self.order.pk, PAYMENT_RESULT)
        self.assertTrue(mark_order_delivered(self.order.pk))
        self.assertFalse(mark_order_delivered(self.order.pk))
        self.order.refresh_from_db()
        self.assertTrue(self.order.is_delivered)
        self.assertIsNotNone(self.order.delivered_at)


class OrderStatusViewTests(OrderFixtureMixin, TestCase):
    def test_requires_login(self):
        resp = self.client.get(reverse("orders:status", args=[self.order.pk]))
        self.assertEqual(resp.status_code, 401)

    def test_owner_sees_payment_state(self):
        self.client.force_login(self.user)
        resp = self.client.get(reverse("orders:status", args=[self.order.pk]))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {
            "isPaid": False,
            "paidAt": None,
            "paymentResult": None,
            "paymentStatus": None,
            "isDelivered": False,
        })

    def test_post_is_accepted_too(self):
        self.client.force_login(self.user)
        resp = self.client.post(reverse("orders:status", args=[self.order.pk]))
        self.assertEqual(resp.status_code, 200)

    def test_other_customer_is_forbidden(self):
        bob = User.objects.create_user("bob", "bob@example.com", "pw")
        self.client.force_login(bob)
        resp = self.client.get(reverse("orders:status", args=[self.order.pk]))
        self.assertEqual(resp.status_code, 403)

    def test_staff_may_read_any_order(self):
        admin = User.objects.create_user("root", "root@example.com", "pw", is_staff=True)
        self.client.force_login(admin)
        resp = self.client.get(reverse("orders:status", args=[self.order.pk]))
        self.assertEqual(resp.status_code, 200)

    def test_missing_order(self):
        self.client.force_login(self.user)
        resp = self.client.get(reverse("orders:status", args=[self.order.pk + 100]))
        self.assertEqual(resp.status_code, 404)
