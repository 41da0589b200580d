import base64
import hashlib
import hmac
import json
from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

import requests
from django.contrib.auth.models import User
from django.core.cache import cache
from django.core.management import call_command
from django.test import SimpleTestCase, TestCase, override_settings
from django.urls import reverse
from django.utils import timezone

from orders.models import Order, OrderItem
from orders.services import order_status_snapshot

from . import errors, status
from .integrations import payway as gateway
from .services import initiate_payment, refresh_from_gateway

PAYWAY_SETTINGS = {
    "ENABLED": True,
    "MERCHANT_ID": "test_merchant",
    "SECRET_KEY": "test_secret_key",
    "BASE_URL": "https://checkout-sandbox.payway.com.kh",
    "CURRENCY": "USD",
    "PAYMENT_OPTION": "",
    "REQUEST_TIMEOUT": 5.0,
    "AMOUNT_TOLERANCE": Decimal("0.01"),
    "STATUS_CODES": None,
    "STATUS_CACHE_SECONDS": 5,
}


def expected_signature(message):
    digest = hmac.new(b"test_secret_key", message.encode("utf-8"), hashlib.sha512).digest()
    return base64.b64encode(digest).decode("ascii")


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


@override_settings(PAYWAY=PAYWAY_SETTINGS)
class SigningTests(SimpleTestCase):
    def test_callback_hash_covers_tran_id_status_apv_and_merchant(self):
        self.assertEqual(
            gateway.callback_hash(tran_id="ORD-1-ABCDEF", status="0", apv="10.00"),
            expected_signature("ORD-1-ABCDEF010.00test_merchant"),
        )

    def test_verify_rejects_tampered_amount(self):
        good = gateway.callback_hash(tran_id="ORD-1-ABCDEF", status="0", apv="10.00")
        self.assertTrue(gateway.verify_callback_hash(
            tran_id="ORD-1-ABCDEF", status="0", apv="10.00", merchant_id="", received_hash=good))
        self.assertFalse(gateway.verify_callback_hash(
            tran_id="ORD-1-ABCDEF", status="0", apv="1.00", merchant_id="", received_hash=good))
        self.assertFalse(gateway.verify_callback_hash(
            tran_id="ORD-1-ABCDEF", status="0", apv="10.00", merchant_id="", received_hash=None))

    def test_merchant_ref_fits_gateway_limit(self):
        ref = gateway.generate_merchant_ref_no(123456789012)
        self.assertTrue(ref.startswith("ORD-56789012-"))
        self.assertLessEqual(len(ref), gateway.MAX_REF_LENGTH)
        self.assertNotEqual(ref, gateway.generate_merchant_ref_no(123456789012))

    def test_amount_is_formatted_with_two_decimals(self):
        self.assertEqual(gateway.amount_str(Decimal("25.5")), "25.50")
        self.assertEqual(gateway.amount_str("10.005"), "10.01")
        with self.assertRaises(errors.GatewayError):
            gateway.amount_str("ten")

    def test_purchase_params_are_signed_in_canonical_order(self):
        params = gateway.create_purchase_params(
            merchant_ref_no="ORD-7-QWERTY",
            order_id=7,
            amount=Decimal("25.50"),
            items=[("Mug", 2, Decimal("12.75"))],
            return_url="https://shop.example.com/payway/callback",
            cancel_url="https://shop.example.com/checkout/7?cancelled=true",
            continue_success_url="https://shop.example.com/account/orders/7",
            email="alice@example.com",
        )
        self.assertEqual(params["tran_id"], "ORD-7-QWERTY")
        self.assertEqual(params["return_params"], "ORD-7-QWERTY")
        self.assertEqual(params["amount"], "25.50")
        self.assertEqual(params["merchant_id"], "test_merchant")
        self.assertEqual(json.loads(base64.b64decode(params["items"])),
                         [{"name": "Mug", "quantity": 2, "price": 12.75}])
        self.assertEqual(json.loads(base64.b64decode(params["custom_fields"])),
                         {"merchant_ref_no": "ORD-7-QWERTY", "order_id": "7"})

        message = "".join(str(params.get(k) or "") for k in gateway.PURCHASE_HASH_FIELDS)
        self.assertEqual(params["hash"], expected_signature(message))

    @override_settings(PAYWAY={**PAYWAY_SETTINGS, "SECRET_KEY": ""})
    def test_missing_secret_is_a_configuration_error(self):
        with self.assertRaises(errors.ConfigurationError):
            gateway.callback_hash(tran_id="x", status="0", apv="1.00")
        self.assertFalse(gateway.is_enabled())


@override_settings(PAYWAY=PAYWAY_SETTINGS)
class CheckTransactionTests(SimpleTestCase):
    def test_nested_response_is_parsed(self):
        payload = {"data": {"payment_status_code": 0, "total_amount": 10.0, "payment_status": "APPROVED"},
                   "status": {"code": "00"}}
        with patch("payway.integrations.payway.requests.post", return_value=FakeResponse(payload=payload)) as post:
            result = gateway.check_transaction("ORD-1-ABCDEF")

        self.assertEqual(result["status"], 0)
        self.assertEqual(result["amount"], "10.0")
        self.assertEqual(result["tran_id"], "ORD-1-ABCDEF")
        self.assertEqual(result["description"], "APPROVED")
        url = post.call_args.args[0]
        self.assertTrue(url.endswith(gateway.CHECK_TRANSACTION_PATH))
        self.assertEqual(post.call_args.kwargs["timeout"], 5.0)
        body = post.call_args.kwargs["json"]
        self.assertEqual(body["hash"], expected_signature(f"{body['req_time']}test_merchantORD-1-ABCDEF"))

    def test_flat_response_is_parsed(self):
        payload = {"tran_id": "ORD-1-ABCDEF", "status": "4", "amount": "10.00"}
        with patch("payway.integrations.payway.requests.post", return_value=FakeResponse(payload=payload)):
            result = gateway.check_transaction("ORD-1-ABCDEF")
        self.assertEqual(result["status"], 4)
        self.assertEqual(result["amount"], "10.00")

    def test_timeout_is_reported_as_retryable(self):
        with patch("payway.integrations.payway.requests.post", side_effect=requests.Timeout()):
            with self.assertRaises(errors.Timeout) as cm:
                gateway.check_transaction("ORD-1-ABCDEF")
        self.assertTrue(cm.exception.retryable)

    def test_connection_failure_is_a_gateway_error(self):
        with patch("payway.integrations.payway.requests.post", side_effect=requests.ConnectionError("down")):
            with self.assertRaises(errors.GatewayError):
                gateway.check_transaction("ORD-1-ABCDEF")

    def test_non_200_is_a_gateway_error(self):
        with patch("payway.integrations.payway.requests.post",
                   return_value=FakeResponse(status_code=500, text="server error")):
            with self.assertRaises(errors.GatewayError):
                gateway.check_transaction("ORD-1-ABCDEF")

    def test_missing_status_code_is_a_gateway_error(self):
        with patch("payway.integrations.payway.requests.post", return_value=FakeResponse(payload={"data": {}})):
            with self.assertRaises(errors.GatewayError):
                gateway.check_transaction("ORD-1-ABCDEF")


class StatusTableTests(SimpleTestCase):
    def test_default_codes(self):
        self.assertEqual(status.outcome_for(0), status.SUCCESS)
        self.assertEqual(status.outcome_for(1), status.CANCELLED)
        self.assertEqual(status.outcome_for(2), status.FAILED)
        self.assertEqual(status.outcome_for(3), status.FAILED)
        self.assertEqual(status.outcome_for(4), status.PENDING)

    def test_unknown_code_stays_pending(self):
        with self.assertLogs("payway.status", level="WARNING"):
            self.assertEqual(status.outcome_for(42), status.PENDING)

    @override_settings(PAYWAY={**PAYWAY_SETTINGS, "STATUS_CODES": {5: "failed"}})
    def test_codes_can_be_extended(self):
        self.assertEqual(status.outcome_for(5), status.FAILED)
        self.assertEqual(status.outcome_for(0), status.SUCCESS)

    @override_settings(PAYWAY={**PAYWAY_SETTINGS, "STATUS_CODES": {5: "refunded"}})
    def test_unknown_outcome_is_a_configuration_error(self):
        with self.assertRaises(errors.ConfigurationError):
            status.outcome_for(5)


class InitiationFixtureMixin:
    def setUp(self):
        cache.clear()
        self.user = User.objects.create_user("alice", "alice@example.com", "pw", first_name="Alice", last_name="Smith")
        self.order = Order.objects.create(
            user=self.user,
            items_price=Decimal("10.00"),
            total_price=Decimal("10.00"),
        )
        OrderItem.objects.create(order=self.order, name="Mug", quantity=1, price=Decimal("10.00"))


@override_settings(PAYWAY=PAYWAY_SETTINGS)
class InitiatePaymentTests(InitiationFixtureMixin, TestCase):
    def test_initiation_assigns_ref_and_leaves_order_unpaid(self):
        redirect = initiate_payment(self.order.pk, self.user)

        self.order.refresh_from_db()
        self.assertEqual(redirect.merchant_ref_no, self.order.aba_merchant_ref_no)
        self.assertFalse(redirect.reused)
        self.assertLessEqual(len(redirect.merchant_ref_no), 20)
        self.assertFalse(self.order.is_paid)
        self.assertEqual(self.order.aba_payment_status, "pending")
        self.assertIsNotNone(self.order.aba_payment_initiated_at)
        self.assertTrue(redirect.url.endswith(gateway.PURCHASE_PATH))
        self.assertEqual(redirect.fields["amount"], "10.00")
        self.assertEqual(redirect.fields["firstname"], "Alice")
        self.assertEqual(redirect.fields["lastname"], "Smith")
        self.assertEqual(redirect.fields["return_url"], "https://shop.example.com/payway/callback")
        unsigned = {k: v for k, v in redirect.fields.items() if k != "hash"}
        self.assertEqual(redirect.fields["hash"], gateway.purchase_hash(unsigned))

    def test_reinitiation_reuses_stored_ref(self):
        first = initiate_payment(self.order.pk, self.user)
        Order.objects.filter(pk=self.order.pk).update(
            aba_payment_status="cancelled", payment_result={"status": "CANCELLED"},
        )
        second = initiate_payment(self.order.pk, self.user)

        self.assertEqual(first.merchant_ref_no, second.merchant_ref_no)
        self.assertTrue(second.reused)
        self.order.refresh_from_db()
        self.assertEqual(self.order.aba_payment_status, "pending")
        self.assertIsNone(self.order.payment_result)

    def test_cached_status_is_refreshed_after_commit(self):
        self.assertIsNone(order_status_snapshot(self.order.pk)["paymentStatus"])
        with self.captureOnCommitCallbacks() as callbacks:
            initiate_payment(self.order.pk, self.user)
        self.assertEqual(len(callbacks), 1)

        callbacks[0]()
        self.assertEqual(order_status_snapshot(self.order.pk)["paymentStatus"], "pending")

    def test_ref_collision_retries_with_a_new_ref(self):
        other = Order.objects.create(
            user=self.user, items_price=Decimal("1.00"), total_price=Decimal("1.00"),
            aba_merchant_ref_no="ORD-TAKEN-AAAAAA",
        )
        with patch("payway.services.gateway.generate_merchant_ref_no",
                   side_effect=[other.aba_merchant_ref_no, "ORD-FRESH-BBBBBB"]):
            redirect = initiate_payment(self.order.pk, self.user)
        self.assertEqual(redirect.merchant_ref_no, "ORD-FRESH-BBBBBB")

    def test_paid_order_is_rejected(self):
        Order.objects.filter(pk=self.order.pk).update(is_paid=True, paid_at=timezone.now())
        with self.assertRaises(errors.AlreadyPaid):
            initiate_payment(self.order.pk, self.user)

    def test_other_customers_order_is_forbidden(self):
        bob = User.objects.create_user("bob", "bob@example.com", "pw")
        with self.assertRaises(errors.Forbidden):
            initiate_payment(self.order.pk, bob)
        self.order.refresh_from_db()
        self.assertIsNone(self.order.aba_merchant_ref_no)

    def test_missing_order(self):
        with self.assertRaises(errors.OrderNotFound):
            initiate_payment(self.order.pk + 100, self.user)

    def test_zero_total_is_rejected(self):
        Order.objects.filter(pk=self.order.pk).update(total_price=Decimal("0.00"))
        with self.assertRaises(errors.InvalidOrder):
            initiate_payment(self.order.pk, self.user)

    def test_other_payment_method_is_rejected(self):
        Order.objects.filter(pk=self.order.pk).update(payment_method="Cash")
        with self.assertRaises(errors.InvalidOrder):
            initiate_payment(self.order.pk, self.user)

    @override_settings(PAYWAY={**PAYWAY_SETTINGS, "ENABLED": False})
    def test_disabled_gateway_writes_nothing(self):
        with self.assertRaises(errors.ConfigurationError):
            initiate_payment(self.order.pk, self.user)
        self.order.refresh_from_db()
        self.assertIsNone(self.order.aba_merchant_ref_no)


@override_settings(PAYWAY=PAYWAY_SETTINGS)
class CreatePaymentViewTests(InitiationFixtureMixin, TestCase):
    def _post(self, payload):
        return self.client.post(
            reverse("payway:create_payment"),
            data=json.dumps(payload),
            content_type="application/json",
        )

    def test_requires_login(self):
        resp = self._post({"orderId": self.order.pk})
        self.assertEqual(resp.status_code, 401)

    def test_returns_signed_form(self):
        self.client.force_login(self.user)
        resp = self._post({"orderId": self.order.pk})
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["orderId"], self.order.pk)
        self.assertEqual(body["paymentParams"]["tran_id"], body["merchantRefNo"])
        self.assertIn("hash", body["paymentParams"])

    def test_order_id_is_required(self):
        self.client.force_login(self.user)
        resp = self._post({})
        self.assertEqual(resp.status_code, 400)

    def test_paid_order_maps_to_error_code(self):
        Order.objects.filter(pk=self.order.pk).update(is_paid=True, paid_at=timezone.now())
        self.client.force_login(self.user)
        resp = self._post({"orderId": self.order.pk})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["code"], "ORDER_ALREADY_PAID")

    def test_foreign_order_is_forbidden(self):
        bob = User.objects.create_user("bob", "bob@example.com", "pw")
        self.client.force_login(bob)
        resp = self._post({"orderId": self.order.pk})
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["code"], "UNAUTHORIZED")

    @override_settings(PAYWAY={**PAYWAY_SETTINGS, "ENABLED": False})
    def test_disabled_gateway_is_unavailable(self):
        self.client.force_login(self.user)
        resp = self._post({"orderId": self.order.pk})
        self.assertEqual(resp.status_code, 503)
        self.assertEqual(resp.json()["code"], "CONFIGURATION_ERROR")


@override_settings(PAYWAY=PAYWAY_SETTINGS)
class RefreshFromGatewayTests(InitiationFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.ref = initiate_payment(self.order.pk, self.user).merchant_ref_no

    def _gateway_result(self, code, amount="10.00"):
        return {"tran_id": self.ref, "status": code, "amount": amount, "description": "", "raw": {}}

    def test_order_without_ref_is_rejected(self):
        Order.objects.filter(pk=self.order.pk).update(aba_merchant_ref_no=None)
        self.order.refresh_from_db()
        with self.assertRaises(errors.InvalidOrder):
            refresh_from_gateway(self.order)

    def test_success_marks_paid(self):
        self.order.refresh_from_db()
        with patch("payway.services.gateway.check_transaction", return_value=self._gateway_result(0)), \
                self.captureOnCommitCallbacks(execute=True):
            result = refresh_from_gateway(self.order)
        self.assertTrue(result.transitioned)
        self.order.refresh_from_db()
        self.assertTrue(self.order.is_paid)
        self.assertFalse(self.order.aba_callback_received)
        self.assertEqual(self.order.status_history.get().source, "api_check")

    def test_paid_order_is_not_queried(self):
        Order.objects.filter(pk=self.order.pk).update(is_paid=True, paid_at=timezone.now())
        self.order.refresh_from_db()
        with patch("payway.services.gateway.check_transaction") as check:
            result = refresh_from_gateway(self.order)
        check.assert_not_called()
        self.assertTrue(result.already_paid)

    def test_amount_mismatch_writes_nothing(self):
        self.order.refresh_from_db()
        with patch("payway.services.gateway.check_transaction", return_value=self._gateway_result(0, "1.00")):
            with self.assertRaises(errors.AmountMismatch):
                refresh_from_gateway(self.order)
        self.order.refresh_from_db()
        self.assertFalse(self.order.is_paid)
        self.assertEqual(self.order.status_history.count(), 0)

    def test_invalid_amount_is_a_gateway_error(self):
        self.order.refresh_from_db()
        with patch("payway.services.gateway.check_transaction", return_value=self._gateway_result(0, "n/a")):
            with self.assertRaises(errors.GatewayError):
                refresh_from_gateway(self.order)


@override_settings(PAYWAY=PAYWAY_SETTINGS)
class CheckStatusViewTests(InitiationFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.ref = initiate_payment(self.order.pk, self.user).merchant_ref_no

    def _post(self, payload):
        return self.client.post(
            reverse("payway:check_status"),
            data=json.dumps(payload),
            content_type="application/json",
        )

    def test_pending_status_is_reported(self):
        self.client.force_login(self.user)
        result = {"tran_id": self.ref, "status": 4, "amount": None, "description": "", "raw": {}}
        with patch("payway.services.gateway.check_transaction", return_value=result):
            resp = self._post({"orderId": self.order.pk})
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["status"], "pending")
        self.assertEqual(body["paymentStatus"], "processing")
        self.assertEqual(body["statusCode"], 4)
        self.assertFalse(body["isPaid"])

    def test_gateway_timeout_maps_to_504(self):
        self.client.force_login(self.user)
        with patch("payway.services.gateway.check_transaction", side_effect=errors.Timeout()):
            resp = self._post({"orderId": self.order.pk})
        self.assertEqual(resp.status_code, 504)
        self.assertTrue(resp.json()["retryable"])

    def test_staff_may_check_any_order(self):
        admin = User.objects.create_user("root", "root@example.com", "pw", is_staff=True)
        self.client.force_login(admin)
        result = {"tran_id": self.ref, "status": 2, "amount": None, "description": "", "raw": {}}
        with patch("payway.services.gateway.check_transaction", return_value=result):
            resp = self._post({"orderId": self.order.pk})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["paymentResult"]["status"], "FAILED")


@override_settings(PAYWAY=PAYWAY_SETTINGS)
class ReconcileCommandTests(InitiationFixtureMixin, TestCase):
    def _run(self, *args):
        out = StringIO()
        call_command("reconcile_payway_orders", "--sleep", "0", *args, stdout=out)
        return out.getvalue()

    def test_nothing_to_do(self):
        self.assertIn("No pending orders", self._run())

    def test_pending_order_is_marked_paid(self):
        ref = initiate_payment(self.order.pk, self.user).merchant_ref_no
        Order.objects.filter(pk=self.order.pk).update(
            aba_payment_initiated_at=timezone.now() - timedelta(minutes=5),
        )
        result = {"tran_id": ref, "status": 0, "amount": "10.00", "description": "", "raw": {}}
        with patch("payway.services.gateway.check_transaction", return_value=result), \
                self.captureOnCommitCallbacks(execute=True):
            output = self._run()

        self.assertIn("marked 1 paid", output)
        self.order.refresh_from_db()
        self.assertTrue(self.order.is_paid)

    def test_gateway_errors_do_not_stop_the_run(self):
        initiate_payment(self.order.pk, self.user)
        Order.objects.filter(pk=self.order.pk).update(
            aba_payment_initiated_at=timezone.now() - timedelta(minutes=5),
        )
        with patch("payway.services.gateway.check_transaction", side_effect=errors.GatewayError()):
            output = self._run()
        self.assertIn("API_ERROR", output)
        self.assertIn("Checked 1, marked 0 paid.", output)

    def test_recently_initiated_orders_are_left_alone(self):
        initiate_payment(self.order.pk, self.user)
        with patch("payway.services.gateway.check_transaction") as check:
            output = self._run("--older-than-minutes", "10")
        check.assert_not_called()
        self.assertIn("No pending orders", output)
