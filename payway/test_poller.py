import asyncio
from decimal import Decimal
from io import StringIO
from unittest.mock import Mock, patch

import requests
from django.contrib.auth.models import User
from django.core.cache import cache
from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import SimpleTestCase, TestCase

from orders.models import Order

from .errors import Timeout
from .poller import HttpStatusFetcher, OrderStatusFetcher, PollState, StatusPoller

PENDING = {"isPaid": False, "paymentResult": None}
PAID = {"isPaid": True, "paymentResult": {"status": "COMPLETED"}}
CANCELLED = {"isPaid": False, "paymentResult": {"status": "CANCELLED"}}
FAILED = {"isPaid": False, "paymentResult": {"status": "FAILED"}}


class ScriptedFetcher:
    """Answers with the scripted responses in order, repeating the last one."""

    def __init__(self, *responses, delay=0):
        self.responses = list(responses)
        self.delay = delay
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item


class StatusPollerTests(SimpleTestCase):
    def assertHandlesCleared(self, poller):
        self.assertIsNone(poller._loop_task)
        self.assertIsNone(poller._ceiling_handle)
        self.assertEqual(poller._checks, set())

    async def test_resolves_paid_and_stops_polling(self):
        fetcher = ScriptedFetcher(PENDING, PENDING, PAID)
        resolved = Mock()
        opened = Mock()
        poller = StatusPoller(fetcher, interval=0.01, ceiling=5, on_resolved=resolved, open_payment_page=opened)

        poller.start()
        self.assertEqual(poller.state, PollState.POLLING)
        state = await poller.wait()

        self.assertEqual(state, PollState.PAID)
        self.assertEqual(fetcher.calls, 3)
        self.assertEqual(poller.requests_issued, 3)
        opened.assert_called_once_with()
        resolved.assert_called_once_with(PollState.PAID, PAID)
        self.assertHandlesCleared(poller)

        await asyncio.sleep(0.05)
        self.assertEqual(fetcher.calls, 3)

    async def test_cancelled_result(self):
        poller = StatusPoller(ScriptedFetcher(PENDING, CANCELLED), interval=0.01, ceiling=5)
        poller.start()
        self.assertEqual(await poller.wait(), PollState.CANCELLED)
        self.assertHandlesCleared(poller)

    async def test_failed_result(self):
        poller = StatusPoller(ScriptedFetcher(FAILED), interval=0.01, ceiling=5)
        poller.start()
        self.assertEqual(await poller.wait(), PollState.FAILED)

    async def test_ceiling_times_out_and_stops_requests(self):
        fetcher = ScriptedFetcher(PENDING)
        poller = StatusPoller(fetcher, interval=0.01, ceiling=0.05)
        poller.start()
        self.assertEqual(await poller.wait(), PollState.TIMED_OUT)
        self.assertHandlesCleared(poller)

        calls = fetcher.calls
        self.assertGreater(calls, 1)
        await asyncio.sleep(0.05)
        self.assertEqual(fetcher.calls, calls)

    async def test_query_failures_do_not_end_the_session(self):
        fetcher = ScriptedFetcher(RuntimeError("network down"), Timeout(), PAID)
        poller = StatusPoller(fetcher, interval=0.01, ceiling=5)
        with self.assertLogs("payway.poller", level="WARNING"):
            poller.start()
            state = await poller.wait()
        self.assertEqual(state, PollState.PAID)
        self.assertEqual(fetcher.calls, 3)

    async def test_slow_query_is_abandoned_after_request_timeout(self):
        fetcher = ScriptedFetcher(PENDING, delay=1)
        poller = StatusPoller(fetcher, interval=0.01, ceiling=0.1, request_timeout=0.02)
        with self.assertLogs("payway.poller", level="WARNING"):
            poller.start()
            state = await poller.wait()
        self.assertEqual(state, PollState.TIMED_OUT)

    async def test_visibility_triggers_immediate_check(self):
        fetcher = ScriptedFetcher(PENDING, PAID)
        poller = StatusPoller(fetcher, interval=60, ceiling=120)
        poller.start()
        await asyncio.sleep(0.01)
        self.assertEqual(fetcher.calls, 1)

        task = poller.notify_visible()
        await task
        self.assertEqual(poller.state, PollState.PAID)
        self.assertEqual(fetcher.calls, 2)
        self.assertHandlesCleared(poller)

    async def test_visibility_after_resolution_is_ignored(self):
        poller = StatusPoller(ScriptedFetcher(PAID), interval=0.01, ceiling=5)
        poller.start()
        await poller.wait()
        self.assertIsNone(poller.notify_visible())

    async def test_restart_clears_previous_handles(self):
        fetcher = ScriptedFetcher(PENDING)
        poller = StatusPoller(fetcher, interval=60, ceiling=120)
        poller.start()
        first_task = poller._loop_task
        first_ceiling = poller._ceiling_handle

        poller.start()
        await asyncio.sleep(0.01)
        self.assertTrue(first_task.cancelled())
        self.assertTrue(first_ceiling.cancelled())
        self.assertIsNot(poller._loop_task, first_task)
        self.assertEqual(poller.state, PollState.POLLING)

        poller.stop()
        self.assertEqual(poller.state, PollState.IDLE)
        self.assertHandlesCleared(poller)

    async def test_restart_releases_earlier_waiters(self):
        poller = StatusPoller(ScriptedFetcher(PENDING), interval=60, ceiling=120)
        poller.start()
        waiter = asyncio.ensure_future(poller.wait())
        await asyncio.sleep(0)

        poller.start()
        await asyncio.sleep(0.01)
        self.assertTrue(waiter.done())
        self.assertTrue(waiter.cancelled())

        poller.stop()

    async def test_non_object_status_body_is_treated_as_failed_query(self):
        fetcher = ScriptedFetcher(["not", "a", "dict"], None, PAID)
        poller = StatusPoller(fetcher, interval=0.01, ceiling=5)
        with self.assertLogs("payway.poller", level="WARNING") as logs:
            poller.start()
            state = await poller.wait()
        self.assertEqual(state, PollState.PAID)
        self.assertEqual(fetcher.calls, 3)
        self.assertTrue(any("instead of an object" in line for line in logs.output))

    async def test_stop_before_resolution(self):
        fetcher = ScriptedFetcher(PENDING)
        poller = StatusPoller(fetcher, interval=0.01, ceiling=5)
        poller.start()
        await asyncio.sleep(0.03)
        poller.stop()
        calls = fetcher.calls
        await asyncio.sleep(0.03)
        self.assertEqual(fetcher.calls, calls)
        self.assertEqual(poller.state, PollState.IDLE)
        with self.assertRaises(asyncio.CancelledError):
            await poller.wait()


class HttpStatusFetcherTests(SimpleTestCase):
    async def test_returns_json_body(self):
        response = Mock()
        response.json.return_value = PAID
        session = Mock()
        session.get.return_value = response

        fetcher = HttpStatusFetcher("https://shop.example.com/orders/1/status", session=session, timeout=3)
        self.assertEqual(await fetcher(), PAID)
        session.get.assert_called_once_with("https://shop.example.com/orders/1/status", timeout=3)
        response.raise_for_status.assert_called_once_with()

    async def test_timeout_is_translated(self):
        session = Mock()
        session.get.side_effect = requests.Timeout()
        fetcher = HttpStatusFetcher("https://shop.example.com/orders/1/status", session=session)
        with self.assertRaises(Timeout):
            await fetcher()


class OrderStatusFetcherTests(TestCase):
    def setUp(self):
        cache.clear()
        user = User.objects.create_user("alice", "alice@example.com", "pw")
        self.order = Order.objects.create(
            user=user,
            items_price=Decimal("10.00"),
            total_price=Decimal("10.00"),
            aba_merchant_ref_no="ORD-1-ABCDEF",
            aba_payment_status="pending",
        )

    async def test_reads_snapshot_from_database(self):
        snapshot = await OrderStatusFetcher(self.order.pk)()
        self.assertFalse(snapshot["isPaid"])
        self.assertEqual(snapshot["paymentStatus"], "pending")


class WatchPaymentCommandTests(TestCase):
    def setUp(self):
        user = User.objects.create_user("alice", "alice@example.com", "pw")
        self.order = Order.objects.create(user=user, items_price=Decimal("10.00"), total_price=Decimal("10.00"))

    def test_reports_paid_order(self):
        out = StringIO()
        with patch("payway.management.commands.watch_payment.OrderStatusFetcher",
                   return_value=ScriptedFetcher(PENDING, PAID)):
            call_command("watch_payment", str(self.order.pk), "--interval", "0.01", stdout=out)
        self.assertIn(f"Order {self.order.pk} is paid", out.getvalue())

    def test_reports_timeout(self):
        out = StringIO()
        with patch("payway.management.commands.watch_payment.OrderStatusFetcher",
                   return_value=ScriptedFetcher(PENDING)):
            call_command("watch_payment", str(self.order.pk), "--interval", "0.01", "--ceiling", "0.05", stdout=out)
        self.assertIn("still processing", out.getvalue())

    def test_missing_order(self):
        with self.assertRaises(CommandError):
            call_command("watch_payment", str(self.order.pk + 100))
