"""Client-side reconciliation of a pending PayWay payment.

The pushback is server to server, so the shopper's page never hears about
it. :class:`StatusPoller` closes that gap: it polls the order status on a
fixed interval, re-checks whenever the page becomes visible again, and stops
as soon as the order resolves or the ceiling expires.

All timer handles belong to the poller instance and are cleared on every
exit path (resolution, ``stop()``, or a second ``start()``).
"""
import asyncio
import enum
import logging

import requests
from asgiref.sync import sync_to_async

from orders.services import order_status_snapshot

from .errors import Timeout

logger = logging.getLogger(__name__)


class PollState(enum.Enum):
    IDLE = "idle"
    TAB_OPENED = "tab_opened"
    POLLING = "polling"
    PAID = "paid"
    CANCELLED = "cancelled"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def resolved(self) -> bool:
        return self in (PollState.PAID, PollState.CANCELLED, PollState.FAILED, PollState.TIMED_OUT)


class StatusPoller:
    def __init__(self, fetch_status, *, interval=3.0, ceiling=300.0, request_timeout=10.0,
                 on_resolved=None, open_payment_page=None):
        self.fetch_status = fetch_status
        self.interval = interval
        self.ceiling = ceiling
        self.request_timeout = request_timeout
        self.on_resolved = on_resolved
        self.open_payment_page = open_payment_page

        self.state = PollState.IDLE
        self.requests_issued = 0
        self.last_status = None

        self._loop_task = None
        self._ceiling_handle = None
        self._checks = set()
        self._resolution = None

    def start(self):
        """Open the payment page and begin polling. Must run inside an event loop."""
        self._clear_handles()
        if self._resolution is not None and not self._resolution.done():
            self._resolution.cancel()
        loop = asyncio.get_running_loop()

        self.state = PollState.TAB_OPENED
        if self.open_payment_page is not None:
            self.open_payment_page()

        self.state = PollState.POLLING
        self.requests_issued = 0
        self._resolution = loop.create_future()
        self._loop_task = loop.create_task(self._poll_loop())
        self._ceiling_handle = loop.call_later(self.ceiling, self._time_out)

    def stop(self):
        """Tear the poller down without resolving it (page unload)."""
        self._clear_handles()
        if not self.state.resolved:
            self.state = PollState.IDLE
        if self._resolution is not None and not self._resolution.done():
            self._resolution.cancel()

    async def wait(self) -> PollState:
        if self._resolution is None:
            return self.state
        return await self._resolution

    def notify_visible(self):
        """The page regained visibility: check right away instead of waiting for the next tick."""
        if self.state is not PollState.POLLING:
            return None
        task = asyncio.get_running_loop().create_task(self.check())
        self._checks.add(task)
        task.add_done_callback(self._checks.discard)
        return task

    async def check(self):
        if self.state is not PollState.POLLING:
            return None
        self.requests_issued += 1
        try:
            snapshot = await asyncio.wait_for(self.fetch_status(), self.request_timeout)
        except asyncio.TimeoutError:
            logger.warning("Order status query timed out after %ss", self.request_timeout)
            return None
        except asyncio.CancelledError:
            raise
        except Exception:
            # Individual failures never end the session; the ceiling does
            logger.warning("Order status query failed", exc_info=True)
            return None
        if not isinstance(snapshot, dict):
            logger.warning("Order status query returned %s instead of an object", type(snapshot).__name__)
            return None

        if self.state is not PollState.POLLING:
            return None
        self.last_status = snapshot
        self._apply(snapshot)
        return snapshot

    async def _poll_loop(self):
        while self.state is PollState.POLLING:
            await self.check()
            if self.state is not PollState.POLLING:
                break
            await asyncio.sleep(self.interval)

    def _apply(self, snapshot):
        if snapshot.get("isPaid"):
            self._resolve(PollState.PAID)
            return
        result_status = str((snapshot.get("paymentResult") or {}).get("status") or "").upper()
        if result_status == "CANCELLED":
            self._resolve(PollState.CANCELLED)
        elif result_status == "FAILED":
            self._resolve(PollState.FAILED)

    def _time_out(self):
        self._ceiling_handle = None
        if self.state is PollState.POLLING:
            logger.info("Payment still processing after %ss; polling stopped", self.ceiling)
            self._resolve(PollState.TIMED_OUT)

    def _resolve(self, state):
        self.state = state
        self._clear_handles()
        if self._resolution is not None and not self._resolution.done():
            self._resolution.set_result(state)
        logger.info("Payment poller resolved: %s after %s request(s)", state.value, self.requests_issued)
        if self.on_resolved is not None:
            self.on_resolved(state, self.last_status)

    def _clear_handles(self):
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if self._loop_task is not None and self._loop_task is not current:
            self._loop_task.cancel()
        self._loop_task = None
        if self._ceiling_handle is not None:
            self._ceiling_handle.cancel()
            self._ceiling_handle = None
        for task in list(self._checks):
            if task is not current:
                task.cancel()
        self._checks.clear()


class OrderStatusFetcher:
    """Reads the status snapshot straight from the database."""

    def __init__(self, order_id):
        self.order_id = order_id

    async def __call__(self):
        return await sync_to_async(order_status_snapshot)(self.order_id)


class HttpStatusFetcher:
    """Queries the order status endpoint over HTTP with an authenticated session."""

    def __init__(self, status_url, *, session=None, timeout=10.0):
        self.status_url = status_url
        self.session = session or requests.Session()
        self.timeout = timeout

    def _get(self):
        try:
            resp = self.session.get(self.status_url, timeout=self.timeout)
        except requests.Timeout:
            raise Timeout(f"Status query to {self.status_url} timed out")
        resp.raise_for_status()
        return resp.json()

    async def __call__(self):
        return await asyncio.to_thread(self._get)
