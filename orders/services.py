import logging

from django.conf import settings
from django.core.cache import cache
from django.db import DatabaseError, transaction
from django.db.models import F
from django.utils import timezone

from payway.errors import OrderNotFound, OrderNotPaid, PersistenceError

from .emails import send_payment_confirmation
from .models import Order, OrderItem, PaymentStatusEntry, Product

logger = logging.getLogger(__name__)


def _cache_key(order_id) -> str:
    return f"orders:status:{order_id}"


def invalidate_order_cache(order_id) -> None:
    cache.delete(_cache_key(order_id))


def order_status_snapshot(order_id) -> dict:
    """Payment view of an order as served to the status endpoint and the poller."""
    key = _cache_key(order_id)
    snapshot = cache.get(key)
    if snapshot is not None:
        return snapshot
    row = (
        Order.objects.filter(pk=order_id)
        .values("is_paid", "paid_at", "payment_result", "aba_payment_status", "is_delivered")
        .first()
    )
    if row is None:
        raise OrderNotFound(order_id=order_id)
    snapshot = {
        "isPaid": row["is_paid"],
        "paidAt": row["paid_at"].isoformat() if row["paid_at"] else None,
        "paymentResult": row["payment_result"],
        "paymentStatus": row["aba_payment_status"],
        "isDelivered": row["is_delivered"],
    }
    cache.set(key, snapshot, settings.PAYWAY.get("STATUS_CACHE_SECONDS", 5))
    return snapshot


def _after_paid(order_id) -> None:
    invalidate_order_cache(order_id)
    # The paid flip is already committed; a failure here must not reach the caller
    try:
        order = Order.objects.select_related("user").get(pk=order_id)
        send_payment_confirmation(order=order)
    except Exception:
        logger.exception("Post-payment notifications failed for order %s", order_id)
        return
    logger.info("Order %s paid (ref=%s)", order_id, order.aba_merchant_ref_no)


def mark_order_paid(order_id, payment_result: dict, *, source="callback", transaction_id=None,
                    status_code=None) -> bool:
    """Flip ``is_paid`` for ``order_id``. Returns True only for the call that did it.

    The flip is a single conditional UPDATE; a concurrent or repeated call
    matches zero rows and returns False without touching stock, history or
    notifications.
    """
    now = timezone.now()
    fields = {
        "is_paid": True,
        "paid_at": now,
        "payment_result": payment_result,
        "aba_payment_status": "completed",
        "aba_status_code": status_code,
        "updated_at": now,
    }
    if transaction_id:
        fields["aba_transaction_id"] = transaction_id
    if source == "callback":
        fields["aba_callback_received"] = True
    try:
        with transaction.atomic():
            updated = Order.objects.filter(
                pk=order_id, is_paid=False, aba_merchant_ref_no__isnull=False,
            ).update(**fields)
            if not updated:
                return False

            for item in OrderItem.objects.filter(order_id=order_id, product__isnull=False):
                Product.objects.filter(pk=item.product_id).update(
                    count_in_stock=F("count_in_stock") - item.quantity
                )
            PaymentStatusEntry.objects.create(
                order_id=order_id,
                status="completed",
                status_code=status_code,
                source=source,
                details=f"Paid {payment_result.get('pricePaid', '')}".strip(),
            )
            transaction.on_commit(lambda: _after_paid(order_id))
    except DatabaseError as e:
        logger.exception("Could not mark order %s as paid", order_id)
        raise PersistenceError(order_id=order_id) from e
    return True


def record_payment_outcome(order_id, *, status, status_code, source, transaction_id=None,
                           payment_result=None, details="") -> bool:
    """Store a non-paid outcome (failed, cancelled, processing) for display.

    Never touches a paid order. Returns False when the order was already paid.
    """
    fields = {
        "aba_payment_status": status,
        "aba_status_code": status_code,
        "updated_at": timezone.now(),
    }
    if transaction_id:
        fields["aba_transaction_id"] = transaction_id
    if source == "callback":
        fields["aba_callback_received"] = True
    if payment_result is not None:
        fields["payment_result"] = payment_result
    try:
        with transaction.atomic():
            updated = Order.objects.filter(pk=order_id, is_paid=False).update(**fields)
            if updated:
                PaymentStatusEntry.objects.create(
                    order_id=order_id, status=status, status_code=status_code,
                    source=source, details=details[:255],
                )
                transaction.on_commit(lambda: invalidate_order_cache(order_id))
    except DatabaseError as e:
        logger.exception("Could not record payment outcome for order %s", order_id)
        raise PersistenceError(order_id=order_id) from e
    return bool(updated)


def mark_order_delivered(order_id) -> bool:
    now = timezone.now()
    updated = Order.objects.filter(pk=order_id, is_paid=True, is_delivered=False).update(
        is_delivered=True, delivered_at=now, updated_at=now,
    )
    if not updated:
        order = Order.objects.filter(pk=order_id).values("is_paid", "is_delivered").first()
        if order is None:
            raise OrderNotFound(order_id=order_id)
        if not order["is_paid"]:
            raise OrderNotPaid(order_id=order_id)
        return False
    transaction.on_commit(lambda: invalidate_order_cache(order_id))
    return True
