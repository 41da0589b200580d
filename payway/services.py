import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from django.conf import settings
from django.db import DatabaseError, IntegrityError, transaction
from django.urls import reverse
from django.utils import timezone

from orders.models import Order
from orders.services import invalidate_order_cache, mark_order_paid, record_payment_outcome

from . import status
from .errors import (
    AlreadyPaid, AmountMismatch, Forbidden, GatewayError, InvalidOrder, InvalidPayload,
    InvalidSignature, OrderNotFound, PersistenceError,
)
from .forms import parse_callback
from .integrations import payway as gateway

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("payway.audit")

PAYMENT_METHOD = "ABA PayWay"
MAX_REF_ATTEMPTS = 5


@dataclass(frozen=True)
class PaymentRedirect:
    url: str
    fields: dict
    merchant_ref_no: str
    reused: bool


@dataclass(frozen=True)
class CallbackResult:
    order_id: int
    outcome: str
    transitioned: bool
    already_paid: bool = False


def get_owned_order(order_id, user, *, allow_staff=False) -> Order:
    try:
        order = Order.objects.select_related("user").get(pk=order_id)
    except (Order.DoesNotExist, ValueError, TypeError):
        raise OrderNotFound(order_id=order_id)
    if order.user_id != user.pk and not (allow_staff and user.is_staff):
        raise Forbidden(order_id=order_id)
    return order


def _assign_merchant_ref(order) -> tuple:
    """Persist a merchant ref on ``order`` unless one is already stored.

    Returns ``(ref, reused)``. The ref never changes once set, so a repeated
    initiation hands back the stored one.
    """
    candidate = None
    for _ in range(MAX_REF_ATTEMPTS):
        candidate = gateway.generate_merchant_ref_no(order.pk)
        now = timezone.now()
        pending = {
            "aba_payment_initiated_at": now,
            "aba_payment_status": "pending",
            "aba_status_code": None,
            "payment_result": None,
            "updated_at": now,
        }
        try:
            with transaction.atomic():
                claimed = Order.objects.filter(
                    pk=order.pk, is_paid=False, aba_merchant_ref_no__isnull=True,
                ).update(aba_merchant_ref_no=candidate, **pending)
                if not claimed:
                    Order.objects.filter(pk=order.pk, is_paid=False).update(**pending)
        except IntegrityError:
            logger.warning("Merchant ref %s already taken, retrying", candidate)
            continue
        except DatabaseError as e:
            raise PersistenceError(order_id=order.pk) from e
        break
    else:
        raise PersistenceError("Could not allocate a unique merchant reference", order_id=order.pk)

    row = Order.objects.filter(pk=order.pk).values("aba_merchant_ref_no", "is_paid").get()
    if row["is_paid"]:
        raise AlreadyPaid(order_id=order.pk)
    transaction.on_commit(lambda: invalidate_order_cache(order.pk))
    ref = row["aba_merchant_ref_no"]
    return ref, ref != candidate


def initiate_payment(order_id, user, *, site_url=None) -> PaymentRedirect:
    order = get_owned_order(order_id, user)
    if order.is_paid:
        raise AlreadyPaid(order_id=order.pk)
    if order.payment_method != PAYMENT_METHOD:
        raise InvalidOrder("Invalid payment method for this order", order_id=order.pk)
    if order.total_price <= 0:
        raise InvalidOrder("Order total must be positive", order_id=order.pk)

    # Fails with ConfigurationError before anything is written
    url = gateway.purchase_url()
    ref, reused = _assign_merchant_ref(order)

    site = (site_url or settings.SITE_URL).rstrip("/")
    name_parts = (order.user.get_full_name() or "").split(" ", 1)
    fields = gateway.create_purchase_params(
        merchant_ref_no=ref,
        order_id=order.pk,
        amount=order.total_price,
        items=[(i.name, i.quantity, i.price) for i in order.items.all()],
        return_url=site + reverse("payway:callback"),
        cancel_url=f"{site}/checkout/{order.pk}?cancelled=true",
        continue_success_url=f"{site}/account/orders/{order.pk}",
        firstname=name_parts[0],
        lastname=name_parts[1] if len(name_parts) > 1 else "",
        email=order.user.email,
    )
    logger.info("Payment initiated for order %s (ref=%s, reused=%s, amount=%s)",
                order.pk, ref, reused, order.total_price)
    return PaymentRedirect(url=url, fields=fields, merchant_ref_no=ref, reused=reused)


def apply_gateway_status(order, *, tran_id, status_code, amount, source) -> CallbackResult:
    """Apply a verified gateway status to ``order``.

    Shared by the callback and by the active status checks. A paid order is
    never touched again.
    """
    if order.is_paid:
        logger.info("Order %s already paid; ignoring status %s from %s", order.pk, status_code, source)
        return CallbackResult(order.pk, status.SUCCESS, transitioned=False, already_paid=True)

    outcome = status.outcome_for(status_code)
    description = status.describe(status_code)

    if outcome == status.SUCCESS:
        tolerance = Decimal(str(settings.PAYWAY.get("AMOUNT_TOLERANCE", "0.01")))
        if amount is None or abs(order.total_price - amount) > tolerance:
            logger.error("Amount mismatch for order %s: expected %s, received %s (ref=%s, source=%s)",
                         order.pk, order.total_price, amount, tran_id, source)
            raise AmountMismatch(order_id=order.pk)
        payment_result = {
            "id": tran_id,
            "status": status.RESULT_STATUS[outcome],
            "email_address": order.user.email,
            "pricePaid": gateway.amount_str(amount),
        }
        transitioned = mark_order_paid(
            order.pk, payment_result, source=source, transaction_id=tran_id, status_code=status_code,
        )
        if not transitioned:
            logger.info("Order %s was paid concurrently; nothing to do", order.pk)
        return CallbackResult(order.pk, outcome, transitioned=transitioned, already_paid=not transitioned)

    payment_result = None
    if outcome in status.RESULT_STATUS:
        payment_result = {
            "id": tran_id,
            "status": status.RESULT_STATUS[outcome],
            "email_address": order.user.email,
            "pricePaid": "0.00",
        }
    recorded = record_payment_outcome(
        order.pk,
        status=status.ORDER_STATUS[outcome],
        status_code=status_code,
        source=source,
        transaction_id=tran_id,
        payment_result=payment_result,
        details=f"Status {status_code}: {description}",
    )
    logger.info("Order %s payment %s (code=%s, source=%s)", order.pk, outcome, status_code, source)
    return CallbackResult(order.pk, outcome, transitioned=False, already_paid=not recorded)


def process_callback(data) -> CallbackResult:
    """Verify and apply a PayWay pushback.

    Every rejection happens before the first write.
    """
    raw = data.dict() if hasattr(data, "dict") else dict(data)
    try:
        payload = parse_callback(data)
    except InvalidPayload:
        audit_logger.warning("Rejected malformed PayWay callback: %s", raw)
        raise

    if not gateway.verify_callback_hash(
        tran_id=payload.tran_id,
        status=payload.raw_status,
        apv=payload.raw_apv,
        merchant_id=payload.merchant_id,
        received_hash=payload.received_hash,
    ):
        audit_logger.warning("Rejected PayWay callback with invalid signature: %s", payload.audit_fields())
        raise InvalidSignature(tran_id=payload.tran_id)

    try:
        order = Order.objects.select_related("user").get(aba_merchant_ref_no=payload.tran_id)
    except Order.DoesNotExist:
        logger.error("PayWay callback for unknown merchant ref %s", payload.tran_id)
        raise OrderNotFound(tran_id=payload.tran_id)
    except DatabaseError as e:
        raise PersistenceError(tran_id=payload.tran_id) from e

    audit_logger.info("Accepted PayWay callback for order %s: %s", order.pk, payload.audit_fields())
    return apply_gateway_status(
        order,
        tran_id=payload.tran_id,
        status_code=payload.status_code,
        amount=payload.approved_amount,
        source="callback",
    )


def refresh_from_gateway(order) -> CallbackResult:
    """Ask PayWay for the order's transaction status and apply it."""
    if not order.aba_merchant_ref_no:
        raise InvalidOrder("No ABA PayWay transaction found for this order", order_id=order.pk)
    if order.is_paid:
        return CallbackResult(order.pk, status.SUCCESS, transitioned=False, already_paid=True)

    result = gateway.check_transaction(order.aba_merchant_ref_no)
    try:
        amount = Decimal(result["amount"]) if result["amount"] is not None else None
    except InvalidOperation:
        raise GatewayError(f"Status check returned invalid amount for {order.aba_merchant_ref_no}")
    return apply_gateway_status(
        order,
        tran_id=result["tran_id"],
        status_code=result["status"],
        amount=amount,
        source="api_check",
    )
