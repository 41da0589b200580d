import logging
from typing import List

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.template.loader import render_to_string

logger = logging.getLogger(__name__)


def _fail_silently() -> bool:
    return getattr(settings, "EMAIL_FAIL_SILENTLY", True)


def _admin_recipients() -> List[str]:
    # Comma-separated list via settings; fall back to DEFAULT_FROM_EMAIL/host user
    raw = getattr(settings, "ORDERS_ADMIN_EMAILS", None)
    if not raw:
        raw = ",".join([
            getattr(settings, "EMAIL_HOST_USER", "") or "",
            getattr(settings, "DEFAULT_FROM_EMAIL", "") or "",
        ])
    seen = set()
    uniq: List[str] = []
    for e in (raw or "").split(","):
        e = e.strip()
        if e and e.lower() not in seen:
            seen.add(e.lower())
            uniq.append(e)
    return uniq


def send_payment_confirmation(*, order) -> None:
    """Send the purchase receipt to the customer and a paid notice to admins.

    Called once per paid transition, after the transaction commits. Mail
    failures are logged and never bubble up into the payment flow.
    """
    result = order.payment_result or {}
    context = {
        "order_id": order.pk,
        "merchant_ref_no": order.aba_merchant_ref_no,
        "transaction_id": order.aba_transaction_id or result.get("id", ""),
        "total_price": order.total_price,
        "paid_at": order.paid_at,
        "customer_name": order.user.get_full_name() or order.user.get_username(),
        "items": list(order.items.all()),
    }
    from_email = getattr(settings, "DEFAULT_FROM_EMAIL", None) or getattr(settings, "EMAIL_HOST_USER", None)

    if order.user.email:
        try:
            subject = f"Payment received for order #{order.pk}"
            text = render_to_string("emails/payment_receipt_customer.txt", context)
            html = render_to_string("emails/payment_receipt_customer.html", context)
            msg = EmailMultiAlternatives(subject, text, from_email, [order.user.email])
            msg.attach_alternative(html, "text/html")
            msg.send(fail_silently=_fail_silently())
        except Exception:
            logger.exception("Failed to send payment receipt for order %s", order.pk)

    admins = _admin_recipients()
    if admins:
        try:
            subject = f"Order #{order.pk} paid: {order.total_price}"
            text = render_to_string("emails/payment_notification_admin.txt", context)
            msg = EmailMultiAlternatives(subject, text, from_email, admins)
            msg.send(fail_silently=_fail_silently())
        except Exception:
            logger.exception("Failed to send paid notification for order %s", order.pk)
