import base64
import hashlib
import hmac
import json
import logging
import re
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

import requests
from django.conf import settings
from django.utils.crypto import get_random_string
from requests import RequestException

from ..errors import ConfigurationError, GatewayError, Timeout

logger = logging.getLogger(__name__)

PURCHASE_PATH = "/api/payment-gateway/v1/payments/purchase"
CHECK_TRANSACTION_PATH = "/api/payment-gateway/v1/payments/check-transaction-2"

REF_ALNUM = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
MAX_REF_LENGTH = 20

# Canonical concatenation order of the purchase hash
PURCHASE_HASH_FIELDS = (
    "req_time", "merchant_id", "tran_id", "amount", "items", "shipping",
    "firstname", "lastname", "email", "phone", "type", "payment_option",
    "return_url", "cancel_url", "continue_success_url", "return_deeplink",
    "currency", "custom_fields", "return_params", "payout", "lifetime",
    "additional_params", "google_pay_token", "skip_success_page",
)

CALLBACK_HASH_FIELDS = ("tran_id", "status", "apv", "merchant_id")


def _config() -> dict:
    cfg = getattr(settings, "PAYWAY", None) or {}
    if not cfg.get("ENABLED"):
        raise ConfigurationError("ABA PayWay is disabled")
    missing = [k for k in ("MERCHANT_ID", "SECRET_KEY", "BASE_URL") if not cfg.get(k)]
    if missing:
        raise ConfigurationError(f"Missing PAYWAY settings: {', '.join(missing)}")
    return cfg


def is_enabled() -> bool:
    try:
        _config()
    except ConfigurationError:
        return False
    return True


def _sign(data: str) -> str:
    secret = _config()["SECRET_KEY"].encode("utf-8")
    digest = hmac.new(secret, data.encode("utf-8"), hashlib.sha512).digest()
    return base64.b64encode(digest).decode("ascii")


def _b64_json(value) -> str:
    return base64.b64encode(json.dumps(value, separators=(",", ":")).encode("utf-8")).decode("ascii")


def amount_str(amount) -> str:
    try:
        return format(Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP), "f")
    except (InvalidOperation, ValueError):
        raise GatewayError("Invalid amount value")


def request_time(now=None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y%m%d%H%M%S")


def generate_merchant_ref_no(order_pk) -> str:
    suffix = re.sub(r"[^A-Za-z0-9]", "", str(order_pk))[-8:]
    return f"ORD-{suffix}-{get_random_string(6, allowed_chars=REF_ALNUM)}"[:MAX_REF_LENGTH]


def purchase_url() -> str:
    return _config()["BASE_URL"].rstrip("/") + PURCHASE_PATH


def purchase_hash(params: dict) -> str:
    return _sign("".join(str(params.get(k) or "") for k in PURCHASE_HASH_FIELDS))


def callback_hash(*, tran_id, status, apv, merchant_id=None) -> str:
    merchant_id = merchant_id or _config()["MERCHANT_ID"]
    return _sign(f"{tran_id}{status}{apv}{merchant_id}")


def verify_callback_hash(*, tran_id, status, apv, merchant_id, received_hash) -> bool:
    expected = callback_hash(tran_id=tran_id, status=status, apv=apv, merchant_id=merchant_id)
    return hmac.compare_digest(expected.encode("ascii"), (received_hash or "").strip().encode("utf-8"))


def create_purchase_params(*, merchant_ref_no, order_id, amount, items, return_url, cancel_url,
                           continue_success_url, firstname="", lastname="", email="", phone="",
                           currency=None) -> dict:
    """Build the signed form the browser posts to the PayWay hosted checkout.

    ``items`` is an iterable of ``(name, quantity, price)`` tuples. The merchant
    reference doubles as ``tran_id`` and comes back on the pushback, which is
    how the callback finds the order.
    """
    cfg = _config()
    formatted_items = [
        {"name": name, "quantity": int(quantity), "price": float(amount_str(price))}
        for name, quantity, price in items
    ]
    params = {
        "req_time": request_time(),
        "merchant_id": cfg["MERCHANT_ID"],
        "tran_id": merchant_ref_no,
        "firstname": firstname or "",
        "lastname": lastname or "",
        "email": email or "",
        "phone": phone or "",
        "type": "purchase",
        "payment_option": cfg.get("PAYMENT_OPTION", "") or "",
        "items": _b64_json(formatted_items),
        "shipping": "0.00",
        "amount": amount_str(amount),
        "currency": currency or cfg.get("CURRENCY", "USD"),
        "return_url": return_url,
        "cancel_url": cancel_url,
        "skip_success_page": "1",
        "continue_success_url": continue_success_url,
        "return_deeplink": "",
        "custom_fields": _b64_json({"merchant_ref_no": merchant_ref_no, "order_id": str(order_id)}),
        "return_params": merchant_ref_no,
        "view_type": "hosted_view",
        "payment_gate": "0",
        "payout": "",
        "lifetime": "",
        "additional_params": "",
        "google_pay_token": "",
    }
    params["hash"] = purchase_hash(params)
    return params


def check_transaction(tran_id: str) -> dict:
    """Ask PayWay for the current status of ``tran_id``.

    Returns ``{"tran_id", "status", "amount", "description", "raw"}`` with
    ``status`` as the integer gateway code.
    """
    cfg = _config()
    req_time = request_time()
    body = {
        "req_time": req_time,
        "merchant_id": cfg["MERCHANT_ID"],
        "tran_id": tran_id,
        "hash": _sign(f"{req_time}{cfg['MERCHANT_ID']}{tran_id}"),
    }
    url = cfg["BASE_URL"].rstrip("/") + CHECK_TRANSACTION_PATH
    try:
        resp = requests.post(url, json=body, timeout=cfg.get("REQUEST_TIMEOUT", 15))
    except requests.Timeout:
        raise Timeout(f"Status check timed out for {tran_id}")
    except RequestException as e:
        raise GatewayError(f"Gateway request failed: {e}")

    try:
        data = resp.json()
    except ValueError:
        data = {"raw": resp.text}
    if resp.status_code != 200:
        logger.error("PayWay check-transaction failed for %s: status=%s body=%s",
                     tran_id, resp.status_code, json.dumps(data)[:800])
        raise GatewayError(f"Status check failed: HTTP {resp.status_code}")

    # check-transaction-2 nests the result under "data"; older tenants answer flat
    inner = data.get("data") if isinstance(data.get("data"), dict) else data
    code = inner.get("payment_status_code", inner.get("status"))
    try:
        code = int(code)
    except (TypeError, ValueError):
        raise GatewayError(f"Status check returned no status code for {tran_id}")
    amount = inner.get("total_amount", inner.get("amount", inner.get("apv")))
    return {
        "tran_id": inner.get("tran_id") or tran_id,
        "status": code,
        "amount": None if amount is None else str(amount),
        "description": inner.get("description") or inner.get("payment_status") or "",
        "raw": data,
    }
