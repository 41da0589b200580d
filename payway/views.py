import json
import logging

from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from .errors import PaywayError
from .services import get_owned_order, initiate_payment, process_callback, refresh_from_gateway

logger = logging.getLogger(__name__)


def _json_body(request):
    try:
        body = json.loads(request.body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    return body if isinstance(body, dict) else None


def _error_response(exc: PaywayError) -> JsonResponse:
    return JsonResponse(exc.as_response_body(), status=exc.http_status)


def _unauthorized() -> JsonResponse:
    return JsonResponse({"success": False, "error": "Unauthorized"}, status=401)


@require_POST
def create_payment_view(request):
    if not request.user.is_authenticated:
        return _unauthorized()
    body = _json_body(request)
    if not body or not body.get("orderId"):
        return JsonResponse({"success": False, "error": "Order ID is required"}, status=400)

    try:
        redirect = initiate_payment(body["orderId"], request.user)
    except PaywayError as e:
        logger.warning("Payment creation for order %s rejected: %s", body.get("orderId"), e.code)
        return _error_response(e)

    return JsonResponse({
        "success": True,
        "paymentUrl": redirect.url,
        "paymentParams": redirect.fields,
        "orderId": body["orderId"],
        "merchantRefNo": redirect.merchant_ref_no,
    })


@csrf_exempt
@require_POST
def callback_view(request):
    """Server-to-server pushback from ABA PayWay.

    4xx tells the gateway to stop retrying; 5xx asks it to try again.
    """
    try:
        result = process_callback(request.POST)
    except PaywayError as e:
        log = logger.error if e.retryable or e.http_status >= 500 else logger.warning
        log("PayWay callback rejected: %s (tran_id=%s)", e.code, request.POST.get("tran_id", ""))
        return _error_response(e)

    return JsonResponse({
        "success": True,
        "message": "Order already processed" if result.already_paid else "Callback processed successfully",
        "orderId": result.order_id,
        "status": result.outcome,
    })


@require_POST
def check_status_view(request):
    if not request.user.is_authenticated:
        return _unauthorized()
    body = _json_body(request)
    if not body or not body.get("orderId"):
        return JsonResponse({"success": False, "error": "Order ID is required"}, status=400)

    try:
        order = get_owned_order(body["orderId"], request.user, allow_staff=True)
        result = refresh_from_gateway(order)
    except PaywayError as e:
        logger.warning("Status check for order %s failed: %s", body.get("orderId"), e.code)
        return _error_response(e)

    order.refresh_from_db()
    return JsonResponse({
        "success": True,
        "orderId": order.pk,
        "status": result.outcome,
        "paymentStatus": order.aba_payment_status,
        "statusCode": order.aba_status_code,
        "isPaid": order.is_paid,
        "paymentResult": order.payment_result,
    })
