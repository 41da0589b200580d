from django.http import JsonResponse
from django.views.decorators.cache import never_cache
from django.views.decorators.http import require_http_methods

from payway.errors import OrderNotFound

from .models import Order
from .services import order_status_snapshot


@never_cache
@require_http_methods(["GET", "POST"])
def order_status_view(request, order_id: int):
    """Payment status of one order, polled by the checkout page."""
    if not request.user.is_authenticated:
        return JsonResponse({"error": "Unauthorized"}, status=401)

    owner_id = Order.objects.filter(pk=order_id).values_list("user_id", flat=True).first()
    if owner_id is None:
        return JsonResponse({"error": "Order not found"}, status=404)
    if owner_id != request.user.pk and not request.user.is_staff:
        return JsonResponse({"error": "Unauthorized access to order"}, status=403)

    try:
        snapshot = order_status_snapshot(order_id)
    except OrderNotFound:
        return JsonResponse({"error": "Order not found"}, status=404)
    return JsonResponse(snapshot)
