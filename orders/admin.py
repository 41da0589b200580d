from django.contrib import admin, messages

from payway.errors import OrderNotPaid

from .models import Order, OrderItem, PaymentStatusEntry, Product
from .services import mark_order_delivered


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0


class PaymentStatusEntryInline(admin.TabularInline):
    model = PaymentStatusEntry
    extra = 0
    can_delete = False
    readonly_fields = ("status", "status_code", "source", "details", "created_at")

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("id", "user", "total_price", "is_paid", "paid_at", "aba_payment_status",
                    "is_delivered", "created_at")
    search_fields = ("id", "aba_merchant_ref_no", "aba_transaction_id", "user__email", "user__username")
    list_filter = ("is_paid", "is_delivered", "aba_payment_status", "payment_method", "created_at")
    # Payment fields are written by the payment flow only
    readonly_fields = ("is_paid", "paid_at", "payment_result", "is_delivered", "delivered_at",
                       "aba_merchant_ref_no", "aba_payment_initiated_at", "aba_transaction_id",
                       "aba_payment_status", "aba_status_code", "aba_callback_received",
                       "created_at", "updated_at")
    inlines = [OrderItemInline, PaymentStatusEntryInline]
    actions = ["mark_delivered"]

    @admin.action(description="Mark selected orders as delivered")
    def mark_delivered(self, request, queryset):
        delivered = 0
        for order in queryset:
            try:
                if mark_order_delivered(order.pk):
                    delivered += 1
            except OrderNotPaid:
                self.message_user(request, f"Order #{order.pk} is not paid", level=messages.WARNING)
        self.message_user(request, f"{delivered} order(s) marked as delivered")


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ("sku", "name", "price", "count_in_stock")
    search_fields = ("sku", "name")
