from django.conf import settings
from django.db import models


class Product(models.Model):
    sku = models.CharField(max_length=64, unique=True)
    name = models.CharField(max_length=255)
    price = models.DecimalField(max_digits=12, decimal_places=2)
    count_in_stock = models.IntegerField(default=0)

    def __str__(self):
        return f"{self.sku} ({self.count_in_stock} in stock)"


class Order(models.Model):
    PAYMENT_STATUS_CHOICES = [
        ("pending", "Pending"),
        ("processing", "Processing"),
        ("completed", "Completed"),
        ("failed", "Failed"),
        ("cancelled", "Cancelled"),
    ]

    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="orders")
    payment_method = models.CharField(max_length=32, default="ABA PayWay")

    # Fixed at creation time; payments are checked against total_price
    items_price = models.DecimalField(max_digits=12, decimal_places=2)
    shipping_price = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    tax_price = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    total_price = models.DecimalField(max_digits=12, decimal_places=2)

    is_paid = models.BooleanField(default=False, db_index=True)
    paid_at = models.DateTimeField(blank=True, null=True)
    payment_result = models.JSONField(blank=True, null=True)

    is_delivered = models.BooleanField(default=False)
    delivered_at = models.DateTimeField(blank=True, null=True)

    # ABA PayWay correlation; tran_id on the gateway side
    aba_merchant_ref_no = models.CharField(max_length=20, unique=True, blank=True, null=True)
    aba_payment_initiated_at = models.DateTimeField(blank=True, null=True)
    aba_transaction_id = models.CharField(max_length=64, blank=True, null=True)
    aba_payment_status = models.CharField(max_length=16, choices=PAYMENT_STATUS_CHOICES, blank=True, null=True)
    aba_status_code = models.IntegerField(blank=True, null=True)
    aba_callback_received = models.BooleanField(default=False)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("-created_at",)

    def __str__(self):
        state = "paid" if self.is_paid else "unpaid"
        return f"Order #{self.pk} ({state}, {self.total_price})"


class OrderItem(models.Model):
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="items")
    product = models.ForeignKey(Product, on_delete=models.SET_NULL, blank=True, null=True, related_name="order_items")
    name = models.CharField(max_length=255)
    quantity = models.PositiveIntegerField(default=1)
    price = models.DecimalField(max_digits=12, decimal_places=2)

    def __str__(self):
        return f"{self.quantity} x {self.name}"


class PaymentStatusEntry(models.Model):
    """Append-only trail of every payment status the order has been told about."""

    SOURCE_CHOICES = [
        ("callback", "Callback"),
        ("api_check", "API check"),
        ("manual", "Manual"),
    ]

    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="status_history")
    status = models.CharField(max_length=16)
    status_code = models.IntegerField(blank=True, null=True)
    source = models.CharField(max_length=16, choices=SOURCE_CHOICES)
    details = models.CharField(max_length=255, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("created_at", "pk")
        verbose_name_plural = "payment status entries"

    def __str__(self):
        return f"{self.order_id} {self.status} via {self.source}"
