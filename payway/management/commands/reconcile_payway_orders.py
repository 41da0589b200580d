import time
from django.core.management.base import BaseCommand
from django.utils import timezone
from orders.models import Order
from payway.errors import PaywayError
from payway.services import refresh_from_gateway


class Command(BaseCommand):
    help = "Poll ABA PayWay for unpaid orders whose payment was initiated and apply the result"

    def add_arguments(self, parser):
        parser.add_argument("--max", type=int, default=50)
        parser.add_argument("--sleep", type=float, default=0.5)
        parser.add_argument("--older-than-minutes", type=int, default=1)
        parser.add_argument("--within-minutes", type=int, default=120, help="Only orders initiated within last N minutes (0=all)")

    def handle(self, *args, **opts):
        now = timezone.now()
        qs = Order.objects.select_related("user").filter(
            is_paid=False,
            aba_merchant_ref_no__isnull=False,
            aba_payment_initiated_at__lt=now - timezone.timedelta(minutes=opts["older_than_minutes"]),
        ).exclude(aba_payment_status__in=["failed", "cancelled"])
        if opts["within_minutes"] > 0:
            qs = qs.filter(aba_payment_initiated_at__gte=now - timezone.timedelta(minutes=opts["within_minutes"]))
        orders = list(qs.order_by("aba_payment_initiated_at")[:opts["max"]])

        if not orders:
            self.stdout.write(self.style.SUCCESS("No pending orders to reconcile."))
            return

        paid = 0
        for order in orders:
            try:
                result = refresh_from_gateway(order)
            except PaywayError as e:
                self.stdout.write(self.style.WARNING(f"Order {order.pk} ({order.aba_merchant_ref_no}): {e.code} {e}"))
            else:
                if result.transitioned:
                    paid += 1
                    self.stdout.write(self.style.SUCCESS(f"Order {order.pk} -> paid"))
                else:
                    self.stdout.write(f"Order {order.pk}: {result.outcome}")
            if opts["sleep"]:
                time.sleep(opts["sleep"])

        self.stdout.write(self.style.SUCCESS(f"Checked {len(orders)}, marked {paid} paid."))
