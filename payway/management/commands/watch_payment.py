import asyncio

from django.core.management.base import BaseCommand, CommandError

from orders.models import Order
from payway.poller import OrderStatusFetcher, PollState, StatusPoller


class Command(BaseCommand):
    help = "Follow one order until its payment resolves, the way the checkout page does"

    def add_arguments(self, parser):
        parser.add_argument("order_id", type=int)
        parser.add_argument("--interval", type=float, default=3.0)
        parser.add_argument("--ceiling", type=float, default=300.0)
        parser.add_argument("--request-timeout", type=float, default=10.0)

    def handle(self, *args, **opts):
        if not Order.objects.filter(pk=opts["order_id"]).exists():
            raise CommandError(f"Order {opts['order_id']} does not exist")

        poller = StatusPoller(
            OrderStatusFetcher(opts["order_id"]),
            interval=opts["interval"],
            ceiling=opts["ceiling"],
            request_timeout=opts["request_timeout"],
        )

        async def run():
            poller.start()
            return await poller.wait()

        state = asyncio.run(run())
        if state is PollState.PAID:
            self.stdout.write(self.style.SUCCESS(f"Order {opts['order_id']} is paid"))
        elif state is PollState.TIMED_OUT:
            self.stdout.write(self.style.WARNING(f"Order {opts['order_id']} is still processing"))
        else:
            self.stdout.write(self.style.ERROR(f"Order {opts['order_id']} payment {state.value}"))
