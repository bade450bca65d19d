from django.conf import settings
from django.core.management.base import BaseCommand

from payments.poller import (
    MAX_POLL_TIME,
    POLL_INTERVAL,
    REDIRECT_DELAY,
    HttpStatusFetcher,
    PaymentStatusPoller,
)


class Command(BaseCommand):
    help = "Poll a storefront's payment status endpoint until the payment settles or times out"

    def add_arguments(self, parser):
        parser.add_argument("payment_ref")
        parser.add_argument("--base-url", default=settings.PAYMENTS.get("APP_BASE_URL", "http://localhost:8000"))
        parser.add_argument("--interval", type=float, default=POLL_INTERVAL)
        parser.add_argument("--max-wait", type=float, default=MAX_POLL_TIME)
        parser.add_argument("--redirect-delay", type=float, default=REDIRECT_DELAY)

    def handle(self, *args, **opts):
        base_url = opts["base_url"].rstrip("/")

        def on_update(state):
            self.stdout.write(f"{opts['payment_ref']}: {state}")

        def on_redirect(status):
            self.stdout.write(self.style.SUCCESS(f"Redirect to {base_url}/api/orders/{status.get('order_id', '')}"))

        poller = PaymentStatusPoller(
            opts["payment_ref"],
            HttpStatusFetcher(base_url),
            interval=opts["interval"],
            max_wait=opts["max_wait"],
            redirect_delay=opts["redirect_delay"],
            on_update=on_update,
            on_redirect=on_redirect,
        )
        poller.start()
        try:
            while poller.is_running:
                poller.join(0.5)
            if poller.redirect_timer is not None:
                poller.redirect_timer.join()
        except KeyboardInterrupt:
            poller.stop()
            poller.join()

        style = self.style.SUCCESS if poller.state == poller.PAID else self.style.WARNING
        self.stdout.write(style(f"Final state: {poller.state}"))
