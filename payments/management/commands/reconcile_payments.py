import time

from django.conf import settings
from django.core.management.base import BaseCommand
from django.utils import timezone

from payments.exceptions import CheckoutError, GatewayUnavailableError
from payments.models import PaymentSession
from payments.services import apply_gateway_status, get_gateway


class Command(BaseCommand):
    help = "Ask the gateway about pending payment sessions and apply terminal results"

    def add_arguments(self, parser):
        parser.add_argument("--max", type=int, default=50)
        parser.add_argument("--sleep", type=float, default=0.5)
        parser.add_argument(
            "--older-than-minutes",
            type=int,
            default=settings.PAYMENTS.get("RECONCILE_OLDER_THAN_MINUTES", 5),
        )

    def handle(self, *args, **opts):
        cutoff = timezone.now() - timezone.timedelta(minutes=opts["older_than_minutes"])
        qs = (
            PaymentSession.objects.filter(status=PaymentSession.PENDING, created_at__lt=cutoff)
            .exclude(transaction_id="")
            .order_by("created_at")[: opts["max"]]
        )
        sessions = list(qs)
        if not sessions:
            self.stdout.write(self.style.SUCCESS("No pending payments to reconcile."))
            return

        gateway = get_gateway()
        updated = 0
        for s in sessions:
            try:
                remote = gateway.check_status(s.transaction_id)
                if remote["status"] == PaymentSession.PENDING:
                    self.stdout.write(f"{s.payment_ref}: still pending")
                else:
                    result = apply_gateway_status(
                        s.payment_ref, remote["status"], remote.get("amount"), meta=remote.get("raw")
                    )
                    if not result["duplicate"]:
                        updated += 1
                    self.stdout.write(self.style.SUCCESS(f"{s.payment_ref} -> {result['status']}"))
            except GatewayUnavailableError as e:
                self.stdout.write(self.style.WARNING(f"{s.payment_ref}: {e}"))
            except CheckoutError as e:
                self.stdout.write(self.style.ERROR(f"{s.payment_ref}: {e}"))
            if opts["sleep"]:
                time.sleep(opts["sleep"])

        self.stdout.write(self.style.SUCCESS(f"Checked {len(sessions)}, updated {updated} payments."))
