from datetime import timedelta

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError

from orders import providers
from orders.sweeper import HoldSweeper


class Command(BaseCommand):
    help = (
        "Release stock holds older than --max-age seconds and cancel their pending orders. "
        "Requires USE_HTTP_ADAPTERS: the in-process ledger is swept by the server itself."
    )

    def add_arguments(self, parser):
        parser.add_argument(
            "--max-age",
            type=int,
            default=settings.ORDERS_HOLD_MAX_AGE_SECS,
            help="Age in seconds after which a held reservation is released.",
        )
        parser.add_argument(
            "--interval",
            type=float,
            default=settings.ORDERS_SWEEP_INTERVAL_SECS,
            help="Seconds between sweeps when running continuously.",
        )
        parser.add_argument("--once", action="store_true", help="Run a single sweep and exit.")

    def handle(self, *args, **options):
        if not settings.USE_HTTP_ADAPTERS:
            # A fresh process would only see its own, empty ledger.
            raise CommandError(
                "Stock holds live in the server process when USE_HTTP_ADAPTERS is off; "
                "the server sweeps them itself (ORDERS_SWEEPER_AUTOSTART)."
            )
        sweeper = HoldSweeper(
            providers.get_order_service,
            max_age=timedelta(seconds=options["max_age"]),
            interval=options["interval"],
        )
        if options["once"]:
            released = sweeper.sweep_once()
            self.stdout.write(f"released {len(released)} hold(s)")
            return

        sweeper.start()
        self.stdout.write(f"sweeping every {options['interval']}s, Ctrl+C to stop")
        try:
            while sweeper.running:
                sweeper.wait(1.0)
        except KeyboardInterrupt:
            pass
        finally:
            sweeper.stop(timeout=5.0)
