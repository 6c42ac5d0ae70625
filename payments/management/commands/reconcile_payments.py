from django.core.management.base import BaseCommand

from payments.reconciliation import ReconciliationScheduler


class Command(BaseCommand):
    help = (
        "Fail PENDING payments older than the stale threshold (optionally asking the gateway first). "
        "The skip-if-running guard is per process: do not schedule this from cron while a --loop "
        "worker is running. Overlapping runs stay correct but duplicate gateway status checks."
    )

    def add_arguments(self, parser):
        parser.add_argument("--gateway-check", action="store_true", help="Query the gateway before failing a row")
        parser.add_argument("--limit", type=int, default=None, help="Max gateway status checks per sweep")
        parser.add_argument("--stale-minutes", type=int, default=None)
        parser.add_argument("--loop", action="store_true", help="Keep sweeping on the configured interval")

    def handle(self, *args, **opts):
        scheduler = ReconciliationScheduler(
            stale_after_minutes=opts["stale_minutes"],
            gateway_check=True if opts["gateway_check"] else None,
            check_limit=opts["limit"],
        )

        if opts["loop"]:
            self.stdout.write(f"Sweeping every {scheduler.interval}; Ctrl+C to stop.")
            try:
                scheduler.run_forever()
            except KeyboardInterrupt:
                scheduler.stop()
            return

        report = scheduler.run_once()
        if not report.examined:
            self.stdout.write(self.style.SUCCESS("No stale pending payments."))
            return
        for pk in report.completed:
            self.stdout.write(self.style.SUCCESS(f"Payment {pk} -> COMPLETED (gateway)"))
        for pk in report.failed:
            self.stdout.write(self.style.WARNING(f"Payment {pk} -> FAILED"))
        for pk in report.raced:
            self.stdout.write(f"Payment {pk}: already resolved")
        for pk in report.errored:
            self.stdout.write(self.style.ERROR(f"Payment {pk}: error, left PENDING"))
