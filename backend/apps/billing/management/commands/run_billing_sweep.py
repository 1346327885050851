"""
Run billing sweep management command.

Periodically walks subscriptions and applies expiry, grace-period and trial
rules. Several processes can share the work with --partitions/--partition;
--workers runs every partition in one process on a thread pool.
"""

import contextvars
import random
import signal
import time
from concurrent.futures import ThreadPoolExecutor

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError
from django.db import connection

from apps.billing.scheduler import SweepReport, sweep_subscriptions
from apps.core.logging import get_logger
from apps.events.context import audit_context

logger = get_logger(__name__)


class Command(BaseCommand):
    help = "Apply billing-cycle rules (expiry, grace period, trial end) to subscriptions"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._shutdown_requested = False

    def add_arguments(self, parser):
        parser.add_argument(
            "--once",
            action="store_true",
            help="Run one sweep and exit (default: run continuously)",
        )
        parser.add_argument(
            "--interval",
            type=float,
            default=None,
            help="Seconds between sweeps (default: BILLING_SWEEP_INTERVAL_SECONDS)",
        )
        parser.add_argument(
            "--partitions",
            type=int,
            default=1,
            help="Total number of partitions the organizations are split into (default: 1)",
        )
        parser.add_argument(
            "--partition",
            type=int,
            default=None,
            help="Partition handled by this process (default: all)",
        )
        parser.add_argument(
            "--workers",
            type=int,
            default=1,
            help="Threads sweeping partitions in parallel (default: 1)",
        )

    def handle(self, *args, **options):
        partitions = options["partitions"]
        if partitions < 1:
            raise CommandError("--partitions must be at least 1")
        if options["partition"] is not None and not 0 <= options["partition"] < partitions:
            raise CommandError("--partition must be in [0, partitions)")

        owned = [options["partition"]] if options["partition"] is not None else list(range(partitions))
        interval = options["interval"] or settings.BILLING_SWEEP_INTERVAL_SECONDS

        self._setup_signal_handlers()
        logger.info(
            "billing_sweep_started",
            partitions=partitions,
            owned_partitions=owned,
            workers=options["workers"],
            interval=interval,
        )

        while not self._shutdown_requested:
            try:
                with audit_context(job="billing_sweep"):
                    report = self._sweep(owned, partitions, options["workers"])
                self.stdout.write(
                    f"Examined {report.examined}, transitioned {report.transitioned}, failed {report.failed}"
                )
            except Exception:
                logger.exception("billing_sweep_error")

            if options["once"]:
                break
            self._sleep_with_jitter(interval)

        logger.info("billing_sweep_shutdown")

    def _sweep(self, owned: list[int], partitions: int, workers: int) -> SweepReport:
        if workers <= 1 or len(owned) == 1:
            report = SweepReport()
            for partition in owned:
                report = report.merge(sweep_subscriptions(partition=partition, partitions=partitions))
            return report

        def run(partition: int) -> SweepReport:
            try:
                return sweep_subscriptions(partition=partition, partitions=partitions)
            finally:
                # Each thread gets its own connection
                connection.close()

        report = SweepReport()
        with ThreadPoolExecutor(max_workers=workers) as pool:
            # Copied per task so workers keep the sweep's correlation id
            futures = [pool.submit(contextvars.copy_context().run, run, partition) for partition in owned]
            for future in futures:
                report = report.merge(future.result())
        return report

    def _sleep_with_jitter(self, base_seconds: float) -> None:
        # Sleep in short steps so a signal stops the loop promptly
        deadline = time.monotonic() + base_seconds + base_seconds * 0.1 * random.random()
        while not self._shutdown_requested and time.monotonic() < deadline:
            time.sleep(max(0.0, min(1.0, deadline - time.monotonic())))

    def _setup_signal_handlers(self) -> None:
        for sig in (signal.SIGINT, signal.SIGTERM):
            signal.signal(sig, self._handle_signal)

    def _handle_signal(self, signum, frame) -> None:
        logger.info("billing_sweep_signal_received", signal=signum)
        self._shutdown_requested = True
