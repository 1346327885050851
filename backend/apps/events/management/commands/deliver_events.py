"""
Deliver events management command.

Polls the outbox and delivers pending events to the notification sink.
Uses SELECT FOR UPDATE SKIP LOCKED so several workers can run side by side.
"""

import random
import signal
import time

from django.core.management.base import BaseCommand
from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from apps.core.logging import get_logger
from apps.events.backends import EventBackend, get_backend
from apps.events.models import OutboxEvent
from apps.events.schemas import EventEnvelope

logger = get_logger(__name__)


class Command(BaseCommand):
    help = "Deliver pending lifecycle events from the outbox to the notification sink"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._shutdown_requested = False

    def add_arguments(self, parser):
        parser.add_argument(
            "--once",
            action="store_true",
            help="Run once and exit (default: run continuously)",
        )
        parser.add_argument(
            "--batch-size",
            type=int,
            default=100,
            help="Number of events to process per batch (default: 100)",
        )
        parser.add_argument(
            "--poll-interval",
            type=float,
            default=5.0,
            help="Seconds between polls when idle (default: 5)",
        )
        parser.add_argument(
            "--max-attempts",
            type=int,
            default=10,
            help="Max delivery attempts before marking as failed (default: 10)",
        )

    def handle(self, *args, **options):
        self._setup_signal_handlers()

        backend = get_backend()
        logger.info(
            "event_delivery_started",
            backend=backend.__class__.__name__,
            batch_size=options["batch_size"],
        )

        while not self._shutdown_requested:
            try:
                delivered = self._deliver_batch(backend, options["batch_size"], options["max_attempts"])
                if delivered > 0:
                    logger.info("events_delivered", count=delivered)
                    if not options["once"]:
                        continue
            except Exception:
                logger.exception("event_delivery_error")

            if options["once"]:
                break
            self._sleep_with_jitter(options["poll_interval"])

        logger.info("event_delivery_shutdown")

    def _deliver_batch(self, backend: EventBackend, batch_size: int, max_attempts: int) -> int:
        """Claim a batch of due events, deliver it and record per-event results."""
        now = timezone.now()

        with transaction.atomic():
            events = list(
                OutboxEvent.objects.select_for_update(skip_locked=True)
                .filter(status=OutboxEvent.Status.PENDING)
                .filter(Q(next_attempt_at__isnull=True) | Q(next_attempt_at__lte=now))
                .order_by("created_at")[:batch_size]
            )

        if not events:
            return 0

        deliverable: list[OutboxEvent] = []
        envelopes: list[EventEnvelope] = []
        for event in events:
            try:
                envelopes.append(EventEnvelope(**event.payload))
                deliverable.append(event)
            except Exception as e:
                logger.error("event_payload_parse_failed", event_id=str(event.event_id), error=str(e))
                event.mark_failed(f"Payload parse error: {e}", max_attempts)

        if not envelopes:
            return 0

        results = backend.publish(envelopes)

        delivered = 0
        for event, result in zip(deliverable, results, strict=True):
            if result.get("status") == "success":
                event.mark_delivered()
                delivered += 1
            else:
                error = result.get("error", "Unknown error")
                event.mark_failed(error, max_attempts)
                logger.warning("event_delivery_failed", event_id=str(event.event_id), error=error)

        return delivered

    def _sleep_with_jitter(self, base_seconds: float) -> None:
        jitter = base_seconds * 0.2 * random.random()
        time.sleep(base_seconds + jitter)

    def _setup_signal_handlers(self) -> None:
        for sig in (signal.SIGINT, signal.SIGTERM):
            signal.signal(sig, self._handle_signal)

    def _handle_signal(self, signum, frame) -> None:
        logger.info("event_delivery_signal_received", signal=signum)
        self._shutdown_requested = True
