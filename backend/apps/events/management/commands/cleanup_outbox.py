"""
Cleanup outbox management command.

Prunes delivered and permanently failed outbox rows so the delivery queue
does not grow without bound. Audit events are never touched: they are the
permanent record, the outbox only tracks delivery.
"""

from datetime import datetime, timedelta

from django.core.management.base import BaseCommand
from django.utils import timezone

from apps.core.logging import get_logger
from apps.events.models import OutboxEvent

logger = get_logger(__name__)


class Command(BaseCommand):
    help = "Delete delivered and failed outbox rows past their retention period"

    def add_arguments(self, parser):
        parser.add_argument(
            "--delivered-retention-days",
            type=int,
            default=7,
            help="Delete delivered events older than N days (default: 7)",
        )
        parser.add_argument(
            "--failed-retention-days",
            type=int,
            default=30,
            help="Delete failed events older than N days (default: 30)",
        )
        parser.add_argument(
            "--batch-size",
            type=int,
            default=1000,
            help="Delete in batches of N (default: 1000)",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Report what would be deleted without deleting",
        )

    def handle(self, *args, **options):
        now = timezone.now()
        dry_run = options["dry_run"]
        batch_size = options["batch_size"]

        delivered_deleted = self._cleanup(
            OutboxEvent.Status.DELIVERED,
            now - timedelta(days=options["delivered_retention_days"]),
            batch_size,
            dry_run,
        )
        failed_deleted = self._cleanup(
            OutboxEvent.Status.FAILED,
            now - timedelta(days=options["failed_retention_days"]),
            batch_size,
            dry_run,
        )

        logger.info(
            "outbox_cleanup_completed",
            delivered_deleted=delivered_deleted,
            failed_deleted=failed_deleted,
            dry_run=dry_run,
        )

        summary = f"{delivered_deleted} delivered and {failed_deleted} failed events"
        if dry_run:
            self.stdout.write(f"DRY RUN: Would delete {summary}")
        else:
            self.stdout.write(self.style.SUCCESS(f"Deleted {summary}"))

    def _cleanup(self, status: str, cutoff: datetime, batch_size: int, dry_run: bool) -> int:
        queryset = OutboxEvent.objects.filter(status=status, created_at__lt=cutoff)
        if dry_run:
            return queryset.count()

        total_deleted = 0
        while True:
            ids = list(queryset.values_list("id", flat=True)[:batch_size])
            if not ids:
                break
            deleted, _ = OutboxEvent.objects.filter(id__in=ids).delete()
            total_deleted += deleted
        return total_deleted
