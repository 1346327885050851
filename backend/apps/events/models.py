"""
Events models - append-only audit trail and notification outbox.
"""

import uuid

from django.db import models
from django.utils import timezone


class ImmutableRowError(Exception):
    """Raised on an attempt to update or delete an append-only row."""


class AuditEvent(models.Model):
    """
    Immutable record of a lifecycle mutation attempt.

    Written for successful and rejected attempts alike, giving operators a
    complete forensic trail. Rows are kept even after their organization is
    deleted, since organization_id is a plain value rather than a foreign key.
    """

    class Outcome(models.TextChoices):
        SUCCESS = "success", "Success"
        REJECTED = "rejected", "Rejected"

    # BigAutoField keeps insertion order for newest-first paging
    id = models.BigAutoField(primary_key=True)
    event_id = models.UUIDField(unique=True, default=uuid.uuid4, editable=False)

    organization_id = models.CharField(
        max_length=100,
        blank=True,
        db_index=True,
        help_text="Tenant organization ID, blank for platform-level actions",
    )
    actor_id = models.CharField(
        max_length=100,
        db_index=True,
        help_text="User ID that performed the action, or 'system'",
    )
    actor_email = models.CharField(max_length=254, blank=True)

    action = models.CharField(
        max_length=100,
        db_index=True,
        help_text="Action type, e.g. 'subscription.extend'",
    )
    aggregate_type = models.CharField(max_length=50, blank=True)
    aggregate_id = models.CharField(max_length=100, blank=True)
    outcome = models.CharField(
        max_length=20,
        choices=Outcome.choices,
        default=Outcome.SUCCESS,
        db_index=True,
    )
    error_code = models.CharField(max_length=50, blank=True)

    before_state = models.JSONField(default=dict, blank=True)
    after_state = models.JSONField(default=dict, blank=True)
    metadata = models.JSONField(default=dict, blank=True)

    correlation_id = models.UUIDField(null=True, blank=True, db_index=True)
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    user_agent = models.TextField(blank=True)

    created_at = models.DateTimeField(default=timezone.now, db_index=True)

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["organization_id", "created_at"], name="audit_org_created_idx"),
            models.Index(fields=["aggregate_type", "aggregate_id"], name="audit_aggregate_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.action} by {self.actor_id} ({self.outcome})"

    def save(self, *args, **kwargs) -> None:
        if not self._state.adding:
            raise ImmutableRowError("Audit events are append-only")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableRowError("Audit events are append-only")


class OutboxEvent(models.Model):
    """
    Transactional outbox for notification delivery.

    Written in the same transaction as the audit event, then delivered by the
    ``deliver_events`` worker. Delivery state lives here, so a failed delivery
    never touches the mutation that produced the event.
    """

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        DELIVERED = "delivered", "Delivered"
        FAILED = "failed", "Failed"

    id = models.BigAutoField(primary_key=True)
    event_id = models.UUIDField(
        unique=True,
        default=uuid.uuid4,
        db_index=True,
        help_text="Unique event identifier for consumer idempotency",
    )

    event_type = models.CharField(max_length=100, db_index=True)
    aggregate_type = models.CharField(max_length=50, blank=True)
    aggregate_id = models.CharField(max_length=100, blank=True)
    organization_id = models.CharField(max_length=100, blank=True, db_index=True)
    schema_version = models.PositiveIntegerField(default=1)

    payload = models.JSONField(help_text="Complete event envelope")

    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING,
        db_index=True,
    )
    created_at = models.DateTimeField(auto_now_add=True)
    delivered_at = models.DateTimeField(null=True, blank=True)

    attempts = models.PositiveIntegerField(default=0)
    next_attempt_at = models.DateTimeField(null=True, blank=True, db_index=True)
    last_error = models.TextField(blank=True)

    class Meta:
        ordering = ["created_at"]
        indexes = [
            models.Index(fields=["status", "next_attempt_at"], name="outbox_status_next_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.event_type} ({self.status})"

    def mark_delivered(self) -> None:
        self.status = self.Status.DELIVERED
        self.delivered_at = timezone.now()
        self.save(update_fields=["status", "delivered_at"])

    def mark_failed(self, error: str, max_attempts: int = 10) -> None:
        """
        Record a failed delivery and schedule a retry with exponential backoff.

        After max_attempts the event is parked as FAILED.
        """
        self.attempts += 1
        self.last_error = error

        if self.attempts >= max_attempts:
            self.status = self.Status.FAILED
            self.next_attempt_at = None
        else:
            # 2s, 4s, 8s... capped at 5 minutes
            delay_seconds = min(2**self.attempts, 300)
            self.next_attempt_at = timezone.now() + timezone.timedelta(seconds=delay_seconds)

        self.save(update_fields=["attempts", "last_error", "status", "next_attempt_at"])
