"""
Core models - shared base classes and utilities.
"""

from django.db import models


class TimestampedModel(models.Model):
    """Abstract base model with created_at/updated_at timestamps."""

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


class TenantScopedModel(TimestampedModel):
    """
    Abstract base model for organization-scoped entities.

    Rows are removed with their organization (cascading delete).
    """

    organization = models.ForeignKey(
        "organizations.Organization",
        on_delete=models.CASCADE,
        related_name="%(class)s_set",
    )

    class Meta:
        abstract = True


class ProcessedWebhook(models.Model):
    """
    Record of an inbound webhook already applied.

    The unique (source, event_id) pair makes webhook handling idempotent
    when a gateway redelivers.
    """

    source = models.CharField(max_length=50)
    event_id = models.CharField(max_length=255)
    processed_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["source", "event_id"], name="uniq_processed_webhook"),
        ]

    def __str__(self) -> str:
        return f"{self.source}:{self.event_id}"
