"""
Organizations models - multi-tenancy foundation.
"""

from django.db import models

from apps.core.models import TimestampedModel


class Organization(TimestampedModel):
    """
    A tenant isolated from all others.

    ``current_subscription`` points at the one subscription with no successor.
    It is only moved inside the same transaction as the subscription change
    that supersedes the previous one.
    """

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        TRIAL = "trial", "Trial"
        ACTIVE = "active", "Active"
        SUSPENDED = "suspended", "Suspended"

    name = models.CharField(max_length=255)
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING,
        db_index=True,
    )
    current_subscription = models.ForeignKey(
        "billing.Subscription",
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="+",
        help_text="The organization's current (non-superseded) subscription",
    )
    suspension_reason = models.TextField(
        blank=True,
        help_text="Set while an operator has suspended the organization",
    )

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return self.name

    @property
    def is_operator_suspended(self) -> bool:
        return bool(self.suspension_reason)
