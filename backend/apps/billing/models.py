"""
Billing models - subscriptions, payments and platform billing settings.
"""

from datetime import timedelta
from decimal import Decimal
from typing import Any

from django.db import models

from apps.core.models import TimestampedModel
from apps.organizations.models import Organization
from apps.plans.limits import Limits
from apps.plans.models import Plan

BILLING_CYCLE_DAYS = {"monthly": 30, "yearly": 365}


class Subscription(TimestampedModel):
    """
    Binding of an organization to a plan over a billing period.

    ``limits_snapshot`` is the copy of the plan limits granted when the
    subscription was issued or renewed. ``version`` is the optimistic
    concurrency token: every write is a conditional update on it.
    A superseded subscription (``superseded_by`` set) is frozen history.
    """

    class Status(models.TextChoices):
        TRIAL = "trial", "Trial"
        ACTIVE = "active", "Active"
        PAST_DUE = "past_due", "Past Due"
        SUSPENDED = "suspended", "Suspended"
        CANCELLED = "cancelled", "Cancelled"
        EXPIRED = "expired", "Expired"

    class BillingCycle(models.TextChoices):
        MONTHLY = "monthly", "Monthly"
        YEARLY = "yearly", "Yearly"

    organization = models.ForeignKey(
        Organization,
        on_delete=models.CASCADE,
        related_name="subscriptions",
    )
    plan = models.ForeignKey(
        Plan,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="subscriptions",
    )
    plan_name = models.CharField(max_length=255, blank=True, help_text="Plan name at issue time")
    plan_version = models.PositiveIntegerField(default=1, help_text="Plan version at issue time")

    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.TRIAL,
        db_index=True,
    )
    billing_cycle = models.CharField(
        max_length=10,
        choices=BillingCycle.choices,
        default=BillingCycle.MONTHLY,
    )
    start_date = models.DateTimeField()
    end_date = models.DateTimeField(db_index=True, help_text="Next billing date")
    grace_deadline = models.DateTimeField(null=True, blank=True)

    amount = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    proration_credit = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        null=True,
        blank=True,
        help_text="Credit carried over from the superseded subscription",
    )
    limits_snapshot = models.JSONField(default=dict)
    over_limit = models.BooleanField(default=False)
    over_limit_resources = models.JSONField(default=list, blank=True)

    payment_method_on_file = models.BooleanField(default=False)
    cancel_reason = models.TextField(blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    superseded_by = models.OneToOneField(
        "self",
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="predecessor",
    )
    superseded_at = models.DateTimeField(null=True, blank=True)

    version = models.PositiveIntegerField(default=1)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(end_date__gte=models.F("start_date")),
                name="subscription_end_after_start",
            ),
        ]
        indexes = [
            models.Index(fields=["status", "end_date"], name="subscription_status_end_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.organization_id} - {self.plan_name} ({self.status})"

    @property
    def is_current(self) -> bool:
        return self.superseded_by_id is None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def get_limits(self) -> Limits:
        return Limits.from_dict(self.limits_snapshot)

    def cycle_length(self) -> timedelta:
        return timedelta(days=BILLING_CYCLE_DAYS[self.billing_cycle])

    def snapshot(self) -> dict[str, Any]:
        """State captured in audit events before and after a mutation."""
        return {
            "id": self.pk,
            "organization_id": self.organization_id,
            "plan_id": self.plan_id,
            "plan_version": self.plan_version,
            "status": self.status,
            "billing_cycle": self.billing_cycle,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "grace_deadline": self.grace_deadline,
            "amount": self.amount,
            "limits_snapshot": dict(self.limits_snapshot),
            "over_limit": self.over_limit,
            "superseded_by": self.superseded_by_id,
            "version": self.version,
        }


TERMINAL_STATUSES = frozenset({Subscription.Status.CANCELLED, Subscription.Status.EXPIRED})

# Statuses that still hold a plan's capacity; plans with such subscribers cannot be deleted.
SUBSCRIBED_STATUSES = frozenset(
    {
        Subscription.Status.TRIAL,
        Subscription.Status.ACTIVE,
        Subscription.Status.PAST_DUE,
        Subscription.Status.SUSPENDED,
    }
)


class Payment(models.Model):
    """
    Append-only payment record.

    Rows in a terminal status are never modified; a refund is a new row.
    """

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        COMPLETED = "completed", "Completed"
        FAILED = "failed", "Failed"
        REFUNDED = "refunded", "Refunded"

    class Method(models.TextChoices):
        CARD = "card", "Card"
        BANK_TRANSFER = "bank_transfer", "Bank Transfer"
        CASH = "cash", "Cash"
        MOBILE = "mobile", "Mobile Banking"
        GATEWAY = "gateway", "Payment Gateway"
        OTHER = "other", "Other"

    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.CASCADE,
        related_name="payments",
    )
    amount = models.DecimalField(max_digits=10, decimal_places=2)
    method = models.CharField(max_length=20, choices=Method.choices, default=Method.GATEWAY)
    status = models.CharField(max_length=20, choices=Status.choices, db_index=True)
    date = models.DateTimeField(db_index=True)
    reference = models.CharField(max_length=255, blank=True, db_index=True)
    notes = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-date", "-id"]

    def __str__(self) -> str:
        return f"{self.reference or self.pk}: {self.amount} ({self.status})"

    @classmethod
    def from_db(cls, db, field_names, values):
        instance = super().from_db(db, field_names, values)
        instance._loaded_status = instance.status
        return instance

    def save(self, *args, **kwargs) -> None:
        loaded_status = getattr(self, "_loaded_status", None)
        if not self._state.adding and loaded_status in TERMINAL_PAYMENT_STATUSES:
            raise ValueError(f"Payment {self.pk} is {loaded_status} and cannot be modified")
        super().save(*args, **kwargs)
        self._loaded_status = self.status


TERMINAL_PAYMENT_STATUSES = frozenset(
    {Payment.Status.COMPLETED, Payment.Status.FAILED, Payment.Status.REFUNDED}
)


class BillingSettings(models.Model):
    """
    Platform-wide subscription settings, a single row editable at runtime.

    Seeded from the environment defaults on first access.
    """

    grace_period_days = models.PositiveIntegerField(default=7)
    auto_suspend_on_expiry = models.BooleanField(default=True)
    default_trial_days = models.PositiveIntegerField(default=14)
    allow_trial_extension = models.BooleanField(default=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name_plural = "billing settings"

    def __str__(self) -> str:
        return "Billing settings"

    @classmethod
    def load(cls) -> "BillingSettings":
        from django.conf import settings

        obj, _ = cls.objects.get_or_create(
            pk=1,
            defaults={
                "grace_period_days": settings.DEFAULT_GRACE_PERIOD_DAYS,
                "auto_suspend_on_expiry": settings.DEFAULT_AUTO_SUSPEND_ON_EXPIRY,
                "default_trial_days": settings.DEFAULT_TRIAL_DAYS,
                "allow_trial_extension": settings.DEFAULT_ALLOW_TRIAL_EXTENSION,
            },
        )
        return obj
