"""
Plan catalog models.
"""

from decimal import Decimal

from django.core.validators import MinValueValidator
from django.db import models

from apps.core.models import TimestampedModel
from apps.plans.limits import Limits


class Plan(TimestampedModel):
    """
    A priced tier defining resource limits and feature entitlements.

    ``version`` increases on every edit of price or limits. Subscriptions keep
    their own copy of the limits they were issued with, so editing a plan never
    changes limits already granted.
    """

    class Tier(models.TextChoices):
        FREE = "free", "Free"
        BASIC = "basic", "Basic"
        PROFESSIONAL = "professional", "Professional"
        ENTERPRISE = "enterprise", "Enterprise"

    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    tier = models.CharField(max_length=20, choices=Tier.choices, db_index=True)
    monthly_price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        default=Decimal("0.00"),
        validators=[MinValueValidator(Decimal("0.00"))],
    )
    yearly_price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        default=Decimal("0.00"),
        validators=[MinValueValidator(Decimal("0.00"))],
    )
    limits = models.JSONField(
        default=dict,
        help_text="Per-resource limits, e.g. {'maxStudents': 100, ...}; -1 means unlimited",
    )
    features = models.JSONField(default=list, blank=True)
    trial_days = models.PositiveIntegerField(default=0)
    is_active = models.BooleanField(default=True, db_index=True)
    is_popular = models.BooleanField(default=False)
    version = models.PositiveIntegerField(default=1)

    class Meta:
        ordering = ["monthly_price", "id"]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(monthly_price__gte=0) & models.Q(yearly_price__gte=0),
                name="plan_prices_non_negative",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.name} ({self.tier} v{self.version})"

    @property
    def tier_rank(self) -> int:
        return TIER_RANK[self.tier]

    def get_limits(self) -> Limits:
        return Limits.from_dict(self.limits)

    def price_for(self, billing_cycle: str) -> Decimal:
        """Price charged per period for the given billing cycle ('monthly' or 'yearly')."""
        return self.yearly_price if billing_cycle == "yearly" else self.monthly_price


TIER_RANK = {
    Plan.Tier.FREE: 0,
    Plan.Tier.BASIC: 1,
    Plan.Tier.PROFESSIONAL: 2,
    Plan.Tier.ENTERPRISE: 3,
}
