"""
Usage ledger models.
"""

from django.db import models

from apps.core.models import TenantScopedModel
from apps.plans.limits import ResourceType


class UsageCounter(TenantScopedModel):
    """
    Current count of one resource type for one organization.

    Written only through conditional updates (``WHERE value = <read value>``)
    so the limit check and the increment form a single compare-and-swap.
    """

    resource_type = models.CharField(
        max_length=20,
        choices=[(resource.value, resource.value) for resource in ResourceType],
    )
    value = models.PositiveIntegerField(default=0)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["organization", "resource_type"],
                name="uniq_usage_counter_per_resource",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.organization_id}:{self.resource_type}={self.value}"
