"""
Organization services - tenant creation, operator holds and deletion.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING

from django.db import transaction
from django.utils import timezone

from apps.billing.models import Subscription
from apps.billing.services import get_plan, issue_subscription, sync_organization_status
from apps.core.exceptions import NotFound
from apps.core.logging import get_logger
from apps.events.services import record
from apps.organizations.models import Organization
from apps.usage.services import ensure_counters

if TYPE_CHECKING:
    from apps.core.auth import Principal

logger = get_logger(__name__)


@dataclass
class OrganizationPageResult:
    items: list[Organization]
    total: int
    page: int
    limit: int


def _snapshot(organization: Organization) -> dict:
    return {
        "id": organization.pk,
        "name": organization.name,
        "status": organization.status,
        "suspension_reason": organization.suspension_reason,
        "current_subscription": organization.current_subscription_id,
    }


def _actor(actor: "Principal | None") -> tuple[str | None, str]:
    return (actor.actor_id, actor.email) if actor else (None, "")


def get_organization(organization_id: int) -> Organization:
    try:
        return Organization.objects.select_related("current_subscription").get(pk=organization_id)
    except Organization.DoesNotExist:
        raise NotFound("Organization", organization_id) from None


def create_organization(
    name: str,
    plan_id: int,
    billing_cycle: str = Subscription.BillingCycle.MONTHLY,
    *,
    trial: bool = True,
    trial_days: int | None = None,
    payment_method_on_file: bool = False,
    actor: "Principal | None" = None,
) -> Organization:
    """
    Create an organization with zeroed usage counters and its first subscription.

    Everything happens in one transaction, so an organization never exists
    without a current subscription. ``trial_days`` overrides the plan's
    trial length for this organization.

    Raises:
        NotFound: Unknown plan
        PlanUnavailable: The plan is deactivated
    """
    plan = get_plan(plan_id)
    actor_id, actor_email = _actor(actor)

    with transaction.atomic():
        organization = Organization.objects.create(name=name)
        ensure_counters(organization)
        issue_subscription(
            organization,
            plan,
            billing_cycle,
            trial=trial,
            trial_days=trial_days,
            payment_method_on_file=payment_method_on_file,
            actor=actor,
        )
        organization.refresh_from_db()
        record(
            organization.pk,
            actor_id,
            "organization.create",
            {},
            _snapshot(organization),
            aggregate=organization,
            metadata={"plan_id": plan.pk, "billing_cycle": billing_cycle},
            actor_email=actor_email,
        )

    logger.info("organization_created", organization_id=organization.pk, plan_id=plan.pk)
    return organization


def suspend_organization(
    organization_id: int, reason: str, actor: "Principal | None" = None
) -> Organization:
    """
    Put an operator hold on the organization.

    The subscription is left alone; the hold only overrides the mirrored
    organization status until it is lifted.
    """
    if not reason:
        raise ValueError("A suspension reason is required")
    actor_id, actor_email = _actor(actor)

    with transaction.atomic():
        organization = get_organization(organization_id)
        before = _snapshot(organization)
        organization.status = Organization.Status.SUSPENDED
        organization.suspension_reason = reason
        organization.save(update_fields=["status", "suspension_reason", "updated_at"])
        record(
            organization.pk,
            actor_id,
            "organization.suspend",
            before,
            _snapshot(organization),
            aggregate=organization,
            metadata={"reason": reason},
            actor_email=actor_email,
        )

    logger.info("organization_suspended", organization_id=organization.pk)
    return organization


def activate_organization(organization_id: int, actor: "Principal | None" = None) -> Organization:
    """Lift an operator hold and mirror the current subscription's status again."""
    actor_id, actor_email = _actor(actor)

    with transaction.atomic():
        organization = get_organization(organization_id)
        before = _snapshot(organization)
        organization.suspension_reason = ""
        organization.save(update_fields=["suspension_reason", "updated_at"])
        if organization.current_subscription is not None:
            sync_organization_status(organization.current_subscription, timezone.now())
        organization.refresh_from_db()
        record(
            organization.pk,
            actor_id,
            "organization.activate",
            before,
            _snapshot(organization),
            aggregate=organization,
            actor_email=actor_email,
        )

    logger.info("organization_activated", organization_id=organization.pk, status=organization.status)
    return organization


def delete_organization(organization_id: int, actor: "Principal | None" = None) -> None:
    """Delete the organization with its subscriptions, payments and counters. Audit rows remain."""
    actor_id, actor_email = _actor(actor)

    with transaction.atomic():
        organization = get_organization(organization_id)
        before = _snapshot(organization)
        # Drop the pointer first so the cascade does not trip over it
        Organization.objects.filter(pk=organization.pk).update(current_subscription=None)
        organization.delete()
        record(
            organization_id,
            actor_id,
            "organization.delete",
            before,
            {},
            actor_email=actor_email,
        )

    logger.info("organization_deleted", organization_id=organization_id)


def list_organizations(
    *, status: str | None = None, search: str | None = None, page: int = 1, limit: int = 15
) -> OrganizationPageResult:
    page = max(page, 1)
    limit = min(max(limit, 1), 100)

    queryset = Organization.objects.select_related("current_subscription")
    if status:
        queryset = queryset.filter(status=status)
    if search:
        queryset = queryset.filter(name__icontains=search)

    total = queryset.count()
    offset = (page - 1) * limit
    items = list(queryset.order_by("-created_at", "-id")[offset : offset + limit])
    return OrganizationPageResult(items=items, total=total, page=page, limit=limit)
