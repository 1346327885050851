"""
Plan catalog services.

Catalog edits never touch limits already granted: subscriptions keep their
own ``limits_snapshot`` until renewal or an explicit reapply.
"""

from decimal import Decimal
from typing import TYPE_CHECKING, Any

from django.db import transaction

from apps.billing.models import SUBSCRIBED_STATUSES, BillingSettings, Subscription
from apps.core.exceptions import NotFound, PlanInUse
from apps.core.logging import get_logger
from apps.events.models import AuditEvent
from apps.events.services import record
from apps.plans.limits import Limits
from apps.plans.models import TIER_RANK, Plan

if TYPE_CHECKING:
    from apps.core.auth import Principal

logger = get_logger(__name__)

# Edits to these fields bump the plan version
VERSIONED_FIELDS = frozenset({"monthly_price", "yearly_price", "limits"})

EDITABLE_FIELDS = frozenset(
    {
        "name",
        "description",
        "tier",
        "monthly_price",
        "yearly_price",
        "limits",
        "features",
        "trial_days",
        "is_active",
        "is_popular",
    }
)


def _snapshot(plan: Plan) -> dict[str, Any]:
    return {
        "id": plan.pk,
        "name": plan.name,
        "tier": plan.tier,
        "monthly_price": plan.monthly_price,
        "yearly_price": plan.yearly_price,
        "limits": dict(plan.limits),
        "features": list(plan.features),
        "trial_days": plan.trial_days,
        "is_active": plan.is_active,
        "version": plan.version,
    }


def _actor_args(actor: "Principal | None") -> dict[str, Any]:
    return {"actor_email": actor.email if actor else ""}


def _normalize(fields: dict[str, Any]) -> dict[str, Any]:
    """Validate limits and prices; store limits in their canonical serialized form."""
    if "limits" in fields:
        fields["limits"] = Limits.from_dict(fields["limits"]).to_dict()
    for price_field in ("monthly_price", "yearly_price"):
        if price_field in fields and Decimal(fields[price_field]) < 0:
            raise ValueError(f"{price_field} must be >= 0")
    if "features" in fields:
        fields["features"] = sorted(set(fields["features"]))
    return fields


def get_plan(plan_id: int) -> Plan:
    try:
        return Plan.objects.get(pk=plan_id)
    except Plan.DoesNotExist:
        raise NotFound("Plan", plan_id) from None


def list_active_plans() -> list[Plan]:
    """Active plans by ascending monthly price, ties broken by tier rank."""
    plans = Plan.objects.filter(is_active=True)
    return sorted(plans, key=lambda plan: (plan.monthly_price, TIER_RANK[plan.tier], plan.pk))


def list_plans(include_inactive: bool = False) -> list[Plan]:
    if not include_inactive:
        return list_active_plans()
    return sorted(
        Plan.objects.all(),
        key=lambda plan: (not plan.is_active, plan.monthly_price, TIER_RANK[plan.tier], plan.pk),
    )


def create_plan(actor: "Principal | None" = None, **fields: Any) -> Plan:
    unknown = set(fields) - EDITABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown plan fields: {sorted(unknown)}")
    if fields.get("trial_days") is None:
        fields["trial_days"] = BillingSettings.load().default_trial_days

    with transaction.atomic():
        plan = Plan.objects.create(**_normalize(fields))
        record(
            None,
            actor.actor_id if actor else None,
            "plan.create",
            {},
            _snapshot(plan),
            aggregate=plan,
            **_actor_args(actor),
        )

    logger.info("plan_created", plan_id=plan.pk, tier=plan.tier)
    return plan


def update_plan(plan_id: int, actor: "Principal | None" = None, **changes: Any) -> Plan:
    """
    Edit a plan. Price or limits edits bump ``version``.

    Issued subscriptions keep their limits snapshot.
    """
    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown plan fields: {sorted(unknown)}")

    with transaction.atomic():
        plan = Plan.objects.select_for_update().filter(pk=plan_id).first()
        if plan is None:
            raise NotFound("Plan", plan_id)
        before = _snapshot(plan)

        changed = {
            name: value for name, value in _normalize(changes).items() if getattr(plan, name) != value
        }
        if not changed:
            return plan

        for name, value in changed.items():
            setattr(plan, name, value)
        if VERSIONED_FIELDS & changed.keys():
            plan.version += 1
        plan.save()

        record(
            None,
            actor.actor_id if actor else None,
            "plan.update",
            before,
            _snapshot(plan),
            aggregate=plan,
            metadata={"changed": sorted(changed)},
            **_actor_args(actor),
        )

    logger.info("plan_updated", plan_id=plan.pk, version=plan.version, changed=sorted(changed))
    return plan


def deactivate_plan(plan_id: int, actor: "Principal | None" = None) -> Plan:
    """Hide a plan from new signups. Existing subscribers are unaffected."""
    return update_plan(plan_id, actor=actor, is_active=False)


def active_subscriber_count(plan: Plan) -> int:
    return Subscription.objects.filter(
        plan=plan, superseded_by__isnull=True, status__in=SUBSCRIBED_STATUSES
    ).count()


def delete_plan(plan_id: int, actor: "Principal | None" = None) -> None:
    """
    Delete a plan without live subscribers.

    Historical subscriptions keep ``plan_name`` and lose the foreign key.

    Raises:
        PlanInUse: A current subscription in trial/active/past_due/suspended uses it
    """
    plan = get_plan(plan_id)
    before = _snapshot(plan)
    subscribers = active_subscriber_count(plan)
    if subscribers:
        logger.warning("plan_delete_rejected", plan_id=plan_id, subscribers=subscribers)
        record(
            None,
            actor.actor_id if actor else None,
            "plan.delete",
            before,
            before,
            aggregate=plan,
            outcome=AuditEvent.Outcome.REJECTED,
            error_code=PlanInUse.code,
            metadata={"subscriber_count": subscribers},
            **_actor_args(actor),
        )
        raise PlanInUse(plan_id, subscribers)

    with transaction.atomic():
        plan.delete()
        record(
            None,
            actor.actor_id if actor else None,
            "plan.delete",
            before,
            {},
            metadata={"plan_id": plan_id},
            **_actor_args(actor),
        )

    logger.info("plan_deleted", plan_id=plan_id)
