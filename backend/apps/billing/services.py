"""
Subscription state machine.

Owns subscription status, billing-cycle dates and proration. Every mutation:

- loads the subscription and checks the caller's version token,
- validates the status change against the transition graph,
- writes with a conditional update on ``version`` (bumping it),
- records an audit event, for rejected attempts as well.

Rejected attempts are recorded outside the failed transaction so they persist.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Any, TypeVar

from django.conf import settings
from django.db import transaction
from django.db.models import Count, Q, Sum
from django.utils import timezone

from apps.billing.models import (
    SUBSCRIBED_STATUSES,
    TERMINAL_STATUSES,
    BillingSettings,
    Payment,
    Subscription,
)
from apps.billing.transitions import assert_transition
from apps.core.exceptions import (
    Busy,
    ConcurrentModification,
    InvalidArgument,
    InvalidTransition,
    LifecycleError,
    NotFound,
    PlanUnavailable,
)
from apps.core.logging import get_logger
from apps.core.utils import resolve_now
from apps.events.models import AuditEvent
from apps.events.services import record
from apps.organizations.models import Organization
from apps.plans.models import Plan
from apps.usage.services import usage_map

if TYPE_CHECKING:
    from apps.core.auth import Principal

logger = get_logger(__name__)

Status = Subscription.Status
T = TypeVar("T")

CENT = Decimal("0.01")

REACTIVATABLE_STATUSES = frozenset({Status.SUSPENDED, Status.CANCELLED, Status.EXPIRED})


@dataclass(frozen=True)
class Proration:
    """
    Mid-cycle plan change money.

    ``credit`` is the unused share of the old amount. ``charge`` and
    ``credit_note`` are the net difference against the new plan's cost for the
    same remaining period; at most one of them is non-zero and neither is negative.
    """

    credit: Decimal
    charge: Decimal
    credit_note: Decimal
    remaining_fraction: Decimal

    def as_dict(self) -> dict[str, str]:
        return {
            "credit": str(self.credit),
            "charge": str(self.charge),
            "credit_note": str(self.credit_note),
            "remaining_fraction": str(self.remaining_fraction),
        }


@dataclass
class ChangePlanResult:
    previous: Subscription
    subscription: Subscription
    proration: Proration


@dataclass
class _Outcome:
    value: Any
    subscription: Subscription
    metadata: dict[str, Any] = field(default_factory=dict)
    after: dict[str, Any] | None = None


@dataclass
class SubscriptionPageResult:
    items: list[Subscription]
    total: int
    page: int
    limit: int


def _quantize(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def compute_proration(
    amount: Decimal,
    start_date: datetime,
    end_date: datetime,
    now: datetime,
    new_amount: Decimal = Decimal("0"),
) -> Proration:
    """
    ``credit = amount * (end - now) / (end - start)``, clamped at zero.

    A zero-length period yields no credit.
    """
    total_seconds = Decimal(str((end_date - start_date).total_seconds()))
    remaining_seconds = Decimal(str((end_date - now).total_seconds()))
    if total_seconds <= 0:
        fraction = Decimal("0")
    else:
        fraction = max(remaining_seconds / total_seconds, Decimal("0"))

    credit = _quantize(Decimal(amount) * fraction)
    new_cost = _quantize(Decimal(new_amount) * fraction)
    return Proration(
        credit=credit,
        charge=max(new_cost - credit, Decimal("0.00")),
        credit_note=max(credit - new_cost, Decimal("0.00")),
        remaining_fraction=fraction.quantize(Decimal("0.000001")),
    )


def get_subscription(subscription_id: int) -> Subscription:
    try:
        return Subscription.objects.select_related("organization", "plan").get(pk=subscription_id)
    except Subscription.DoesNotExist:
        raise NotFound("Subscription", subscription_id) from None


def resolve_current(subscription_id: int) -> Subscription:
    """Follow ``superseded_by`` from any subscription in a chain to the current one."""
    subscription = get_subscription(subscription_id)
    while subscription.superseded_by_id is not None:
        subscription = get_subscription(subscription.superseded_by_id)
    return subscription


def get_plan(plan_id: int) -> Plan:
    try:
        return Plan.objects.get(pk=plan_id)
    except Plan.DoesNotExist:
        raise NotFound("Plan", plan_id) from None


def _actor(actor: "Principal | None") -> tuple[str | None, str]:
    if actor is None:
        return None, ""
    return actor.actor_id, actor.email


def _ensure_current(subscription: Subscription) -> None:
    if not subscription.is_current:
        raise InvalidTransition(
            subscription.status,
            subscription.status,
            detail=(
                f"Subscription {subscription.pk} was superseded by "
                f"{subscription.superseded_by_id} and is read-only"
            ),
        )


def _save_versioned(subscription: Subscription, read_version: int, fields: list[str]) -> None:
    """
    Write ``fields`` only if the row still has ``read_version``, bumping the version.

    Raises:
        ConcurrentModification: Another writer got there first
    """
    values = {name: getattr(subscription, name) for name in fields}
    updated = Subscription.objects.filter(pk=subscription.pk, version=read_version).update(
        **values, version=read_version + 1, updated_at=timezone.now()
    )
    if not updated:
        current_version = (
            Subscription.objects.filter(pk=subscription.pk).values_list("version", flat=True).first()
        )
        raise ConcurrentModification(read_version, current_version)
    subscription.version = read_version + 1


def _organization_status_for(subscription: Subscription, now: datetime) -> str:
    if subscription.status == Status.TRIAL:
        return Organization.Status.TRIAL
    if subscription.status in (Status.ACTIVE, Status.PAST_DUE):
        return Organization.Status.ACTIVE
    if subscription.status == Status.CANCELLED and subscription.end_date > now:
        # Paid period still running
        return Organization.Status.ACTIVE
    return Organization.Status.SUSPENDED


def sync_organization_status(subscription: Subscription, now: datetime | None = None) -> None:
    """Mirror the current subscription's status onto its organization, unless operator-suspended."""
    if not subscription.is_current:
        return
    Organization.objects.filter(pk=subscription.organization_id, suspension_reason="").update(
        status=_organization_status_for(subscription, resolve_now(now)),
        updated_at=timezone.now(),
    )


def end_cancelled_service(subscription: Subscription, now: datetime) -> bool:
    """
    Suspend the organization of a cancelled subscription whose paid period is over.

    Operator holds are left alone. Returns True if the organization status changed.
    """
    if subscription.status != Status.CANCELLED or subscription.end_date > now or not subscription.is_current:
        return False

    with transaction.atomic():
        organization = Organization.objects.select_for_update().get(pk=subscription.organization_id)
        if organization.suspension_reason or organization.status == Organization.Status.SUSPENDED:
            return False
        from_status = organization.status
        sync_organization_status(subscription, now)
        record(
            organization.pk,
            None,
            "organization.service_ended",
            {"status": from_status},
            {"status": Organization.Status.SUSPENDED},
            aggregate=organization,
            metadata={"subscription_id": subscription.pk, "end_date": subscription.end_date.isoformat()},
        )

    logger.info(
        "organization_service_ended",
        organization_id=organization.pk,
        subscription_id=subscription.pk,
    )
    return True


def _apply_plan(subscription: Subscription, plan: Plan, usage: dict[str, int]) -> None:
    """Take price and a fresh limits snapshot from ``plan`` and recompute the over-limit flag."""
    subscription.plan = plan
    subscription.plan_name = plan.name
    subscription.plan_version = plan.version
    subscription.amount = plan.price_for(subscription.billing_cycle)
    subscription.limits_snapshot = plan.get_limits().to_dict()
    exceeded = plan.get_limits().exceeded_by(usage)
    subscription.over_limit = bool(exceeded)
    subscription.over_limit_resources = exceeded


PLAN_FIELDS = [
    "plan",
    "plan_name",
    "plan_version",
    "amount",
    "limits_snapshot",
    "over_limit",
    "over_limit_resources",
]


def _log_transition(subscription: Subscription, from_status: str, action: str) -> None:
    if from_status != subscription.status:
        logger.info(
            "subscription_transitioned",
            subscription_id=subscription.pk,
            organization_id=subscription.organization_id,
            from_status=from_status,
            to_status=subscription.status,
            action=action,
        )


def _mutate(
    action: str,
    subscription_id: int,
    expected_version: int | None,
    actor: "Principal | None",
    operation: Callable[[Subscription], _Outcome],
    metadata: dict[str, Any] | None = None,
) -> _Outcome:
    """
    Run one audited, version-checked mutation.

    ``expected_version=None`` is for internal callers (scheduler, webhook)
    that just read the row; the conditional write still guards the update.
    """
    actor_id, actor_email = _actor(actor)
    subscription: Subscription | None = None
    before: dict[str, Any] = {}
    try:
        with transaction.atomic():
            subscription = get_subscription(subscription_id)
            before = subscription.snapshot()
            if expected_version is not None and subscription.version != expected_version:
                raise ConcurrentModification(expected_version, subscription.version)

            outcome = operation(subscription)

            record(
                subscription.organization_id,
                actor_id,
                action,
                before,
                outcome.after if outcome.after is not None else outcome.subscription.snapshot(),
                aggregate=subscription,
                metadata={**(metadata or {}), **outcome.metadata},
                actor_email=actor_email,
            )
    except LifecycleError as exc:
        logger.warning(
            "subscription_mutation_rejected",
            action=action,
            subscription_id=subscription_id,
            code=exc.code,
            detail=exc.detail,
        )
        record(
            subscription.organization_id if subscription is not None else None,
            actor_id,
            action,
            before,
            before,
            aggregate=subscription,
            outcome=AuditEvent.Outcome.REJECTED,
            error_code=exc.code,
            metadata={**(metadata or {}), "error": exc.to_dict()},
            actor_email=actor_email,
        )
        raise
    return outcome


def retry_on_conflict(func: Callable[[], T], attempts: int | None = None) -> T:
    """
    Call ``func`` again after a ConcurrentModification, up to ``attempts`` times.

    ``func`` must re-read whatever it needs on each call.

    Raises:
        Busy: Every attempt lost the race
    """
    attempts = attempts or settings.SUBSCRIPTION_MAX_RETRIES
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except ConcurrentModification:
            logger.debug("subscription_conflict_retry", attempt=attempt)
    raise Busy(attempts=attempts)


def issue_subscription(
    organization: Organization,
    plan: Plan,
    billing_cycle: str = Subscription.BillingCycle.MONTHLY,
    *,
    trial: bool = True,
    trial_days: int | None = None,
    payment_method_on_file: bool = False,
    actor: "Principal | None" = None,
    now: datetime | None = None,
) -> Subscription:
    """
    Create an organization's first subscription and point the organization at it.

    Starts in ``trial`` when a trial is requested and the trial length is
    positive, otherwise ``active`` for one billing cycle. ``trial_days``
    overrides the plan's trial length; 0 means no trial.
    """
    if not plan.is_active:
        raise PlanUnavailable(plan.pk)

    now = resolve_now(now)
    if trial_days is None:
        trial_days = plan.trial_days
    subscription = Subscription(
        organization=organization,
        billing_cycle=billing_cycle,
        start_date=now,
        payment_method_on_file=payment_method_on_file,
    )
    if trial and trial_days > 0:
        subscription.status = Status.TRIAL
        subscription.end_date = now + timedelta(days=trial_days)
    else:
        subscription.status = Status.ACTIVE
        subscription.end_date = now + subscription.cycle_length()
    _apply_plan(subscription, plan, usage_map(organization.pk))

    with transaction.atomic():
        subscription.save()
        Organization.objects.filter(pk=organization.pk).update(current_subscription=subscription)
        organization.current_subscription = subscription
        sync_organization_status(subscription, now)
        actor_id, actor_email = _actor(actor)
        record(
            organization.pk,
            actor_id,
            "subscription.issue",
            {},
            subscription.snapshot(),
            aggregate=subscription,
            actor_email=actor_email,
        )

    logger.info(
        "subscription_issued",
        subscription_id=subscription.pk,
        organization_id=organization.pk,
        plan_id=plan.pk,
        status=subscription.status,
    )
    return subscription


def transition(
    subscription_id: int,
    to_status: str,
    *,
    expected_version: int | None = None,
    actor: "Principal | None" = None,
    changes: dict[str, Any] | None = None,
    reason: str = "",
    now: datetime | None = None,
) -> Subscription:
    """
    Move a subscription along one edge of the status graph.

    Used by the billing sweep and the payment webhook. Requesting the status
    the subscription already has is a no-op, which keeps re-runs idempotent.
    ``changes`` are extra field values written with the status (e.g. grace_deadline).
    """
    changes = changes or {}

    def operation(subscription: Subscription) -> _Outcome:
        _ensure_current(subscription)
        from_status = subscription.status
        if from_status == to_status:
            return _Outcome(subscription, subscription, {"noop": True})
        assert_transition(from_status, to_status)

        read_version = subscription.version
        subscription.status = to_status
        for name, value in changes.items():
            setattr(subscription, name, value)
        _save_versioned(subscription, read_version, ["status", *changes.keys()])
        sync_organization_status(subscription, now)
        _log_transition(subscription, from_status, "transition")
        return _Outcome(subscription, subscription, {"from_status": from_status, "to_status": to_status})

    return _mutate(
        f"subscription.{to_status}",
        subscription_id,
        expected_version,
        actor,
        operation,
        metadata={"reason": reason} if reason else None,
    ).value


RENEWABLE_STATUSES = frozenset({Status.TRIAL, Status.ACTIVE, Status.PAST_DUE})


def renew(
    subscription_id: int,
    *,
    expected_version: int | None = None,
    actor: "Principal | None" = None,
    now: datetime | None = None,
) -> Subscription:
    """
    Start the next paid period after a successful payment.

    The period runs from ``max(end_date, now)`` for one billing cycle. Trial
    and past-due subscriptions become active; limits are re-snapshotted from
    the plan when it still exists.
    """

    def operation(subscription: Subscription) -> _Outcome:
        _ensure_current(subscription)
        if subscription.status not in RENEWABLE_STATUSES:
            raise InvalidTransition(
                subscription.status,
                Status.ACTIVE,
                detail=f"Cannot renew a {subscription.status} subscription; reactivate it instead",
            )
        if subscription.status != Status.ACTIVE:
            assert_transition(subscription.status, Status.ACTIVE)

        current_time = resolve_now(now)
        from_status = subscription.status
        read_version = subscription.version
        subscription.status = Status.ACTIVE
        subscription.start_date = max(subscription.end_date, current_time)
        subscription.end_date = subscription.start_date + subscription.cycle_length()
        subscription.grace_deadline = None
        subscription.payment_method_on_file = True
        fields = ["status", "start_date", "end_date", "grace_deadline", "payment_method_on_file"]
        if subscription.plan is not None:
            _apply_plan(subscription, subscription.plan, usage_map(subscription.organization_id))
            fields.extend(PLAN_FIELDS)

        _save_versioned(subscription, read_version, fields)
        sync_organization_status(subscription, current_time)
        _log_transition(subscription, from_status, "renew")
        return _Outcome(subscription, subscription, {"from_status": from_status})

    return _mutate("subscription.renew", subscription_id, expected_version, actor, operation).value


def extend(
    subscription_id: int,
    days: int,
    *,
    expected_version: int,
    actor: "Principal | None" = None,
    now: datetime | None = None,
) -> Subscription:
    """
    Push the end date to ``max(end_date, now) + days``.

    Valid from any non-cancelled status and does not change status, except
    that an expired subscription extended past now becomes active. Trials can
    only be extended while the platform allows trial extension.
    """

    def operation(subscription: Subscription) -> _Outcome:
        if days <= 0:
            raise InvalidArgument("days", "days must be positive")
        _ensure_current(subscription)
        if subscription.status == Status.TRIAL and not BillingSettings.load().allow_trial_extension:
            raise InvalidTransition(
                Status.TRIAL, Status.TRIAL, detail="Trial extension is disabled on this platform"
            )
        if subscription.status == Status.CANCELLED:
            raise InvalidTransition(
                Status.CANCELLED, Status.CANCELLED, detail="Cannot extend a cancelled subscription"
            )

        current_time = resolve_now(now)
        from_status = subscription.status
        read_version = subscription.version
        subscription.end_date = max(subscription.end_date, current_time) + timedelta(days=days)
        fields = ["end_date"]
        metadata: dict[str, Any] = {"days": days}

        if subscription.status == Status.EXPIRED and subscription.end_date > current_time:
            assert_transition(Status.EXPIRED, Status.ACTIVE)
            subscription.status = Status.ACTIVE
            fields.append("status")
            metadata["transition"] = {"from": Status.EXPIRED, "to": Status.ACTIVE}

        _save_versioned(subscription, read_version, fields)
        if from_status != subscription.status:
            sync_organization_status(subscription, current_time)
            _log_transition(subscription, from_status, "extend")

        logger.info(
            "subscription_extended",
            subscription_id=subscription.pk,
            organization_id=subscription.organization_id,
            days=days,
            end_date=subscription.end_date.isoformat(),
        )
        return _Outcome(subscription, subscription, metadata)

    return _mutate(
        "subscription.extend", subscription_id, expected_version, actor, operation, metadata={"days": days}
    ).value


def cancel(
    subscription_id: int,
    reason: str,
    *,
    expected_version: int,
    immediate: bool = False,
    actor: "Principal | None" = None,
    now: datetime | None = None,
) -> Subscription:
    """
    Cancel a subscription.

    Service continues until the paid period ends; ``immediate=True`` ends it now.
    """

    def operation(subscription: Subscription) -> _Outcome:
        _ensure_current(subscription)
        assert_transition(subscription.status, Status.CANCELLED)

        current_time = resolve_now(now)
        from_status = subscription.status
        read_version = subscription.version
        subscription.status = Status.CANCELLED
        subscription.cancel_reason = reason
        subscription.cancelled_at = current_time
        fields = ["status", "cancel_reason", "cancelled_at"]
        if immediate:
            subscription.end_date = max(current_time, subscription.start_date)
            fields.append("end_date")

        _save_versioned(subscription, read_version, fields)
        sync_organization_status(subscription, current_time)
        _log_transition(subscription, from_status, "cancel")
        return _Outcome(subscription, subscription, {"immediate": immediate})

    return _mutate(
        "subscription.cancel",
        subscription_id,
        expected_version,
        actor,
        operation,
        metadata={"reason": reason},
    ).value


def suspend(
    subscription_id: int,
    reason: str,
    *,
    expected_version: int,
    actor: "Principal | None" = None,
    now: datetime | None = None,
) -> Subscription:
    """
    Manually suspend a past-due subscription.

    The intervention path when automatic suspension is disabled.
    """

    def operation(subscription: Subscription) -> _Outcome:
        _ensure_current(subscription)
        assert_transition(subscription.status, Status.SUSPENDED)

        from_status = subscription.status
        read_version = subscription.version
        subscription.status = Status.SUSPENDED
        _save_versioned(subscription, read_version, ["status"])
        sync_organization_status(subscription, now)
        _log_transition(subscription, from_status, "suspend")
        return _Outcome(subscription, subscription)

    return _mutate(
        "subscription.suspend",
        subscription_id,
        expected_version,
        actor,
        operation,
        metadata={"reason": reason},
    ).value


def reactivate(
    subscription_id: int,
    *,
    expected_version: int,
    plan_id: int | None = None,
    actor: "Principal | None" = None,
    now: datetime | None = None,
) -> Subscription:
    """
    Reactivate a suspended, cancelled or expired subscription on the same record.

    Resets ``start_date`` to now and starts a fresh billing cycle with limits
    re-snapshotted from the plan (``plan_id`` selects a different one). An
    already active subscription is returned unchanged.
    """

    def operation(subscription: Subscription) -> _Outcome:
        _ensure_current(subscription)
        if subscription.status == Status.ACTIVE:
            return _Outcome(subscription, subscription, {"noop": True})
        if subscription.status not in REACTIVATABLE_STATUSES:
            raise InvalidTransition(
                subscription.status,
                Status.ACTIVE,
                detail="Reactivation is only valid from suspended, cancelled or expired",
            )
        assert_transition(subscription.status, Status.ACTIVE)

        if plan_id is not None:
            plan = get_plan(plan_id)
            if not plan.is_active:
                raise PlanUnavailable(plan_id)
        else:
            plan = subscription.plan
        if plan is None:
            raise InvalidTransition(
                subscription.status,
                Status.ACTIVE,
                detail="No plan is associated with this subscription; select a plan to reactivate",
            )

        current_time = resolve_now(now)
        from_status = subscription.status
        read_version = subscription.version
        subscription.status = Status.ACTIVE
        subscription.start_date = current_time
        subscription.end_date = current_time + subscription.cycle_length()
        subscription.grace_deadline = None
        subscription.cancel_reason = ""
        subscription.cancelled_at = None
        _apply_plan(subscription, plan, usage_map(subscription.organization_id))

        _save_versioned(
            subscription,
            read_version,
            [
                "status",
                "start_date",
                "end_date",
                "grace_deadline",
                "cancel_reason",
                "cancelled_at",
                *PLAN_FIELDS,
            ],
        )
        sync_organization_status(subscription, current_time)
        _log_transition(subscription, from_status, "reactivate")
        return _Outcome(subscription, subscription, {"plan_id": plan.pk})

    return _mutate("subscription.reactivate", subscription_id, expected_version, actor, operation).value


def change_plan(
    subscription_id: int,
    new_plan_id: int,
    *,
    expected_version: int,
    actor: "Principal | None" = None,
    now: datetime | None = None,
) -> ChangePlanResult:
    """
    Move the organization to another plan mid-cycle.

    The current subscription is superseded by a new one carrying the new
    plan's price and limits; the organization pointer moves in the same
    transaction. If current usage exceeds the new limits the change still
    succeeds and the new subscription is flagged over-limit, which blocks
    further growth of those resources without deleting tenant data.
    """

    def operation(subscription: Subscription) -> _Outcome:
        _ensure_current(subscription)
        if subscription.status in TERMINAL_STATUSES:
            raise InvalidTransition(
                subscription.status,
                subscription.status,
                detail="Cannot change the plan of a cancelled or expired subscription",
            )
        plan = get_plan(new_plan_id)
        if not plan.is_active:
            raise PlanUnavailable(new_plan_id)

        current_time = resolve_now(now)
        proration = compute_proration(
            subscription.amount,
            subscription.start_date,
            subscription.end_date,
            current_time,
            new_amount=plan.price_for(subscription.billing_cycle),
        )

        successor = Subscription(
            organization_id=subscription.organization_id,
            status=subscription.status,
            billing_cycle=subscription.billing_cycle,
            start_date=current_time,
            grace_deadline=subscription.grace_deadline,
            payment_method_on_file=subscription.payment_method_on_file,
            proration_credit=proration.credit,
        )
        successor.end_date = (
            subscription.end_date
            if subscription.end_date > current_time
            else current_time + successor.cycle_length()
        )
        _apply_plan(successor, plan, usage_map(subscription.organization_id))
        successor.save()

        read_version = subscription.version
        subscription.superseded_by = successor
        subscription.superseded_at = current_time
        _save_versioned(subscription, read_version, ["superseded_by", "superseded_at"])

        Organization.objects.filter(pk=subscription.organization_id).update(
            current_subscription=successor, updated_at=timezone.now()
        )
        sync_organization_status(successor, current_time)

        if successor.over_limit:
            logger.warning(
                "subscription_over_limit",
                subscription_id=successor.pk,
                organization_id=successor.organization_id,
                resources=successor.over_limit_resources,
            )
        logger.info(
            "subscription_plan_changed",
            subscription_id=subscription.pk,
            successor_id=successor.pk,
            organization_id=subscription.organization_id,
            from_plan_id=subscription.plan_id,
            to_plan_id=plan.pk,
            credit=str(proration.credit),
        )

        result = ChangePlanResult(previous=subscription, subscription=successor, proration=proration)
        return _Outcome(
            result,
            subscription,
            {
                "successor_id": successor.pk,
                "from_plan_id": subscription.plan_id,
                "to_plan_id": plan.pk,
                "proration": proration.as_dict(),
                "over_limit_resources": successor.over_limit_resources,
            },
            after=successor.snapshot(),
        )

    return _mutate("subscription.change_plan", subscription_id, expected_version, actor, operation).value


def reapply_plan_limits(plan_id: int, actor: "Principal | None" = None) -> int:
    """
    Re-snapshot a plan's current limits into every live subscription on it.

    This is the explicit action that lets a plan edit reach already-issued
    subscriptions. Price is left untouched until renewal.

    Returns:
        Number of subscriptions updated
    """
    plan = get_plan(plan_id)
    subscription_ids = list(
        Subscription.objects.filter(
            plan=plan, superseded_by__isnull=True, status__in=SUBSCRIBED_STATUSES
        ).values_list("pk", flat=True)
    )

    def reapply_one(subscription_id: int) -> Subscription:
        def operation(subscription: Subscription) -> _Outcome:
            read_version = subscription.version
            limits = plan.get_limits()
            subscription.limits_snapshot = limits.to_dict()
            subscription.plan_version = plan.version
            exceeded = limits.exceeded_by(usage_map(subscription.organization_id))
            subscription.over_limit = bool(exceeded)
            subscription.over_limit_resources = exceeded
            _save_versioned(
                subscription,
                read_version,
                ["limits_snapshot", "plan_version", "over_limit", "over_limit_resources"],
            )
            return _Outcome(subscription, subscription, {"plan_version": plan.version})

        return _mutate("subscription.reapply_limits", subscription_id, None, actor, operation).value

    for subscription_id in subscription_ids:
        retry_on_conflict(lambda sid=subscription_id: reapply_one(sid))

    logger.info("plan_limits_reapplied", plan_id=plan.pk, subscriptions=len(subscription_ids))
    return len(subscription_ids)


def list_subscriptions(
    *,
    status: str | None = None,
    search: str | None = None,
    expiring_within_days: int | None = None,
    organization_id: int | None = None,
    include_history: bool = False,
    page: int = 1,
    limit: int = 15,
    now: datetime | None = None,
) -> SubscriptionPageResult:
    """Page through subscriptions, current ones only unless ``include_history``."""
    page = max(page, 1)
    limit = min(max(limit, 1), 100)

    queryset = Subscription.objects.select_related("organization", "plan")
    if not include_history:
        queryset = queryset.filter(superseded_by__isnull=True)
    if organization_id is not None:
        queryset = queryset.filter(organization_id=organization_id)
    if status:
        queryset = queryset.filter(status=status)
    if search:
        queryset = queryset.filter(
            Q(organization__name__icontains=search) | Q(plan_name__icontains=search)
        )
    if expiring_within_days is not None:
        current_time = resolve_now(now)
        queryset = queryset.filter(
            status__in=(Status.TRIAL, Status.ACTIVE),
            end_date__gte=current_time,
            end_date__lte=current_time + timedelta(days=expiring_within_days),
        )

    total = queryset.count()
    offset = (page - 1) * limit
    items = list(queryset.order_by("-created_at", "-id")[offset : offset + limit])
    return SubscriptionPageResult(items=items, total=total, page=page, limit=limit)


def subscription_stats() -> dict[str, Any]:
    """Counts of current subscriptions per status and net completed revenue."""
    counts = dict(
        Subscription.objects.filter(superseded_by__isnull=True)
        .order_by()
        .values("status")
        .annotate(total=Count("id"))
        .values_list("status", "total")
    )
    revenue = Payment.objects.aggregate(
        completed=Sum("amount", filter=Q(status=Payment.Status.COMPLETED)),
        refunded=Sum("amount", filter=Q(status=Payment.Status.REFUNDED)),
    )
    total_revenue = (revenue["completed"] or Decimal("0")) - (revenue["refunded"] or Decimal("0"))
    return {
        "by_status": {status.value: counts.get(status.value, 0) for status in Status},
        "total_revenue": _quantize(total_revenue),
    }
