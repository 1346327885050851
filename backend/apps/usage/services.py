"""
Usage ledger services.

Resource services call ``try_increment`` before creating a countable resource
and ``decrement`` after deleting one. The limit check and the increment are a
single compare-and-swap on the counter row: a request only applies its
increment if the counter still holds the value the check was made against,
otherwise it re-reads and re-checks, up to LEDGER_MAX_RETRIES times.
"""

from dataclasses import dataclass

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import F
from django.db.models.functions import Greatest
from django.utils import timezone

from apps.billing.models import Subscription
from apps.core.exceptions import Busy, NotFound
from apps.core.logging import get_logger
from apps.events.models import AuditEvent
from apps.events.services import record
from apps.organizations.models import Organization
from apps.plans.limits import Limit, ResourceType
from apps.usage.models import UsageCounter

logger = get_logger(__name__)


@dataclass(frozen=True)
class IncrementResult:
    """
    Outcome of ``try_increment``.

    ``current`` is the counter value after the increment when ``ok``, or the
    value that blocked it otherwise.
    """

    ok: bool
    resource_type: str
    current: int
    limit: Limit

    @property
    def quota_exceeded(self) -> bool:
        return not self.ok


@dataclass(frozen=True)
class ResourceUsage:
    resource_type: str
    current: int
    limit: Limit


@dataclass(frozen=True)
class Drift:
    resource_type: str
    recorded: int
    actual: int


def ensure_counters(organization: Organization) -> None:
    """Create a zero counter for every resource type the organization lacks."""
    existing = set(
        UsageCounter.objects.filter(organization=organization).values_list("resource_type", flat=True)
    )
    missing = [
        UsageCounter(organization=organization, resource_type=resource.value, value=0)
        for resource in ResourceType
        if resource.value not in existing
    ]
    if missing:
        UsageCounter.objects.bulk_create(missing, ignore_conflicts=True)


def _get_counter(organization_id: int, resource_type: ResourceType) -> UsageCounter:
    try:
        return UsageCounter.objects.get(organization_id=organization_id, resource_type=resource_type.value)
    except UsageCounter.DoesNotExist:
        pass
    try:
        with transaction.atomic():
            return UsageCounter.objects.create(
                organization_id=organization_id, resource_type=resource_type.value, value=0
            )
    except IntegrityError:
        # Created concurrently by another request
        return UsageCounter.objects.get(organization_id=organization_id, resource_type=resource_type.value)


def current_subscription(organization_id: int) -> Subscription:
    organization = (
        Organization.objects.select_related("current_subscription")
        .filter(pk=organization_id)
        .first()
    )
    if organization is None:
        raise NotFound("Organization", organization_id)
    if organization.current_subscription is None:
        raise NotFound("Subscription", f"for organization {organization_id}")
    return organization.current_subscription


def try_increment(organization_id: int, resource_type: ResourceType | str, amount: int = 1) -> IncrementResult:
    """
    Atomically check the plan limit and increment the counter.

    Reads the counter and the current subscription's limits snapshot, then
    applies the increment only if ``limit`` is unlimited or
    ``current + amount <= limit`` and the counter is unchanged since the read.

    Returns:
        IncrementResult with ok=False when the quota would be exceeded

    Raises:
        NotFound: Unknown organization or no current subscription
        Busy: The compare-and-swap lost LEDGER_MAX_RETRIES times in a row
        ValueError: Non-positive amount or unknown resource type
    """
    resource = ResourceType(resource_type)
    if amount <= 0:
        raise ValueError("amount must be positive")

    max_retries = settings.LEDGER_MAX_RETRIES
    for attempt in range(1, max_retries + 1):
        subscription = current_subscription(organization_id)
        limit = subscription.get_limits().for_resource(resource)
        counter = _get_counter(organization_id, resource)

        if not limit.allows(counter.value, amount):
            logger.warning(
                "quota_exceeded",
                organization_id=organization_id,
                resource_type=resource.value,
                current=counter.value,
                limit=str(limit),
                amount=amount,
            )
            record(
                organization_id,
                None,
                "usage.quota_exceeded",
                {"resource_type": resource.value, "current": counter.value},
                {"resource_type": resource.value, "current": counter.value},
                aggregate=counter,
                outcome=AuditEvent.Outcome.REJECTED,
                error_code="quota_exceeded",
                metadata={"limit": limit.to_raw(), "amount": amount},
            )
            return IncrementResult(ok=False, resource_type=resource.value, current=counter.value, limit=limit)

        swapped = UsageCounter.objects.filter(pk=counter.pk, value=counter.value).update(
            value=F("value") + amount, updated_at=timezone.now()
        )
        if swapped:
            logger.debug(
                "usage_incremented",
                organization_id=organization_id,
                resource_type=resource.value,
                current=counter.value + amount,
                attempt=attempt,
            )
            return IncrementResult(
                ok=True, resource_type=resource.value, current=counter.value + amount, limit=limit
            )

        logger.debug(
            "usage_increment_contended",
            organization_id=organization_id,
            resource_type=resource.value,
            attempt=attempt,
        )

    logger.warning(
        "usage_increment_busy",
        organization_id=organization_id,
        resource_type=resource.value,
        attempts=max_retries,
    )
    raise Busy(attempts=max_retries)


def decrement(organization_id: int, resource_type: ResourceType | str, amount: int = 1) -> int:
    """
    Decrement a counter, flooring at zero. Never fails on a valid resource type.

    Clears the subscription's over-limit flag once every counter is back
    within the limits snapshot.

    Returns:
        The counter value after the decrement
    """
    resource = ResourceType(resource_type)
    if amount <= 0:
        raise ValueError("amount must be positive")
    if not Organization.objects.filter(pk=organization_id).exists():
        raise NotFound("Organization", organization_id)

    counter = _get_counter(organization_id, resource)
    UsageCounter.objects.filter(pk=counter.pk).update(
        value=Greatest(F("value") - amount, 0), updated_at=timezone.now()
    )
    counter.refresh_from_db(fields=["value"])

    logger.debug(
        "usage_decremented",
        organization_id=organization_id,
        resource_type=resource.value,
        current=counter.value,
    )
    refresh_over_limit(organization_id)
    return counter.value


def current_usage(organization_id: int, resource_type: ResourceType | str) -> int:
    """Current counter value, 0 if the counter does not exist yet."""
    resource = ResourceType(resource_type)
    value = (
        UsageCounter.objects.filter(organization_id=organization_id, resource_type=resource.value)
        .values_list("value", flat=True)
        .first()
    )
    return value or 0


def usage_map(organization_id: int) -> dict[str, int]:
    """Counter values keyed by resource type, zero for missing counters."""
    values = dict(
        UsageCounter.objects.filter(organization_id=organization_id).values_list("resource_type", "value")
    )
    return {resource.value: values.get(resource.value, 0) for resource in ResourceType}


def usage_summary(organization_id: int) -> list[ResourceUsage]:
    """Per-resource ``{current, limit}`` for the organization's current subscription."""
    limits = current_subscription(organization_id).get_limits()
    usage = usage_map(organization_id)
    return [
        ResourceUsage(
            resource_type=resource.value,
            current=usage[resource.value],
            limit=limits.for_resource(resource),
        )
        for resource in ResourceType
    ]


def refresh_over_limit(organization_id: int) -> bool:
    """
    Recompute the current subscription's over-limit flag from the counters.

    The flag is derived data: it is written with a plain conditional update and
    does not bump the subscription version.

    Returns:
        The new flag value
    """
    organization = Organization.objects.filter(pk=organization_id).first()
    if organization is None or organization.current_subscription_id is None:
        return False

    subscription = Subscription.objects.get(pk=organization.current_subscription_id)
    exceeded = subscription.get_limits().exceeded_by(usage_map(organization_id))
    over_limit = bool(exceeded)

    if over_limit != subscription.over_limit or exceeded != subscription.over_limit_resources:
        Subscription.objects.filter(pk=subscription.pk).update(
            over_limit=over_limit, over_limit_resources=exceeded
        )
        logger.info(
            "over_limit_flag_updated",
            organization_id=organization_id,
            subscription_id=subscription.pk,
            over_limit=over_limit,
            resources=exceeded,
        )
    return over_limit


def reconcile(organization_id: int, actual_counts: dict[str, int]) -> list[Drift]:
    """
    Compare counters against resource counts reported by the resource services.

    Drift is logged and recorded as a ``usage.drift_detected`` audit event for
    an operator to act on; counters are never corrected here.

    Returns:
        One Drift per resource type whose counter disagrees
    """
    if not Organization.objects.filter(pk=organization_id).exists():
        raise NotFound("Organization", organization_id)

    recorded = usage_map(organization_id)
    drifts = [
        Drift(resource_type=resource.value, recorded=recorded[resource.value], actual=int(actual))
        for resource in ResourceType
        if (actual := actual_counts.get(resource.value)) is not None and int(actual) != recorded[resource.value]
    ]

    for drift in drifts:
        logger.warning(
            "usage_drift_detected",
            organization_id=organization_id,
            resource_type=drift.resource_type,
            recorded=drift.recorded,
            actual=drift.actual,
        )

    if drifts:
        record(
            organization_id,
            None,
            "usage.drift_detected",
            {"counters": recorded},
            {"counters": recorded},
            metadata={
                "drift": [
                    {"resource_type": d.resource_type, "recorded": d.recorded, "actual": d.actual}
                    for d in drifts
                ]
            },
        )
    return drifts


def limit_for(organization_id: int, resource_type: ResourceType | str) -> Limit:
    """Limit granted by the current subscription's snapshot."""
    return current_subscription(organization_id).get_limits().for_resource(resource_type)
