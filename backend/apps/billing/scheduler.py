"""
Billing cycle sweep.

Walks current subscriptions whose dates have run out and drives them through
the state machine:

1. active past its end date -> past_due, with a grace deadline
2. past_due past its grace deadline -> suspended (if auto-suspend is enabled)
3. trial past its end date -> active with a payment method on file, else expired
4. cancelled past its paid period -> organization suspended (the subscription
   keeps its terminal status)

Rules apply in order, so one sweep can take a long-overdue subscription from
active to suspended. Every step goes through the state machine, so re-running
the sweep is a no-op and killing it mid-way loses nothing already committed.
"""

import time
import zlib
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from django.conf import settings
from django.db import DatabaseError
from django.db.models import Q

from apps.billing import services
from apps.billing.models import BillingSettings, Subscription
from apps.core.exceptions import ConcurrentModification
from apps.core.logging import get_logger
from apps.core.utils import resolve_now
from apps.organizations.models import Organization

logger = get_logger(__name__)

Status = Subscription.Status

RETRY_BASE_DELAY_SECONDS = 0.1


@dataclass
class SweepReport:
    examined: int = 0
    transitioned: int = 0
    failed: int = 0

    def merge(self, other: "SweepReport") -> "SweepReport":
        return SweepReport(
            examined=self.examined + other.examined,
            transitioned=self.transitioned + other.transitioned,
            failed=self.failed + other.failed,
        )


def partition_of(organization_id: int, partitions: int) -> int:
    """Stable partition index for an organization, the same in every process."""
    return zlib.crc32(str(organization_id).encode("utf-8")) % partitions


def _due_subscriptions(now: datetime) -> list[tuple[int, int]]:
    """(subscription id, organization id) of current subscriptions with a due rule."""
    return list(
        Subscription.objects.filter(superseded_by__isnull=True)
        .filter(
            Q(status=Status.ACTIVE, end_date__lt=now)
            | Q(status=Status.PAST_DUE)
            | Q(status=Status.TRIAL, end_date__lt=now)
            | (
                Q(status=Status.CANCELLED, end_date__lte=now, organization__suspension_reason="")
                & ~Q(organization__status=Organization.Status.SUSPENDED)
            )
        )
        .order_by("end_date", "id")
        .values_list("id", "organization_id")
    )


def _grace_deadline(subscription: Subscription, grace_period_days: int) -> datetime:
    return subscription.grace_deadline or subscription.end_date + timedelta(days=grace_period_days)


def process_subscription(subscription_id: int, now: datetime, billing_settings: BillingSettings) -> bool:
    """
    Apply every due rule to one subscription.

    Returns:
        True if at least one transition happened
    """
    subscription = services.get_subscription(subscription_id)
    if not subscription.is_current:
        return False
    transitioned = False

    if subscription.status == Status.ACTIVE and subscription.end_date < now:
        subscription = services.transition(
            subscription.pk,
            Status.PAST_DUE,
            expected_version=subscription.version,
            changes={"grace_deadline": subscription.end_date + timedelta(days=billing_settings.grace_period_days)},
            reason="billing_period_ended",
            now=now,
        )
        transitioned = True

    if subscription.status == Status.PAST_DUE and now > _grace_deadline(
        subscription, billing_settings.grace_period_days
    ):
        if billing_settings.auto_suspend_on_expiry:
            subscription = services.transition(
                subscription.pk,
                Status.SUSPENDED,
                expected_version=subscription.version,
                reason="grace_period_elapsed",
                now=now,
            )
            transitioned = True
        else:
            logger.info(
                "grace_period_elapsed_manual_intervention",
                subscription_id=subscription.pk,
                organization_id=subscription.organization_id,
            )

    if subscription.status == Status.TRIAL and subscription.end_date < now:
        if subscription.payment_method_on_file:
            subscription = services.renew(subscription.pk, expected_version=subscription.version, now=now)
        else:
            subscription = services.transition(
                subscription.pk,
                Status.EXPIRED,
                expected_version=subscription.version,
                reason="trial_ended",
                now=now,
            )
        transitioned = True

    if subscription.status == Status.CANCELLED and services.end_cancelled_service(subscription, now):
        transitioned = True

    return transitioned


def _process_with_retries(
    subscription_id: int,
    now: datetime,
    billing_settings: BillingSettings,
    sleep: Callable[[float], None],
) -> bool:
    attempts = settings.SUBSCRIPTION_MAX_RETRIES
    for attempt in range(attempts):
        try:
            return process_subscription(subscription_id, now, billing_settings)
        except (DatabaseError, ConcurrentModification) as exc:
            if attempt == attempts - 1:
                raise
            delay = RETRY_BASE_DELAY_SECONDS * (2**attempt)
            logger.warning(
                "billing_sweep_retry",
                subscription_id=subscription_id,
                attempt=attempt + 1,
                delay=delay,
                error=str(exc),
            )
            sleep(delay)
    return False


def sweep_subscriptions(
    now: datetime | None = None,
    *,
    partition: int = 0,
    partitions: int = 1,
    sleep: Callable[[float], None] = time.sleep,
) -> SweepReport:
    """
    Run one sweep over the subscriptions in ``partition`` of ``partitions``.

    A failure on one subscription is logged and counted; the sweep moves on.
    """
    if partitions < 1 or not 0 <= partition < partitions:
        raise ValueError("partition must be in [0, partitions)")

    now = resolve_now(now)
    billing_settings = BillingSettings.load()
    report = SweepReport()
    started = time.monotonic()

    for subscription_id, organization_id in _due_subscriptions(now):
        if partitions > 1 and partition_of(organization_id, partitions) != partition:
            continue
        report.examined += 1
        try:
            if _process_with_retries(subscription_id, now, billing_settings, sleep):
                report.transitioned += 1
        except Exception:
            report.failed += 1
            logger.exception(
                "billing_sweep_subscription_failed",
                subscription_id=subscription_id,
                organization_id=organization_id,
            )

    logger.info(
        "billing_sweep_finished",
        partition=partition,
        partitions=partitions,
        examined=report.examined,
        transitioned=report.transitioned,
        failed=report.failed,
        duration_ms=(time.monotonic() - started) * 1000,
    )
    return report
