"""
Payment recording and payment-driven subscription transitions.

Payment rows are append-only. A gateway event (or an operator entering an
offline payment) records a row and then drives the subscription:

- completed: trial/past_due/active -> active with a renewed period
- failed: active -> past_due with a grace deadline
- refunded: recorded only
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from django.db import transaction

from apps.billing import services
from apps.billing.models import BillingSettings, Payment, Subscription
from apps.core.logging import get_logger
from apps.core.utils import resolve_now
from apps.events.services import record

if TYPE_CHECKING:
    from apps.core.auth import Principal

logger = get_logger(__name__)

Status = Subscription.Status


@dataclass
class PaymentOutcome:
    payment: Payment
    subscription: Subscription
    transitioned: bool


def record_payment(
    subscription: Subscription,
    amount: Decimal,
    status: str,
    *,
    method: str = Payment.Method.GATEWAY,
    reference: str = "",
    notes: str = "",
    actor: "Principal | None" = None,
    now: datetime | None = None,
) -> Payment:
    """Append a Payment row and its audit event."""
    with transaction.atomic():
        payment = Payment.objects.create(
            subscription=subscription,
            amount=amount,
            method=method,
            status=status,
            date=resolve_now(now),
            reference=reference,
            notes=notes,
        )
        record(
            subscription.organization_id,
            actor.actor_id if actor else None,
            "payment.recorded",
            {},
            {
                "payment_id": payment.pk,
                "subscription_id": subscription.pk,
                "amount": payment.amount,
                "status": payment.status,
                "method": payment.method,
                "reference": payment.reference,
            },
            aggregate=payment,
            actor_email=actor.email if actor else "",
        )

    logger.info(
        "payment_recorded",
        payment_id=payment.pk,
        subscription_id=subscription.pk,
        organization_id=subscription.organization_id,
        status=status,
        amount=str(amount),
    )
    return payment


def handle_payment_event(
    subscription_id: int,
    status: str,
    amount: Decimal,
    *,
    reference: str = "",
    method: str = Payment.Method.GATEWAY,
    notes: str = "",
    actor: "Principal | None" = None,
    now: datetime | None = None,
) -> PaymentOutcome:
    """
    Record a payment and apply its effect on the subscription.

    Events for a superseded subscription apply to the organization's current
    one. Failures outside ``active`` are recorded without a transition: a
    trial runs out on its own timer and grace only starts from active.
    """
    now = resolve_now(now)
    subscription = services.resolve_current(subscription_id)
    payment = record_payment(
        subscription,
        amount,
        status,
        method=method,
        reference=reference,
        notes=notes,
        actor=actor,
        now=now,
    )

    transitioned = False
    match status:
        case Payment.Status.COMPLETED:
            if subscription.status in services.RENEWABLE_STATUSES:
                subscription = services.retry_on_conflict(
                    lambda: services.renew(subscription.pk, actor=actor, now=now)
                )
                transitioned = True
            else:
                logger.warning(
                    "payment_completed_without_transition",
                    subscription_id=subscription.pk,
                    status=subscription.status,
                )

        case Payment.Status.FAILED:
            if subscription.status == Status.ACTIVE:
                grace_days = BillingSettings.load().grace_period_days

                def mark_past_due() -> Subscription:
                    current = services.get_subscription(subscription.pk)
                    return services.transition(
                        current.pk,
                        Status.PAST_DUE,
                        expected_version=current.version,
                        actor=actor,
                        changes={"grace_deadline": current.end_date + timedelta(days=grace_days)},
                        reason="payment_failed",
                        now=now,
                    )

                subscription = services.retry_on_conflict(mark_past_due)
                transitioned = True
            else:
                logger.info(
                    "payment_failure_recorded_without_transition",
                    subscription_id=subscription.pk,
                    status=subscription.status,
                )

        case _:
            pass

    return PaymentOutcome(payment=payment, subscription=subscription, transitioned=transitioned)


def list_payments(subscription_id: int) -> list[Payment]:
    """Payments of a subscription, newest first."""
    subscription = services.get_subscription(subscription_id)
    return list(subscription.payments.order_by("-date", "-id"))
