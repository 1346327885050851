"""
Billing API schemas - request/response types for subscription endpoints.
"""

from datetime import datetime
from decimal import Decimal
from typing import Literal

from ninja import Schema
from pydantic import ConfigDict, Field

from apps.core.schemas import PageMeta


class SubscriptionOut(Schema):
    """Full subscription state. ``version`` is the If-Match token for mutations."""

    id: int
    organization_id: int
    plan_id: int | None
    plan_name: str
    plan_version: int
    status: str
    billing_cycle: str
    start_date: datetime
    end_date: datetime
    grace_deadline: datetime | None
    amount: Decimal
    proration_credit: Decimal | None
    limits_snapshot: dict[str, int] = Field(description="Per-resource limits; -1 means unlimited")
    over_limit: bool
    over_limit_resources: list[str]
    payment_method_on_file: bool
    cancel_reason: str
    cancelled_at: datetime | None
    superseded_by_id: int | None
    version: int


class SubscriptionPage(Schema):
    items: list[SubscriptionOut]
    meta: PageMeta


class SubscriptionListQuery(Schema):
    status: str | None = None
    search: str | None = None
    organization_id: int | None = None
    expiring_within_days: int | None = Field(default=None, ge=0)
    include_history: bool = False
    page: int = 1
    limit: int = 15


class SubscriptionStatsOut(Schema):
    by_status: dict[str, int]
    total_revenue: Decimal


class ExtendRequest(Schema):
    days: int = Field(gt=0)


class CancelRequest(Schema):
    reason: str = Field(min_length=1)
    immediate: bool = False


class SuspendRequest(Schema):
    reason: str = Field(min_length=1)


class ChangePlanRequest(Schema):
    model_config = ConfigDict(populate_by_name=True)

    plan_id: int = Field(alias="planId")


class ProrationOut(Schema):
    credit: Decimal
    charge: Decimal
    credit_note: Decimal
    remaining_fraction: Decimal


class ChangePlanOut(Schema):
    previous_id: int
    subscription: SubscriptionOut
    proration: ProrationOut


class PaymentIn(Schema):
    """Offline payment entered by an operator."""

    amount: Decimal = Field(ge=0)
    status: Literal["pending", "completed", "failed", "refunded"] = "completed"
    method: Literal["card", "bank_transfer", "cash", "mobile", "gateway", "other"] = "cash"
    reference: str = ""
    notes: str = ""


class PaymentOut(Schema):
    id: int
    subscription_id: int
    amount: Decimal
    method: str
    status: str
    date: datetime
    reference: str
    notes: str


class PaymentRecordedOut(Schema):
    payment: PaymentOut
    subscription: SubscriptionOut


class BillingSettingsOut(Schema):
    grace_period_days: int
    auto_suspend_on_expiry: bool
    default_trial_days: int
    allow_trial_extension: bool
    updated_at: datetime


class BillingSettingsIn(Schema):
    """Partial update; omitted fields are left unchanged."""

    grace_period_days: int | None = Field(default=None, ge=0)
    auto_suspend_on_expiry: bool | None = None
    default_trial_days: int | None = Field(default=None, ge=0)
    allow_trial_extension: bool | None = None
