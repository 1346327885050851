"""
Organization API schemas.
"""

from datetime import datetime
from typing import Literal

from ninja import Schema
from pydantic import ConfigDict, Field

from apps.core.schemas import PageMeta


class OrganizationOut(Schema):
    id: int
    name: str
    status: str
    suspension_reason: str
    current_subscription_id: int | None
    created_at: datetime


class OrganizationPage(Schema):
    items: list[OrganizationOut]
    meta: PageMeta


class OrganizationListQuery(Schema):
    status: str | None = None
    search: str | None = None
    page: int = 1
    limit: int = 15


class OrganizationCreate(Schema):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1, max_length=255)
    plan_id: int = Field(alias="planId")
    billing_cycle: Literal["monthly", "yearly"] = Field(default="monthly", alias="billingCycle")
    trial: bool = True
    # Overrides the plan trial length; 0 starts active
    trial_days: int | None = Field(default=None, ge=0, alias="trialDays")
    payment_method_on_file: bool = Field(default=False, alias="paymentMethodOnFile")


class SuspendOrganizationRequest(Schema):
    reason: str = Field(min_length=1)
