"""
Plan catalog API schemas.
"""

from datetime import datetime
from decimal import Decimal

from ninja import Schema
from pydantic import Field, field_validator

from apps.plans.limits import Limits
from apps.plans.models import Plan


class LimitsSchema(Schema):
    """Wire form of plan limits; -1 means unlimited."""

    maxStudents: int = Field(default=0, ge=-1)
    maxBatches: int = Field(default=0, ge=-1)
    maxStaff: int = Field(default=0, ge=-1)
    maxUsers: int = Field(default=0, ge=-1)
    maxStorageMB: int = Field(default=0, ge=-1)


class PlanOut(Schema):
    id: int
    name: str
    description: str
    tier: str
    monthly_price: Decimal
    yearly_price: Decimal
    limits: LimitsSchema
    features: list[str]
    trial_days: int
    is_active: bool
    is_popular: bool
    version: int
    updated_at: datetime

    @staticmethod
    def resolve_limits(obj: Plan) -> dict[str, int]:
        return obj.get_limits().to_dict()


class PlanIn(Schema):
    name: str = Field(min_length=1, max_length=255)
    description: str = ""
    tier: Plan.Tier
    monthly_price: Decimal = Field(ge=0, decimal_places=2)
    yearly_price: Decimal = Field(ge=0, decimal_places=2)
    limits: LimitsSchema
    features: list[str] = []
    # Omitted: the platform default_trial_days
    trial_days: int | None = Field(default=None, ge=0)
    is_active: bool = True
    is_popular: bool = False


class PlanUpdate(Schema):
    """Partial update; omitted fields are left unchanged."""

    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    tier: Plan.Tier | None = None
    monthly_price: Decimal | None = Field(default=None, ge=0, decimal_places=2)
    yearly_price: Decimal | None = Field(default=None, ge=0, decimal_places=2)
    limits: LimitsSchema | None = None
    features: list[str] | None = None
    trial_days: int | None = Field(default=None, ge=0)
    is_active: bool | None = None
    is_popular: bool | None = None

    @field_validator("features")
    @classmethod
    def strip_features(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return value
        return [feature.strip() for feature in value if feature.strip()]


class ReapplyOut(Schema):
    plan_id: int
    plan_version: int
    subscriptions_updated: int


def limits_from_schema(schema: LimitsSchema) -> dict[str, int]:
    """Validate through the Limits value type and return the storage form."""
    return Limits.from_dict(schema.model_dump()).to_dict()
