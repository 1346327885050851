"""
Usage ledger API schemas.

Limits are reported in wire form: -1 means unlimited.
"""

from ninja import Schema
from pydantic import Field


class CounterOut(Schema):
    resource_type: str
    current: int
    limit: int


class UsageOut(Schema):
    organization_id: int
    over_limit: bool
    over_limit_resources: list[str]
    resources: list[CounterOut]


class ReconcileRequest(Schema):
    counts: dict[str, int] = Field(description="Actual resource counts keyed by resource type")


class DriftOut(Schema):
    resource_type: str
    recorded: int
    actual: int


class ReconcileOut(Schema):
    organization_id: int
    drift: list[DriftOut]
