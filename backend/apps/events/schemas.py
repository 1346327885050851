"""
Event schemas - notification envelope and audit API shapes.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from ninja import Schema
from pydantic import BaseModel, Field

from apps.core.schemas import PageMeta


class ActorSchema(BaseModel):
    """Who caused the event."""

    type: str = Field(description="Actor type: 'user' or 'system'")
    id: str = Field(description="Actor identifier")
    email: str | None = Field(default=None, description="Actor email if user")


class EventEnvelope(BaseModel):
    """Envelope delivered to the notification sink for every audit event."""

    event_id: UUID
    event_type: str = Field(description="Audit action, e.g. 'subscription.suspend'")
    schema_version: int = 1
    occurred_at: datetime

    aggregate_id: str = ""
    aggregate_type: str = ""
    organization_id: str = Field(default="", description="Tenant, blank for platform actions")

    correlation_id: UUID | None = None
    actor: ActorSchema
    outcome: str = "success"
    error_code: str = ""

    before: dict[str, Any] = Field(default_factory=dict)
    after: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)


# Upper bound on a serialized envelope
MAX_PAYLOAD_SIZE_BYTES = 256 * 1024


class AuditEventOut(Schema):
    id: int
    event_id: UUID
    organization_id: str
    actor_id: str
    action: str
    aggregate_type: str
    aggregate_id: str
    outcome: str
    error_code: str
    before_state: dict[str, Any]
    after_state: dict[str, Any]
    metadata: dict[str, Any]
    correlation_id: UUID | None
    created_at: datetime


class AuditEventPage(Schema):
    items: list[AuditEventOut]
    meta: PageMeta
