"""
Event services - audit recording, notification outbox and audit queries.
"""

import json
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

import structlog
from django.core.serializers.json import DjangoJSONEncoder
from django.db import models, transaction
from django.utils import timezone

from apps.core.logging import get_logger
from apps.events.models import AuditEvent, OutboxEvent
from apps.events.schemas import MAX_PAYLOAD_SIZE_BYTES, ActorSchema, EventEnvelope

logger = get_logger(__name__)

SYSTEM_ACTOR = "system"

_correlation_id: ContextVar[UUID | None] = ContextVar("correlation_id", default=None)


def set_correlation_id(correlation_id: UUID | None) -> None:
    """Set correlation ID for the current request or job context."""
    _correlation_id.set(correlation_id)


def get_correlation_id() -> UUID | None:
    """Get correlation ID for the current request or job context."""
    return _correlation_id.get()


def _jsonable(state: dict[str, Any] | None) -> dict[str, Any]:
    """Round-trip through DjangoJSONEncoder so datetimes and Decimals serialize."""
    if not state:
        return {}
    return json.loads(json.dumps(state, cls=DjangoJSONEncoder))


def record(
    organization_id: int | str | None,
    actor_id: str | None,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    *,
    aggregate: models.Model | None = None,
    outcome: str = AuditEvent.Outcome.SUCCESS,
    error_code: str = "",
    metadata: dict[str, Any] | None = None,
    actor_email: str = "",
) -> AuditEvent:
    """
    Append an immutable AuditEvent and enqueue it for notification delivery.

    The audit row and its outbox row are written in one transaction (nested
    inside the caller's transaction when there is one), so an event is never
    recorded without being queued. Delivery itself happens later in the
    ``deliver_events`` worker and cannot roll back the mutation.

    Args:
        organization_id: Tenant the action concerns, None for platform actions
        actor_id: User id of the principal, None for the system
        action: Action name, e.g. 'subscription.extend'
        before: State snapshot before the mutation
        after: State snapshot after the mutation (equal to before on rejection)
        aggregate: Model instance the action targeted
        outcome: 'success' or 'rejected'
        error_code: Taxonomy code for rejected attempts
        metadata: Extra context (reason, proration...)
        actor_email: Principal email, denormalized for display

    Returns:
        The created AuditEvent
    """
    org_id = "" if organization_id is None else str(organization_id)
    actor = actor_id or SYSTEM_ACTOR
    before_state = _jsonable(before)
    after_state = _jsonable(after)
    extra = _jsonable(metadata)
    aggregate_type = aggregate.__class__.__name__.lower() if aggregate is not None else ""
    aggregate_id = str(aggregate.pk) if aggregate is not None else ""

    ctx = structlog.contextvars.get_contextvars()
    correlation_id = get_correlation_id()
    event_id = uuid4()

    envelope = EventEnvelope(
        event_id=event_id,
        event_type=action,
        occurred_at=timezone.now(),
        aggregate_id=aggregate_id,
        aggregate_type=aggregate_type,
        organization_id=org_id,
        correlation_id=correlation_id,
        actor=ActorSchema(
            type="system" if actor == SYSTEM_ACTOR else "user",
            id=actor,
            email=actor_email or None,
        ),
        outcome=outcome,
        error_code=error_code,
        before=before_state,
        after=after_state,
        metadata=extra,
    )
    payload_json = envelope.model_dump_json()
    if len(payload_json.encode("utf-8")) > MAX_PAYLOAD_SIZE_BYTES:
        raise ValueError(f"Event payload exceeds {MAX_PAYLOAD_SIZE_BYTES} bytes limit")

    with transaction.atomic():
        event = AuditEvent.objects.create(
            event_id=event_id,
            organization_id=org_id,
            actor_id=actor,
            actor_email=actor_email,
            action=action,
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            outcome=outcome,
            error_code=error_code,
            before_state=before_state,
            after_state=after_state,
            metadata=extra,
            correlation_id=correlation_id,
            ip_address=ctx.get("request.ip_address"),
            user_agent=ctx.get("request.user_agent") or "",
        )
        OutboxEvent.objects.create(
            event_id=event_id,
            event_type=action,
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            organization_id=org_id,
            payload=envelope.model_dump(mode="json"),
        )

    logger.debug("audit_event_recorded", action=action, outcome=outcome, event_id=str(event_id))
    return event


@dataclass
class AuditEventFilter:
    """Optional filters for audit queries; unset fields match everything."""

    organization_id: int | str | None = None
    action: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None


@dataclass
class AuditEventPageResult:
    items: list[AuditEvent]
    total: int
    page: int
    limit: int


MAX_PAGE_SIZE = 100


def list_events(filters: AuditEventFilter, page: int = 1, limit: int = 20) -> AuditEventPageResult:
    """
    Return one page of audit events, newest first.

    ``action`` matches exactly or, when it ends with '.', as a prefix
    (``'subscription.'`` selects every subscription action).
    """
    page = max(page, 1)
    limit = min(max(limit, 1), MAX_PAGE_SIZE)

    queryset = AuditEvent.objects.all()
    if filters.organization_id is not None:
        queryset = queryset.filter(organization_id=str(filters.organization_id))
    if filters.action:
        if filters.action.endswith("."):
            queryset = queryset.filter(action__startswith=filters.action)
        else:
            queryset = queryset.filter(action=filters.action)
    if filters.date_from is not None:
        queryset = queryset.filter(created_at__gte=filters.date_from)
    if filters.date_to is not None:
        queryset = queryset.filter(created_at__lte=filters.date_to)

    total = queryset.count()
    offset = (page - 1) * limit
    items = list(queryset.order_by("-created_at", "-id")[offset : offset + limit])
    return AuditEventPageResult(items=items, total=total, page=page, limit=limit)
