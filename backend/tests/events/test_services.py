"""
Tests for event services.
"""

from datetime import timedelta
from decimal import Decimal
from uuid import UUID

import pytest
import structlog
from django.utils import timezone

from apps.events.models import AuditEvent, OutboxEvent
from apps.events.schemas import MAX_PAYLOAD_SIZE_BYTES
from apps.events.services import (
    AuditEventFilter,
    get_correlation_id,
    list_events,
    record,
    set_correlation_id,
)
from tests.organizations.factories import OrganizationFactory


@pytest.mark.django_db
class TestRecord:
    """Tests for record."""

    def test_creates_audit_event_and_outbox_entry(self):
        org = OrganizationFactory.create()

        event = record(
            org.pk,
            "usr_1",
            "organization.suspend",
            {"status": "active"},
            {"status": "suspended"},
            aggregate=org,
            metadata={"reason": "fraud review"},
            actor_email="ops@example.com",
        )

        assert event.organization_id == str(org.pk)
        assert event.aggregate_type == "organization"
        assert event.aggregate_id == str(org.pk)
        assert event.outcome == AuditEvent.Outcome.SUCCESS

        outbox = OutboxEvent.objects.get(event_id=event.event_id)
        assert outbox.status == OutboxEvent.Status.PENDING
        assert outbox.event_type == "organization.suspend"
        assert outbox.payload["actor"] == {"type": "user", "id": "usr_1", "email": "ops@example.com"}
        assert outbox.payload["before"] == {"status": "active"}
        assert outbox.payload["after"] == {"status": "suspended"}
        assert outbox.payload["metadata"] == {"reason": "fraud review"}

    def test_missing_actor_is_system(self):
        event = record(7, None, "subscription.past_due", {}, {})

        assert event.actor_id == "system"
        outbox = OutboxEvent.objects.get(event_id=event.event_id)
        assert outbox.payload["actor"]["type"] == "system"

    def test_platform_action_has_blank_organization(self):
        event = record(None, "usr_1", "platform.settings_update", {"grace_period_days": 7}, {})

        assert event.organization_id == ""

    def test_serializes_datetimes_and_decimals(self):
        now = timezone.now()

        event = record(7, "usr_1", "payment.recorded", None, {"amount": Decimal("30.00"), "date": now})

        assert event.after_state["amount"] == "30.00"
        assert isinstance(event.after_state["date"], str)

    def test_rejected_outcome_carries_error_code(self):
        event = record(
            7,
            "usr_1",
            "subscription.cancel",
            {"status": "trial"},
            {"status": "trial"},
            outcome=AuditEvent.Outcome.REJECTED,
            error_code="invalid_transition",
        )

        outbox = OutboxEvent.objects.get(event_id=event.event_id)
        assert outbox.payload["outcome"] == "rejected"
        assert outbox.payload["error_code"] == "invalid_transition"

    def test_picks_up_request_context(self):
        correlation_id = UUID("550e8400-e29b-41d4-a716-446655440000")
        set_correlation_id(correlation_id)
        structlog.contextvars.bind_contextvars(**{"request.ip_address": "10.0.0.1", "request.user_agent": "curl"})
        try:
            event = record(7, "usr_1", "subscription.extend", {}, {})
        finally:
            set_correlation_id(None)

        assert event.correlation_id == correlation_id
        assert event.ip_address == "10.0.0.1"
        assert event.user_agent == "curl"

    def test_oversized_payload_is_rejected(self):
        big = {"blob": "x" * (MAX_PAYLOAD_SIZE_BYTES + 1)}

        with pytest.raises(ValueError, match="exceeds"):
            record(7, "usr_1", "subscription.extend", {}, big)

        assert not AuditEvent.objects.exists()
        assert not OutboxEvent.objects.exists()


class TestCorrelationId:
    """Tests for the correlation id context variable."""

    def test_set_and_get(self):
        correlation_id = UUID("550e8400-e29b-41d4-a716-446655440001")
        set_correlation_id(correlation_id)
        try:
            assert get_correlation_id() == correlation_id
        finally:
            set_correlation_id(None)

        assert get_correlation_id() is None


@pytest.mark.django_db
class TestListEvents:
    """Tests for list_events."""

    def test_newest_first(self):
        first = record(7, "usr_1", "subscription.extend", {}, {})
        second = record(7, "usr_1", "subscription.cancel", {}, {})

        result = list_events(AuditEventFilter())

        assert [event.pk for event in result.items] == [second.pk, first.pk]
        assert result.total == 2

    def test_filters_by_organization(self):
        record(7, "usr_1", "subscription.extend", {}, {})
        other = record(8, "usr_1", "subscription.extend", {}, {})

        result = list_events(AuditEventFilter(organization_id=8))

        assert [event.pk for event in result.items] == [other.pk]

    def test_action_prefix(self):
        record(7, "usr_1", "subscription.extend", {}, {})
        record(7, "usr_1", "subscription.cancel", {}, {})
        record(7, "usr_1", "usage.increment", {}, {})

        assert list_events(AuditEventFilter(action="subscription.")).total == 2
        assert list_events(AuditEventFilter(action="subscription.cancel")).total == 1
        assert list_events(AuditEventFilter(action="subscription")).total == 0

    def test_date_range(self):
        record(7, "usr_1", "subscription.extend", {}, {})
        now = timezone.now()

        assert list_events(AuditEventFilter(date_from=now - timedelta(minutes=1))).total == 1
        assert list_events(AuditEventFilter(date_to=now - timedelta(minutes=1))).total == 0

    def test_paging_and_limit_cap(self):
        for _ in range(5):
            record(7, "usr_1", "subscription.extend", {}, {})

        page = list_events(AuditEventFilter(), page=2, limit=2)
        capped = list_events(AuditEventFilter(), limit=1000)

        assert len(page.items) == 2
        assert page.total == 5
        assert capped.limit == 100
