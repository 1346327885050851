"""
Shared pytest fixtures for all tests.

This module provides common fixtures used across multiple test modules.
Individual test modules can override these fixtures if needed.

Factories
---------
Import factories directly from their modules:

    from tests.plans.factories import PlanFactory
    from tests.organizations.factories import OrganizationFactory
    from tests.billing.factories import SubscriptionFactory, PaymentFactory

Example usage:

    @pytest.mark.django_db
    def test_something(subscribed_org):
        org = subscribed_org(limits={"maxStudents": 2})
        assert org.current_subscription.status == "active"
"""

from collections.abc import Callable
from typing import Any

import pytest
import structlog
from django.test import Client

from apps.core.auth import (
    PRINCIPAL_EMAIL_HEADER,
    PRINCIPAL_ID_HEADER,
    PRINCIPAL_ORG_HEADER,
    PRINCIPAL_ROLE_HEADER,
    Principal,
    Role,
)


def principal_headers(
    role: str = Role.OPERATOR,
    organization_id: int | None = None,
    user_id: str = "usr_test",
    email: str = "test@example.com",
) -> dict[str, str]:
    """
    Django test client kwargs carrying the forwarded principal headers.

    Example:
        api_client.get("/api/v1/plans", **principal_headers(Role.MEMBER, org.pk))
    """
    headers = {
        PRINCIPAL_ID_HEADER: user_id,
        PRINCIPAL_EMAIL_HEADER: email,
        PRINCIPAL_ROLE_HEADER: str(role),
    }
    if organization_id is not None:
        headers[PRINCIPAL_ORG_HEADER] = str(organization_id)
    return {f"HTTP_{name.upper().replace('-', '_')}": value for name, value in headers.items()}


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Keep structlog context from leaking between tests."""
    structlog.contextvars.clear_contextvars()
    yield
    structlog.contextvars.clear_contextvars()


@pytest.fixture
def api_client() -> Client:
    """
    Django test client for full HTTP request/response cycle tests.

    Example:
        def test_api_returns_200(api_client):
            response = api_client.get("/api/v1/health")
            assert response.status_code == 200
    """
    return Client()


@pytest.fixture
def operator() -> Principal:
    """Platform operator principal for service-level calls."""
    return Principal(user_id="usr_operator", email="ops@example.com", organization_id=None, role=Role.OPERATOR)


@pytest.fixture
def operator_headers() -> dict[str, str]:
    return principal_headers(Role.OPERATOR, user_id="usr_operator", email="ops@example.com")


@pytest.fixture
def service_headers() -> dict[str, str]:
    """Headers of a resource service calling the internal usage endpoints."""
    return principal_headers(Role.SERVICE, user_id="svc_students", email="")


@pytest.fixture
def subscribed_org(db) -> Callable[..., Any]:
    """
    Factory fixture for an organization with a current subscription.

    Returns a function accepting the plan limits and subscription fields.
    Counters are created at zero.

    Example:
        org = subscribed_org(limits={"maxStudents": 2}, status="trial")
    """
    from apps.usage.services import ensure_counters
    from tests.billing.factories import SubscriptionFactory
    from tests.plans.factories import PlanFactory

    def _make(limits: dict[str, int] | None = None, **subscription_fields: Any):
        plan = PlanFactory.create(**({"limits": limits} if limits is not None else {}))
        subscription = SubscriptionFactory.create(plan=plan, **subscription_fields)
        organization = subscription.organization
        ensure_counters(organization)
        organization.refresh_from_db()
        return organization

    return _make
