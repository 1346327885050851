"""
Tests for usage ledger API endpoints.
"""

import json
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from django.db import connections
from django.test import Client

from apps.core.auth import Role
from apps.usage.models import UsageCounter
from apps.usage.services import current_usage
from tests.conftest import principal_headers
from tests.plans.factories import limits


@pytest.mark.django_db(transaction=True)
class TestConcurrentSignups:
    """Two signups racing for the last seat over HTTP."""

    def test_last_seat_goes_to_exactly_one_request(self, service_headers, subscribed_org, settings) -> None:
        settings.LEDGER_MAX_RETRIES = 10
        org = subscribed_org(limits=limits(students=50))
        UsageCounter.objects.filter(organization=org, resource_type="students").update(value=49)
        url = f"/api/v1/internal/usage/{org.pk}/students/increment"
        barrier = threading.Barrier(2, timeout=10)

        def signup(_):
            try:
                barrier.wait()
                return Client().post(url, **service_headers)
            finally:
                connections.close_all()

        with ThreadPoolExecutor(max_workers=2) as pool:
            responses = list(pool.map(signup, range(2)))

        assert sorted(response.status_code for response in responses) == [200, 409]
        rejected = next(response for response in responses if response.status_code == 409)
        assert rejected.json()["current"] == 50
        assert current_usage(org.pk, "students") == 50


@pytest.mark.django_db
class TestIncrementEndpoint:
    """Tests for POST /internal/usage/{org}/{resource}/increment."""

    def test_increments_within_limit(self, api_client, service_headers, subscribed_org) -> None:
        org = subscribed_org(limits=limits(students=2))

        response = api_client.post(f"/api/v1/internal/usage/{org.pk}/students/increment", **service_headers)

        assert response.status_code == 200
        assert response.json() == {"resource_type": "students", "current": 1, "limit": 2}

    def test_quota_exceeded_returns_409_with_limit_and_current(
        self, api_client, service_headers, subscribed_org
    ) -> None:
        org = subscribed_org(limits=limits(students=2))
        url = f"/api/v1/internal/usage/{org.pk}/students/increment"

        api_client.post(url, **service_headers)
        api_client.post(url, **service_headers)
        response = api_client.post(url, **service_headers)

        assert response.status_code == 409
        body = response.json()
        assert body["code"] == "quota_exceeded"
        assert body["limit"] == 2
        assert body["current"] == 2
        assert current_usage(org.pk, "students") == 2

    def test_amount_query_parameter(self, api_client, service_headers, subscribed_org) -> None:
        org = subscribed_org(limits=limits(storage_mb=100))

        response = api_client.post(
            f"/api/v1/internal/usage/{org.pk}/storage_mb/increment?amount=40", **service_headers
        )

        assert response.json()["current"] == 40

    def test_rejects_zero_amount(self, api_client, service_headers, subscribed_org) -> None:
        org = subscribed_org()

        response = api_client.post(
            f"/api/v1/internal/usage/{org.pk}/students/increment?amount=0", **service_headers
        )

        assert response.status_code == 422

    def test_rejects_unknown_resource_type(self, api_client, service_headers, subscribed_org) -> None:
        org = subscribed_org()

        response = api_client.post(f"/api/v1/internal/usage/{org.pk}/classrooms/increment", **service_headers)

        assert response.status_code == 422

    def test_members_cannot_call_internal_endpoint(self, api_client, subscribed_org) -> None:
        org = subscribed_org()

        response = api_client.post(
            f"/api/v1/internal/usage/{org.pk}/students/increment",
            **principal_headers(Role.ADMIN, organization_id=org.pk),
        )

        assert response.status_code == 403

    def test_unknown_organization_returns_404(self, api_client, service_headers, db) -> None:
        response = api_client.post("/api/v1/internal/usage/999999/students/increment", **service_headers)

        assert response.status_code == 404


@pytest.mark.django_db
class TestDecrementEndpoint:
    """Tests for POST /internal/usage/{org}/{resource}/decrement."""

    def test_floors_at_zero(self, api_client, service_headers, subscribed_org) -> None:
        org = subscribed_org(limits=limits(batches=-1))

        response = api_client.post(f"/api/v1/internal/usage/{org.pk}/batches/decrement", **service_headers)

        assert response.status_code == 200
        assert response.json() == {"resource_type": "batches", "current": 0, "limit": -1}


@pytest.mark.django_db
class TestReconcileEndpoint:
    """Tests for POST /internal/usage/{org}/reconcile."""

    def test_reports_drift(self, api_client, service_headers, subscribed_org) -> None:
        org = subscribed_org()
        UsageCounter.objects.filter(organization=org, resource_type="staff").update(value=4)

        response = api_client.post(
            f"/api/v1/internal/usage/{org.pk}/reconcile",
            data=json.dumps({"counts": {"staff": 3}}),
            content_type="application/json",
            **service_headers,
        )

        assert response.status_code == 200
        assert response.json()["drift"] == [{"resource_type": "staff", "recorded": 4, "actual": 3}]


@pytest.mark.django_db
class TestOrganizationUsageEndpoint:
    """Tests for GET /organizations/{id}/usage."""

    def test_member_reads_own_usage(self, api_client, subscribed_org) -> None:
        org = subscribed_org(limits=limits(students=10))
        UsageCounter.objects.filter(organization=org, resource_type="students").update(value=3)

        response = api_client.get(
            f"/api/v1/organizations/{org.pk}/usage", **principal_headers(Role.MEMBER, organization_id=org.pk)
        )

        assert response.status_code == 200
        body = response.json()
        assert body["over_limit"] is False
        students = next(item for item in body["resources"] if item["resource_type"] == "students")
        assert students == {"resource_type": "students", "current": 3, "limit": 10}

    def test_other_tenant_forbidden(self, api_client, subscribed_org) -> None:
        org = subscribed_org()

        response = api_client.get(
            f"/api/v1/organizations/{org.pk}/usage",
            **principal_headers(Role.MEMBER, organization_id=org.pk + 1000),
        )

        assert response.status_code == 403
