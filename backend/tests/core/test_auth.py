"""
Tests for principal parsing and permission checks.
"""

import pytest
from django.test import RequestFactory
from ninja.errors import HttpError

from apps.core.auth import Principal, Role, principal_from_headers
from tests.conftest import principal_headers


def principal(role: Role, organization_id: int | None = 7) -> Principal:
    return Principal(user_id="usr_1", email="a@example.com", organization_id=organization_id, role=role)


class TestPrincipalFromHeaders:
    """Tests for principal_from_headers."""

    def test_parses_all_headers(self):
        headers = principal_headers(Role.ADMIN, 7, user_id="usr_9", email="b@example.com")
        request = RequestFactory().get("/", **headers)

        result = principal_from_headers(request)

        assert result == Principal(user_id="usr_9", email="b@example.com", organization_id=7, role=Role.ADMIN)

    def test_missing_id_is_anonymous(self):
        assert principal_from_headers(RequestFactory().get("/")) is None

    def test_role_defaults_to_member(self):
        request = RequestFactory().get("/", HTTP_X_PRINCIPAL_ID="usr_1")

        assert principal_from_headers(request).role == Role.MEMBER

    def test_role_is_case_insensitive(self):
        request = RequestFactory().get("/", HTTP_X_PRINCIPAL_ID="usr_1", HTTP_X_PRINCIPAL_ROLE="Operator")

        assert principal_from_headers(request).is_operator

    def test_unknown_role_is_rejected(self):
        request = RequestFactory().get("/", HTTP_X_PRINCIPAL_ID="usr_1", HTTP_X_PRINCIPAL_ROLE="root")

        assert principal_from_headers(request) is None

    def test_non_integer_organization_is_rejected(self):
        request = RequestFactory().get("/", HTTP_X_PRINCIPAL_ID="usr_1", HTTP_X_PRINCIPAL_ORGANIZATION="org_7")

        assert principal_from_headers(request) is None


class TestPermissionChecks:
    """Tests for the Principal require_* checks."""

    def test_operator_passes_everything(self):
        operator = principal(Role.OPERATOR, None)

        operator.require_operator()
        operator.require_member_of(99)
        operator.require_admin_of(99)
        operator.require_service()

    def test_member_of_own_organization(self):
        member = principal(Role.MEMBER)

        member.require_member_of(7)
        with pytest.raises(HttpError) as exc_info:
            member.require_member_of(8)
        assert exc_info.value.status_code == 403

    @pytest.mark.parametrize("role", [Role.OWNER, Role.ADMIN])
    def test_admin_roles(self, role):
        principal(role).require_admin_of(7)

    def test_member_is_not_admin(self):
        with pytest.raises(HttpError):
            principal(Role.MEMBER).require_admin_of(7)

    def test_admin_of_other_organization_is_rejected(self):
        with pytest.raises(HttpError):
            principal(Role.OWNER).require_admin_of(8)

    def test_service_role(self):
        principal(Role.SERVICE, None).require_service()
        with pytest.raises(HttpError):
            principal(Role.ADMIN).require_service()

    def test_non_operator_is_rejected(self):
        with pytest.raises(HttpError):
            principal(Role.OWNER).require_operator()

    def test_principal_without_organization_belongs_nowhere(self):
        assert principal(Role.MEMBER, None).belongs_to(7) is False
