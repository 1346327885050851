"""
Authentication context for the request lifecycle.

The identity provider's gateway authenticates callers and forwards the
resulting principal in trusted headers. This module turns those headers into
a typed Principal and provides the permission checks endpoints use.
No credential verification happens here.
"""

from dataclasses import dataclass
from enum import StrEnum

from django.http import HttpRequest
from ninja.errors import HttpError
from ninja.security import APIKeyHeader

PRINCIPAL_ID_HEADER = "X-Principal-Id"
PRINCIPAL_EMAIL_HEADER = "X-Principal-Email"
PRINCIPAL_ORG_HEADER = "X-Principal-Organization"
PRINCIPAL_ROLE_HEADER = "X-Principal-Role"


class Role(StrEnum):
    OPERATOR = "operator"
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
    SERVICE = "service"


@dataclass(frozen=True)
class Principal:
    """
    Authenticated caller as supplied by the identity provider.

    Attributes:
        user_id: Stable identifier of the user or service account
        email: Email address, empty for service accounts
        organization_id: Tenant the principal belongs to, None for platform operators
        role: One of Role
    """

    user_id: str
    email: str
    organization_id: int | None
    role: Role

    @property
    def is_operator(self) -> bool:
        return self.role == Role.OPERATOR

    @property
    def actor_id(self) -> str:
        """Identifier recorded on audit events."""
        return self.user_id

    def belongs_to(self, organization_id: int) -> bool:
        return self.organization_id is not None and self.organization_id == organization_id

    def require_operator(self) -> None:
        """Raise 403 unless the principal is a platform operator."""
        if not self.is_operator:
            raise HttpError(403, "Operator access required")

    def require_member_of(self, organization_id: int) -> None:
        """Raise 403 unless the principal is an operator or belongs to the organization."""
        if self.is_operator:
            return
        if not self.belongs_to(organization_id):
            raise HttpError(403, "Access to this organization is not permitted")

    def require_admin_of(self, organization_id: int) -> None:
        """Raise 403 unless the principal is an operator or an owner/admin of the organization."""
        if self.is_operator:
            return
        if not self.belongs_to(organization_id) or self.role not in (Role.OWNER, Role.ADMIN):
            raise HttpError(403, "Organization admin access required")

    def require_service(self) -> None:
        """Raise 403 unless the principal is a resource service or an operator."""
        if self.role not in (Role.SERVICE, Role.OPERATOR):
            raise HttpError(403, "Service access required")


def principal_from_headers(request: HttpRequest) -> Principal | None:
    """
    Build a Principal from the forwarded identity headers.

    Returns None when the principal id is missing or the role/org headers
    are malformed.
    """
    user_id = request.headers.get(PRINCIPAL_ID_HEADER, "").strip()
    if not user_id:
        return None

    try:
        role = Role(request.headers.get(PRINCIPAL_ROLE_HEADER, Role.MEMBER.value).strip().lower())
    except ValueError:
        return None

    raw_org = request.headers.get(PRINCIPAL_ORG_HEADER, "").strip()
    organization_id: int | None = None
    if raw_org:
        try:
            organization_id = int(raw_org)
        except ValueError:
            return None

    return Principal(
        user_id=user_id,
        email=request.headers.get(PRINCIPAL_EMAIL_HEADER, "").strip(),
        organization_id=organization_id,
        role=role,
    )


class PrincipalAuth(APIKeyHeader):
    """
    Ninja auth class reading the trusted principal headers.

    Missing or malformed headers trigger a 401 from Django Ninja.
    Sets ``request.auth`` to the Principal.
    """

    param_name = PRINCIPAL_ID_HEADER

    def authenticate(self, request: HttpRequest, key: str | None) -> Principal | None:
        if not key:
            return None
        return principal_from_headers(request)
