"""
Audit event API endpoints.
"""

from datetime import datetime

from ninja import Query, Router, Schema
from ninja.errors import HttpError

from apps.core.auth import PrincipalAuth
from apps.core.schemas import ErrorResponse, PageMeta
from apps.core.types import AuthenticatedHttpRequest
from apps.events.schemas import AuditEventOut, AuditEventPage
from apps.events.services import AuditEventFilter, list_events

router = Router(tags=["audit"])


class AuditEventQuery(Schema):
    organization_id: int | None = None
    action: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    page: int = 1
    limit: int = 20


@router.get(
    "/audit-events",
    response={200: AuditEventPage, 401: ErrorResponse, 403: ErrorResponse},
    auth=PrincipalAuth(),
    operation_id="listAuditEvents",
    summary="List audit events, newest first",
)
def list_audit_events(
    request: AuthenticatedHttpRequest, query: Query[AuditEventQuery]
) -> AuditEventPage:
    """
    Page through the audit trail.

    Operators may query any organization (or all). Other principals are
    restricted to their own organization.
    """
    principal = request.auth
    organization_id = query.organization_id
    if not principal.is_operator:
        if principal.organization_id is None:
            raise HttpError(403, "Access to audit events is not permitted")
        if organization_id is not None and organization_id != principal.organization_id:
            raise HttpError(403, "Access to this organization is not permitted")
        organization_id = principal.organization_id

    result = list_events(
        AuditEventFilter(
            organization_id=organization_id,
            action=query.action,
            date_from=query.date_from,
            date_to=query.date_to,
        ),
        page=query.page,
        limit=query.limit,
    )
    return AuditEventPage(
        items=[AuditEventOut.model_validate(event) for event in result.items],
        meta=PageMeta(page=result.page, limit=result.limit, total=result.total),
    )
