"""
Organization API endpoints.

Tenant lifecycle is operator only; members may read their own organization.
"""

from ninja import Query, Router

from apps.core.auth import PrincipalAuth
from apps.core.schemas import ErrorResponse, PageMeta
from apps.core.types import AuthenticatedHttpRequest
from apps.organizations import services
from apps.organizations.schemas import (
    OrganizationCreate,
    OrganizationListQuery,
    OrganizationOut,
    OrganizationPage,
    SuspendOrganizationRequest,
)

router = Router(tags=["organizations"])
principal_auth = PrincipalAuth()


@router.get(
    "/organizations",
    response={200: OrganizationPage, 403: ErrorResponse},
    auth=principal_auth,
    operation_id="listOrganizations",
    summary="List organizations",
)
def list_organizations(
    request: AuthenticatedHttpRequest, query: Query[OrganizationListQuery]
) -> OrganizationPage:
    request.auth.require_operator()
    result = services.list_organizations(
        status=query.status, search=query.search, page=query.page, limit=query.limit
    )
    return OrganizationPage(
        items=[OrganizationOut.model_validate(item) for item in result.items],
        meta=PageMeta(page=result.page, limit=result.limit, total=result.total),
    )


@router.post(
    "/organizations",
    response={201: OrganizationOut, 403: ErrorResponse, 404: ErrorResponse, 409: ErrorResponse},
    auth=principal_auth,
    operation_id="createOrganization",
    summary="Create organization",
)
def create_organization(
    request: AuthenticatedHttpRequest, payload: OrganizationCreate
) -> tuple[int, OrganizationOut]:
    """Creates the organization, its usage counters and its first subscription."""
    request.auth.require_operator()
    organization = services.create_organization(
        payload.name,
        payload.plan_id,
        payload.billing_cycle,
        trial=payload.trial,
        trial_days=payload.trial_days,
        payment_method_on_file=payload.payment_method_on_file,
        actor=request.auth,
    )
    return 201, OrganizationOut.model_validate(organization)


@router.get(
    "/organizations/{organization_id}",
    response={200: OrganizationOut, 403: ErrorResponse, 404: ErrorResponse},
    auth=principal_auth,
    operation_id="getOrganization",
    summary="Get organization",
)
def get_organization(request: AuthenticatedHttpRequest, organization_id: int) -> OrganizationOut:
    request.auth.require_member_of(organization_id)
    return OrganizationOut.model_validate(services.get_organization(organization_id))


@router.put(
    "/organizations/{organization_id}/suspend",
    response={200: OrganizationOut, 403: ErrorResponse, 404: ErrorResponse},
    auth=principal_auth,
    operation_id="suspendOrganization",
    summary="Suspend organization",
)
def suspend_organization(
    request: AuthenticatedHttpRequest, organization_id: int, payload: SuspendOrganizationRequest
) -> OrganizationOut:
    request.auth.require_operator()
    organization = services.suspend_organization(organization_id, payload.reason, actor=request.auth)
    return OrganizationOut.model_validate(organization)


@router.put(
    "/organizations/{organization_id}/activate",
    response={200: OrganizationOut, 403: ErrorResponse, 404: ErrorResponse},
    auth=principal_auth,
    operation_id="activateOrganization",
    summary="Lift organization suspension",
)
def activate_organization(request: AuthenticatedHttpRequest, organization_id: int) -> OrganizationOut:
    request.auth.require_operator()
    organization = services.activate_organization(organization_id, actor=request.auth)
    return OrganizationOut.model_validate(organization)


@router.delete(
    "/organizations/{organization_id}",
    response={204: None, 403: ErrorResponse, 404: ErrorResponse},
    auth=principal_auth,
    operation_id="deleteOrganization",
    summary="Delete organization",
)
def delete_organization(request: AuthenticatedHttpRequest, organization_id: int) -> tuple[int, None]:
    """Cascades to subscriptions, payments and usage counters. Audit history is kept."""
    request.auth.require_operator()
    services.delete_organization(organization_id, actor=request.auth)
    return 204, None
