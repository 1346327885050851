"""
Usage ledger API endpoints.

``/internal/usage/...`` is called by the resource services before creating
and after deleting a countable resource.
"""

from ninja import Query, Router

from apps.core.auth import PrincipalAuth
from apps.core.exceptions import QuotaExceeded
from apps.core.schemas import ErrorResponse
from apps.core.types import AuthenticatedHttpRequest
from apps.plans.limits import ResourceType
from apps.usage import services
from apps.usage.schemas import CounterOut, DriftOut, ReconcileOut, ReconcileRequest, UsageOut

router = Router(tags=["usage"])
principal_auth = PrincipalAuth()


@router.post(
    "/internal/usage/{organization_id}/{resource_type}/increment",
    response={200: CounterOut, 403: ErrorResponse, 404: ErrorResponse, 409: ErrorResponse, 503: ErrorResponse},
    auth=principal_auth,
    operation_id="incrementUsage",
    summary="Check quota and count a new resource",
)
def increment_usage(
    request: AuthenticatedHttpRequest,
    organization_id: int,
    resource_type: ResourceType,
    amount: int = Query(1, gt=0),
) -> CounterOut:
    """
    Atomic check-and-increment.

    409 ``quota_exceeded`` with ``{limit, current}`` when the plan limit would be
    exceeded; the counter is left unchanged.
    """
    request.auth.require_service()
    result = services.try_increment(organization_id, resource_type, amount)
    if not result.ok:
        raise QuotaExceeded(result.resource_type, result.limit.to_raw(), result.current)
    return CounterOut(resource_type=result.resource_type, current=result.current, limit=result.limit.to_raw())


@router.post(
    "/internal/usage/{organization_id}/{resource_type}/decrement",
    response={200: CounterOut, 403: ErrorResponse, 404: ErrorResponse},
    auth=principal_auth,
    operation_id="decrementUsage",
    summary="Count a deleted resource",
)
def decrement_usage(
    request: AuthenticatedHttpRequest,
    organization_id: int,
    resource_type: ResourceType,
    amount: int = Query(1, gt=0),
) -> CounterOut:
    """Floors at zero."""
    request.auth.require_service()
    current = services.decrement(organization_id, resource_type, amount)
    limit = services.limit_for(organization_id, resource_type)
    return CounterOut(resource_type=resource_type.value, current=current, limit=limit.to_raw())


@router.post(
    "/internal/usage/{organization_id}/reconcile",
    response={200: ReconcileOut, 403: ErrorResponse, 404: ErrorResponse},
    auth=principal_auth,
    operation_id="reconcileUsage",
    summary="Report counter drift against actual resource counts",
)
def reconcile_usage(
    request: AuthenticatedHttpRequest, organization_id: int, payload: ReconcileRequest
) -> ReconcileOut:
    """Drift is logged and audited; counters are not corrected."""
    request.auth.require_service()
    drifts = services.reconcile(organization_id, payload.counts)
    return ReconcileOut(
        organization_id=organization_id,
        drift=[
            DriftOut(resource_type=d.resource_type, recorded=d.recorded, actual=d.actual) for d in drifts
        ],
    )


@router.get(
    "/organizations/{organization_id}/usage",
    response={200: UsageOut, 403: ErrorResponse, 404: ErrorResponse},
    auth=principal_auth,
    operation_id="getOrganizationUsage",
    summary="Per-resource usage and limits",
)
def get_organization_usage(request: AuthenticatedHttpRequest, organization_id: int) -> UsageOut:
    request.auth.require_member_of(organization_id)
    subscription = services.current_subscription(organization_id)
    return UsageOut(
        organization_id=organization_id,
        over_limit=subscription.over_limit,
        over_limit_resources=subscription.over_limit_resources,
        resources=[
            CounterOut(resource_type=item.resource_type, current=item.current, limit=item.limit.to_raw())
            for item in services.usage_summary(organization_id)
        ],
    )
