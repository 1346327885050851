"""
Plan catalog API endpoints.

Reads are open to any authenticated principal; catalog mutations are
operator only.
"""

from ninja import Router

from apps.billing.services import reapply_plan_limits
from apps.core.auth import PrincipalAuth
from apps.core.schemas import ErrorResponse
from apps.core.types import AuthenticatedHttpRequest
from apps.plans import services
from apps.plans.schemas import PlanIn, PlanOut, PlanUpdate, ReapplyOut, limits_from_schema

router = Router(tags=["plans"])
principal_auth = PrincipalAuth()


@router.get(
    "/plans",
    response={200: list[PlanOut]},
    auth=principal_auth,
    operation_id="listPlans",
    summary="List plans",
)
def list_plans(request: AuthenticatedHttpRequest, include_inactive: bool = False) -> list[PlanOut]:
    """
    Active plans by ascending monthly price, ties broken by tier.

    Operators may include deactivated plans.
    """
    include_inactive = include_inactive and request.auth.is_operator
    return [PlanOut.model_validate(plan) for plan in services.list_plans(include_inactive)]


@router.get(
    "/plans/{plan_id}",
    response={200: PlanOut, 404: ErrorResponse},
    auth=principal_auth,
    operation_id="getPlan",
    summary="Get plan",
)
def get_plan(request: AuthenticatedHttpRequest, plan_id: int) -> PlanOut:
    return PlanOut.model_validate(services.get_plan(plan_id))


@router.post(
    "/plans",
    response={201: PlanOut, 403: ErrorResponse},
    auth=principal_auth,
    operation_id="createPlan",
    summary="Create plan",
)
def create_plan(request: AuthenticatedHttpRequest, payload: PlanIn) -> tuple[int, PlanOut]:
    request.auth.require_operator()
    fields = payload.model_dump()
    fields["limits"] = limits_from_schema(payload.limits)
    plan = services.create_plan(actor=request.auth, **fields)
    return 201, PlanOut.model_validate(plan)


@router.put(
    "/plans/{plan_id}",
    response={200: PlanOut, 403: ErrorResponse, 404: ErrorResponse},
    auth=principal_auth,
    operation_id="updatePlan",
    summary="Update plan",
)
def update_plan(request: AuthenticatedHttpRequest, plan_id: int, payload: PlanUpdate) -> PlanOut:
    """
    Edit a plan. Price and limits edits bump the plan version.

    Existing subscriptions keep their limits until renewal or an explicit reapply.
    """
    request.auth.require_operator()
    changes = payload.model_dump(exclude_none=True)
    if payload.limits is not None:
        changes["limits"] = limits_from_schema(payload.limits)
    plan = services.update_plan(plan_id, actor=request.auth, **changes)
    return PlanOut.model_validate(plan)


@router.post(
    "/plans/{plan_id}/deactivate",
    response={200: PlanOut, 403: ErrorResponse, 404: ErrorResponse},
    auth=principal_auth,
    operation_id="deactivatePlan",
    summary="Hide plan from new signups",
)
def deactivate_plan(request: AuthenticatedHttpRequest, plan_id: int) -> PlanOut:
    request.auth.require_operator()
    return PlanOut.model_validate(services.deactivate_plan(plan_id, actor=request.auth))


@router.post(
    "/plans/{plan_id}/reapply",
    response={200: ReapplyOut, 403: ErrorResponse, 404: ErrorResponse, 503: ErrorResponse},
    auth=principal_auth,
    operation_id="reapplyPlanLimits",
    summary="Push current plan limits to its subscribers",
)
def reapply_plan(request: AuthenticatedHttpRequest, plan_id: int) -> ReapplyOut:
    """Re-snapshot the plan's limits into every live subscription on it."""
    request.auth.require_operator()
    plan = services.get_plan(plan_id)
    updated = reapply_plan_limits(plan.pk, actor=request.auth)
    return ReapplyOut(plan_id=plan.pk, plan_version=plan.version, subscriptions_updated=updated)


@router.delete(
    "/plans/{plan_id}",
    response={204: None, 403: ErrorResponse, 404: ErrorResponse, 409: ErrorResponse},
    auth=principal_auth,
    operation_id="deletePlan",
    summary="Delete plan",
)
def delete_plan(request: AuthenticatedHttpRequest, plan_id: int) -> tuple[int, None]:
    """Fails with 409 plan_in_use while live subscriptions reference the plan."""
    request.auth.require_operator()
    services.delete_plan(plan_id, actor=request.auth)
    return 204, None
