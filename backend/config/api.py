"""
Django Ninja API configuration.
"""

from django.http import HttpRequest, HttpResponse
from ninja import NinjaAPI

from apps.billing.api import router as billing_router
from apps.core.exceptions import LifecycleError
from apps.core.logging import get_logger
from apps.events.api import router as audit_router
from apps.organizations.api import router as organizations_router
from apps.plans.api import router as plans_router
from apps.usage.api import router as usage_router

logger = get_logger(__name__)

api = NinjaAPI(
    title="quotaflow API",
    version="1.0.0",
    description="Subscription lifecycle and usage-quota enforcement for multi-tenant SaaS.",
    openapi_extra={
        "info": {
            "contact": {"name": "API Support"},
        },
        "tags": [
            {"name": "plans", "description": "Plan catalog"},
            {"name": "organizations", "description": "Tenant lifecycle"},
            {"name": "subscriptions", "description": "Subscription state machine and payments"},
            {"name": "usage", "description": "Usage ledger and quota checks"},
            {"name": "audit", "description": "Audit trail"},
            {"name": "platform", "description": "Platform billing settings"},
            {"name": "health", "description": "Service health and readiness checks"},
        ],
        "components": {
            "securitySchemes": {
                "principalHeaders": {
                    "type": "apiKey",
                    "in": "header",
                    "name": "X-Principal-Id",
                    "description": "Principal forwarded by the identity gateway, together with "
                    "X-Principal-Email, X-Principal-Organization and X-Principal-Role",
                }
            }
        },
    },
)

# Register routers
api.add_router("/", plans_router)
api.add_router("/", organizations_router)
api.add_router("/", billing_router)
api.add_router("/", usage_router)
api.add_router("/", audit_router)


@api.exception_handler(LifecycleError)
def lifecycle_error_handler(request: HttpRequest, exc: LifecycleError) -> HttpResponse:
    """Translate typed lifecycle errors into ``{detail, code, ...}`` with their status."""
    logger.info("lifecycle_error_response", code=exc.code, status=exc.status_code, path=request.path)
    return api.create_response(request, exc.to_dict(), status=exc.status_code)


@api.get("/health", tags=["health"], operation_id="healthCheck", summary="Health check")
def health_check(request: HttpRequest) -> dict:
    """Health check endpoint for load balancer."""
    return {"status": "ok"}
