"""
Billing API endpoints.

Subscription reads and admin actions, payments and platform billing settings.
Mutations require ``If-Match: <version>``: a missing header is 428, a stale
one 412.
"""

from django.http import HttpRequest, HttpResponse
from ninja import Query, Router
from ninja.errors import HttpError

from apps.billing import payments, services
from apps.billing.models import BillingSettings, Subscription
from apps.billing.schemas import (
    BillingSettingsIn,
    BillingSettingsOut,
    CancelRequest,
    ChangePlanOut,
    ChangePlanRequest,
    ExtendRequest,
    PaymentIn,
    PaymentOut,
    PaymentRecordedOut,
    ProrationOut,
    SubscriptionListQuery,
    SubscriptionOut,
    SubscriptionPage,
    SubscriptionStatsOut,
    SuspendRequest,
)
from apps.core.auth import PrincipalAuth
from apps.core.exceptions import PreconditionRequired
from apps.core.logging import get_logger
from apps.core.schemas import ErrorResponse, PageMeta
from apps.core.types import AuthenticatedHttpRequest
from apps.core.utils import parse_version_header
from apps.events.services import record

logger = get_logger(__name__)

router = Router(tags=["subscriptions"])
principal_auth = PrincipalAuth()

MUTATION_RESPONSES = {
    403: ErrorResponse,
    404: ErrorResponse,
    409: ErrorResponse,
    412: ErrorResponse,
    428: ErrorResponse,
}


def _require_version(request: HttpRequest) -> int:
    raw = request.headers.get("If-Match")
    if raw is None:
        raise PreconditionRequired("If-Match header with the subscription version is required")
    version = parse_version_header(raw)
    if version is None:
        raise PreconditionRequired(f"If-Match header is not a version number: {raw!r}")
    return version


def _subscription_out(subscription: Subscription, response: HttpResponse | None = None) -> SubscriptionOut:
    if response is not None:
        response["ETag"] = f'"{subscription.version}"'
    return SubscriptionOut.model_validate(subscription)


@router.get(
    "/subscriptions",
    response={200: SubscriptionPage, 403: ErrorResponse},
    auth=principal_auth,
    operation_id="listSubscriptions",
    summary="List subscriptions",
)
def list_subscriptions(
    request: AuthenticatedHttpRequest, query: Query[SubscriptionListQuery]
) -> SubscriptionPage:
    """
    Page through subscriptions, current ones only by default.

    Operators see every organization; other principals only their own.
    """
    principal = request.auth
    organization_id = query.organization_id
    if not principal.is_operator:
        if principal.organization_id is None:
            raise HttpError(403, "Access to subscriptions is not permitted")
        if organization_id is not None:
            principal.require_member_of(organization_id)
        organization_id = principal.organization_id

    result = services.list_subscriptions(
        status=query.status,
        search=query.search,
        expiring_within_days=query.expiring_within_days,
        organization_id=organization_id,
        include_history=query.include_history,
        page=query.page,
        limit=query.limit,
    )
    return SubscriptionPage(
        items=[SubscriptionOut.model_validate(item) for item in result.items],
        meta=PageMeta(page=result.page, limit=result.limit, total=result.total),
    )


@router.get(
    "/subscriptions/stats",
    response={200: SubscriptionStatsOut, 403: ErrorResponse},
    auth=principal_auth,
    operation_id="getSubscriptionStats",
    summary="Subscription counts and revenue",
)
def get_subscription_stats(request: AuthenticatedHttpRequest) -> SubscriptionStatsOut:
    """Operator only."""
    request.auth.require_operator()
    return SubscriptionStatsOut(**services.subscription_stats())


@router.get(
    "/subscriptions/{subscription_id}",
    response={200: SubscriptionOut, 403: ErrorResponse, 404: ErrorResponse},
    auth=principal_auth,
    operation_id="getSubscription",
    summary="Get subscription state",
)
def get_subscription(
    request: AuthenticatedHttpRequest, subscription_id: int, response: HttpResponse
) -> SubscriptionOut:
    """Full state including status, end date and limits. The ETag carries the version."""
    subscription = services.get_subscription(subscription_id)
    request.auth.require_member_of(subscription.organization_id)
    return _subscription_out(subscription, response)


@router.put(
    "/subscriptions/{subscription_id}/extend",
    response={200: SubscriptionOut, **MUTATION_RESPONSES},
    auth=principal_auth,
    operation_id="extendSubscription",
    summary="Extend subscription end date",
)
def extend_subscription(
    request: AuthenticatedHttpRequest,
    subscription_id: int,
    payload: ExtendRequest,
    response: HttpResponse,
) -> SubscriptionOut:
    """Operator only. Sets end_date to max(end_date, now) + days."""
    request.auth.require_operator()
    version = _require_version(request)
    subscription = services.extend(
        subscription_id, payload.days, expected_version=version, actor=request.auth
    )
    return _subscription_out(subscription, response)


@router.put(
    "/subscriptions/{subscription_id}/cancel",
    response={200: SubscriptionOut, **MUTATION_RESPONSES},
    auth=principal_auth,
    operation_id="cancelSubscription",
    summary="Cancel subscription",
)
def cancel_subscription(
    request: AuthenticatedHttpRequest,
    subscription_id: int,
    payload: CancelRequest,
    response: HttpResponse,
) -> SubscriptionOut:
    """Operator or organization owner/admin. Service runs to end_date unless immediate."""
    request.auth.require_admin_of(services.get_subscription(subscription_id).organization_id)
    version = _require_version(request)
    subscription = services.cancel(
        subscription_id,
        payload.reason,
        expected_version=version,
        immediate=payload.immediate,
        actor=request.auth,
    )
    return _subscription_out(subscription, response)


@router.put(
    "/subscriptions/{subscription_id}/change-plan",
    response={200: ChangePlanOut, **MUTATION_RESPONSES},
    auth=principal_auth,
    operation_id="changeSubscriptionPlan",
    summary="Change subscription plan",
)
def change_subscription_plan(
    request: AuthenticatedHttpRequest,
    subscription_id: int,
    payload: ChangePlanRequest,
    response: HttpResponse,
) -> ChangePlanOut:
    """
    Operator or organization owner/admin.

    Supersedes the subscription; the response carries the new current one,
    whose version is the token for further changes.
    """
    request.auth.require_admin_of(services.get_subscription(subscription_id).organization_id)
    version = _require_version(request)
    result = services.change_plan(
        subscription_id, payload.plan_id, expected_version=version, actor=request.auth
    )
    return ChangePlanOut(
        previous_id=result.previous.pk,
        subscription=_subscription_out(result.subscription, response),
        proration=ProrationOut(**result.proration.as_dict()),
    )


@router.put(
    "/subscriptions/{subscription_id}/reactivate",
    response={200: SubscriptionOut, **MUTATION_RESPONSES},
    auth=principal_auth,
    operation_id="reactivateSubscription",
    summary="Reactivate subscription",
)
def reactivate_subscription(
    request: AuthenticatedHttpRequest,
    subscription_id: int,
    response: HttpResponse,
    plan_id: int | None = None,
) -> SubscriptionOut:
    """
    Operator only. A no-op on an active subscription.

    ``plan_id`` (query) selects a different plan, required when the old one was deleted.
    """
    request.auth.require_operator()
    version = _require_version(request)
    subscription = services.reactivate(
        subscription_id,
        expected_version=version,
        plan_id=plan_id,
        actor=request.auth,
    )
    return _subscription_out(subscription, response)


@router.put(
    "/subscriptions/{subscription_id}/suspend",
    response={200: SubscriptionOut, **MUTATION_RESPONSES},
    auth=principal_auth,
    operation_id="suspendSubscription",
    summary="Suspend a past-due subscription",
)
def suspend_subscription(
    request: AuthenticatedHttpRequest,
    subscription_id: int,
    payload: SuspendRequest,
    response: HttpResponse,
) -> SubscriptionOut:
    """Operator only. Manual suspension when automatic suspension is disabled."""
    request.auth.require_operator()
    version = _require_version(request)
    subscription = services.suspend(
        subscription_id, payload.reason, expected_version=version, actor=request.auth
    )
    return _subscription_out(subscription, response)


@router.get(
    "/subscriptions/{subscription_id}/payments",
    response={200: list[PaymentOut], 403: ErrorResponse, 404: ErrorResponse},
    auth=principal_auth,
    operation_id="listSubscriptionPayments",
    summary="List payments of a subscription",
)
def list_subscription_payments(request: AuthenticatedHttpRequest, subscription_id: int) -> list[PaymentOut]:
    subscription = services.get_subscription(subscription_id)
    request.auth.require_member_of(subscription.organization_id)
    return [PaymentOut.model_validate(payment) for payment in payments.list_payments(subscription_id)]


@router.post(
    "/subscriptions/{subscription_id}/payments",
    response={201: PaymentRecordedOut, 403: ErrorResponse, 404: ErrorResponse, 409: ErrorResponse},
    auth=principal_auth,
    operation_id="recordSubscriptionPayment",
    summary="Record an offline payment",
)
def record_subscription_payment(
    request: AuthenticatedHttpRequest, subscription_id: int, payload: PaymentIn
) -> tuple[int, PaymentRecordedOut]:
    """
    Operator only.

    Applied exactly like a gateway event: a completed payment renews the
    period, a failed one moves an active subscription to past_due.
    """
    request.auth.require_operator()
    outcome = payments.handle_payment_event(
        subscription_id,
        payload.status,
        payload.amount,
        reference=payload.reference,
        method=payload.method,
        notes=payload.notes,
        actor=request.auth,
    )
    return 201, PaymentRecordedOut(
        payment=PaymentOut.model_validate(outcome.payment),
        subscription=SubscriptionOut.model_validate(outcome.subscription),
    )


@router.get(
    "/platform/settings",
    response={200: BillingSettingsOut, 403: ErrorResponse},
    auth=principal_auth,
    tags=["platform"],
    operation_id="getPlatformSettings",
    summary="Get platform billing settings",
)
def get_platform_settings(request: AuthenticatedHttpRequest) -> BillingSettingsOut:
    request.auth.require_operator()
    return BillingSettingsOut.model_validate(BillingSettings.load())


@router.put(
    "/platform/settings",
    response={200: BillingSettingsOut, 403: ErrorResponse},
    auth=principal_auth,
    tags=["platform"],
    operation_id="updatePlatformSettings",
    summary="Update platform billing settings",
)
def update_platform_settings(
    request: AuthenticatedHttpRequest, payload: BillingSettingsIn
) -> BillingSettingsOut:
    """Operator only. Grace period and auto-suspend changes apply from the next sweep."""
    request.auth.require_operator()
    billing_settings = BillingSettings.load()
    before = BillingSettingsOut.model_validate(billing_settings).model_dump(exclude={"updated_at"})

    changes = payload.model_dump(exclude_none=True)
    for name, value in changes.items():
        setattr(billing_settings, name, value)
    billing_settings.save()

    after = BillingSettingsOut.model_validate(billing_settings).model_dump(exclude={"updated_at"})
    record(
        None,
        request.auth.actor_id,
        "platform.settings_update",
        before,
        after,
        aggregate=billing_settings,
        actor_email=request.auth.email,
    )
    logger.info("platform_settings_updated", changes=list(changes))
    return BillingSettingsOut.model_validate(billing_settings)
