"""
Lifecycle error taxonomy.

Every failure the subscription and quota engine can report to a caller is one
of these types. They carry an HTTP status and a machine-readable code so the
API layer can translate them without losing the distinguishing kind.
"""

from typing import Any


class LifecycleError(Exception):
    """Base class for typed, caller-visible failures."""

    code = "lifecycle_error"
    status_code = 400

    def __init__(self, detail: str, **extra: Any) -> None:
        super().__init__(detail)
        self.detail = detail
        self.extra = extra

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.detail, "code": self.code, **self.extra}


class NotFound(LifecycleError):
    """Unknown id."""

    code = "not_found"
    status_code = 404

    def __init__(self, kind: str, object_id: Any) -> None:
        super().__init__(f"{kind} {object_id} not found", kind=kind, id=str(object_id))


class InvalidTransition(LifecycleError):
    """Requested status change is not an edge of the subscription graph."""

    code = "invalid_transition"
    status_code = 409

    def __init__(self, from_status: str, to_status: str, detail: str | None = None) -> None:
        super().__init__(
            detail or f"Cannot transition from '{from_status}' to '{to_status}'",
            from_status=from_status,
            to_status=to_status,
        )
        self.from_status = from_status
        self.to_status = to_status


class QuotaExceeded(LifecycleError):
    """Resource creation would exceed the plan limit."""

    code = "quota_exceeded"
    status_code = 409

    def __init__(self, resource_type: str, limit: int, current: int) -> None:
        super().__init__(
            f"Quota exceeded for {resource_type}: {current}/{limit}",
            resource_type=resource_type,
            limit=limit,
            current=current,
        )
        self.resource_type = resource_type
        self.limit = limit
        self.current = current


class ConcurrentModification(LifecycleError):
    """The caller's version token no longer matches the stored row."""

    code = "concurrent_modification"
    status_code = 412

    def __init__(self, expected_version: int, current_version: int | None) -> None:
        super().__init__(
            "Subscription was modified concurrently; re-read and retry",
            expected_version=expected_version,
            current_version=current_version,
        )
        self.expected_version = expected_version
        self.current_version = current_version


class PreconditionRequired(LifecycleError):
    """A mutating request arrived without a version token."""

    code = "precondition_required"
    status_code = 428


class PlanInUse(LifecycleError):
    """Catalog mutation blocked by subscribers still on the plan."""

    code = "plan_in_use"
    status_code = 409

    def __init__(self, plan_id: Any, subscriber_count: int) -> None:
        super().__init__(
            f"Plan {plan_id} has {subscriber_count} active subscriber(s)",
            plan_id=str(plan_id),
            subscriber_count=subscriber_count,
        )


class PlanUnavailable(LifecycleError):
    """The plan exists but is deactivated and closed to new subscriptions."""

    code = "plan_unavailable"
    status_code = 409

    def __init__(self, plan_id: Any) -> None:
        super().__init__(f"Plan {plan_id} is not available for new subscriptions", plan_id=str(plan_id))


class Busy(LifecycleError):
    """Optimistic retries were exhausted under contention."""

    code = "busy"
    status_code = 503

    def __init__(self, detail: str = "Too much contention, retry later", attempts: int = 0) -> None:
        super().__init__(detail, attempts=attempts)


class InvalidArgument(LifecycleError):
    """A request value is outside the range the operation accepts."""

    code = "invalid_argument"
    status_code = 422

    def __init__(self, field: str, detail: str) -> None:
        super().__init__(detail, field=field)
        self.field = field
