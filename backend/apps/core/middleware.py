"""
Core middleware.
"""

from collections.abc import Callable
from uuid import UUID, uuid4

from django.http import HttpRequest, HttpResponse

from apps.core.auth import principal_from_headers
from apps.core.logging import bind_contextvars, clear_contextvars
from apps.core.utils import get_client_ip
from apps.events.services import set_correlation_id

CORRELATION_ID_HEADER = "X-Correlation-ID"


class CorrelationIdMiddleware:
    """
    Assigns a correlation ID to every request and binds logging context.

    Reuses a valid X-Correlation-ID header, otherwise generates a UUID4.
    Binds trace_id, principal and tenant fields into structlog contextvars
    for the duration of the request and echoes the ID in the response.
    """

    def __init__(self, get_response: Callable[[HttpRequest], HttpResponse]) -> None:
        self.get_response = get_response

    def __call__(self, request: HttpRequest) -> HttpResponse:
        correlation_id = _parse_correlation_id(request.headers.get(CORRELATION_ID_HEADER))
        request.correlation_id = correlation_id  # type: ignore[attr-defined]
        set_correlation_id(correlation_id)

        context: dict[str, str | None] = {
            "correlation_id": str(correlation_id),
            "request.ip_address": get_client_ip(request),
            "request.user_agent": request.headers.get("User-Agent", ""),
        }
        principal = principal_from_headers(request)
        if principal is not None:
            context["usr.id"] = principal.user_id
            if principal.organization_id is not None:
                context["organization.id"] = str(principal.organization_id)
        bind_contextvars(**context)

        try:
            response = self.get_response(request)
        finally:
            set_correlation_id(None)
            clear_contextvars()

        response[CORRELATION_ID_HEADER] = str(correlation_id)
        return response


def _parse_correlation_id(raw: str | None) -> UUID:
    if raw:
        try:
            return UUID(raw)
        except ValueError:
            pass
    return uuid4()
