"""
Core utility functions.
"""

from datetime import datetime
from typing import cast

from django.http import HttpRequest
from django.utils import timezone


def get_client_ip(request: HttpRequest) -> str | None:
    """
    Extract client IP from X-Forwarded-For or REMOTE_ADDR.

    X-Forwarded-For may hold a proxy chain; the first entry is the client.
    """
    forwarded_for: str | None = request.META.get("HTTP_X_FORWARDED_FOR")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return cast(str | None, request.META.get("REMOTE_ADDR"))


def resolve_now(now: datetime | None = None) -> datetime:
    """Return ``now`` if given (schedulers and tests pin the clock), else the current UTC time."""
    return now if now is not None else timezone.now()


def parse_version_header(raw: str | None) -> int | None:
    """
    Parse an If-Match header value into a version integer.

    Accepts ``3``, ``"3"`` and weak ``W/"3"`` forms. Returns None when the
    header is absent or not an integer.
    """
    if not raw:
        return None
    value = raw.strip()
    if value.startswith("W/"):
        value = value[2:]
    value = value.strip('"')
    try:
        return int(value)
    except ValueError:
        return None
