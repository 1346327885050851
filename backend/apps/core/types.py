"""
Custom type definitions for the application.

These types help mypy understand attributes added by auth and middleware.
"""

from typing import TYPE_CHECKING
from uuid import UUID

from django.http import HttpRequest

if TYPE_CHECKING:
    from apps.core.auth import Principal


class AuthenticatedHttpRequest(HttpRequest):
    """
    HttpRequest after PrincipalAuth and CorrelationIdMiddleware ran.

    Use this type for endpoints declared with ``auth=PrincipalAuth()``.
    """

    auth: "Principal"
    correlation_id: UUID
