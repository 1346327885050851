"""
Audit context for non-request code paths.

Binds request-like context for management commands (billing sweep, event
delivery) so audit events they record carry a correlation ID.
"""

from collections.abc import Generator
from contextlib import contextmanager
from uuid import UUID, uuid4

import structlog

from apps.events.services import set_correlation_id


@contextmanager
def audit_context(correlation_id: str | None = None, **extra: str) -> Generator[UUID, None, None]:
    """
    Bind a correlation ID (generated if not given) for the duration of the block.

    Usage:
        with audit_context() as correlation_id:
            sweep_subscriptions()

    Extra keyword arguments are bound to structlog contextvars as well.
    """
    generated = UUID(correlation_id) if correlation_id else uuid4()
    ctx = {"correlation_id": str(generated), **extra}

    set_correlation_id(generated)
    structlog.contextvars.bind_contextvars(**ctx)
    try:
        yield generated
    finally:
        set_correlation_id(None)
        structlog.contextvars.unbind_contextvars(*ctx.keys())
