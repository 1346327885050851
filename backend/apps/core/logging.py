"""
Structured logging configuration using structlog.

Every log line carries the tenant it concerns so quota and lifecycle decisions
can be traced per organization.

Usage:
    from apps.core.logging import get_logger

    logger = get_logger(__name__)
    logger.info("quota_exceeded", organization_id=org_id, resource_type="students")

Field naming follows Datadog standard attributes:
    - trace_id: Request correlation ID
    - usr.id: Principal identifier forwarded by the identity provider
    - organization.id: Tenant identifier
    - duration: Duration in nanoseconds
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor


def _add_trace_fields(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Rename correlation_id to trace_id and force it to a string."""
    if "correlation_id" in event_dict:
        event_dict["trace_id"] = str(event_dict.pop("correlation_id"))
    return event_dict


def _promote_organization_id(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Copy an explicit organization_id kwarg into the standard attribute.

    Services log organization_id as a plain kwarg; dashboards facet on
    organization.id.
    """
    org_id = event_dict.get("organization_id")
    if org_id is not None and "organization.id" not in event_dict:
        event_dict["organization.id"] = str(org_id)
    return event_dict


def _convert_duration_to_nanoseconds(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    if "duration_ms" in event_dict:
        duration_ms = event_dict.pop("duration_ms")
        event_dict["duration"] = int(duration_ms * 1_000_000)
    return event_dict


def configure_logging(json_format: bool = True, log_level: str = "INFO") -> None:
    """
    Configure structlog on top of stdlib logging.

    Args:
        json_format: JSON output (production) or colored console output (development).
        log_level: Minimum log level to output.
    """
    log_level_int = getattr(logging, log_level.upper(), logging.INFO)

    pre_chain: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        _add_trace_fields,
        _promote_organization_id,
        _convert_duration_to_nanoseconds,
    ]

    if json_format:
        renderer: Processor = structlog.processors.JSONRenderer()
        pre_chain.append(structlog.processors.format_exc_info)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            *pre_chain,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=pre_chain,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level_int)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger, typically with ``__name__``."""
    return structlog.get_logger(name)


def bind_contextvars(**kwargs: Any) -> None:
    """
    Bind key-value pairs to the current request/task context.

    Use dict unpacking for dotted keys:
        bind_contextvars(**{"organization.id": str(org.id)})
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_contextvars() -> None:
    """Clear all bound context variables (end of request or job)."""
    structlog.contextvars.clear_contextvars()
