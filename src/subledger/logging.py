"""
Structured logging for the ledger.

structlog renders through the stdlib ``logging`` module so Celery workers and
the CLI share one output stream. Lifecycle transitions additionally emit audit
records on the ``subledger.audit`` logger.
"""

import logging
from typing import Any

import structlog

from subledger.settings import settings

AUDIT_LOGGER_NAME = "subledger.audit"


def _build_processors() -> list[Any]:
    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    # Scanner passes and worker threads are told apart by thread name
    if settings.observability.enable_correlation_ids:
        processors.insert(
            0,
            structlog.processors.CallsiteParameterAdder(
                parameters=[structlog.processors.CallsiteParameter.THREAD_NAME]
            ),
        )

    if settings.observability.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())
    return processors


def setup_logging() -> None:
    """Configure stdlib logging and structlog from ``settings.observability``."""
    logging.basicConfig(format="%(message)s", level=settings.observability.log_level.value)

    structlog.configure(
        processors=_build_processors(),
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def log_audit_event(
    action: str,
    category: str,
    user_id: str | None = None,
    tenant_id: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    **details: Any,
) -> None:
    """
    Emit one audit record.

    ``action`` becomes the event name (``subscription.canceled``); the
    remaining arguments are prefixed with ``audit_`` so they can be filtered
    apart from ordinary log fields. Extra ``details`` are passed through.
    """
    structlog.get_logger(AUDIT_LOGGER_NAME).info(
        action,
        audit_category=category,
        audit_user_id=user_id,
        audit_tenant_id=tenant_id,
        audit_resource_type=resource_type,
        audit_resource_id=resource_id,
        **details,
    )


setup_logging()
