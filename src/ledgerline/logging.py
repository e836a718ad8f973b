"""
Structured logging for ledgerline.

structlog is configured once, from ``Settings.observability``. Billing code
logs through ``structlog.get_logger(__name__)`` and binds per-operation
context (the sweep instant, the webhook event being processed) with
:func:`billing_context`, so every line emitted inside a sweep carries it.
"""

import logging
from collections.abc import Iterator, MutableMapping
from contextlib import contextmanager
from typing import Any

import structlog

from ledgerline.settings import get_settings

# Keys whose values never reach a log sink.
REDACTED_KEYS = frozenset({"signature", "webhook_secret", "mock_webhook_secret", "password", "card_number"})


def redact_secrets(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    for key in REDACTED_KEYS.intersection(event_dict):
        event_dict[key] = "***"
    return event_dict


def setup_logging() -> None:
    """Configure stdlib logging and structlog from settings."""
    observability = get_settings().observability

    logging.basicConfig(format="%(message)s", level=observability.log_level.value)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if observability.enable_correlation_ids:
        processors.insert(
            1,
            structlog.processors.CallsiteParameterAdder(
                parameters=[structlog.processors.CallsiteParameter.THREAD_NAME]
            ),
        )

    if observability.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


@contextmanager
def billing_context(**values: Any) -> Iterator[None]:
    """Bind ``values`` to every log line emitted in this task until exit."""
    with structlog.contextvars.bound_contextvars(**values):
        yield


def log_audit_event(
    action: str,
    resource_type: str,
    resource_id: str | None = None,
    livemode: bool | None = None,
    **kwargs: Any,
) -> None:
    """
    Record a state change made on a customer's behalf.

    Audit lines go to the ``audit`` logger with ``audit_*`` fields so they
    can be routed separately from operational logs.
    """
    structlog.get_logger("audit").info(
        action,
        audit_resource_type=resource_type,
        audit_resource_id=resource_id,
        audit_livemode=livemode,
        **kwargs,
    )


setup_logging()
