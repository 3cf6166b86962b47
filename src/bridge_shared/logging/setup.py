"""structlog configuration shared by the bridge services.

Call, campaign and conference identifiers are carried in contextvars so
every entry logged while handling one provider event is tagged with the
ids it concerns, including entries from helpers that never see them.
"""

from __future__ import annotations

import logging
import sys
from typing import Any, ContextManager

import structlog

# Chatty at INFO: one entry per HTTP request or websocket frame
NOISY_LOGGERS = ("httpx", "httpcore", "websockets", "uvicorn.access")


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    instance_id: str | None = None,
    service: str = "campaign-bridge",
) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        level: Log level name
        json_output: Emit one JSON object per line instead of console output
        instance_id: Process identifier, useful when several replicas share a store
        service: Value of the ``service`` field on every entry
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        raise ValueError(f"Unknown log level: {level}")

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level, force=True)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    static_fields: dict[str, Any] = {"service": service}
    if instance_id:
        static_fields["instance_id"] = instance_id

    def add_static_fields(
        logger: Any, method_name: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        for key, value in static_fields.items():
            event_dict.setdefault(key, value)
        return event_dict

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        add_static_fields,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
    ]
    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def call_context(
    call_id: str | None = None,
    campaign_id: str | None = None,
    conference_id: str | None = None,
) -> ContextManager[Any]:
    """Bind the given ids to every log entry inside the ``with`` block.

    Ids that are None are left out rather than logged as null.
    """
    ids = {"call_id": call_id, "campaign_id": campaign_id, "conference_id": conference_id}
    return structlog.contextvars.bound_contextvars(
        **{key: value for key, value in ids.items() if value}
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
