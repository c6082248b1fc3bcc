"""structlog setup shared by the API, the simulation and the tests.

Development renders to the console; staging/production emit one JSON
object per line. stdlib loggers (uvicorn, SQLAlchemy, httpx) are routed
through the same processor chain so every line carries the request
context bound by the API middleware.

    from escrow_marketplace.logging_config import get_logger
    logger = get_logger(__name__)
    logger.info("escrow.transition", escrow_id="ESC1718...", to_status="funded")
"""

from __future__ import annotations

import logging
import sys

import structlog

QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "aiosqlite", "httpx", "httpcore")

# Never rendered, whatever logger emits them.
REDACTED_KEYS = frozenset(
    {"authorization", "secret_key", "paystack_secret_key", "access_code", "account_number"}
)


def redact_secrets(
    _logger: object, _method: str, event_dict: structlog.types.EventDict
) -> structlog.types.EventDict:
    for key in REDACTED_KEYS.intersection(event_dict):
        event_dict[key] = "***"
    return event_dict


def _pre_chain() -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        redact_secrets,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def _renderer(json_logs: bool) -> structlog.types.Processor:
    if json_logs:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def setup_logging(log_level: str = "INFO", json_logs: bool = False) -> None:
    """Configure structlog and the root stdlib logger.

    Args:
        log_level: DEBUG, INFO, WARNING, ... (unknown names fall back to INFO).
        json_logs: JSON lines instead of the console renderer.
    """
    pre_chain = _pre_chain()
    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(json_logs),
            ],
        )
    )
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(logging.getLevelNamesMapping().get(log_level.upper(), logging.INFO))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_request_context(**values: object) -> None:
    """Bind values (request_id, actor_id) into every log line of this task."""
    structlog.contextvars.bind_contextvars(**values)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
