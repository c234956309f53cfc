import logging
import sys
from typing import Any

import structlog

from .settings import Settings, settings


def setup_logging(config: Settings | None = None) -> None:
    """Configure structured logging with structlog."""
    config = config or settings
    level = getattr(logging, config.log_level)

    # Configure standard library logging (SQLAlchemy, httpx, uvicorn)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            (
                structlog.processors.CallsiteParameterAdder(
                    parameters=[structlog.processors.CallsiteParameter.FUNC_NAME]
                )
                if config.debug
                else structlog.processors.CallsiteParameterAdder(parameters=[])
            ),
            # Console renderer formats exc_info itself; JSON needs it flattened
            (
                structlog.dev.ConsoleRenderer()
                if config.debug
                else structlog.processors.format_exc_info
            ),
            *([] if config.debug else [structlog.processors.JSONRenderer()]),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.WriteLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def add_request_context(request_id: str, **context: Any) -> None:
    """Add request-specific context to all log messages."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, **context)
