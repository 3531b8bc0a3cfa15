"""structlog setup shared by the API process and the scheduler thread."""

import logging

import structlog

from . import config


def configure_logging() -> None:
    logging.basicConfig(format="%(message)s", level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO))
    renderer = structlog.processors.JSONRenderer() if config.IS_PRODUCTION else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.add_log_level,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
