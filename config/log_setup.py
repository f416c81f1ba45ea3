"""structlog setup for the MCP server process (all output to stderr)"""
import logging
import sys

import structlog

from config.settings import LOG_JSON, LOG_LEVEL


def configure_logging(level: str = LOG_LEVEL, json_logs: bool = LOG_JSON) -> None:
    """
    Configure structlog for the MCP server process.

    Everything goes to stderr: stdout carries the MCP stdio protocol and must
    never receive log lines.
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
