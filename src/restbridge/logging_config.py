"""
structlog setup for the CLI.

Logs go to stderr; stdout carries only command output so it can be piped.
Console rendering by default, JSON lines with `json_format=True`.

Usage:
    configure_logging(level="DEBUG")
    logger = structlog.get_logger(__name__)
    logger.info("Retrying after transient error", attempt=1, delay_seconds=0.5)
"""

import logging
import sys

import structlog


def configure_logging(level: str = "WARNING", json_format: bool = False) -> None:
    """
    Configure structlog to route through stdlib logging on stderr.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR)
        json_format: Render JSON lines instead of the console format
    """
    numeric_level = getattr(logging, level.upper(), logging.WARNING)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=numeric_level,
        force=True,
    )

    shared_processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(
                colors=sys.stderr.isatty(),
                exception_formatter=structlog.dev.plain_traceback,
            ),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def level_for_verbosity(verbose: int, quiet: bool = False) -> str:
    """Map -v/-q flags to a log level name."""
    if quiet:
        return "ERROR"
    if verbose >= 2:
        return "DEBUG"
    if verbose == 1:
        return "INFO"
    return "WARNING"
