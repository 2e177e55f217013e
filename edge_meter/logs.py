"""
Logging setup.

Modules log through ``structlog.get_logger()``; this configures where the
events go and how they are rendered.
"""

import logging
import sys

import structlog

LOG_FORMATS = ("json", "console")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Configure structlog to write to stderr.

    Args:
        level: Minimum level name
        fmt: "json" for one JSON object per line, "console" for humans

    Raises:
        ValueError: If level or fmt is not recognized
    """
    level = level.upper()
    if level not in LOG_LEVELS:
        raise ValueError(f"Unknown log level: {level}")
    if fmt not in LOG_FORMATS:
        raise ValueError(f"Unknown log format: {fmt}")

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if fmt == "json":
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level)),
        logger_factory=_stderr_logger,
        cache_logger_on_first_use=False,
    )


def _stderr_logger(*args) -> structlog.PrintLogger:
    # Looked up per call so a replaced sys.stderr is used.
    return structlog.PrintLogger(sys.stderr)
