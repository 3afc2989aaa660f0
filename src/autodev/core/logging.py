"""
Structured logging configuration for autodev.

Every module logs through structlog with snake_case event names and
key-value context.  Work on a single ticket is logged through a bound
logger so every line of that ticket's lifecycle carries its key, even
when several sessions run side by side::

    log = logger.bind(key="HIVE-42")
    log.info("agent_finished", exit_code=0)
    # → {"event": "agent_finished", "key": "HIVE-42", "exit_code": 0,
    #    "timestamp": "2026-...", "level": "info"}

Output goes to stderr; stdout belongs to command output and, for
``autodev mcp``, to the MCP stdio transport.
"""

from __future__ import annotations

import logging
import sys

import structlog


def configure_logging(
    *,
    level: str = "INFO",
    json_output: bool = False,
) -> None:
    """
    Configure structlog + stdlib logging for the process.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR).
        json_output: Emit JSON lines instead of coloured console output.

    Safe to call more than once; the stderr handler is added once and
    its formatter replaced on later calls.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=shared_processors,
    )

    root = logging.getLogger()
    handler = next(
        (
            h
            for h in root.handlers
            if isinstance(h, logging.StreamHandler)
            and isinstance(h.formatter, structlog.stdlib.ProcessorFormatter)
        ),
        None,
    )
    if handler is None:
        handler = logging.StreamHandler(sys.stderr)
        root.addHandler(handler)
    # a second call may switch between console and JSON output
    handler.setFormatter(formatter)

    root.setLevel(log_level)

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("mcp").setLevel(logging.WARNING)
