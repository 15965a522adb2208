"""
Structured logging configuration using structlog wrapping stdlib.

Console output by default, JSON lines when CHATMEM_LOG_FORMAT=json.
Memory pipeline modules log through get_logger() so turn context
(conversation_id, user_id) travels as structured key/value pairs.

Usage:
    from chatmem.logging_config import setup_logging, get_logger
    setup_logging()
    logger = get_logger(__name__)
    logger.info("turn_processed", conversation_id="c1", written=2)
"""

from __future__ import annotations

import logging
import os
import sys

import structlog


def setup_logging(level: str | None = None, json_output: bool | None = None) -> None:
    if level is None:
        level = os.environ.get("CHATMEM_LOG_LEVEL", "INFO")

    if json_output is None:
        json_output = os.environ.get("CHATMEM_LOG_FORMAT", "").lower() == "json"

    numeric_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer(ensure_ascii=False)
    else:
        renderer = structlog.dev.ConsoleRenderer()

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
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(numeric_level)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def turn_context(conversation_id: str | None = None, user_id: str | None = None):
    """Bind turn identifiers to every log line emitted inside the block."""
    ids = {"conversation_id": conversation_id, "user_id": user_id}
    return structlog.contextvars.bound_contextvars(**{k: v for k, v in ids.items() if v is not None})


__all__ = ["get_logger", "setup_logging", "turn_context"]
