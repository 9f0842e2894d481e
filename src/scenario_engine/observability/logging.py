"""Structured logging configuration for scenario-engine.

Configures structlog for console or JSON logging, correlated by the
scenario and action currently executing.

Usage::

    from scenario_engine.observability.logging import configure_logging, get_logger

    configure_logging()  # Call once at startup
    logger = get_logger(__name__)
    with scenario_context('login'):
        logger.info('action_started', action='getToken')
"""

from __future__ import annotations

import logging
import os
import sys
from contextlib import contextmanager
from typing import Iterator, TextIO

import structlog

_NOISY_LOGGERS = ('httpx', 'httpcore', 'websockets', 'aiomqtt')

_configured = False


def _pre_chain() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt='iso', utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def configure_logging(
    *,
    level: str | None = None,
    json_output: bool | None = None,
    stream: TextIO | None = None,
) -> None:
    """Route structlog and stdlib records through one handler.

    Args:
        level: Log level name. Falls back to ``LOG_LEVEL``, then INFO.
        json_output: JSON lines instead of console rendering. Falls back
            to ``LOG_FORMAT == "json"``.
        stream: Destination, stderr by default; stdout carries the
            scenario report.

    Only the first call has any effect.
    """
    global _configured
    if _configured:
        return
    _configured = True

    level_name = (level or os.environ.get('LOG_LEVEL') or 'INFO').upper()
    if json_output is None:
        json_output = os.environ.get('LOG_FORMAT', '').lower() == 'json'
    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[*_pre_chain(), structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_pre_chain(),
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    ))

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, level_name, logging.INFO))
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def scenario_context(scenario: str) -> Iterator[None]:
    """Bind the scenario name into every log entry emitted inside the block.

    Each asyncio task gets its own copy of the context, so concurrently
    running scenarios do not see each other's bindings.
    """
    with structlog.contextvars.bound_contextvars(scenario=scenario):
        yield


@contextmanager
def action_context(action: str) -> Iterator[None]:
    """Bind the action name in addition to the current scenario."""
    with structlog.contextvars.bound_contextvars(action=action):
        yield
