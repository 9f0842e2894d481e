"""Logging for scenario-engine."""

from .logging import action_context, configure_logging, get_logger, scenario_context

__all__ = [
    'action_context',
    'configure_logging',
    'get_logger',
    'scenario_context',
]
