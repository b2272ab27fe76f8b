"""Structured logging for the control plane.

Provides JSON or console output and a context manager for binding
cycle-scoped fields (correlation id, stage) to every log entry.
"""

from voiceguard.logging_config.config import LogFormat, LoggingConfig, LogLevel
from voiceguard.logging_config.context import LogContext, generate_correlation_id
from voiceguard.logging_config.setup import ConsoleFormatter, StructuredFormatter, configure_logging

__all__ = [
    "LogFormat",
    "LogLevel",
    "LoggingConfig",
    "LogContext",
    "configure_logging",
    "generate_correlation_id",
    "ConsoleFormatter",
    "StructuredFormatter",
]
