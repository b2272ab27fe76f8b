"""Logging Configuration.

Log levels, output formats, and the service identity stamped on entries.
"""

from dataclasses import dataclass
from enum import Enum


class LogLevel(str, Enum):
    """Log level options."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(str, Enum):
    """Log output format."""
    JSON = "json"
    CONSOLE = "console"


@dataclass
class LoggingConfig:
    """Structured logging configuration."""

    level: LogLevel = LogLevel.INFO
    format: LogFormat = LogFormat.JSON
    service_name: str = "voice-agent-v2"
    environment: str = "development"
    quiet_loggers: tuple = ("httpx", "httpcore", "asyncio", "sqlalchemy.engine")

    @classmethod
    def from_settings(cls, settings) -> "LoggingConfig":
        """Build from ``Settings``; unknown level or format names fall back to the defaults."""
        level = settings.log_level.upper()
        fmt = settings.log_format.lower()
        return cls(
            level=LogLevel(level) if level in LogLevel.__members__ else LogLevel.INFO,
            format=LogFormat(fmt) if fmt in {f.value for f in LogFormat} else LogFormat.JSON,
            service_name=settings.service_name,
            environment=settings.environment,
        )


DEFAULT_LOGGING_CONFIG = LoggingConfig()
