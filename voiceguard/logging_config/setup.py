"""Logging Setup.

Installs one root handler for the control plane: JSON lines in deployed
environments, a colored single-line format when run locally. Both
formatters append the bound ``LogContext`` fields and the record's
``extra_data`` payload.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

from voiceguard.logging_config.config import DEFAULT_LOGGING_CONFIG, LogFormat, LoggingConfig
from voiceguard.logging_config.context import get_context_dict


def _timestamp(record: logging.LogRecord) -> datetime:
    return datetime.fromtimestamp(record.created, timezone.utc)


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, stamped with the service identity."""

    def __init__(self, service_name: str = "voice-agent-v2", environment: str = "development"):
        super().__init__()
        self.service_name = service_name
        self.environment = environment

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": _timestamp(record).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "environment": self.environment,
            **get_context_dict(),
        }
        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            entry["data"] = extra_data
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Colored console formatter for local runs."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        fields = {**get_context_dict(), **(getattr(record, "extra_data", None) or {})}
        suffix = f" [{', '.join(f'{k}={v}' for k, v in fields.items())}]" if fields else ""
        line = (
            f"{color}{_timestamp(record):%H:%M:%S} {record.levelname:8s}{self.RESET} "
            f"{record.name}: {record.getMessage()}{suffix}"
        )
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(config: Optional[LoggingConfig] = None) -> None:
    """Replace the root handlers with one stdout handler for ``config``.

    Third-party loggers named in ``config.quiet_loggers`` are raised to
    WARNING so delivery retries and SQL echo stay out of the stream.
    """
    config = config or DEFAULT_LOGGING_CONFIG
    if config.format == LogFormat.JSON:
        formatter: logging.Formatter = StructuredFormatter(config.service_name, config.environment)
    else:
        formatter = ConsoleFormatter()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, config.level.value))

    for noisy in config.quiet_loggers:
        logging.getLogger(noisy).setLevel(logging.WARNING)
