"""Log Context Management.

Binds a correlation id and extra fields to every log entry emitted
inside a block, using contextvars so concurrent tasks stay isolated.
"""

import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any


_correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
_extra_context_var: ContextVar[dict] = ContextVar("extra_context", default={})


def generate_correlation_id() -> str:
    """Generate a unique correlation ID using UUID4."""
    return str(uuid.uuid4())


def get_correlation_id() -> str:
    """Get the current correlation ID from context."""
    return _correlation_id_var.get()


def get_context_dict() -> dict[str, Any]:
    """Get all bound context as a dictionary for log enrichment."""
    ctx = {}
    corr_id = _correlation_id_var.get()
    if corr_id:
        ctx["correlation_id"] = corr_id
    extra = _extra_context_var.get()
    if extra:
        ctx.update(extra)
    return ctx


@dataclass
class LogContext:
    """Context manager for scoped logging context.

    Used around each health-check cycle so every entry it produces
    carries the same correlation id. Nested contexts restore the
    outer values on exit.

    Example:
        with LogContext(extra={"stage": "canary"}):
            logger.info("evaluating rollout")  # includes correlation_id, stage
    """

    correlation_id: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    _tokens: list = field(default_factory=list, repr=False)

    def __post_init__(self):
        if not self.correlation_id:
            self.correlation_id = generate_correlation_id()

    def __enter__(self) -> "LogContext":
        merged = {**_extra_context_var.get(), **self.extra}
        self._tokens = [
            (_correlation_id_var, _correlation_id_var.set(self.correlation_id)),
            (_extra_context_var, _extra_context_var.set(merged)),
        ]
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()

    def bind(self, **kwargs: Any) -> None:
        """Add extra key-value pairs to the active context."""
        current = _extra_context_var.get()
        _extra_context_var.set({**current, **kwargs})
        self.extra.update(kwargs)
