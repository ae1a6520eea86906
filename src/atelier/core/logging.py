"""Structured logging for Atelier.

structlog-based logging with autoplay run context (run_id, iteration,
component). Console output for interactive use, JSON lines for files and
log shippers.

Example usage:
    from atelier.core.logging import RunContext, configure_logging, get_logger, with_context

    configure_logging(level="DEBUG", format="console")
    logger = get_logger("orchestrator")

    ctx = RunContext(run_id="run-1")
    with with_context(ctx.with_iteration(2)):
        logger.info("orchestrator.dispatch", status="evaluating")
"""

from __future__ import annotations

import logging
import sys
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field, replace
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Literal

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from atelier.utils.time import utc_now

# Field names whose values are never written to logs
SENSITIVE_PATTERNS = frozenset({
    "api_key",
    "apikey",
    "token",
    "secret",
    "password",
    "credential",
    "authorization",
    "bearer",
})


@dataclass(frozen=True)
class RunContext:
    """Correlation identifiers attached to every log entry inside a run.

    Attributes:
        run_id: Unique autoplay run identifier.
        iteration: Current iteration number (None before the loop starts).
        component: Component emitting the entries.
        output_mode: Output mode of the run, for filtering mixed logs.
    """

    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    iteration: int | None = None
    component: str = "autoplay"
    output_mode: str | None = None

    def with_iteration(self, iteration: int) -> RunContext:
        """Return a copy scoped to one iteration."""
        return replace(self, iteration=iteration)

    def with_component(self, component: str) -> RunContext:
        """Return a copy scoped to another component."""
        return replace(self, component=component)

    def to_dict(self) -> dict[str, Any]:
        """Context fields for the event dict, None values omitted."""
        result: dict[str, Any] = {"run_id": self.run_id, "component": self.component}
        if self.iteration is not None:
            result["iteration"] = self.iteration
        if self.output_mode is not None:
            result["output_mode"] = self.output_mode
        return result


_current_context: ContextVar[RunContext | None] = ContextVar(
    "atelier_run_context", default=None
)


def get_current_context() -> RunContext | None:
    """Return the active RunContext, if any."""
    return _current_context.get()


@contextmanager
def with_context(ctx: RunContext) -> Iterator[RunContext]:
    """Activate a RunContext for the duration of a block.

    The context is stored in a ContextVar, so tasks created inside the block
    inherit it.
    """
    token = _current_context.set(ctx)
    try:
        yield ctx
    finally:
        _current_context.reset(token)


def _redact(key: str, value: Any) -> Any:
    key_lower = key.lower()
    if any(pattern in key_lower for pattern in SENSITIVE_PATTERNS):
        return "[REDACTED]"
    return value


def _sanitize_event_dict(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Redact sensitive fields, one level deep into nested dicts."""
    sanitized: EventDict = {}
    for key, value in event_dict.items():
        if isinstance(value, dict):
            sanitized[key] = {k: _redact(k, v) for k, v in value.items()}
        else:
            sanitized[key] = _redact(key, value)
    return sanitized


def _add_context(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Merge the active RunContext; explicitly bound fields win."""
    ctx = get_current_context()
    if ctx is not None:
        for key, value in ctx.to_dict().items():
            event_dict.setdefault(key, value)
    return event_dict


def _add_timestamp(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    event_dict["timestamp"] = utc_now().isoformat()
    return event_dict


class AtelierLogger:
    """Component logger wrapping structlog.

    The structlog logger is resolved on every call so loggers created at
    import time still follow a later configure_logging().
    """

    def __init__(self, component: str, **initial_context: Any) -> None:
        self._context: dict[str, Any] = {"component": component, **initial_context}

    def _get_logger(self) -> structlog.stdlib.BoundLogger:
        logger: structlog.stdlib.BoundLogger = structlog.get_logger().bind(**self._context)
        return logger

    def bind(self, **context: Any) -> AtelierLogger:
        """Return a new logger with additional bound context."""
        bound = AtelierLogger.__new__(AtelierLogger)
        bound._context = {**self._context, **context}
        return bound

    def debug(self, event: str, **kw: Any) -> None:
        self._get_logger().debug(event, **kw)

    def info(self, event: str, **kw: Any) -> None:
        self._get_logger().info(event, **kw)

    def warning(self, event: str, **kw: Any) -> None:
        self._get_logger().warning(event, **kw)

    def error(self, event: str, **kw: Any) -> None:
        self._get_logger().error(event, **kw)

    def exception(self, event: str, **kw: Any) -> None:
        """Log at error level with the active exception's traceback."""
        self._get_logger().exception(event, **kw)


def _build_processors(renderer: Processor, include_timestamps: bool) -> list[Processor]:
    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        _sanitize_event_dict,
        _add_context,
    ]
    if include_timestamps:
        processors.append(_add_timestamp)
    processors.extend([
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ])
    return processors


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO",
    format: Literal["json", "console"] = "console",  # noqa: A002
    file_path: Path | None = None,
    max_file_size_mb: int = 20,
    backup_count: int = 3,
    include_timestamps: bool = True,
) -> None:
    """Configure structlog and the stdlib root logger.

    Call once at startup.

    Args:
        level: Minimum log level.
        format: "console" renders human-readable lines to stderr, "json"
            renders one JSON object per line.
        file_path: When set, entries also go to a rotating file.
        max_file_size_mb: Rotation size for the log file.
        backup_count: Rotated files to keep.
        include_timestamps: Add ISO8601 UTC timestamps.
    """
    log_level = getattr(logging, level)

    handlers: list[logging.Handler] = []
    stream = sys.stderr if format == "console" else sys.stdout
    handlers.append(logging.StreamHandler(stream))
    if file_path is not None:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                file_path,
                maxBytes=max_file_size_mb * 1024 * 1024,
                backupCount=backup_count,
                encoding="utf-8",
            )
        )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in handlers:
        handler.setLevel(log_level)
        root_logger.addHandler(handler)

    renderer: Processor
    if format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=stream.isatty())

    structlog.configure(
        processors=_build_processors(renderer, include_timestamps),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(component: str, **initial_context: Any) -> AtelierLogger:
    """Get a logger for a component (e.g. "orchestrator", "evaluator")."""
    return AtelierLogger(component, **initial_context)


__all__ = [
    "SENSITIVE_PATTERNS",
    "AtelierLogger",
    "RunContext",
    "configure_logging",
    "get_current_context",
    "get_logger",
    "with_context",
]
