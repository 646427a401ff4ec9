"""structlog setup for memberbill.

Every line emitted during a pause batch carries the run's ``correlation_id``,
bound through ``structlog.contextvars`` so it also follows ``asyncio`` tasks.
Billing secrets are masked before rendering, however deeply they are nested.
"""

import logging
import sys
import time
import uuid
from collections.abc import Mapping
from typing import Any, cast

import structlog
from structlog.types import EventDict, Processor

REDACTED = "***REDACTED***"

_SECRET_NAMES = frozenset({"password", "token", "secret", "api_key", "billing_api_keys"})
_SECRET_SUFFIXES = ("_secret", "_secret_key", "_api_key", "_token")


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Bind a correlation id to the current context, generating one if needed."""
    correlation_id = correlation_id or str(uuid.uuid4())
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
    return correlation_id


def get_correlation_id() -> str | None:
    return structlog.contextvars.get_contextvars().get("correlation_id")


def clear_correlation_id() -> None:
    structlog.contextvars.unbind_contextvars("correlation_id")


def _is_secret(key: str) -> bool:
    lowered = key.lower()
    return lowered in _SECRET_NAMES or lowered.endswith(_SECRET_SUFFIXES)


def _mask(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: REDACTED if _is_secret(str(k)) else _mask(v) for k, v in value.items()}
    return value


def filter_sensitive_data(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask secret-looking keys, including inside nested mappings."""
    for key in list(event_dict):
        if _is_secret(key):
            event_dict[key] = REDACTED
        elif isinstance(event_dict[key], Mapping):
            event_dict[key] = _mask(event_dict[key])
    return event_dict


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    from memberbill import __version__

    event_dict.setdefault("app", "memberbill")
    event_dict.setdefault("version", __version__)
    return event_dict


def _renderer(json_logs: bool) -> Processor:
    if json_logs:
        return structlog.processors.JSONRenderer()
    if sys.stdout.isatty():
        return structlog.dev.ConsoleRenderer(colors=True)
    return structlog.processors.KeyValueRenderer(
        key_order=["timestamp", "level", "event", "correlation_id"]
    )


def configure_logging(log_level: str = "INFO", json_logs: bool = False) -> None:
    """Configure structlog on top of the stdlib root logger.

    JSON output is meant for the scheduled batch; interactive terminals get
    the coloured console renderer and anything else key=value lines.
    """
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        add_app_context,
        filter_sensitive_data,
    ]
    if json_logs:
        processors.append(structlog.processors.dict_tracebacks)
    processors.append(_renderer(json_logs))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=logging.getLevelName(log_level.upper()),
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return cast(structlog.stdlib.BoundLogger, structlog.get_logger(name))


class LogPerformance:
    """Time a block and log ``<operation>_completed`` or ``<operation>_failed``.

    Usage:
        with LogPerformance("position_calculation", logger):
            positions = service.calculate_positions(entities, as_of)
    """

    def __init__(self, operation: str, logger: structlog.stdlib.BoundLogger):
        self.operation = operation
        self.logger = logger
        self.duration_ms = 0.0
        self._started = 0.0

    def __enter__(self) -> "LogPerformance":
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.duration_ms = round((time.perf_counter() - self._started) * 1000, 2)
        if exc_type is None:
            self.logger.info(f"{self.operation}_completed", duration_ms=self.duration_ms)
            return
        self.logger.error(
            f"{self.operation}_failed",
            duration_ms=self.duration_ms,
            error=str(exc_val),
            error_type=exc_type.__name__,
        )


def log_audit_action(
    logger: structlog.stdlib.BoundLogger,
    action: str,
    subscription_id: int,
    performed_by: str,
    operation_id: str,
) -> None:
    """Echo a pause audit row into the log stream."""
    logger.info(
        "pause_audit",
        action=action,
        subscription_id=subscription_id,
        performed_by=performed_by,
        operation_id=operation_id,
    )


configure_logging()
