from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from time import perf_counter
from types import TracebackType
from typing import Any, Dict, Iterator, Mapping, Optional

_ROOT_LOGGER = "checksync"

_LEVEL_SYMBOLS: Dict[int, str] = {
    logging.DEBUG: "(?)",
    logging.INFO: "(*)",
    logging.WARNING: "(!)",
    logging.ERROR: "(x)",
    logging.CRITICAL: "(X)",
}

_LOG_CONTEXT: ContextVar[Dict[str, Any]] = ContextVar("checksync_log_context", default={})


class _LineFormatter(logging.Formatter):
    """Render one record per line: ``when | LEVEL | category | (*) event | message | k: v``."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        stamp = created.strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        symbol = getattr(record, "symbol", _LEVEL_SYMBOLS.get(record.levelno, "(?)"))
        category = getattr(record, "category", record.name)
        event = getattr(record, "event", "")
        fields: Mapping[str, Any] = getattr(record, "fields", {})
        message = record.getMessage()

        parts = [stamp, f"{record.levelname:<8}", str(category)]
        if event:
            step = fields.get("step") if event == "operation.step" else None
            parts.append(f"{symbol} >> {step}" if step else f"{symbol} {event}")
            if message:
                parts.append(message)
        else:
            parts.append(f"{symbol} {message}")

        parts.extend(f"{key}: {value}" for key, value in fields.items() if key != "step")

        line = " | ".join(parts)
        if record.exc_info:
            return f"{line}\n{self.formatException(record.exc_info)}"
        return line


class Operation:
    """A named unit of work logged as start, steps and completion."""

    def __init__(self, logger: "BoundLogger", name: str, message: str, fields: Dict[str, Any]) -> None:
        self.logger = logger
        self.name = name
        self.message = message
        self.fields = fields
        self._started = 0.0

    async def __aenter__(self) -> "Operation":
        self._started = perf_counter()
        self.logger.info("operation.start", self.message, operation=self.name, **self.fields)
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        duration_ms = round((perf_counter() - self._started) * 1000, 1)
        if exc_type is None:
            self.logger.info("operation.complete", "Completed", operation=self.name, duration_ms=duration_ms)
            return
        self.logger.error(
            "operation.error",
            "Failed",
            operation=self.name,
            duration_ms=duration_ms,
            error_type=exc_type.__name__,
        )

    def step(self, name: str, message: str, **fields: Any) -> None:
        self.logger.info("operation.step", message, operation=self.name, step=name, **fields)

    def step_debug(self, name: str, message: str, **fields: Any) -> None:
        self.logger.debug("operation.step", message, operation=self.name, step=name, **fields)


class BoundLogger:
    def __init__(self, category: str, fields: Optional[Mapping[str, Any]] = None) -> None:
        self._category = category
        self._fields: Dict[str, Any] = dict(fields or {})

    @property
    def category(self) -> str:
        return self._category

    def bind(self, **fields: Any) -> "BoundLogger":
        return BoundLogger(self._category, {**self._fields, **fields})

    @contextmanager
    def context(self, **fields: Any) -> Iterator[None]:
        token = _LOG_CONTEXT.set({**_LOG_CONTEXT.get(), **fields})
        try:
            yield
        finally:
            _LOG_CONTEXT.reset(token)

    def operation(self, name: str, message: str, **fields: Any) -> Operation:
        return Operation(self, name, message, fields)

    def debug(self, event: str, message: str, **fields: Any) -> None:
        self._log(logging.DEBUG, event, message, **fields)

    def info(self, event: str, message: str, **fields: Any) -> None:
        self._log(logging.INFO, event, message, **fields)

    def warning(self, event: str, message: str, **fields: Any) -> None:
        self._log(logging.WARNING, event, message, **fields)

    def error(self, event: str, message: str, **fields: Any) -> None:
        self._log(logging.ERROR, event, message, **fields)

    def exception(self, event: str, message: str, **fields: Any) -> None:
        self._log(logging.ERROR, event, message, exc_info=True, **fields)

    def critical(self, event: str, message: str, **fields: Any) -> None:
        self._log(logging.CRITICAL, event, message, **fields)

    def _log(self, severity: int, event: str, message: str, *, exc_info: Any = None, **fields: Any) -> None:
        logger = logging.getLogger(_ROOT_LOGGER)
        if not logger.isEnabledFor(severity):
            return
        merged = {**_LOG_CONTEXT.get(), **self._fields, **fields}
        logger.log(
            severity,
            message,
            extra={
                "category": self._category,
                "event": event,
                "symbol": _LEVEL_SYMBOLS.get(severity, "(?)"),
                "fields": merged,
            },
            exc_info=exc_info,
        )


def configure_logging(log_level: str, log_file: Optional[str]) -> None:
    formatter = _LineFormatter()
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))
    for handler in handlers:
        handler.setFormatter(formatter)

    level = log_level.upper()
    for name in ("", _ROOT_LOGGER):
        target = logging.getLogger(name)
        target.setLevel(level)
        target.handlers.clear()
        for handler in handlers:
            target.addHandler(handler)
    logging.getLogger(_ROOT_LOGGER).propagate = False

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True


def get_logger(category: str) -> BoundLogger:
    return BoundLogger(category)
