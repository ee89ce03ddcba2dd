"""
Structured logging for the coordination services.

Every record can carry three context fields:
- correlation_id: one delivery, one update cycle, one request
- agent_id: the agent acting or being delivered to
- meeting_id: the meeting whose state is touched

They come from context variables set with CorrelationContext, or from the
keyword fields passed to a StructuredLogger call. JSON output puts them at
the top level and everything else under "extra".

Usage:
    from meeting_coord.logging_config import CorrelationContext, get_logger

    log = get_logger("meeting_coord.state")
    log.info("Progress updated", meeting_id="m-1", progress=50)

    with CorrelationContext(agent_id="summarizer", meeting_id="m-1"):
        log.debug("Runs with the agent and meeting attached")
"""

import contextvars
import json
import logging
import logging.handlers
import sys
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union
from uuid import uuid4

CONTEXT_FIELDS = ("correlation_id", "agent_id", "meeting_id")

correlation_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "correlation_id", default=None
)
agent_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "agent_id", default=None
)
meeting_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "meeting_id", default=None
)

_VARS = {
    "correlation_id": correlation_id_var,
    "agent_id": agent_id_var,
    "meeting_id": meeting_id_var,
}


class CorrelationContext:
    """
    Bind context fields for the duration of a block.

    A correlation id is generated when none is given. Fields left as None
    keep whatever the enclosing context already set.
    """

    def __init__(
        self,
        correlation_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        meeting_id: Optional[str] = None,
    ):
        self.correlation_id = correlation_id or str(uuid4())
        self.agent_id = agent_id
        self.meeting_id = meeting_id
        self._tokens = []

    def __enter__(self) -> "CorrelationContext":
        for name, var in _VARS.items():
            value = getattr(self, name)
            if value:
                self._tokens.append((var, var.set(value)))
        return self

    def __exit__(self, *args) -> None:
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)


def current_context() -> Dict[str, str]:
    """Context fields set in the current task, skipping unset ones."""
    return {name: var.get() for name, var in _VARS.items() if var.get()}


def record_context(record: logging.LogRecord) -> Dict[str, Any]:
    """Context vars, falling back to context fields passed as extras."""
    fields = current_context()
    extra = getattr(record, "extra_data", None) or {}
    for name in CONTEXT_FIELDS:
        if name not in fields and extra.get(name):
            fields[name] = extra[name]
    return fields


def _iso(created: float) -> str:
    return datetime.fromtimestamp(created, tz=timezone.utc).isoformat().replace("+00:00", "Z")


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def __init__(
        self,
        include_traceback: bool = True,
        include_context: bool = True,
        extra_fields: Optional[Dict[str, Any]] = None,
    ):
        super().__init__()
        self.include_traceback = include_traceback
        self.include_context = include_context
        self.extra_fields = extra_fields or {}

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": _iso(record.created),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            **self.extra_fields,
        }
        if self.include_context:
            payload.update(record_context(record))

        extra = getattr(record, "extra_data", None)
        if extra:
            payload["extra"] = extra

        if record.exc_info and self.include_traceback:
            exc_type, exc, tb = record.exc_info
            payload["exception"] = {
                "type": exc_type.__name__ if exc_type else None,
                "message": str(exc) if exc else None,
                "traceback": traceback.format_exception(exc_type, exc, tb),
            }
        return json.dumps(payload, default=str)


class StructuredFormatter(logging.Formatter):
    """Single-line console format with the context fields appended."""

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        line = f"[{stamp}] [{record.levelname}] [{record.name}] {record.getMessage()}"

        context = record_context(record)
        if "correlation_id" in context:
            context["correlation_id"] = context["correlation_id"][:8]
        if context:
            line += " [" + ", ".join(f"{k}={v}" for k, v in context.items()) + "]"

        if record.exc_info:
            line += "\n" + "".join(traceback.format_exception(*record.exc_info))
        return line


class StructuredLogger:
    """
    Logger wrapper whose calls take keyword fields.

        log.info("Wrote key", key="agenda", agent_id="planner")

    Fields bound with bind() are added to every call.
    """

    def __init__(self, logger: logging.Logger, fields: Optional[Dict[str, Any]] = None):
        self._logger = logger
        self._fields = dict(fields or {})

    @property
    def name(self) -> str:
        return self._logger.name

    def bind(self, **fields) -> "StructuredLogger":
        return StructuredLogger(self._logger, {**self._fields, **fields})

    def isEnabledFor(self, level: int) -> bool:
        return self._logger.isEnabledFor(level)

    def _log(self, level: int, msg: str, fields: Dict[str, Any], exc_info: bool = False) -> None:
        if not self._logger.isEnabledFor(level):
            return
        merged = {**self._fields, **fields}
        extra = {"extra_data": merged} if merged else None
        self._logger.log(level, msg, exc_info=exc_info, extra=extra, stacklevel=3)

    def debug(self, msg: str, **fields) -> None:
        self._log(logging.DEBUG, msg, fields)

    def info(self, msg: str, **fields) -> None:
        self._log(logging.INFO, msg, fields)

    def warning(self, msg: str, **fields) -> None:
        self._log(logging.WARNING, msg, fields)

    def error(self, msg: str, exc_info: bool = False, **fields) -> None:
        self._log(logging.ERROR, msg, fields, exc_info=exc_info)

    def exception(self, msg: str, **fields) -> None:
        self._log(logging.ERROR, msg, fields, exc_info=True)


def get_logger(name: Union[str, logging.Logger, StructuredLogger]) -> StructuredLogger:
    """Structured logger for a name, or a wrapper around an existing logger."""
    if isinstance(name, StructuredLogger):
        return name
    if isinstance(name, logging.Logger):
        return StructuredLogger(name)
    return StructuredLogger(logging.getLogger(name))


def setup_logging(
    log_dir: Optional[Union[str, Path]] = "logs",
    log_file: str = "meeting_coord.log",
    level: Union[str, int] = logging.INFO,
    json_format: bool = True,
    console_output: bool = True,
    max_bytes: int = 100 * 1024 * 1024,
    backup_count: int = 10,
    extra_fields: Optional[Dict[str, Any]] = None,
) -> logging.Logger:
    """
    Replace the root handlers with a rotating file and/or console handler.

    Args:
        log_dir: Directory for the log file (None disables the file handler)
        log_file: File name inside log_dir
        level: Level name or number
        json_format: JSON lines in the file, otherwise the console format
        console_output: Also log to stdout
        max_bytes: Rotation size
        backup_count: Rotated files to keep
        extra_fields: Constant fields added to every JSON record

    Returns:
        The root logger
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    if log_dir is not None:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            path / log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(
            JSONFormatter(extra_fields=extra_fields) if json_format else StructuredFormatter()
        )
        root.addHandler(file_handler)

    if console_output:
        console = logging.StreamHandler(sys.stdout)
        console.setLevel(level)
        console.setFormatter(StructuredFormatter())
        root.addHandler(console)

    return root


def setup_logging_from_config(config) -> logging.Logger:
    """Apply a validated LoggingConfig."""
    return setup_logging(
        log_dir=config.log_dir,
        log_file=config.log_file,
        level=config.level,
        json_format=config.format == "json",
        console_output=config.console_output,
        max_bytes=config.max_file_size_mb * 1024 * 1024,
        backup_count=config.backup_count,
    )


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()
