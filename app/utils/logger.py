"""
Structured logging for the payslip pipeline.

Every module logs through ``get_logger(__name__)`` and passes context as
keyword arguments. Records emitted while a background job runs carry the
job id and job name automatically (see ``job_log_context``), so ingest and
send runs can be followed across worker threads. Audit events
(``log_business_event``) and timings (``log_performance``) go to the
``app.audit`` and ``app.performance`` loggers.
"""
import logging
import logging.config
import json
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Any, Iterator, Optional
from pathlib import Path

_job_context: ContextVar[Dict[str, Any]] = ContextVar("job_log_context", default={})

# Loggers that get the same handlers as the application itself
_MANAGED_LOGGERS = {
    "app": None,  # level follows LOG_LEVEL
    "uvicorn": "INFO",
    "sqlalchemy.engine": "WARNING",
    "pypdf": "ERROR",  # unreadable payslip PDFs are reported per document already
}


def _jsonable(value: Any) -> Any:
    # Never write document bytes into a log line
    if isinstance(value, (bytes, bytearray, memoryview)):
        return f"<{len(value)} bytes>"
    return value


class JobContextFilter(logging.Filter):
    """Copy the active job context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = _job_context.get()
        record.job_context = context
        record.job_id = context.get("job_id", "-")
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line for the rotating log file."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "thread_name": record.threadName,
        }
        log_entry.update(getattr(record, "job_context", None) or {})

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            log_entry.update({k: _jsonable(v) for k, v in extra_data.items()})

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class StructuredLogger:
    """
    Thin wrapper over ``logging.Logger`` taking context as keyword arguments.
    ``None`` values are dropped; ``exc_info`` is forwarded to the logger.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _log_with_extra(self, level: int, message: str, **kwargs):
        if not self.logger.isEnabledFor(level):
            return
        exc_info = kwargs.pop("exc_info", None)
        extra_data = {k: v for k, v in kwargs.items() if v is not None}
        self.logger.log(level, message, exc_info=exc_info, extra={"extra_data": extra_data}, stacklevel=3)

    def debug(self, message: str, **kwargs):
        self._log_with_extra(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log_with_extra(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log_with_extra(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        self._log_with_extra(logging.ERROR, message, **kwargs)


@contextmanager
def job_log_context(**fields: Any) -> Iterator[None]:
    """Attach ``fields`` (job_id, job_name, ...) to every record logged inside the block."""
    merged = {**_job_context.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = _job_context.set(merged)
    try:
        yield
    finally:
        _job_context.reset(token)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    enable_console: bool = True
) -> None:
    """
    Configure the application loggers.

    Args:
        log_level: Level for the ``app`` loggers and the root logger
        log_file: Optional path of a rotating JSON log file
        enable_console: Whether to log human-readable lines to stdout
    """
    handlers: Dict[str, Dict[str, Any]] = {}
    if enable_console:
        handlers["console"] = {
            "class": "logging.StreamHandler",
            "stream": sys.stdout,
            "formatter": "standard",
            "filters": ["job_context"],
            "level": log_level,
        }
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": log_file,
            "maxBytes": 10 * 1024 * 1024,
            "backupCount": 5,
            "formatter": "json",
            "filters": ["job_context"],
            "level": log_level,
        }

    names = list(handlers)
    config: Dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"job_context": {"()": JobContextFilter}},
        "formatters": {
            "json": {"()": JSONFormatter},
            "standard": {
                "format": "%(asctime)s - %(name)s - [%(threadName)s job=%(job_id)s] - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": handlers,
        "loggers": {
            name: {"level": level or log_level, "handlers": names, "propagate": False}
            for name, level in _MANAGED_LOGGERS.items()
        },
        "root": {"level": log_level, "handlers": names},
    }
    logging.config.dictConfig(config)


def get_logger(name: str) -> StructuredLogger:
    """Structured logger under the ``app`` namespace (``name`` is usually ``__name__``)."""
    if name == "app" or name.startswith("app."):
        return StructuredLogger(name)
    return StructuredLogger(f"app.{name}")


def log_business_event(
    event_type: str,
    details: Dict[str, Any],
    user_id: Optional[int] = None,
    job_id: Optional[str] = None
) -> None:
    """
    Audit trail entry for a batch lifecycle event.

    Args:
        event_type: e.g. 'PAYSLIP_BATCH_UPLOADED_COMPLETED', 'PAYSLIP_BATCH_SENT_FAILED'
        details: Event fields (batch id, counts, error)
        user_id: Acting user, if the action was user initiated
        job_id: Background job that produced the event
    """
    get_logger("audit").info(
        f"Business event: {event_type}",
        event_type=event_type,
        user_id=user_id,
        job_id=job_id,
        **details
    )


def log_performance(
    operation: str,
    duration_ms: float,
    additional_data: Optional[Dict[str, Any]] = None
) -> None:
    data = {"duration_ms": duration_ms}
    if additional_data:
        data.update(additional_data)
    get_logger("performance").info(f"Performance: {operation}", operation=operation, **data)
