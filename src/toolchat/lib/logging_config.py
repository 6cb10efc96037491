"""
Structured logging for toolchat.

Every record is rendered as one JSON line carrying the OpenTelemetry trace
ids of the active span and, inside ``bind_turn_context``, the chat and user
of the turn being processed. Audit events go to their own ``audit.jsonl``
file so they can be shipped separately from application logs.
"""

import json
import logging
import logging.config
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Any, Iterator, Optional
from pathlib import Path

from opentelemetry import trace


_RESERVED_RECORD_KEYS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__
) | {"message", "asctime"}

_turn_context: ContextVar[Dict[str, Any]] = ContextVar("toolchat_turn_context", default={})


@contextmanager
def bind_turn_context(**fields: Any) -> Iterator[None]:
    """Attach turn fields (chat_id, user_id) to every record logged in the block."""
    token = _turn_context.set({**_turn_context.get(), **fields})
    try:
        yield
    finally:
        _turn_context.reset(token)


class TurnContextFilter(logging.Filter):
    """Copies bound turn fields onto records that do not set them explicitly."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _turn_context.get().items():
            if value is not None and getattr(record, key, None) is None:
                setattr(record, key, value)
        return True


class StructuredFormatter(logging.Formatter):
    """JSON line formatter with trace correlation."""

    def __init__(self, include_trace: bool = True, extra_fields: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.include_trace = include_trace
        self.extra_fields = extra_fields or {}

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "source": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        if self.include_trace:
            entry.update(self._trace_ids())
        if record.exc_info:
            entry["exception"] = self._exception(record)

        entry.update(
            (key, value) for key, value in record.__dict__.items()
            if key not in _RESERVED_RECORD_KEYS
        )
        entry.update(self.extra_fields)
        return json.dumps(entry, ensure_ascii=False, default=str)

    @staticmethod
    def _trace_ids() -> Dict[str, str]:
        span = trace.get_current_span()
        if not span.is_recording():
            return {}
        context = span.get_span_context()
        return {
            "trace_id": format(context.trace_id, "032x"),
            "span_id": format(context.span_id, "016x"),
        }

    def _exception(self, record: logging.LogRecord) -> Dict[str, Any]:
        exc_type, exc_value, _ = record.exc_info
        return {
            "type": exc_type.__name__ if exc_type else None,
            "message": str(exc_value) if exc_value else None,
            "traceback": self.formatException(record.exc_info),
        }


class AuditLogger:
    """Writes turn lifecycle and authorization events to the audit trail."""

    def __init__(self, logger_name: str = "toolchat.audit"):
        self.logger = logging.getLogger(logger_name)

    def log_turn_event(
        self,
        event_type: str,
        chat_id: str,
        user_id: Optional[str] = None,
        result: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        self.logger.info(
            f"Turn event: {event_type}",
            extra={
                "audit_type": "turn",
                "event_type": event_type,
                "chat_id": chat_id,
                "user_id": user_id,
                "result": result,
                "metadata": metadata or {}
            }
        )

    def log_security_event(
        self,
        event_type: str,
        severity: str,
        description: str,
        user_id: Optional[str] = None,
        chat_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Record a rejected or downgraded access, such as a foreign chat or agent."""
        self.logger.warning(
            f"Security event: {event_type} - {description}",
            extra={
                "audit_type": "security",
                "event_type": event_type,
                "severity": severity,
                "description": description,
                "user_id": user_id,
                "chat_id": chat_id,
                "agent_id": agent_id,
                "metadata": metadata or {}
            }
        )


def _rotating_file(path: Path, level: str, max_bytes: int, backups: int) -> Dict[str, Any]:
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "level": level,
        "formatter": "json",
        "filters": ["turn_context"],
        "filename": str(path),
        "maxBytes": max_bytes,
        "backupCount": backups,
    }


def setup_logging(config: Dict[str, Any]) -> None:
    """Configure the toolchat loggers from the ``logging`` config section."""
    level = config.get("level", "INFO").upper()
    console_format = "json" if config.get("format", "structured") == "structured" else "plain"
    max_bytes = config.get("max_file_size", 10 * 1024 * 1024)
    backups = config.get("backup_count", 5)

    log_dir = Path(config.get("directory", "~/.toolchat/logs")).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)

    service_handlers = ["console", "service_file"]
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "turn_context": {"()": TurnContextFilter},
        },
        "formatters": {
            "json": {
                "()": StructuredFormatter,
                "include_trace": config.get("include_trace", True),
                "extra_fields": {
                    "service": "toolchat",
                    "environment": config.get("environment", "development")
                }
            },
            "plain": {
                "format": "%(asctime)s %(levelname)-7s %(name)s %(message)s"
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": console_format,
                "filters": ["turn_context"],
                "stream": sys.stdout
            },
            "service_file": _rotating_file(log_dir / "toolchat.log", level, max_bytes, backups),
            "audit_file": _rotating_file(log_dir / "audit.jsonl", "INFO", max_bytes, backups * 2),
        },
        "loggers": {
            "toolchat": {"level": level, "handlers": service_handlers, "propagate": False},
            "toolchat.audit": {"level": "INFO", "handlers": ["audit_file"], "propagate": False},
            "uvicorn": {"level": "INFO", "handlers": service_handlers, "propagate": False},
            "opentelemetry": {"level": "WARNING", "handlers": service_handlers, "propagate": False},
        },
        "root": {"level": level, "handlers": ["console"]}
    })

    logging.getLogger("toolchat.logging").info(
        "Structured logging initialized",
        extra={"config": {"level": level, "format": console_format, "directory": str(log_dir)}}
    )


def get_audit_logger() -> AuditLogger:
    return AuditLogger()
