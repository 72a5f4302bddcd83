"""
Logging setup for aipal.

Application logs and the audit trail are JSON lines. Records emitted while
a queued conversation task runs carry that conversation's id, and records
emitted inside a span carry its trace and span ids.

The audit trail records three kinds of events: conversation lifecycle
(session resets, agent switches, startup), agent turns, and rejections by
the artifact guard or the script sandbox.
"""

import json
import logging
import logging.config
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from opentelemetry import trace


AUDIT_LOGGER_NAME = "aipal.audit"
LOG_FILE_NAME = "aipal.log"
AUDIT_FILE_NAME = "audit.jsonl"

_current_conversation: ContextVar[Optional[str]] = ContextVar("aipal_conversation", default=None)

# Attributes every LogRecord has; anything else was passed through ``extra``.
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


@contextmanager
def bind_conversation(conversation_id) -> Iterator[None]:
    """Tag log records emitted in this context with a conversation id."""
    token = _current_conversation.set(str(conversation_id))
    try:
        yield
    finally:
        _current_conversation.reset(token)


def current_conversation() -> Optional[str]:
    return _current_conversation.get()


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def __init__(self, include_trace: bool = True, static_fields: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.include_trace = include_trace
        self.static_fields = static_fields or {}

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = dict(self.static_fields)
        entry["ts"] = datetime.fromtimestamp(record.created, timezone.utc).isoformat(timespec="milliseconds")
        entry["level"] = record.levelname
        entry["logger"] = record.name
        entry["msg"] = record.getMessage()

        conversation_id = getattr(record, "conversation_id", None) or _current_conversation.get()
        if conversation_id is not None:
            entry["conversation_id"] = conversation_id

        if self.include_trace:
            entry.update(_span_ids())

        entry.update({k: v for k, v in vars(record).items() if k not in _STANDARD_ATTRS})

        if record.exc_info and record.exc_info[0] is not None:
            entry["error"] = {
                "type": record.exc_info[0].__name__,
                "detail": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry, ensure_ascii=False, default=str)


def _span_ids() -> Dict[str, str]:
    span = trace.get_current_span()
    if not span.is_recording():
        return {}
    context = span.get_span_context()
    return {"trace_id": format(context.trace_id, "032x"), "span_id": format(context.span_id, "016x")}


class AuditLogger:
    """Writes audit events to the ``aipal.audit`` logger."""

    def __init__(self, logger_name: str = AUDIT_LOGGER_NAME):
        self.logger = logging.getLogger(logger_name)

    def log_session_event(
        self,
        event_type: str,
        conversation_id,
        action: Optional[str] = None,
        result: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Record a conversation lifecycle event (reset, agent switch, startup)."""
        self._emit(
            logging.INFO, "session", event_type,
            conversation_id=str(conversation_id), action=action, result=result, metadata=metadata
        )

    def log_agent_event(
        self,
        event_type: str,
        agent_id: str,
        action: str,
        result: str,
        execution_time_ms: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Record an agent turn; ``action`` is start or resume, ``result`` the outcome."""
        self._emit(
            logging.INFO, "agent", event_type,
            agent_id=agent_id, action=action, result=result,
            execution_time_ms=execution_time_ms, metadata=metadata
        )

    def log_security_event(
        self,
        event_type: str,
        severity: str,
        description: str,
        conversation_id=None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Record a refused path or script."""
        self._emit(
            logging.WARNING, "security", event_type,
            description=description, severity=severity,
            conversation_id=None if conversation_id is None else str(conversation_id),
            metadata=metadata
        )

    def _emit(self, level: int, audit_type: str, event_type: str, **fields: Any) -> None:
        fields["metadata"] = fields.get("metadata") or {}
        if fields.get("conversation_id") is None:
            fields.pop("conversation_id", None)
        description = fields.get("description")
        message = f"{audit_type}: {event_type}" + (f" ({description})" if description else "")
        self.logger.log(level, message, extra={"audit_type": audit_type, "event_type": event_type, **fields})


def _rotating_file(path: Path, level: str, max_bytes: int, backups: int) -> Dict[str, Any]:
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "level": level,
        "formatter": "structured",
        "filename": str(path),
        "maxBytes": max_bytes,
        "backupCount": backups,
        "encoding": "utf-8",
    }


def setup_logging(config: Dict[str, Any]) -> None:
    """Configure console, application file and audit file logging.

    Args:
        config: The ``logging`` section of the aipal configuration
    """
    level = config.get("level", "INFO").upper()
    console_format = config.get("format", "structured")
    max_bytes = config.get("max_file_size", 10 * 1024 * 1024)
    backups = config.get("backup_count", 5)

    log_dir = Path(config.get("directory", "~/.aipal/logs")).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": StructuredFormatter,
                "include_trace": config.get("include_trace", True),
                "static_fields": {"service": "aipal", "environment": config.get("environment", "development")},
            },
            "simple": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "simple" if console_format == "simple" else "structured",
                "stream": sys.stderr,
            },
            "application_file": _rotating_file(log_dir / LOG_FILE_NAME, level, max_bytes, backups),
            # The audit trail keeps twice as many generations as the application log.
            "audit_file": _rotating_file(log_dir / AUDIT_FILE_NAME, "INFO", max_bytes, backups * 2),
        },
        "loggers": {
            "aipal": {"level": level, "handlers": ["console", "application_file"], "propagate": False},
            AUDIT_LOGGER_NAME: {"level": "INFO", "handlers": ["audit_file"], "propagate": False},
            "opentelemetry": {"level": "WARNING", "handlers": ["console"], "propagate": False},
        },
        "root": {"level": "WARNING", "handlers": ["console"]},
    })

    logging.getLogger("aipal.logging").info(
        "Logging configured", extra={"log_level": level, "log_directory": str(log_dir)}
    )


def get_audit_logger() -> AuditLogger:
    """Return an audit logger bound to ``aipal.audit``."""
    return AuditLogger()
