"""
Logging setup and audit trail for DAB.

Console output always goes to stderr: stdout carries the chat transcript in
the client and the MCP stdio channel in the bundled provider. Approval
decisions, tool invocations and provider lifecycle changes are additionally
written as JSON lines to ``audit.jsonl``.
"""

import json
import logging
import logging.config
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from opentelemetry import trace

from dab.lib.config import LoggingConfig


AUDIT_LOGGER_NAME = "dab.audit"

_STANDARD_ATTRIBUTES = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class StructuredFormatter(logging.Formatter):
    """Render records as one JSON object per line.

    Fields passed through ``extra=`` are kept, and the active span's ids are
    attached so log lines can be joined with traces.
    """

    def __init__(self, include_trace: bool = True, static_fields: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.include_trace = include_trace
        self.static_fields = static_fields or {}

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(self.static_fields)

        if self.include_trace:
            span_context = trace.get_current_span().get_span_context()
            if span_context.is_valid:
                entry["trace_id"] = format(span_context.trace_id, "032x")
                entry["span_id"] = format(span_context.span_id, "016x")

        entry.update({
            key: value for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRIBUTES
        })

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


class AuditLogger:
    """Writes audit events to the ``dab.audit`` logger."""

    def __init__(self, logger_name: str = AUDIT_LOGGER_NAME):
        self.logger = logging.getLogger(logger_name)

    def _emit(self, audit_type: str, message: str, **fields: Any) -> None:
        self.logger.info(message, extra={"audit_type": audit_type, **fields})

    def log_approval_event(
        self,
        prompt_text: str,
        decision: str,
        approved: bool,
        correlation_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        self._emit(
            "approval", f"Approval {decision}: {prompt_text}",
            prompt_text=prompt_text,
            decision=decision,
            approved=approved,
            correlation_id=correlation_id,
            metadata=metadata or {}
        )

    def log_tool_event(
        self,
        provider_id: str,
        tool_name: str,
        result: str,
        attempts: int = 1,
        execution_time_ms: Optional[int] = None,
        correlation_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Record one tool invocation.

        Args:
            provider_id: Provider the tool ran on
            tool_name: Tool name
            result: ``success``, ``error`` (error result) or ``failure`` (raised)
            attempts: Attempts made, retries included
            execution_time_ms: Wall time across all attempts
            correlation_id: Stream correlation id, when the call streamed
            metadata: Free-form details such as the error text
        """
        self._emit(
            "tool", f"Tool {tool_name} on {provider_id}: {result}",
            provider_id=provider_id,
            tool_name=tool_name,
            result=result,
            attempts=attempts,
            execution_time_ms=execution_time_ms,
            correlation_id=correlation_id,
            metadata=metadata or {}
        )

    def log_provider_event(
        self,
        event_type: str,
        provider_id: str,
        result: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        self._emit(
            "provider", f"Provider {provider_id} {event_type}: {result}",
            event_type=event_type,
            provider_id=provider_id,
            result=result,
            metadata=metadata or {}
        )


def _rotating_file(path: Path, level: str, config: LoggingConfig) -> Dict[str, Any]:
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "level": level,
        "formatter": "structured",
        "filename": str(path),
        "maxBytes": config.max_file_size,
        "backupCount": config.backup_count,
        "encoding": "utf-8"
    }


def setup_logging(config: LoggingConfig, service_name: str = "dab-client", level: Optional[str] = None) -> None:
    """Configure console, application file and audit file logging.

    Args:
        config: Logging section of the DAB configuration
        service_name: Names the application log file and tags every JSON line
        level: Overrides ``config.level``, e.g. ``DEBUG`` for ``--debug``
    """
    log_level = (level or config.level).upper()
    log_dir = Path(config.directory).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": StructuredFormatter,
                "include_trace": config.include_trace,
                "static_fields": {"service": service_name, "environment": config.environment}
            },
            "simple": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": config.format,
                "stream": sys.stderr
            },
            "application_file": _rotating_file(log_dir / f"{service_name}.log", log_level, config),
            "audit_file": _rotating_file(log_dir / "audit.jsonl", "INFO", config)
        },
        "loggers": {
            "dab": {"level": log_level, "handlers": ["console", "application_file"], "propagate": False},
            AUDIT_LOGGER_NAME: {"level": "INFO", "handlers": ["audit_file"], "propagate": False},
            # MCP and HTTP client chatter stays out of the transcript unless debugging
            "mcp": {"level": "DEBUG" if log_level == "DEBUG" else "WARNING"},
            "httpx": {"level": "DEBUG" if log_level == "DEBUG" else "WARNING"}
        },
        "root": {"level": log_level, "handlers": ["console"]}
    })

    logging.getLogger("dab.logging").info(
        f"Logging initialized for {service_name} at {log_level} in {log_dir}"
    )


def get_audit_logger() -> AuditLogger:
    return AuditLogger()
