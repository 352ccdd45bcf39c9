"""
Structured logging for the gateway.

Records carry the request id bound by RequestIdMiddleware plus the billing
and gateway fields below. Production renders one JSON object per line;
other environments render a single readable line with key=value context.
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

LOGGER_NAME = "gateway"

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Record attributes rendered as structured context, in output order
CONTEXT_FIELDS = (
    "user_id",
    "customer_id",
    "event_id",
    "event_type",
    "error_code",
    "status",
    "method",
    "path",
    "latency_bucket",
)

# Upper bounds (ms) for the request.complete latency buckets
_LATENCY_BUCKETS = ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms"))

_MAX_VALUE_CHARS = 500


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    for upper, label in _LATENCY_BUCKETS:
        if latency_ms < upper:
            return label
    return ">=1000ms"


def record_context(record: logging.LogRecord) -> Dict[str, Any]:
    """Structured fields set on a record, known fields first, then log_event extras."""
    fields = {}
    for name in CONTEXT_FIELDS:
        value = getattr(record, name, None)
        if value is not None:
            fields[name] = value
    fields.update(getattr(record, "context", None) or {})
    return fields


class RequestIdFilter(logging.Filter):
    """Fill request_id from the bound context unless the call passed one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class _GatewayFormatter(logging.Formatter):
    def timestamp(self, record: logging.LogRecord) -> str:
        return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z")


class JsonFormatter(_GatewayFormatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        payload.update(record_context(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(_GatewayFormatter):
    def format(self, record: logging.LogRecord) -> str:
        parts = [self.timestamp(record), record.levelname, f"[{record.name}]"]
        rid = getattr(record, "request_id", None)
        if rid:
            parts.append(f"[rid={rid}]")
        parts.append(record.getMessage())
        parts.extend(f"{key}={value}" for key, value in record_context(record).items())
        line = " ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(env: str = "development", level: int = logging.INFO) -> logging.Logger:
    """Install the gateway handler; calling it again replaces the handler."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(RequestIdFilter())
    logger.handlers = [handler]
    # Propagate so pytest's caplog sees gateway records
    logger.propagate = True
    return logger


def _truncate(value: Any) -> str:
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    if len(text) <= _MAX_VALUE_CHARS:
        return text
    return text[:_MAX_VALUE_CHARS] + "...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    event_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
) -> None:
    """
    Log a billing or gateway event with its identifiers.

    Unset identifiers are left off the record. Free-form `extra` values are
    truncated and rendered after the known fields.
    """
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        configure_logging(os.getenv("ENV", "development"))

    fields = {
        "request_id": request_id or get_request_id(),
        "user_id": user_id,
        "customer_id": customer_id,
        "event_id": event_id,
        "event_type": event_type,
        "error_code": error_code,
    }
    record_extra: Dict[str, Any] = {k: v for k, v in fields.items() if v is not None}
    if extra:
        record_extra["context"] = {k: _truncate(v) for k, v in extra.items()}

    log_fn = getattr(logger, level, logger.info)
    log_fn(msg, extra=record_extra)
