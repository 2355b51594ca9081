"""
JSON log lines carrying a correlation ID.

HTTP requests take the ID from X-Correlation-ID (or get a fresh one); every
scheduled step execution starts its own, so one step's logs can be followed
through selection, dispatch and the ledger.
"""
import json
import logging
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Passed through when given as logging `extra=`
CONTEXT_FIELDS = (
    "lead_id",
    "client_id",
    "automation_id",
    "run_id",
    "channel",
    "message_id",
    "provider",
    "error_code",
)

QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx", "twilio.http_client")


def get_correlation_id() -> Optional[str]:
    return correlation_id_ctx.get()


def set_correlation_id(cid: str) -> None:
    correlation_id_ctx.set(cid)


def generate_correlation_id() -> str:
    """32-char hex ID."""
    return uuid.uuid4().hex


def mask_phone(phone: Optional[str]) -> str:
    """Keep the country/area prefix only."""
    if not phone:
        return "unknown"
    return phone[:6] + "***" if len(phone) > 6 else phone


def mask_email(email: Optional[str]) -> str:
    if not email:
        return "unknown"
    return email[:3] + "***"


def short_id(value) -> str:
    return "none" if value is None else str(value)[:8]


class StructuredJsonFormatter(logging.Formatter):
    """One JSON object per record: timestamp, level, correlation_id, module, message, context fields."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        line = {
            "timestamp": created.strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "correlation_id": get_correlation_id(),
            "module": record.name,
            "message": record.getMessage(),
        }
        line.update({
            key: getattr(record, key)
            for key in CONTEXT_FIELDS
            if getattr(record, key, None) is not None
        })
        if record.exc_info and record.exc_info[0] is not None:
            line["exception"] = self.formatException(record.exc_info)
        return json.dumps(line, default=str)


def configure_structured_logging(log_level: str = "INFO") -> None:
    """Route the root logger through a single JSON stream handler."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredJsonFormatter())
    root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
