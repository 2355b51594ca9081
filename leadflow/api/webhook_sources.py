"""
Provider payload parsers for inbound messages and delivery statuses.
"""
import logging
from typing import Optional

from leadflow.schemas.webhook_payloads import WhatsAppInboundMessage, WhatsAppStatusUpdate

logger = logging.getLogger(__name__)


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    """Loose E.164 normalization: digits only with a leading '+', 10-digit numbers get +1."""
    if not raw:
        return None
    digits = "".join(ch for ch in raw if ch.isdigit())
    if len(digits) == 10:
        digits = "1" + digits
    if len(digits) < 8 or len(digits) > 15:
        return None
    return "+" + digits


def phone_variants(phone: str) -> list[str]:
    """Stored-format candidates for a normalized phone."""
    return [phone, phone.lstrip("+")]


def _whatsapp_values(payload: dict):
    for entry in payload.get("entry") or []:
        for change in entry.get("changes") or []:
            if change.get("field", "messages") != "messages":
                continue
            yield change.get("value") or {}


def parse_whatsapp_messages(payload: dict) -> list[WhatsAppInboundMessage]:
    """Text messages from a Cloud API webhook. Non-text messages are skipped."""
    messages = []
    for value in _whatsapp_values(payload):
        phone_number_id = (value.get("metadata") or {}).get("phone_number_id")
        for raw in value.get("messages") or []:
            if raw.get("type") != "text":
                logger.info("Skipping WhatsApp %s message %s", raw.get("type"), str(raw.get("id", ""))[:16])
                continue
            try:
                timestamp = int(raw["timestamp"]) if raw.get("timestamp") else None
            except (TypeError, ValueError):
                timestamp = None
            messages.append(WhatsAppInboundMessage(
                message_id=raw.get("id", ""),
                from_phone=raw.get("from", ""),
                text=(raw.get("text") or {}).get("body", ""),
                timestamp=timestamp,
                phone_number_id=phone_number_id,
            ))
    return messages


def parse_whatsapp_statuses(payload: dict) -> list[WhatsAppStatusUpdate]:
    statuses = []
    for value in _whatsapp_values(payload):
        for raw in value.get("statuses") or []:
            errors = raw.get("errors") or []
            first_error = errors[0] if errors else {}
            statuses.append(WhatsAppStatusUpdate(
                message_id=raw.get("id", ""),
                status=raw.get("status", ""),
                recipient_id=raw.get("recipient_id"),
                error_code=str(first_error["code"]) if first_error.get("code") is not None else None,
                error_message=first_error.get("title") or first_error.get("message"),
            ))
    return statuses
