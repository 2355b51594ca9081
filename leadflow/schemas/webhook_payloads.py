"""
Webhook payload schemas - provider input normalized for the engine.
"""
from typing import Optional
from pydantic import BaseModel


class WhatsAppInboundMessage(BaseModel):
    """One inbound message extracted from a WhatsApp Cloud API webhook."""
    message_id: str
    from_phone: str
    text: str
    timestamp: Optional[int] = None
    phone_number_id: Optional[str] = None


class WhatsAppStatusUpdate(BaseModel):
    """One delivery status extracted from a WhatsApp Cloud API webhook."""
    message_id: str
    status: str  # sent, delivered, read, failed
    recipient_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
