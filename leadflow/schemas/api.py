"""
API request/response schemas for the engine's HTTP surface.
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field

from leadflow.schemas.automation import RequestedChannel


class EventAccepted(BaseModel):
    status: str = "accepted"
    event_type: str
    runs_started: list[str] = Field(default_factory=list)


class SendMessageRequest(BaseModel):
    message: str = Field(min_length=1, max_length=4000)
    channel: RequestedChannel = RequestedChannel.AUTO


class LedgerEntry(BaseModel):
    sequence: int
    sender: str
    message: str
    channel: str
    timestamp: datetime
    delivery_status: str
    message_id: Optional[str] = None
    origin: Optional[str] = None
    error_message: Optional[str] = None


class ConversationResponse(BaseModel):
    lead_id: str
    messages: list[LedgerEntry]


class SendMessageResponse(BaseModel):
    entry: LedgerEntry
    error: Optional[str] = None


class RunSummary(BaseModel):
    id: str
    automation_id: str
    state: str
    current_step_index: int
    scheduled_at: datetime
    cancel_reason: Optional[str] = None


class RunListResponse(BaseModel):
    lead_id: str
    runs: list[RunSummary]


class WebhookAck(BaseModel):
    status: str = "ok"
    message: Optional[str] = None
