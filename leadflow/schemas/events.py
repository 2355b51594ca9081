"""
Domain events consumed by the trigger evaluator.
A closed tagged union discriminated on `event_type`.
"""
import uuid
from datetime import datetime
from typing import Annotated, Literal, Optional, Union
from pydantic import BaseModel, Field


class _LeadEvent(BaseModel):
    lead_id: uuid.UUID
    occurred_at: Optional[datetime] = None


class NewLeadEvent(_LeadEvent):
    event_type: Literal["new_lead"] = "new_lead"


class MessageReceivedEvent(_LeadEvent):
    event_type: Literal["message_received"] = "message_received"
    text: str
    channel: Optional[str] = None


class StatusChangeEvent(_LeadEvent):
    event_type: Literal["status_change"] = "status_change"
    previous_status: Optional[str] = None
    new_status: str


class ClockTickEvent(_LeadEvent):
    event_type: Literal["clock_tick"] = "clock_tick"


DomainEvent = Annotated[
    Union[NewLeadEvent, MessageReceivedEvent, StatusChangeEvent, ClockTickEvent],
    Field(discriminator="event_type"),
]
