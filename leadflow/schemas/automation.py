"""
Automation schemas - closed vocabularies for triggers, channels and statuses,
plus the validated shape of one message-sequence step.
"""
from enum import Enum
from pydantic import BaseModel, Field


class TriggerType(str, Enum):
    NEW_LEAD = "new_lead"
    KEYWORD_MATCH = "keyword_match"
    STATUS_CHANGE = "status_change"
    SCHEDULED = "scheduled"


class Channel(str, Enum):
    WHATSAPP = "whatsapp"
    SMS = "sms"
    EMAIL = "email"


class RequestedChannel(str, Enum):
    WHATSAPP = "whatsapp"
    SMS = "sms"
    EMAIL = "email"
    AUTO = "auto"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class RunState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class SequenceStep(BaseModel):
    """One delayed message in an automation's sequence."""
    delay_minutes: int = Field(default=0, ge=0)
    message_text: str
    has_booking_link: bool = False


class AutomationConfig(BaseModel):
    """Operator-facing automation definition (validated before storage)."""
    name: str
    trigger_type: TriggerType
    trigger_keywords: list[str] = Field(default_factory=list)
    message_sequence: list[SequenceStep] = Field(default_factory=list)
    is_active: bool = True
    business_hours_only: bool = True
    schedule_idle_minutes: int | None = Field(default=None, ge=1)
