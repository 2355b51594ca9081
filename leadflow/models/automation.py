"""
Automation model - a trigger condition paired with an ordered message sequence.
Edited by operators; read-only to the engine.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from leadflow.database import Base


class Automation(Base):
    __tablename__ = "automations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    client_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("clients.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    # Trigger
    trigger_type: Mapped[str] = mapped_column(
        String(30), nullable=False
    )  # new_lead, keyword_match, status_change, scheduled
    trigger_keywords: Mapped[Optional[list]] = mapped_column(JSONB, default=list)
    # scheduled trigger: fire for leads idle this long (None = settings default)
    schedule_idle_minutes: Mapped[Optional[int]] = mapped_column(Integer)

    # [{"delay_minutes": int, "message_text": str, "has_booking_link": bool}, ...]
    message_sequence: Mapped[list] = mapped_column(JSONB, default=list)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    business_hours_only: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_automations_client_trigger", "client_id", "trigger_type", "is_active"),
    )

    def steps(self) -> list["SequenceStep"]:
        """Validated view of message_sequence."""
        from leadflow.schemas.automation import SequenceStep
        return [SequenceStep.model_validate(step) for step in (self.message_sequence or [])]

    def __repr__(self) -> str:
        return f"<Automation {self.name} trigger={self.trigger_type} active={self.is_active}>"
