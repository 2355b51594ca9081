"""
Conversation ledger entry - every message exchanged with a lead.
Append-only: content columns never change after insert. Only delivery_status,
message_id and the delivery bookkeeping columns move, and only forward.
Ordering is by `sequence` (per-lead append order), never by timestamp.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from leadflow.database import Base


class ConversationMessage(Base):
    __tablename__ = "conversation_messages"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("leads.id"), nullable=False
    )
    client_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("clients.id"), nullable=False
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    # Immutable content
    sender: Mapped[str] = mapped_column(String(10), nullable=False)  # system, lead
    message: Mapped[str] = mapped_column(Text, nullable=False)
    channel: Mapped[str] = mapped_column(String(20), nullable=False)  # whatsapp, sms, email
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Attribution
    origin: Mapped[str] = mapped_column(
        String(20), default="operator"
    )  # automation, operator, auto_reply, inbound
    automation_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    run_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    step_index: Mapped[Optional[int]] = mapped_column(Integer)

    # Delivery tracking
    delivery_status: Mapped[str] = mapped_column(
        String(20), default="pending"
    )  # pending, sent, delivered, read, failed
    message_id: Mapped[Optional[str]] = mapped_column(String(128))
    provider: Mapped[Optional[str]] = mapped_column(String(20))  # twilio, whatsapp_cloud, sendgrid
    error_code: Mapped[Optional[str]] = mapped_column(String(50))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    # Relationships
    lead: Mapped["Lead"] = relationship(back_populates="conversation_history")

    __table_args__ = (
        UniqueConstraint("lead_id", "sequence", name="uq_conversation_lead_sequence"),
        Index("ix_conversation_lead_id", "lead_id"),
        Index("ix_conversation_message_id", "message_id"),
        Index("ix_conversation_run_id", "run_id"),
    )

    def __repr__(self) -> str:
        return f"<ConversationMessage #{self.sequence} {self.sender}/{self.channel} {self.delivery_status}>"
