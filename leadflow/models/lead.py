"""
Lead model - a prospect the engine can message.
Status lifecycle: new → contacted → interested → appointment_booked → converted.
Terminal (out-of-funnel) states: converted, lost.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from leadflow.database import Base

LEAD_STATUSES = (
    "new",
    "contacted",
    "interested",
    "appointment_booked",
    "converted",
    "lost",
)
OUT_OF_FUNNEL_STATUSES = frozenset({"converted", "lost"})


class Lead(Base):
    __tablename__ = "leads"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    client_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("clients.id"), nullable=False
    )

    # Contact info
    name: Mapped[Optional[str]] = mapped_column(String(200))
    phone: Mapped[str] = mapped_column(String(20), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255))

    # Lifecycle
    status: Mapped[str] = mapped_column(String(30), default="new", nullable=False)
    source: Mapped[str] = mapped_column(
        String(50), default="manual", nullable=False
    )  # website, facebook, google_ads, referral, csv_import, manual

    # Channel capability / preference
    whatsapp_available: Mapped[bool] = mapped_column(Boolean, default=False)
    preferred_channel: Mapped[str] = mapped_column(
        String(20), default="auto"
    )  # whatsapp, sms, auto

    last_message_sent: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # Relationships
    client: Mapped["Client"] = relationship(back_populates="leads")
    conversation_history: Mapped[list["ConversationMessage"]] = relationship(
        back_populates="lead", lazy="select", order_by="ConversationMessage.sequence"
    )

    __table_args__ = (
        Index("ix_leads_client_id", "client_id"),
        Index("ix_leads_status", "status"),
        Index("ix_leads_phone", "phone"),
        Index("ix_leads_client_phone", "client_id", "phone"),
    )

    @property
    def is_in_funnel(self) -> bool:
        return self.status not in OUT_OF_FUNNEL_STATUSES

    def __repr__(self) -> str:
        masked = self.phone[:6] + "***" if self.phone else "unknown"
        return f"<Lead {masked} status={self.status}>"
