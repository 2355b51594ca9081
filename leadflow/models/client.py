"""
Client model - a business (tenant) whose leads the engine messages.
Owns leads, automations, and one SMSSettings row.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Boolean, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from leadflow.database import Base


class Client(Base):
    __tablename__ = "clients"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    business_name: Mapped[str] = mapped_column(String(255), nullable=False)

    # IANA timezone used for business-hours gating (falls back to settings.default_timezone)
    timezone: Mapped[Optional[str]] = mapped_column(String(64))

    # Booking CTA appended to steps with has_booking_link
    booking_url: Mapped[Optional[str]] = mapped_column(String(500))

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    # Relationships
    leads: Mapped[list["Lead"]] = relationship(back_populates="client", lazy="select")
    sms_settings: Mapped[Optional["SMSSettings"]] = relationship(
        back_populates="client", uselist=False, lazy="select"
    )

    __table_args__ = (
        Index("ix_clients_is_active", "is_active"),
    )

    def __repr__(self) -> str:
        return f"<Client {self.business_name}>"
