"""
SMS settings - per-client SMS configuration, business hours and monthly quota.
A client without a row (or without a sending number) has no SMS configuration.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, Boolean, DateTime, ForeignKey
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from leadflow.database import Base


class SMSSettings(Base):
    __tablename__ = "sms_settings"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    client_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("clients.id"), nullable=False, unique=True
    )

    # Sending identity
    twilio_phone_number: Mapped[Optional[str]] = mapped_column(String(20))
    sender_name: Mapped[Optional[str]] = mapped_column(String(100))

    # Business hours, local time-of-day "HH:MM"
    business_hours_start: Mapped[str] = mapped_column(String(5), default="09:00")
    business_hours_end: Mapped[str] = mapped_column(String(5), default="18:00")

    # Out-of-hours auto-reply
    auto_reply_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    out_of_hours_message: Mapped[Optional[str]] = mapped_column(
        Text,
        default="Thanks for your message! We'll respond during business hours.",
    )

    # Monthly quota; quota_period is the "YYYY-MM" the counter belongs to
    monthly_sms_limit: Mapped[int] = mapped_column(Integer, default=1000)
    sms_sent_this_month: Mapped[int] = mapped_column(Integer, default=0)
    quota_period: Mapped[Optional[str]] = mapped_column(String(7))

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    client: Mapped["Client"] = relationship(back_populates="sms_settings")

    @property
    def is_configured(self) -> bool:
        return bool(self.twilio_phone_number)

    def __repr__(self) -> str:
        return f"<SMSSettings {self.sms_sent_this_month}/{self.monthly_sms_limit}>"
