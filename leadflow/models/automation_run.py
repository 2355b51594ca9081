"""
Automation run - one execution of an automation for one lead.
At most one non-terminal run (pending, running) per (automation_id, lead_id).
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from leadflow.database import Base
from leadflow.schemas.automation import RunState

ACTIVE_RUN_STATES = (RunState.PENDING.value, RunState.RUNNING.value)
TERMINAL_RUN_STATES = (RunState.COMPLETED.value, RunState.CANCELLED.value)


class AutomationRun(Base):
    __tablename__ = "automation_runs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    automation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("automations.id"), nullable=False
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("leads.id"), nullable=False
    )
    client_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("clients.id"), nullable=False
    )

    # Scheduling
    current_step_index: Mapped[int] = mapped_column(Integer, default=0)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    state: Mapped[str] = mapped_column(
        String(20), default="pending"
    )  # pending, running, completed, cancelled
    trigger_event: Mapped[Optional[str]] = mapped_column(String(30))

    # Execution bookkeeping
    last_fired_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    deferral_count: Mapped[int] = mapped_column(Integer, default=0)
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text)

    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_runs_automation_lead_state", "automation_id", "lead_id", "state"),
        Index("ix_runs_lead_id", "lead_id"),
        Index("ix_runs_pending", "state", "scheduled_at"),
    )

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_RUN_STATES

    def __repr__(self) -> str:
        return f"<AutomationRun step={self.current_step_index} state={self.state}>"
