"""
Engine endpoints - event ingress, conversation ledger, operator sends and runs.
"""
import logging
import uuid

from fastapi import APIRouter, Body, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.database import get_db
from leadflow.models.automation_run import AutomationRun
from leadflow.models.lead import Lead
from leadflow.schemas.api import (
    ConversationResponse,
    EventAccepted,
    LedgerEntry,
    RunListResponse,
    RunSummary,
    SendMessageRequest,
    SendMessageResponse,
)
from leadflow.schemas.events import DomainEvent
from leadflow.services.engine import ConversationEngine, get_engine
from leadflow.utils.logging import short_id

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1", tags=["engine"])


def _entry(message) -> LedgerEntry:
    return LedgerEntry(
        sequence=message.sequence,
        sender=message.sender,
        message=message.message,
        channel=message.channel,
        timestamp=message.timestamp,
        delivery_status=message.delivery_status,
        message_id=message.message_id,
        origin=message.origin,
        error_message=message.error_message,
    )


def _run_summary(run: AutomationRun) -> RunSummary:
    return RunSummary(
        id=str(run.id),
        automation_id=str(run.automation_id),
        state=run.state,
        current_step_index=run.current_step_index,
        scheduled_at=run.scheduled_at,
        cancel_reason=run.cancel_reason,
    )


async def _require_lead(db: AsyncSession, lead_id: str) -> Lead:
    try:
        lead_uuid = uuid.UUID(lead_id)
    except ValueError:
        raise HTTPException(status_code=404, detail="Lead not found")
    lead = await db.get(Lead, lead_uuid)
    if lead is None:
        raise HTTPException(status_code=404, detail="Lead not found")
    return lead


@router.post("/events", response_model=EventAccepted)
async def ingest_event(
    event: DomainEvent = Body(...),
    db: AsyncSession = Depends(get_db),
    engine: ConversationEngine = Depends(get_engine),
):
    """Event source ingress. Returns the automation runs this event started."""
    await _require_lead(db, str(event.lead_id))
    runs = await engine.handle_event(event)
    logger.info(
        "Event %s for lead %s: %d run(s) started",
        event.event_type, short_id(event.lead_id), len(runs),
    )
    return EventAccepted(event_type=event.event_type, runs_started=[str(run.id) for run in runs])


@router.get("/leads/{lead_id}/conversation", response_model=ConversationResponse)
async def get_conversation(
    lead_id: str,
    db: AsyncSession = Depends(get_db),
    engine: ConversationEngine = Depends(get_engine),
):
    lead = await _require_lead(db, lead_id)
    messages = await engine.read_conversation(lead.id)
    return ConversationResponse(lead_id=str(lead.id), messages=[_entry(m) for m in messages])


@router.post("/leads/{lead_id}/messages", response_model=SendMessageResponse)
async def send_message(
    lead_id: str,
    payload: SendMessageRequest,
    db: AsyncSession = Depends(get_db),
    engine: ConversationEngine = Depends(get_engine),
):
    """
    Operator send. A failed send is still ledgered and returned with its error
    so the operator sees it in the conversation.
    """
    lead = await _require_lead(db, lead_id)
    outcome = await engine.send_operator_message(lead.id, payload.message, payload.channel.value)
    return SendMessageResponse(entry=_entry(outcome.entry), error=outcome.error)


@router.get("/leads/{lead_id}/runs", response_model=RunListResponse)
async def list_runs(
    lead_id: str,
    db: AsyncSession = Depends(get_db),
    engine: ConversationEngine = Depends(get_engine),
):
    lead = await _require_lead(db, lead_id)
    runs = await engine.scheduler.runs_for_lead(lead.id)
    return RunListResponse(lead_id=str(lead.id), runs=[_run_summary(run) for run in runs])


@router.post("/runs/{run_id}/cancel", response_model=RunSummary)
async def cancel_run(
    run_id: str,
    db: AsyncSession = Depends(get_db),
    engine: ConversationEngine = Depends(get_engine),
):
    try:
        run_uuid = uuid.UUID(run_id)
    except ValueError:
        raise HTTPException(status_code=404, detail="Run not found")

    if await db.get(AutomationRun, run_uuid) is None:
        raise HTTPException(status_code=404, detail="Run not found")

    cancelled = await engine.scheduler.cancel_run(run_uuid, reason="operator")
    if not cancelled:
        raise HTTPException(status_code=409, detail="Run is not active")

    db.expire_all()
    run = await db.get(AutomationRun, run_uuid)
    return _run_summary(run)
