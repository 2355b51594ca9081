"""
Webhook endpoints - inbound lead messages and provider delivery callbacks.

Security layers (in order):
1. Signature validation (per provider)
2. Provider message-ID dedup (Redis, 30 minutes)
3. Payload processing through the conversation engine

Status callbacks always answer 200. A lead message that fails processing has its
dedup claim released and answers 500, so the provider retry is handled.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.api.webhook_sources import (
    normalize_phone,
    parse_whatsapp_messages,
    parse_whatsapp_statuses,
    phone_variants,
)
from leadflow.config import get_settings
from leadflow.database import get_db
from leadflow.models.client import Client
from leadflow.models.lead import Lead
from leadflow.schemas.api import WebhookAck
from leadflow.schemas.automation import Channel
from leadflow.services.engine import ConversationEngine, get_engine
from leadflow.utils.dedup import is_duplicate_webhook, release_webhook
from leadflow.utils.logging import mask_phone
from leadflow.utils.webhook_signatures import validate_webhook_source

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/webhook", tags=["webhooks"])


async def _validate_signature(
    source: str, request: Request, body: bytes, form_params: dict | None = None,
) -> None:
    """Validate webhook signature and raise 401 if invalid."""
    is_valid = await validate_webhook_source(source, request, body, form_params)
    if not is_valid:
        client_ip = request.client.host if request.client else "unknown"
        logger.warning(
            "Invalid webhook signature: source=%s ip=%s",
            source, client_ip,
        )
        raise HTTPException(status_code=401, detail="Invalid webhook signature")


async def _find_lead(
    db: AsyncSession,
    phone: str,
    client_id: Optional[uuid.UUID] = None,
) -> Optional[Lead]:
    """Most recent lead with this phone (within one client when given)."""
    query = select(Lead).where(Lead.phone.in_(phone_variants(phone)))
    if client_id is not None:
        query = query.where(Lead.client_id == client_id)
    result = await db.execute(query.order_by(Lead.created_at.desc()).limit(1))
    return result.scalar_one_or_none()


@router.post("/twilio/sms/{client_id}", response_model=WebhookAck)
async def twilio_sms_webhook(
    client_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    engine: ConversationEngine = Depends(get_engine),
):
    """
    Twilio inbound SMS webhook - ledgers the lead's reply and raises message_received.
    Twilio sends form-encoded data, not JSON.
    """
    body = await request.body()
    form_data = await request.form()
    form_params = dict(form_data)

    await _validate_signature("twilio", request, body, form_params)

    message_sid = form_data.get("MessageSid", "")
    from_phone = form_data.get("From", "")
    body_text = form_data.get("Body", "")
    if not from_phone or not body_text:
        raise HTTPException(status_code=400, detail="Missing From or Body")

    phone = normalize_phone(from_phone)
    if not phone:
        raise HTTPException(status_code=400, detail="Invalid phone number")

    try:
        client_uuid = uuid.UUID(client_id)
    except ValueError:
        raise HTTPException(status_code=404, detail="Client not found")

    client = await db.get(Client, client_uuid)
    if not client or not client.is_active:
        raise HTTPException(status_code=404, detail="Client not found")

    if await is_duplicate_webhook("twilio", message_sid):
        return WebhookAck(status="duplicate")

    lead = await _find_lead(db, phone, client.id)
    if lead is None:
        logger.info("Inbound SMS from unknown number %s for client %s", mask_phone(phone), client_id[:8])
        return WebhookAck(status="ignored", message="unknown_lead")

    logger.info("Inbound SMS from %s to client %s", mask_phone(phone), client_id[:8])
    try:
        runs = await engine.receive_inbound(
            lead.id, body_text, Channel.SMS.value, message_id=message_sid or None,
        )
    except Exception as e:
        logger.error("Twilio webhook processing error: %s", str(e), exc_info=True)
        await release_webhook("twilio", message_sid)
        raise HTTPException(status_code=500, detail="Internal processing error")

    return WebhookAck(status="accepted", message=f"{len(runs)} automation run(s) started")


@router.post("/twilio/status", response_model=WebhookAck)
async def twilio_status_webhook(
    request: Request,
    engine: ConversationEngine = Depends(get_engine),
):
    """Twilio delivery status callback - move the ledger entry's delivery status forward."""
    body = await request.body()
    form_data = await request.form()
    form_params = dict(form_data)

    await _validate_signature("twilio", request, body, form_params)

    try:
        message_sid = form_data.get("MessageSid", "")
        status = form_data.get("MessageStatus", "")
        if message_sid and status:
            await engine.on_status_update(
                message_sid,
                status,
                channel=Channel.SMS.value,
                error_code=form_data.get("ErrorCode"),
                error_message=form_data.get("ErrorMessage"),
            )
        return WebhookAck()
    except Exception as e:
        logger.error("Twilio status webhook error: %s", str(e), exc_info=True)
        return WebhookAck(status="error")


@router.get("/whatsapp")
async def whatsapp_verify(
    hub_mode: str = Query("", alias="hub.mode"),
    hub_verify_token: str = Query("", alias="hub.verify_token"),
    hub_challenge: str = Query("", alias="hub.challenge"),
):
    """Meta subscription handshake - echo hub.challenge when the verify token matches."""
    settings = get_settings()
    if (
        hub_mode == "subscribe"
        and settings.whatsapp_verify_token
        and hub_verify_token == settings.whatsapp_verify_token
    ):
        logger.info("WhatsApp webhook verified")
        return PlainTextResponse(hub_challenge)
    logger.warning("WhatsApp webhook verification failed (mode=%s)", hub_mode)
    raise HTTPException(status_code=403, detail="Verification failed")


@router.post("/whatsapp", response_model=WebhookAck)
async def whatsapp_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    engine: ConversationEngine = Depends(get_engine),
):
    """
    WhatsApp Cloud API webhook - carries inbound messages and delivery statuses.
    Answers 500 when an inbound message could not be processed, so Meta retries it.
    """
    body = await request.body()
    await _validate_signature("whatsapp", request, body)

    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON")

    processed = 0
    failed = 0
    for update in parse_whatsapp_statuses(payload):
        try:
            await engine.on_status_update(
                update.message_id,
                update.status,
                channel=Channel.WHATSAPP.value,
                error_code=update.error_code,
                error_message=update.error_message,
            )
            processed += 1
        except Exception as e:
            logger.error("WhatsApp status processing error: %s", str(e), exc_info=True)

    for message in parse_whatsapp_messages(payload):
        try:
            if await is_duplicate_webhook("whatsapp", message.message_id):
                continue
            phone = normalize_phone(message.from_phone)
            lead = await _find_lead(db, phone) if phone else None
            if lead is None:
                logger.info("WhatsApp message from unknown number %s", mask_phone(phone or message.from_phone))
                continue
            if not lead.whatsapp_available:
                lead.whatsapp_available = True
                await db.commit()

            received_at = None
            if message.timestamp:
                received_at = datetime.fromtimestamp(message.timestamp, tz=timezone.utc)
            await engine.receive_inbound(
                lead.id,
                message.text,
                Channel.WHATSAPP.value,
                message_id=message.message_id or None,
                received_at=received_at,
            )
            processed += 1
        except Exception as e:
            logger.error("WhatsApp message processing error: %s", str(e), exc_info=True)
            await release_webhook("whatsapp", message.message_id)
            failed += 1

    if failed:
        # Meta redelivers the whole batch; handled messages are deduplicated
        raise HTTPException(status_code=500, detail=f"{failed} message(s) not processed")
    return WebhookAck(message=f"{processed} item(s) processed")
