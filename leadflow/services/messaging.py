"""
Messenger - select a channel, dispatch, and ledger the outcome.

Every outbound message, whether an automation step, an operator reply or an
auto-reply, goes through deliver(). Exactly one ledger entry is appended per
call, including when no channel exists or the SMS quota is exhausted.
"""
import logging
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy import select

from leadflow.models.client import Client
from leadflow.models.lead import Lead
from leadflow.models.sms_settings import SMSSettings
from leadflow.models.conversation import ConversationMessage
from leadflow.services.audit import record_event
from leadflow.services.channels import intended_channel, requested_for_lead, select_channel
from leadflow.services.dispatch import DispatchGateway, DispatchResult
from leadflow.services.errors import LedgerError, LimitExceeded, NoChannelAvailable
from leadflow.services.ledger import ConversationLedger, MessageDraft
from leadflow.utils.logging import short_id

logger = logging.getLogger(__name__)


@dataclass
class LeadContext:
    """Detached snapshot of a lead with its client and SMS configuration."""
    lead: Lead
    client: Optional[Client]
    sms_settings: Optional[SMSSettings]


@dataclass
class DeliveryOutcome:
    entry: ConversationMessage
    error: Optional[str] = None
    # Provider marked the failure transient; nothing resends automatically
    retryable: bool = False

    @property
    def ok(self) -> bool:
        return self.entry.delivery_status != "failed"


async def load_lead_context(session_factory: Callable, lead_id: uuid.UUID) -> Optional[LeadContext]:
    async with session_factory() as db:
        lead = await db.get(Lead, lead_id)
        if lead is None:
            return None
        client = await db.get(Client, lead.client_id)
        result = await db.execute(
            select(SMSSettings).where(SMSSettings.client_id == lead.client_id)
        )
        sms_settings = result.scalar_one_or_none()
        return LeadContext(lead=lead, client=client, sms_settings=sms_settings)


class Messenger:
    def __init__(
        self,
        session_factory: Callable,
        ledger: ConversationLedger,
        gateway: DispatchGateway,
    ):
        self._session_factory = session_factory
        self._ledger = ledger
        self._gateway = gateway

    async def deliver(
        self,
        lead_id: uuid.UUID,
        body: str,
        requested: Optional[str] = None,
        origin: str = "operator",
        automation_id: Optional[uuid.UUID] = None,
        run_id: Optional[uuid.UUID] = None,
        step_index: Optional[int] = None,
        context: Optional[LeadContext] = None,
    ) -> DeliveryOutcome:
        """
        Send `body` to a lead and record it.
        `requested` overrides the lead's preferred channel ("auto" when neither is set).
        Raises LedgerError only when the lead does not exist.
        """
        if context is None:
            context = await load_lead_context(self._session_factory, lead_id)
        if context is None:
            raise LedgerError(f"Lead {short_id(lead_id)} not found")

        lead = context.lead
        requested_channel = requested_for_lead(lead, requested)
        draft = MessageDraft(
            sender="system",
            message=body,
            channel=intended_channel(lead, requested_channel).value,
            origin=origin,
            automation_id=automation_id,
            run_id=run_id,
            step_index=step_index,
        )

        try:
            channel = select_channel(lead, requested_channel, context.sms_settings)
        except NoChannelAvailable as e:
            return await self._record_failure(lead, draft, e.code, str(e))

        draft.channel = channel.value
        try:
            result = await self._gateway.send(
                channel, lead, body,
                sms_settings=context.sms_settings,
                client=context.client,
            )
        except LimitExceeded as e:
            return await self._record_failure(lead, draft, e.code, str(e))

        return await self._record_result(lead, draft, result)

    async def _record_result(
        self,
        lead: Lead,
        draft: MessageDraft,
        result: DispatchResult,
    ) -> DeliveryOutcome:
        if not result.ok:
            draft.provider = result.provider
            return await self._record_failure(
                lead, draft, result.error_code, result.error, retryable=result.retryable,
            )

        draft.delivery_status = result.status
        draft.message_id = result.message_id
        draft.provider = result.provider
        entry = await self._ledger.append(lead.id, draft)
        return DeliveryOutcome(entry=entry)

    async def _record_failure(
        self,
        lead: Lead,
        draft: MessageDraft,
        error_code: Optional[str],
        error: Optional[str],
        retryable: bool = False,
    ) -> DeliveryOutcome:
        draft.delivery_status = "failed"
        draft.error_code = error_code
        draft.error_message = error
        entry = await self._ledger.append(lead.id, draft)

        logger.warning(
            "Send to lead %s failed on %s (retryable=%s): %s",
            short_id(lead.id), draft.channel, retryable, error,
        )
        await record_event(
            self._session_factory,
            "send_failed",
            lead_id=lead.id,
            client_id=lead.client_id,
            status="failure",
            message=error,
            error_code=error_code,
            data={
                "channel": draft.channel,
                "origin": draft.origin,
                "run_id": str(draft.run_id) if draft.run_id else None,
                "step_index": draft.step_index,
                "retryable": retryable,
            },
        )
        return DeliveryOutcome(entry=entry, error=error, retryable=retryable)
