"""
Conversation engine - wires ledger, gateway, triggers and scheduler together.

The HTTP layer and the background workers only talk to this facade.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from leadflow.models.automation_run import AutomationRun
from leadflow.models.conversation import ConversationMessage
from leadflow.models.lead import OUT_OF_FUNNEL_STATUSES
from leadflow.schemas.automation import RequestedChannel
from leadflow.schemas.events import MessageReceivedEvent, StatusChangeEvent
from leadflow.services.business_hours import BusinessHours
from leadflow.services.dispatch import DispatchGateway
from leadflow.services.ledger import ConversationLedger, MessageDraft
from leadflow.services.messaging import DeliveryOutcome, Messenger, load_lead_context
from leadflow.services.scheduler import SequenceScheduler
from leadflow.services.templates import DEFAULT_NAME, render_message
from leadflow.services.transports import default_transports
from leadflow.services.triggers import AnyEvent, ScheduledCondition, TriggerEvaluator
from leadflow.utils.logging import short_id
from leadflow.utils.timezone import as_utc, utcnow

logger = logging.getLogger(__name__)

_engine = None


class ConversationEngine:
    def __init__(
        self,
        session_factory: Callable,
        settings,
        transports: Optional[dict] = None,
        clock: Callable[[], datetime] = utcnow,
        scheduled_condition: Optional[ScheduledCondition] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.clock = clock
        self.ledger = ConversationLedger(session_factory, clock=clock)
        self.gateway = DispatchGateway(
            session_factory,
            transports if transports is not None else default_transports(settings),
            self.ledger,
            timeout_seconds=settings.dispatch_timeout_seconds,
            clock=clock,
        )
        self.messenger = Messenger(session_factory, self.ledger, self.gateway)
        self.triggers = TriggerEvaluator(
            session_factory,
            scheduled_condition=scheduled_condition,
            default_idle_minutes=settings.scheduled_idle_minutes_default,
            clock=clock,
        )
        self.scheduler = SequenceScheduler(session_factory, self.messenger, settings, clock=clock)

    async def handle_event(self, event: AnyEvent) -> list[AutomationRun]:
        """Evaluate triggers for one domain event and start a run per match."""
        if isinstance(event, StatusChangeEvent) and event.new_status in OUT_OF_FUNNEL_STATUSES:
            cancelled = await self.scheduler.cancel_runs_for_lead(
                event.lead_id, f"lead_{event.new_status}"
            )
            if cancelled:
                logger.info("Lead %s is %s: cancelled %d run(s)", short_id(event.lead_id), event.new_status, cancelled)

        runs = []
        for automation in await self.triggers.evaluate(event):
            run = await self.scheduler.start_run(
                automation, event.lead_id, trigger_event=event.event_type,
            )
            if run is not None:
                runs.append(run)
        return runs

    async def send_operator_message(
        self,
        lead_id: uuid.UUID,
        message: str,
        channel: Optional[str] = None,
    ) -> DeliveryOutcome:
        """Operator reply: same selector → gateway → ledger path as automations."""
        requested = None if channel in (None, RequestedChannel.AUTO, "auto") else channel
        return await self.messenger.deliver(lead_id, message, requested=requested, origin="operator")

    async def receive_inbound(
        self,
        lead_id: uuid.UUID,
        text: str,
        channel: str,
        message_id: Optional[str] = None,
        received_at: Optional[datetime] = None,
    ) -> list[AutomationRun]:
        """
        Ledger a message from the lead, answer it out of hours when configured,
        then raise message_received for keyword triggers.
        """
        received_at = as_utc(received_at) or self.clock()
        await self.ledger.append(
            lead_id,
            MessageDraft(
                sender="lead",
                message=text,
                channel=channel,
                delivery_status="delivered",
                message_id=message_id,
                origin="inbound",
                timestamp=received_at,
            ),
        )
        await self.maybe_auto_reply(lead_id, channel, received_at)
        return await self.handle_event(
            MessageReceivedEvent(lead_id=lead_id, text=text, channel=channel, occurred_at=received_at)
        )

    async def maybe_auto_reply(
        self,
        lead_id: uuid.UUID,
        channel: str,
        now: Optional[datetime] = None,
    ) -> Optional[ConversationMessage]:
        """Out-of-hours auto-reply, at most once per cooldown window per lead."""
        now = as_utc(now) or self.clock()
        context = await load_lead_context(self.session_factory, lead_id)
        if context is None:
            return None
        sms_settings = context.sms_settings
        if sms_settings is None or not sms_settings.auto_reply_enabled or not sms_settings.out_of_hours_message:
            return None

        hours = BusinessHours.for_client(context.client, sms_settings, self.settings)
        if hours.is_open(now):
            return None

        last = await self.ledger.latest(lead_id, origin="auto_reply")
        cooldown = timedelta(minutes=self.settings.auto_reply_cooldown_minutes)
        if last is not None and now - as_utc(last.timestamp) < cooldown:
            logger.debug("Auto-reply for lead %s suppressed (cooldown)", short_id(lead_id))
            return None

        name = (context.lead.name or "").strip() or DEFAULT_NAME
        outcome = await self.messenger.deliver(
            lead_id,
            render_message(sms_settings.out_of_hours_message, name=name),
            requested=channel,
            origin="auto_reply",
            context=context,
        )
        return outcome.entry

    async def on_status_update(
        self,
        message_id: str,
        provider_status: str,
        channel: Optional[str] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        return await self.gateway.on_status_update(
            message_id, provider_status,
            channel=channel, error_code=error_code, error_message=error_message,
        )

    async def read_conversation(self, lead_id: uuid.UUID) -> list[ConversationMessage]:
        return await self.ledger.read(lead_id)


def build_engine(transports: Optional[dict] = None) -> ConversationEngine:
    from leadflow.config import get_settings
    from leadflow.database import get_session_factory
    return ConversationEngine(get_session_factory(), get_settings(), transports=transports)


def get_engine() -> ConversationEngine:
    """Process-wide engine (FastAPI dependency and workers)."""
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


def set_engine(engine: Optional[ConversationEngine]) -> None:
    global _engine
    _engine = engine
