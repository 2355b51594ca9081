"""
Conversation ledger - the append-only, per-lead message log.

Shared by the automation engine and the operator UI. Appends for one lead are
serialized by a per-lead lock and numbered with a per-lead `sequence`; reads
return entries in sequence order. Delivery status only moves forward:

    pending → sent → delivered → read
    failed is reachable from any non-terminal state (pending, sent, delivered)
    read and failed are terminal
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select

from leadflow.models.conversation import ConversationMessage
from leadflow.models.lead import Lead
from leadflow.schemas.automation import DeliveryStatus
from leadflow.services.errors import LedgerError
from leadflow.utils.locks import KeyedLocks
from leadflow.utils.logging import short_id
from leadflow.utils.timezone import as_utc, utcnow

logger = logging.getLogger(__name__)

STATUS_RANK = {
    DeliveryStatus.PENDING.value: 0,
    DeliveryStatus.SENT.value: 1,
    DeliveryStatus.DELIVERED.value: 2,
    DeliveryStatus.READ.value: 3,
}
TERMINAL_STATUSES = frozenset({DeliveryStatus.READ.value, DeliveryStatus.FAILED.value})
DELIVERY_STATUSES = frozenset(status.value for status in DeliveryStatus)


def can_transition(current: str, new: str) -> bool:
    """Whether a ledger entry may move from `current` to `new`."""
    if new not in DELIVERY_STATUSES or current == new:
        return False
    if current in TERMINAL_STATUSES:
        return False
    if new == "failed":
        return True
    return STATUS_RANK[new] > STATUS_RANK.get(current, -1)


@dataclass
class MessageDraft:
    """Content of a ledger entry before it is appended."""
    sender: str  # system, lead
    message: str
    channel: str  # whatsapp, sms, email
    delivery_status: str = "pending"
    message_id: Optional[str] = None
    origin: str = "operator"
    automation_id: Optional[uuid.UUID] = None
    run_id: Optional[uuid.UUID] = None
    step_index: Optional[int] = None
    provider: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    timestamp: Optional[datetime] = None


class ConversationLedger:
    """Single owner of every lead's conversation history."""

    def __init__(
        self,
        session_factory: Callable,
        locks: Optional[KeyedLocks] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._locks = locks or KeyedLocks("ledger")
        self._clock = clock

    async def append(self, lead_id: uuid.UUID, draft: MessageDraft) -> ConversationMessage:
        """
        Append one entry to a lead's history.
        Timestamps never go backwards within a lead's ledger: an entry created
        "earlier" than the current tail is stamped with the tail's timestamp.
        """
        if draft.delivery_status not in DELIVERY_STATUSES:
            raise LedgerError(f"Unknown delivery status: {draft.delivery_status}")

        async with self._locks.hold(lead_id):
            async with self._session_factory() as db:
                lead = await db.get(Lead, lead_id)
                if lead is None:
                    raise LedgerError(f"Lead {short_id(lead_id)} not found")

                result = await db.execute(
                    select(ConversationMessage)
                    .where(ConversationMessage.lead_id == lead_id)
                    .order_by(ConversationMessage.sequence.desc())
                    .limit(1)
                )
                tail = result.scalar_one_or_none()

                timestamp = as_utc(draft.timestamp) or self._clock()
                if tail is not None and as_utc(tail.timestamp) > timestamp:
                    timestamp = as_utc(tail.timestamp)

                entry = ConversationMessage(
                    lead_id=lead_id,
                    client_id=lead.client_id,
                    sequence=(tail.sequence if tail else 0) + 1,
                    sender=draft.sender,
                    message=draft.message,
                    channel=draft.channel,
                    timestamp=timestamp,
                    origin=draft.origin,
                    automation_id=draft.automation_id,
                    run_id=draft.run_id,
                    step_index=draft.step_index,
                    delivery_status=draft.delivery_status,
                    message_id=draft.message_id,
                    provider=draft.provider,
                    error_code=draft.error_code,
                    error_message=draft.error_message,
                )
                db.add(entry)

                if draft.sender == "system" and draft.delivery_status != "failed":
                    lead.last_message_sent = timestamp

                await db.commit()

        logger.info(
            "Ledger append: lead=%s seq=%d %s/%s status=%s",
            short_id(lead_id), entry.sequence, entry.sender, entry.channel, entry.delivery_status,
        )
        return entry

    async def update_status(
        self,
        lead_id: uuid.UUID,
        message_id: str,
        status: str,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        """
        Move an entry's delivery_status forward. Unknown message IDs and
        backwards transitions are no-ops (logged), not errors.
        Returns True when the entry changed.
        """
        async with self._locks.hold(lead_id):
            async with self._session_factory() as db:
                result = await db.execute(
                    select(ConversationMessage).where(
                        ConversationMessage.lead_id == lead_id,
                        ConversationMessage.message_id == message_id,
                    )
                )
                entry = result.scalars().first()
                if entry is None:
                    logger.warning(
                        "Status update for unknown message %s (lead=%s) ignored",
                        message_id[:12], short_id(lead_id),
                    )
                    return False

                if not can_transition(entry.delivery_status, status):
                    logger.debug(
                        "Status update %s → %s ignored for message %s",
                        entry.delivery_status, status, message_id[:12],
                    )
                    return False

                now = self._clock()
                entry.delivery_status = status
                if status == "delivered":
                    entry.delivered_at = now
                elif status == "read":
                    entry.read_at = now
                    if entry.delivered_at is None:
                        entry.delivered_at = now
                elif status == "failed":
                    entry.error_code = error_code or entry.error_code
                    entry.error_message = error_message or entry.error_message
                await db.commit()

        logger.info("Message %s status: %s", message_id[:12], status)
        return True

    async def find_lead_for_message(self, message_id: str) -> Optional[uuid.UUID]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(ConversationMessage.lead_id)
                .where(ConversationMessage.message_id == message_id)
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def read(self, lead_id: uuid.UUID) -> list[ConversationMessage]:
        """All entries for a lead, in append order."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(ConversationMessage)
                .where(ConversationMessage.lead_id == lead_id)
                .order_by(ConversationMessage.sequence)
            )
            return list(result.scalars().all())

    async def latest(
        self,
        lead_id: uuid.UUID,
        origin: Optional[str] = None,
    ) -> Optional[ConversationMessage]:
        """Most recent entry for a lead, optionally restricted to one origin."""
        async with self._session_factory() as db:
            query = select(ConversationMessage).where(ConversationMessage.lead_id == lead_id)
            if origin:
                query = query.where(ConversationMessage.origin == origin)
            result = await db.execute(
                query.order_by(ConversationMessage.sequence.desc()).limit(1)
            )
            return result.scalar_one_or_none()
