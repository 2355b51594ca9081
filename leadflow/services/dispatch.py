"""
Dispatch gateway - the one place that talks to transports.

Sends a message on an already-selected channel and reports a DispatchResult.
It never writes the ledger for a send; the caller ledgers the result. SMS sends
reserve monthly quota first and give it back when the provider rejects the send.
A timed-out send keeps its reservation: the provider call is abandoned, not
stopped, and the message may still go out. Provider status callbacks come back
through on_status_update.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from leadflow.schemas.automation import Channel
from leadflow.services.errors import LimitExceeded, TransportError
from leadflow.services.ledger import ConversationLedger
from leadflow.services.sms_quota import release_sms, reserve_sms
from leadflow.services.transports.base import Transport
from leadflow.utils.logging import mask_email, mask_phone, short_id
from leadflow.utils.timezone import utcnow

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    channel: Channel
    status: str  # sent, failed
    message_id: Optional[str] = None
    provider: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False

    @property
    def ok(self) -> bool:
        return self.status != "failed"


def recipient_for(channel: Channel, lead) -> Optional[str]:
    if channel == Channel.EMAIL:
        return lead.email
    return lead.phone


def _mask_recipient(channel: Channel, recipient: Optional[str]) -> str:
    if channel == Channel.EMAIL:
        return mask_email(recipient or "")
    return mask_phone(recipient or "")


class DispatchGateway:
    def __init__(
        self,
        session_factory: Callable,
        transports: dict[Channel, Transport],
        ledger: ConversationLedger,
        timeout_seconds: float = 15.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._transports = transports
        self._ledger = ledger
        self._timeout = timeout_seconds
        self._clock = clock

    def transport_for(self, channel: Channel) -> Optional[Transport]:
        return self._transports.get(Channel(channel))

    async def send(
        self,
        channel: Channel,
        lead,
        body: str,
        sms_settings=None,
        client=None,
    ) -> DispatchResult:
        """
        Hand one message to the channel's transport.

        Raises LimitExceeded before any provider call when an SMS send would
        exceed the client's monthly allowance. Every other failure (missing
        transport, provider error, timeout) comes back as a failed result.
        """
        channel = Channel(channel)
        transport = self.transport_for(channel)
        recipient = recipient_for(channel, lead)
        if transport is None or not recipient:
            return DispatchResult(
                channel=channel,
                status="failed",
                error=f"No {channel.value} transport or recipient",
                error_code="no_transport" if transport is None else "no_recipient",
            )

        reserved = False
        if channel == Channel.SMS:
            await reserve_sms(self._session_factory, lead.client_id, self._clock())
            reserved = True

        sender = None
        if channel == Channel.SMS and sms_settings is not None:
            sender = sms_settings.twilio_phone_number
        elif channel == Channel.EMAIL:
            sender = (sms_settings.sender_name if sms_settings else None) or (
                client.business_name if client is not None else None
            )

        try:
            receipt = await asyncio.wait_for(
                transport.send(recipient, body, sender=sender),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "%s send timed out after %.1fs for %s, it may still be delivered",
                channel.value, self._timeout, _mask_recipient(channel, recipient),
            )
            return DispatchResult(
                channel=channel,
                status="failed",
                provider=transport.provider_name,
                error=f"Send timed out after {self._timeout:.0f}s",
                error_code="timeout",
            )
        except TransportError as e:
            if reserved:
                await release_sms(self._session_factory, lead.client_id)
            return DispatchResult(
                channel=channel,
                status="failed",
                provider=e.provider or transport.provider_name,
                error=str(e),
                error_code=e.error_code or e.code,
                retryable=e.retryable,
            )

        logger.info(
            "Dispatched %s to %s via %s: %s",
            channel.value, _mask_recipient(channel, recipient),
            receipt.provider or transport.provider_name, (receipt.message_id or "")[:16],
        )
        return DispatchResult(
            channel=channel,
            status="sent",
            message_id=receipt.message_id,
            provider=receipt.provider or transport.provider_name,
        )

    async def on_status_update(
        self,
        message_id: str,
        provider_status: str,
        channel: Optional[Channel] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        lead_id: Optional[uuid.UUID] = None,
    ) -> bool:
        """
        Apply a provider delivery callback to the ledger.
        Unknown message IDs, unknown statuses and backwards moves are no-ops.
        """
        if not message_id:
            return False

        status = self.map_provider_status(provider_status, channel)
        if status is None:
            logger.debug("Ignoring provider status %r for %s", provider_status, message_id[:12])
            return False

        if lead_id is None:
            lead_id = await self._ledger.find_lead_for_message(message_id)
        if lead_id is None:
            logger.warning("Status callback for unknown message %s", message_id[:12])
            return False

        changed = await self._ledger.update_status(
            lead_id, message_id, status,
            error_code=error_code, error_message=error_message,
        )
        if changed and status == "failed":
            logger.warning(
                "Delivery failed: lead=%s message=%s code=%s",
                short_id(lead_id), message_id[:12], error_code,
            )
        return changed

    def map_provider_status(
        self,
        provider_status: str,
        channel: Optional[Channel] = None,
    ) -> Optional[str]:
        if channel is not None:
            transport = self.transport_for(channel)
            return transport.map_status(provider_status) if transport else None
        for transport in self._transports.values():
            status = transport.map_status(provider_status)
            if status is not None:
                return status
        return None
