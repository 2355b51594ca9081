"""
Channel selection - resolves a send request to a concrete transport.

Explicit requests are honored or refused, never silently switched.
"auto" prefers WhatsApp, then SMS, then email.
Pure function of its inputs: no I/O, no side effects.
"""
from typing import Optional, Union

from leadflow.schemas.automation import Channel, RequestedChannel
from leadflow.services.errors import NoChannelAvailable


def _sms_configured(sms_settings) -> bool:
    return bool(sms_settings is not None and sms_settings.is_configured)


def select_channel(
    lead,
    requested: Union[RequestedChannel, str, None],
    sms_settings=None,
) -> Channel:
    """
    Pick the channel for one message to `lead`.
    `sms_settings` is the lead's client SMSSettings row (None when absent).
    Raises NoChannelAvailable when nothing can reach the lead.
    """
    requested = RequestedChannel(requested or RequestedChannel.AUTO)

    if requested == RequestedChannel.WHATSAPP:
        if lead.whatsapp_available:
            return Channel.WHATSAPP
        raise NoChannelAvailable("WhatsApp requested but lead has no WhatsApp")

    if requested == RequestedChannel.SMS:
        if _sms_configured(sms_settings) and lead.phone:
            return Channel.SMS
        raise NoChannelAvailable("SMS requested but no SMS configuration for client")

    if requested == RequestedChannel.EMAIL:
        if lead.email:
            return Channel.EMAIL
        raise NoChannelAvailable("Email requested but lead has no email address")

    if lead.whatsapp_available:
        return Channel.WHATSAPP
    if _sms_configured(sms_settings) and lead.phone:
        return Channel.SMS
    if lead.email:
        return Channel.EMAIL
    raise NoChannelAvailable("No WhatsApp, SMS configuration or email for lead")


def intended_channel(
    lead,
    requested: Union[RequestedChannel, str, None],
) -> Channel:
    """Channel to record on a failed entry when selection itself failed."""
    requested = RequestedChannel(requested or RequestedChannel.AUTO)
    if requested != RequestedChannel.AUTO:
        return Channel(requested.value)
    return Channel.WHATSAPP if lead.whatsapp_available else Channel.SMS


def requested_for_lead(lead, override: Optional[str] = None) -> RequestedChannel:
    """Operator override, else the lead's preferred channel."""
    return RequestedChannel(override or lead.preferred_channel or RequestedChannel.AUTO)
