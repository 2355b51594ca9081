"""
Transport registry - one Transport per channel.
"""
from leadflow.schemas.automation import Channel
from leadflow.services.transports.base import Transport, TransportReceipt
from leadflow.services.transports.email import SendGridEmailTransport
from leadflow.services.transports.sms import TwilioSmsTransport
from leadflow.services.transports.whatsapp import WhatsAppCloudTransport


def default_transports(settings) -> dict[Channel, Transport]:
    return {
        Channel.WHATSAPP: WhatsAppCloudTransport(settings),
        Channel.SMS: TwilioSmsTransport(settings),
        Channel.EMAIL: SendGridEmailTransport(settings),
    }


__all__ = [
    "Transport",
    "TransportReceipt",
    "TwilioSmsTransport",
    "WhatsAppCloudTransport",
    "SendGridEmailTransport",
    "default_transports",
]
