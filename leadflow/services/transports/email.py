"""
Email transport - SendGrid.
SendGrid's 202 Accepted means "sent"; the SDK is synchronous, so it runs in the thread pool.
"""
import asyncio
import logging
from typing import Optional

from leadflow.services.errors import TransportError
from leadflow.services.transports.base import Transport, TransportReceipt
from leadflow.utils.logging import mask_email

logger = logging.getLogger(__name__)

DEFAULT_SUBJECT = "A message from {business_name}"

_SENDGRID_STATUS_MAP = {
    "processed": "sent",
    "deferred": "sent",
    "delivered": "delivered",
    "open": "read",
    "bounce": "failed",
    "dropped": "failed",
}


class SendGridEmailTransport(Transport):
    provider_name = "sendgrid"

    def __init__(self, settings):
        self._settings = settings

    async def send(
        self,
        to: str,
        body: str,
        sender: Optional[str] = None,
        subject: Optional[str] = None,
    ) -> TransportReceipt:
        if not self._settings.sendgrid_api_key:
            raise TransportError("SendGrid not configured", provider=self.provider_name)

        from sendgrid import SendGridAPIClient
        from sendgrid.helpers.mail import Mail, Email, To, Content

        message = Mail(
            from_email=Email(self._settings.sendgrid_from_email, sender or self._settings.sendgrid_from_name),
            to_emails=To(to),
            subject=subject or DEFAULT_SUBJECT.format(business_name=sender or self._settings.sendgrid_from_name),
        )
        message.content = [Content("text/plain", body)]

        try:
            sg = SendGridAPIClient(api_key=self._settings.sendgrid_api_key)
            loop = asyncio.get_running_loop()
            response = await loop.run_in_executor(None, lambda: sg.send(message))
        except Exception as e:
            logger.warning("Email send failed: to=%s error=%s", mask_email(to), str(e))
            raise TransportError(
                f"SendGrid send failed: {e}",
                provider=self.provider_name,
                error_code=str(getattr(e, "status_code", "") or "") or None,
            ) from e

        message_id = response.headers.get("X-Message-Id") or None
        logger.info("Email sent: to=%s id=%s", mask_email(to), message_id)
        return TransportReceipt(message_id=message_id, status="sent", provider=self.provider_name)

    @staticmethod
    def map_status(provider_status: str) -> Optional[str]:
        return _SENDGRID_STATUS_MAP.get((provider_status or "").lower())
