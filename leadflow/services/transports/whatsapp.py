"""
WhatsApp transport - Meta WhatsApp Cloud API over httpx.
Acceptance by the API means "sent"; delivered/read only arrive via status webhooks.
"""
import logging
from typing import Optional

import httpx

from leadflow.services.errors import TransportError
from leadflow.services.transports.base import Transport, TransportReceipt
from leadflow.utils.logging import mask_phone

logger = logging.getLogger(__name__)

WHATSAPP_HTTP_TIMEOUT = 10.0
MAX_TEXT_LENGTH = 4096

_WHATSAPP_STATUS_MAP = {
    "sent": "sent",
    "delivered": "delivered",
    "read": "read",
    "failed": "failed",
}


def _normalize_recipient(phone: str) -> str:
    """Cloud API wants digits only, no leading '+'."""
    return "".join(ch for ch in phone if ch.isdigit())


class WhatsAppCloudTransport(Transport):
    provider_name = "whatsapp_cloud"

    def __init__(self, settings, http_client: Optional[httpx.AsyncClient] = None):
        self._settings = settings
        self._http_client = http_client

    async def _post(self, url: str, payload: dict) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {self._settings.whatsapp_access_token}",
            "Content-Type": "application/json",
        }
        if self._http_client is not None:
            return await self._http_client.post(url, headers=headers, json=payload)
        async with httpx.AsyncClient(timeout=WHATSAPP_HTTP_TIMEOUT) as client:
            return await client.post(url, headers=headers, json=payload)

    async def send(
        self,
        to: str,
        body: str,
        sender: Optional[str] = None,
        subject: Optional[str] = None,
    ) -> TransportReceipt:
        if not self._settings.whatsapp_access_token or not self._settings.whatsapp_phone_number_id:
            raise TransportError("WhatsApp Cloud API not configured", provider=self.provider_name)

        url = (
            f"{self._settings.whatsapp_api_base_url.rstrip('/')}/"
            f"{self._settings.whatsapp_phone_number_id}/messages"
        )
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": _normalize_recipient(to),
            "type": "text",
            "text": {"preview_url": True, "body": body[:MAX_TEXT_LENGTH]},
        }

        try:
            response = await self._post(url, payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            error = {}
            try:
                error = e.response.json().get("error", {})
            except ValueError:
                pass
            error_code = str(error.get("code")) if error.get("code") is not None else None
            logger.warning(
                "WhatsApp send failed for %s: status=%d code=%s",
                mask_phone(to), e.response.status_code, error_code,
            )
            raise TransportError(
                f"WhatsApp API error {e.response.status_code}: {error.get('message', str(e))}",
                provider=self.provider_name,
                error_code=error_code,
                retryable=e.response.status_code >= 500 or e.response.status_code == 429,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("WhatsApp transport error for %s: %s", mask_phone(to), str(e))
            raise TransportError(
                f"WhatsApp transport error: {e}",
                provider=self.provider_name,
                retryable=True,
            ) from e

        messages = data.get("messages") or []
        message_id = messages[0].get("id") if messages else None
        if not message_id:
            raise TransportError("WhatsApp API returned no message id", provider=self.provider_name)

        logger.info("WhatsApp sent to %s: %s", mask_phone(to), message_id[:16])
        return TransportReceipt(message_id=message_id, status="sent", provider=self.provider_name)

    @staticmethod
    def map_status(provider_status: str) -> Optional[str]:
        return _WHATSAPP_STATUS_MAP.get((provider_status or "").lower())
