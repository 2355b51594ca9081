"""
SMS transport - Twilio.
Enforces message length, classifies carrier errors, and maps Twilio statuses.

Carrier errors are classified (invalid, opt_out, landline, transient); only
transient and unclassified failures are marked retryable. Nothing is retried here.
"""
import asyncio
import logging
import math
from typing import Optional

from leadflow.services.errors import TransportError
from leadflow.services.transports.base import Transport, TransportReceipt
from leadflow.utils.logging import mask_phone

logger = logging.getLogger(__name__)

# SMS segment limits
GSM_SINGLE_SEGMENT = 160
GSM_MULTI_SEGMENT = 153
UCS2_SINGLE_SEGMENT = 70
UCS2_MULTI_SEGMENT = 67

# Maximum segments allowed (hard cap at 3)
MAX_SEGMENTS = 3
MAX_GSM_CHARS = GSM_MULTI_SEGMENT * MAX_SEGMENTS  # 459
MAX_UCS2_CHARS = UCS2_MULTI_SEGMENT * MAX_SEGMENTS  # 201

# Twilio error code -> failure class
ERROR_CLASSES = {
    "21211": "invalid",    # invalid To number
    "21612": "invalid",    # To number cannot receive SMS
    "21610": "opt_out",    # carrier-level unsubscribe
    "30006": "landline",
    "30007": "transient",  # carrier filtering
    "30008": "transient",
    "30009": "transient",  # missing segment
    "30010": "transient",  # price above max
}
RETRYABLE_CLASSES = frozenset({"transient", "unknown"})

TWILIO_CLIENT_TIMEOUT = 10

_TWILIO_STATUS_MAP = {
    "accepted": "sent",
    "scheduled": "sent",
    "queued": "sent",
    "sending": "sent",
    "sent": "sent",
    "delivered": "delivered",
    "read": "read",
    "undelivered": "failed",
    "failed": "failed",
    "canceled": "failed",
}

# GSM-7 basic character set (for encoding detection)
_GSM7_BASIC = set(
    "@£$¥èéùìòÇ\nØø\rÅåΔ_ΦΓΛΩΠΨΣΘΞ ÆæßÉ"
    " !\"#¤%&'()*+,-./0123456789:;<=>?"
    "¡ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    "ÄÖÑÜabcdefghijklmnopqrstuvwxyz"
    "äöñüà§"
)

_GSM7_EXTENDED = set("^{}\\[~]|€")


def is_gsm7(message: str) -> bool:
    """Check if message can be encoded as GSM-7."""
    return all(c in _GSM7_BASIC or c in _GSM7_EXTENDED for c in message)


def count_segments(message: str) -> int:
    """Count SMS segments accounting for GSM-7 vs UCS-2 encoding."""
    if is_gsm7(message):
        length = sum(2 if c in _GSM7_EXTENDED else 1 for c in message)
        if length <= GSM_SINGLE_SEGMENT:
            return 1
        return math.ceil(length / GSM_MULTI_SEGMENT)
    if len(message) <= UCS2_SINGLE_SEGMENT:
        return 1
    return math.ceil(len(message) / UCS2_MULTI_SEGMENT)


def enforce_message_length(message: str) -> tuple[str, int, str]:
    """
    Enforce message length limits (max 3 segments).
    Returns: (message, segment_count, encoding)
    """
    encoding = "gsm7" if is_gsm7(message) else "ucs2"
    segments = count_segments(message)

    if segments <= MAX_SEGMENTS:
        return message, segments, encoding

    max_len = (MAX_GSM_CHARS if encoding == "gsm7" else MAX_UCS2_CHARS) - 3
    truncated = message[:max_len] + "..."

    new_segments = count_segments(truncated)
    logger.warning(
        "Message truncated from %d to %d segments (%s encoding)",
        segments, new_segments, encoding,
    )
    return truncated, new_segments, encoding


def classify_error(error_code: Optional[str]) -> str:
    """invalid, opt_out, landline, transient or unknown."""
    return ERROR_CLASSES.get(str(error_code), "unknown") if error_code else "unknown"


def _extract_error_code(error: Exception) -> Optional[str]:
    """TwilioRestException carries .code; otherwise look for a known code in the text."""
    code = getattr(error, "code", None)
    if code is not None:
        return str(code)
    text = str(error)
    return next((known for known in ERROR_CLASSES if known in text), None)


async def _run_sync(func, *args, **kwargs):
    """Run a synchronous function in the thread pool to avoid blocking the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: func(*args, **kwargs))


class TwilioSmsTransport(Transport):
    provider_name = "twilio"

    def __init__(self, settings):
        self._settings = settings
        self._client = None

    def _get_client(self):
        """Twilio REST client with a bounded HTTP timeout (cached per transport)."""
        if self._client is None:
            from twilio.rest import Client as TwilioClient
            from twilio.http.http_client import TwilioHttpClient
            self._client = TwilioClient(
                self._settings.twilio_account_sid,
                self._settings.twilio_auth_token,
                http_client=TwilioHttpClient(timeout=TWILIO_CLIENT_TIMEOUT),
            )
        return self._client

    async def send(
        self,
        to: str,
        body: str,
        sender: Optional[str] = None,
        subject: Optional[str] = None,
    ) -> TransportReceipt:
        if not self._settings.twilio_account_sid or not self._settings.twilio_auth_token:
            raise TransportError("Twilio credentials not configured", provider=self.provider_name)

        body, segments, encoding = enforce_message_length(body)
        kwargs = {"to": to, "body": body}
        if self._settings.twilio_messaging_service_sid:
            kwargs["messaging_service_sid"] = self._settings.twilio_messaging_service_sid
        elif sender:
            kwargs["from_"] = sender
        else:
            raise TransportError("No sending number configured", provider=self.provider_name)

        try:
            message = await _run_sync(self._get_client().messages.create, **kwargs)
        except Exception as e:
            error_code = _extract_error_code(e)
            error_class = classify_error(error_code)
            logger.warning(
                "Twilio send failed for %s: code=%s class=%s",
                mask_phone(to), error_code, error_class,
            )
            raise TransportError(
                f"Twilio send failed ({error_class}): {e}",
                provider=self.provider_name,
                error_code=error_code,
                retryable=error_class in RETRYABLE_CLASSES,
            ) from e

        logger.info(
            "SMS sent via Twilio to %s (%d segments, %s): %s",
            mask_phone(to), segments, encoding, message.sid,
        )
        return TransportReceipt(
            message_id=message.sid,
            status="sent",
            provider=self.provider_name,
            segments=segments,
        )

    @staticmethod
    def map_status(provider_status: str) -> Optional[str]:
        return _TWILIO_STATUS_MAP.get((provider_status or "").lower())
