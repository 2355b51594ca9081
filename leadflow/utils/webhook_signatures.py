"""
Provider callback authentication.

twilio    X-Twilio-Signature, HMAC-SHA1 over public URL + sorted form params
whatsapp  X-Hub-Signature-256, HMAC-SHA256 over the raw body keyed by the app secret

A provider without a configured secret is accepted outside production and
rejected in production unless ALLOW_UNSIGNED_WEBHOOKS is set.
"""
import hashlib
import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)

SHA256_PREFIX = "sha256="


def validate_twilio_signature(auth_token: str, signature: Optional[str], url: str, params: dict) -> bool:
    if not signature:
        logger.warning("Twilio callback without X-Twilio-Signature")
        return False
    from twilio.request_validator import RequestValidator
    try:
        return RequestValidator(auth_token).validate(url, params, signature)
    except (TypeError, ValueError) as e:
        logger.error("Twilio signature check failed: %s", str(e))
        return False


def validate_hmac_sha256(secret: str, signature: Optional[str], body: bytes) -> bool:
    """Meta-style body signature; the "sha256=" prefix is optional."""
    if not secret or not signature:
        return False
    received = signature[len(SHA256_PREFIX):] if signature.startswith(SHA256_PREFIX) else signature
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(digest, received.lower())


async def get_webhook_url(request) -> str:
    """
    The URL Twilio signed. Behind a proxy that is the public one, so
    X-Forwarded-Proto / X-Forwarded-Host take precedence over the Host header.
    """
    headers = request.headers
    scheme = headers.get("x-forwarded-proto", "https")
    host = headers.get("x-forwarded-host") or headers.get("host", "")
    url = f"{scheme}://{host}{request.url.path}"
    return f"{url}?{request.url.query}" if request.url.query else url


async def _check_twilio(settings, request, body: bytes, form_params: Optional[dict]) -> bool:
    return validate_twilio_signature(
        settings.twilio_auth_token,
        request.headers.get("X-Twilio-Signature", ""),
        await get_webhook_url(request),
        form_params or {},
    )


async def _check_whatsapp(settings, request, body: bytes, form_params: Optional[dict]) -> bool:
    return validate_hmac_sha256(
        settings.whatsapp_app_secret,
        request.headers.get("X-Hub-Signature-256", ""),
        body,
    )


# source -> (settings attribute holding the secret, env var name, checker)
_PROVIDERS = {
    "twilio": ("twilio_auth_token", "TWILIO_AUTH_TOKEN", _check_twilio),
    "whatsapp": ("whatsapp_app_secret", "WHATSAPP_APP_SECRET", _check_whatsapp),
}


async def validate_webhook_source(
    source: str,
    request,
    body: bytes,
    form_params: Optional[dict] = None,
) -> bool:
    from leadflow.config import get_settings
    settings = get_settings()

    provider = _PROVIDERS.get(source)
    if provider is None:
        logger.error("Rejecting webhook from unknown source %r", source)
        return False

    secret_attr, env_name, check = provider
    if getattr(settings, secret_attr):
        return await check(settings, request, body, form_params)

    if settings.app_env == "production" and not settings.allow_unsigned_webhooks:
        logger.error("%s is not set in production - rejecting %s webhook", env_name, source)
        return False
    logger.warning("%s is not set - %s webhook accepted unverified", env_name, source)
    return True
