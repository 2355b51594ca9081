"""
Message rendering for automation steps.
Templates use {name} substitution; unknown placeholders are left as-is.
"""
import logging

logger = logging.getLogger(__name__)

DEFAULT_NAME = "there"
BOOKING_CTA = "\n\nBook your appointment: {url}"


class SafeDict(dict):
    """Dict that returns '{key}' for missing keys instead of raising KeyError."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def render_message(template: str, **kwargs) -> str:
    """Substitute {placeholders}; falls back to plain replacement on malformed braces."""
    try:
        return template.format_map(SafeDict(kwargs))
    except (ValueError, IndexError) as e:
        logger.debug("Template format failed (%s), using plain replacement", str(e))
        text = template
        for key, value in kwargs.items():
            text = text.replace("{" + key + "}", str(value))
        return text


def booking_link(client, booking_base_url: str) -> str:
    if client is not None and client.booking_url:
        return client.booking_url
    client_part = f"/{client.id}" if client is not None else ""
    return f"{booking_base_url.rstrip('/')}{client_part}"


def render_step(step, lead, client, booking_base_url: str) -> str:
    """Final text for one sequence step: {name} resolved, booking CTA appended if asked."""
    name = (lead.name or "").strip() or DEFAULT_NAME
    text = render_message(step.message_text, name=name)
    if step.has_booking_link:
        text += BOOKING_CTA.format(url=booking_link(client, booking_base_url))
    return text
