"""
Redis helpers: provider webhook dedup and worker heartbeats.

Providers retry callbacks, so an inbound message ID is claimed with SET NX for
30 minutes; a second claim means the message was already handled. A claim is
released when processing fails, so the provider retry goes through.
"""
import hashlib
import logging
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

DEDUP_WINDOW_SECONDS = 1800
HEARTBEAT_TTL_SECONDS = 300
HEARTBEAT_KEY = "leadflow:worker_health:{name}"

_redis_client = None


async def get_redis():
    """Shared redis.asyncio client, created on first use."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        from leadflow.config import get_settings
        _redis_client = aioredis.from_url(get_settings().redis_url, decode_responses=True)
    return _redis_client


def make_dedup_key(provider: str, provider_message_id: str) -> str:
    digest = hashlib.sha256(f"{provider}:{provider_message_id}".encode()).hexdigest()
    return f"leadflow:dedup:{digest[:16]}"


async def is_duplicate_webhook(provider: str, provider_message_id: str) -> bool:
    """
    Claim a provider message ID. True when it was already claimed.
    Messages without an ID, and Redis outages, count as new.
    """
    if not provider_message_id:
        return False
    try:
        redis = await get_redis()
        claimed = await redis.set(
            make_dedup_key(provider, provider_message_id), "1",
            nx=True, ex=DEDUP_WINDOW_SECONDS,
        )
    except Exception as e:
        logger.warning("Dedup unavailable (%s), processing %s webhook", str(e), provider)
        return False

    if not claimed:
        logger.info("Duplicate %s webhook: %s", provider, provider_message_id[:12])
    return not claimed


async def heartbeat(worker_name: str) -> None:
    """Record that a worker loop is alive; read by /health/ready."""
    try:
        redis = await get_redis()
        await redis.set(
            HEARTBEAT_KEY.format(name=worker_name),
            datetime.now(timezone.utc).isoformat(),
            ex=HEARTBEAT_TTL_SECONDS,
        )
    except Exception as e:
        logger.debug("Heartbeat for %s not recorded: %s", worker_name, str(e))


async def release_webhook(provider: str, provider_message_id: str) -> None:
    """Drop a claim so the provider's retry of a message we failed to process is handled."""
    if not provider_message_id:
        return
    try:
        redis = await get_redis()
        await redis.delete(make_dedup_key(provider, provider_message_id))
    except Exception as e:
        logger.warning("Dedup claim for %s %s not released: %s", provider, provider_message_id[:12], str(e))
