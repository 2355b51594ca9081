"""
Engine audit trail - writes EventLog rows for run lifecycle and send failures.
Audit writes never break the operation being audited.
"""
import logging
import uuid
from typing import Callable, Optional

from leadflow.models.event_log import EventLog

logger = logging.getLogger(__name__)


async def record_event(
    session_factory: Callable,
    action: str,
    lead_id: Optional[uuid.UUID] = None,
    client_id: Optional[uuid.UUID] = None,
    status: str = "success",
    message: Optional[str] = None,
    error_code: Optional[str] = None,
    data: Optional[dict] = None,
) -> None:
    try:
        async with session_factory() as db:
            db.add(EventLog(
                lead_id=lead_id,
                client_id=client_id,
                action=action,
                status=status,
                message=message,
                error_code=error_code,
                data=data,
            ))
            await db.commit()
    except Exception as e:
        logger.error("Failed to record %s event: %s", action, str(e))
