"""
Monthly SMS quota - per-client counter on SMSSettings.

Reservation is a single conditional UPDATE, so concurrent sends for the same
client can never push sms_sent_this_month past monthly_sms_limit. The counter
belongs to `quota_period` ("YYYY-MM", UTC) and resets lazily when the month
changes. A failed send releases its reservation.
"""
import logging
import uuid
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select, update, or_

from leadflow.models.sms_settings import SMSSettings
from leadflow.services.errors import LimitExceeded
from leadflow.utils.logging import short_id
from leadflow.utils.timezone import as_utc, utcnow

logger = logging.getLogger(__name__)


def quota_period(now: datetime) -> str:
    return as_utc(now).strftime("%Y-%m")


async def reserve_sms(
    session_factory: Callable,
    client_id: uuid.UUID,
    now: Optional[datetime] = None,
) -> None:
    """Take one SMS from the client's monthly allowance or raise LimitExceeded."""
    period = quota_period(now or utcnow())
    async with session_factory() as db:
        await db.execute(
            update(SMSSettings)
            .where(
                SMSSettings.client_id == client_id,
                or_(SMSSettings.quota_period.is_(None), SMSSettings.quota_period != period),
            )
            .values(sms_sent_this_month=0, quota_period=period)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(
            update(SMSSettings)
            .where(
                SMSSettings.client_id == client_id,
                SMSSettings.sms_sent_this_month < SMSSettings.monthly_sms_limit,
            )
            .values(sms_sent_this_month=SMSSettings.sms_sent_this_month + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await db.commit()
            limit = (
                await db.execute(
                    select(SMSSettings.monthly_sms_limit).where(SMSSettings.client_id == client_id)
                )
            ).scalar_one_or_none()
            logger.warning(
                "SMS quota exhausted for client %s (limit=%s)",
                short_id(client_id), limit,
            )
            raise LimitExceeded(client_id, limit or 0)
        await db.commit()


async def release_sms(session_factory: Callable, client_id: uuid.UUID) -> None:
    """Give back a reservation whose send did not go out."""
    async with session_factory() as db:
        await db.execute(
            update(SMSSettings)
            .where(
                SMSSettings.client_id == client_id,
                SMSSettings.sms_sent_this_month > 0,
            )
            .values(sms_sent_this_month=SMSSettings.sms_sent_this_month - 1)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
