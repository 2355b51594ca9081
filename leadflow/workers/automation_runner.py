"""
Automation runner - background loops of the conversation engine.

- Sequence scheduler: fires due steps as soon as they come due.
- Clock tick: every clock_tick_interval_seconds, raises clock_tick for in-funnel
  leads of clients that have an active scheduled automation. Leads are paged by
  id, so every eligible lead is checked each tick.
"""
import asyncio
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import exists, select

from leadflow.models.automation import Automation
from leadflow.models.automation_run import AutomationRun, ACTIVE_RUN_STATES
from leadflow.models.lead import Lead, OUT_OF_FUNNEL_STATUSES
from leadflow.schemas.automation import TriggerType
from leadflow.schemas.events import ClockTickEvent
from leadflow.services.engine import ConversationEngine
from leadflow.utils.dedup import heartbeat
from leadflow.utils.logging import generate_correlation_id, set_correlation_id

logger = logging.getLogger(__name__)


def _eligible_leads_query():
    """In-funnel leads of clients with a scheduled automation and no scheduled run in progress."""
    is_scheduled = (
        Automation.trigger_type == TriggerType.SCHEDULED.value,
        Automation.is_active == True,  # noqa: E712
    )
    scheduled = select(Automation.id).where(*is_scheduled)
    client_ids = select(Automation.client_id).where(*is_scheduled).distinct()
    active_run = exists().where(
        AutomationRun.lead_id == Lead.id,
        AutomationRun.automation_id.in_(scheduled),
        AutomationRun.state.in_(ACTIVE_RUN_STATES),
    )
    return select(Lead.id).where(
        Lead.client_id.in_(client_ids),
        Lead.status.notin_(OUT_OF_FUNNEL_STATUSES),
        ~active_run,
    )


async def process_clock_tick(engine: ConversationEngine, now: Optional[datetime] = None) -> int:
    """Raise one clock_tick per eligible lead. Returns the number of runs started."""
    now = now or engine.clock()
    batch_size = engine.settings.clock_tick_batch_size

    checked = 0
    started = 0
    after = None
    while True:
        query = _eligible_leads_query().order_by(Lead.id).limit(batch_size)
        if after is not None:
            query = query.where(Lead.id > after)
        async with engine.session_factory() as db:
            result = await db.execute(query)
            lead_ids = list(result.scalars().all())

        for lead_id in lead_ids:
            try:
                runs = await engine.handle_event(ClockTickEvent(lead_id=lead_id, occurred_at=now))
                started += len(runs)
            except Exception as e:
                logger.error("Clock tick failed for lead %s: %s", str(lead_id)[:8], str(e))

        checked += len(lead_ids)
        if len(lead_ids) < batch_size:
            break
        after = lead_ids[-1]

    if started:
        logger.info("Clock tick: %d lead(s) checked, %d run(s) started", checked, started)
    return started


async def run_clock_ticks(engine: ConversationEngine):
    """Main loop - emit clock ticks on a fixed interval."""
    interval = engine.settings.clock_tick_interval_seconds
    logger.info("Clock tick worker started (every %ds)", interval)

    while True:
        set_correlation_id(generate_correlation_id())
        try:
            await process_clock_tick(engine)
        except Exception as e:
            logger.error("Clock tick error: %s", str(e))

        await heartbeat("clock_tick")
        await asyncio.sleep(interval)


def start_engine_workers(engine: ConversationEngine) -> list[asyncio.Task]:
    tasks = [
        asyncio.create_task(engine.scheduler.run_forever()),
        asyncio.create_task(run_clock_ticks(engine)),
    ]
    logger.info("Automation runner started (%d workers)", len(tasks))
    return tasks
