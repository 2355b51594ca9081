"""
Trigger evaluator - decides which active automations fire for a domain event.

Each event type maps to exactly one trigger type, and each trigger type has its
own matcher:
    new_lead         → new_lead        (every active automation of the client)
    message_received → keyword_match   (case-insensitive keyword substring)
    status_change    → status_change   (every active automation of the client)
    clock_tick       → scheduled       (the automation's idle condition is due)

A scheduled automation also waits out its idle window after each run it starts
for the lead, whatever that run's outcome, so a failing send is not repeated on
every tick.

Leads out of the funnel (converted, lost) match nothing. Run creation and
duplicate suppression belong to the sequence scheduler.
"""
import inspect
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Union

from sqlalchemy import func, select

from leadflow.models.automation import Automation
from leadflow.models.automation_run import AutomationRun
from leadflow.models.lead import Lead
from leadflow.schemas.automation import TriggerType
from leadflow.schemas.events import (
    ClockTickEvent,
    MessageReceivedEvent,
    NewLeadEvent,
    StatusChangeEvent,
)
from leadflow.utils.logging import short_id
from leadflow.utils.timezone import as_utc, utcnow

logger = logging.getLogger(__name__)

AnyEvent = Union[NewLeadEvent, MessageReceivedEvent, StatusChangeEvent, ClockTickEvent]

EVENT_TRIGGERS: dict[type, TriggerType] = {
    NewLeadEvent: TriggerType.NEW_LEAD,
    MessageReceivedEvent: TriggerType.KEYWORD_MATCH,
    StatusChangeEvent: TriggerType.STATUS_CHANGE,
    ClockTickEvent: TriggerType.SCHEDULED,
}

ScheduledCondition = Callable[[Automation, Lead, datetime], Union[bool, Awaitable[bool]]]


def keywords_match(keywords: Optional[list], text: Optional[str]) -> bool:
    """True when any non-empty keyword occurs in the text, ignoring case."""
    if not keywords or not text:
        return False
    haystack = text.lower()
    for keyword in keywords:
        needle = str(keyword or "").strip().lower()
        if needle and needle in haystack:
            return True
    return False


def idle_condition(default_idle_minutes: int) -> ScheduledCondition:
    """
    Default scheduled-trigger condition: the lead has not been messaged for the
    automation's schedule_idle_minutes (or the default), counted from the last
    outbound message, or from lead creation when nothing was ever sent.
    """
    def is_due(automation: Automation, lead: Lead, now: datetime) -> bool:
        idle_minutes = automation.schedule_idle_minutes or default_idle_minutes
        since = as_utc(lead.last_message_sent) or as_utc(lead.created_at)
        if since is None:
            return False
        return as_utc(now) - since >= timedelta(minutes=idle_minutes)

    return is_due


class TriggerEvaluator:
    def __init__(
        self,
        session_factory: Callable,
        scheduled_condition: Optional[ScheduledCondition] = None,
        default_idle_minutes: int = 1440,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._default_idle_minutes = default_idle_minutes
        self._scheduled_condition = scheduled_condition or idle_condition(default_idle_minutes)
        self._clock = clock
        self._matchers = {
            TriggerType.NEW_LEAD: self._match_always,
            TriggerType.KEYWORD_MATCH: self._match_keywords,
            TriggerType.STATUS_CHANGE: self._match_always,
            TriggerType.SCHEDULED: self._match_scheduled,
        }

    async def evaluate(self, event: AnyEvent) -> list[Automation]:
        """Active automations of the lead's client that this event fires."""
        trigger_type = EVENT_TRIGGERS.get(type(event))
        if trigger_type is None:
            raise ValueError(f"Unsupported event: {type(event).__name__}")

        async with self._session_factory() as db:
            lead = await db.get(Lead, event.lead_id)
            if lead is None:
                logger.warning("Event %s for unknown lead %s", event.event_type, short_id(event.lead_id))
                return []
            if not lead.is_in_funnel:
                logger.debug(
                    "Lead %s is %s, skipping %s triggers",
                    short_id(lead.id), lead.status, trigger_type.value,
                )
                return []

            result = await db.execute(
                select(Automation)
                .where(
                    Automation.client_id == lead.client_id,
                    Automation.trigger_type == trigger_type.value,
                    Automation.is_active == True,  # noqa: E712
                )
                .order_by(Automation.created_at, Automation.id)
            )
            candidates = list(result.scalars().all())

            now = as_utc(event.occurred_at) or self._clock()
            if trigger_type == TriggerType.SCHEDULED and candidates:
                candidates = await self._outside_rerun_window(db, lead, candidates, now)

        matcher = self._matchers[trigger_type]
        matched = []
        for automation in candidates:
            if await matcher(automation, lead, event, now):
                matched.append(automation)

        if matched:
            logger.info(
                "Event %s for lead %s matched %d automation(s)",
                event.event_type, short_id(lead.id), len(matched),
            )
        return matched

    async def _outside_rerun_window(self, db, lead: Lead, candidates: list, now: datetime) -> list:
        """Drop scheduled automations that started a run for this lead within their idle window."""
        result = await db.execute(
            select(AutomationRun.automation_id, func.max(AutomationRun.started_at))
            .where(
                AutomationRun.lead_id == lead.id,
                AutomationRun.automation_id.in_([a.id for a in candidates]),
            )
            .group_by(AutomationRun.automation_id)
        )
        last_started = {automation_id: as_utc(started) for automation_id, started in result.all()}

        eligible = []
        for automation in candidates:
            started = last_started.get(automation.id)
            idle_minutes = automation.schedule_idle_minutes or self._default_idle_minutes
            if started is not None and now - started < timedelta(minutes=idle_minutes):
                logger.debug(
                    "Automation %s last ran for lead %s at %s, not due",
                    short_id(automation.id), short_id(lead.id), started.isoformat(),
                )
                continue
            eligible.append(automation)
        return eligible

    async def _match_always(self, automation, lead, event, now) -> bool:
        return True

    async def _match_keywords(self, automation, lead, event, now) -> bool:
        return keywords_match(automation.trigger_keywords, event.text)

    async def _match_scheduled(self, automation, lead, event, now) -> bool:
        due = self._scheduled_condition(automation, lead, now)
        if inspect.isawaitable(due):
            due = await due
        return bool(due)
