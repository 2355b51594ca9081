"""
Sequence scheduler - drives automation runs through their message sequences.

Pending work is an explicit time-ordered queue of (run_id, step_index) entries,
at most one per run. The run row in the store is authoritative: an entry whose
run has moved on, finished or been cancelled is dropped when it comes due.

Per step:
1. Cancel the run if its automation is inactive/deleted or its lead left the funnel.
2. Defer to the next business-hours opening when the automation asks for it.
3. Render, hand to the messenger (which always ledgers), then schedule the next
   step at (actual fire time + next delay) or complete the run.

A delivery that raises is audited as step_failed and the run still moves on.
A step that cannot finish at all cancels its run (reason step_error) rather
than leaving it running.

Steps of one run never overlap (per-run execution lock). Different runs run
concurrently up to scheduler_max_concurrency. Cancellation is cooperative: a
send already in flight completes and is ledgered.
"""
import asyncio
import heapq
import itertools
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import select, update

from leadflow.models.automation import Automation
from leadflow.models.automation_run import AutomationRun, ACTIVE_RUN_STATES
from leadflow.models.client import Client
from leadflow.models.conversation import ConversationMessage
from leadflow.models.lead import Lead
from leadflow.models.sms_settings import SMSSettings
from leadflow.services.audit import record_event
from leadflow.services.business_hours import BusinessHours
from leadflow.services.errors import DuplicateRun, LedgerError
from leadflow.services.messaging import DeliveryOutcome, LeadContext, Messenger
from leadflow.services.templates import render_step
from leadflow.utils.dedup import heartbeat
from leadflow.utils.locks import KeyedLocks
from leadflow.utils.logging import generate_correlation_id, set_correlation_id, short_id
from leadflow.utils.timezone import as_utc, utcnow

logger = logging.getLogger(__name__)

IDLE_POLL_SECONDS = 60


@dataclass(order=True)
class ScheduledStep:
    fire_at: datetime
    seq: int
    run_id: uuid.UUID = field(compare=False)
    step_index: int = field(compare=False)


class WorkQueue:
    """
    Min-heap of ScheduledStep keyed by run.
    Pushing a run that is already queued replaces its entry; replaced and
    discarded entries are skipped lazily when they reach the top.
    """

    def __init__(self):
        self._heap: list[ScheduledStep] = []
        self._entries: dict[uuid.UUID, ScheduledStep] = {}
        self._counter = itertools.count()
        self.changed = asyncio.Event()

    def push(self, run_id: uuid.UUID, step_index: int, fire_at: datetime) -> ScheduledStep:
        item = ScheduledStep(as_utc(fire_at), next(self._counter), run_id, step_index)
        self._entries[run_id] = item
        heapq.heappush(self._heap, item)
        self.changed.set()
        return item

    def discard(self, run_id: uuid.UUID) -> bool:
        removed = self._entries.pop(run_id, None) is not None
        if removed:
            self.changed.set()
        return removed

    def _prune(self) -> None:
        while self._heap and self._entries.get(self._heap[0].run_id) is not self._heap[0]:
            heapq.heappop(self._heap)

    def peek(self) -> Optional[ScheduledStep]:
        self._prune()
        return self._heap[0] if self._heap else None

    def pop_due(self, now: datetime) -> list[ScheduledStep]:
        now = as_utc(now)
        due = []
        while True:
            head = self.peek()
            if head is None or head.fire_at > now:
                break
            heapq.heappop(self._heap)
            del self._entries[head.run_id]
            due.append(head)
        return due

    def get(self, run_id: uuid.UUID) -> Optional[ScheduledStep]:
        return self._entries.get(run_id)

    def pending(self) -> list[ScheduledStep]:
        """Queued steps in fire order."""
        return sorted(self._entries.values())

    def __contains__(self, run_id) -> bool:
        return run_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class SequenceScheduler:
    def __init__(
        self,
        session_factory: Callable,
        messenger: Messenger,
        settings,
        clock: Callable[[], datetime] = utcnow,
        max_concurrency: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self._messenger = messenger
        self._settings = settings
        self._clock = clock
        self.queue = WorkQueue()
        self._slot_locks = KeyedLocks("run_slot")
        self._exec_locks = KeyedLocks("run_exec")
        self._semaphore = asyncio.Semaphore(max_concurrency or settings.scheduler_max_concurrency)
        self._inflight: set[asyncio.Task] = set()

    # ------------------------------------------------------------------ runs

    async def start_run(
        self,
        automation: Automation,
        lead_id: uuid.UUID,
        trigger_event: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[AutomationRun]:
        """
        Create a run at step 0 and enqueue it.
        Returns None when the automation has no steps or the lead already has a
        non-terminal run of this automation.
        """
        steps = automation.steps()
        if not steps:
            logger.warning("Automation %s has an empty sequence, not starting", short_id(automation.id))
            return None

        now = as_utc(now) or self._clock()
        try:
            async with self._slot_locks.hold((automation.id, lead_id)):
                async with self._session_factory() as db:
                    result = await db.execute(
                        select(AutomationRun.id).where(
                            AutomationRun.automation_id == automation.id,
                            AutomationRun.lead_id == lead_id,
                            AutomationRun.state.in_(ACTIVE_RUN_STATES),
                        ).limit(1)
                    )
                    if result.scalar_one_or_none() is not None:
                        raise DuplicateRun(
                            f"Run already active for automation {short_id(automation.id)} "
                            f"and lead {short_id(lead_id)}"
                        )

                    run = AutomationRun(
                        automation_id=automation.id,
                        lead_id=lead_id,
                        client_id=automation.client_id,
                        current_step_index=0,
                        scheduled_at=now + timedelta(minutes=steps[0].delay_minutes),
                        state="pending",
                        trigger_event=trigger_event,
                        deferral_count=0,
                        started_at=now,
                    )
                    db.add(run)
                    await db.commit()
        except DuplicateRun as e:
            logger.debug("%s", str(e))
            return None

        self.queue.push(run.id, 0, run.scheduled_at)
        logger.info(
            "Run %s started: automation=%s lead=%s first step at %s",
            short_id(run.id), short_id(automation.id), short_id(lead_id),
            as_utc(run.scheduled_at).isoformat(),
        )
        await record_event(
            self._session_factory,
            "run_started",
            lead_id=lead_id,
            client_id=automation.client_id,
            data={
                "run_id": str(run.id),
                "automation_id": str(automation.id),
                "trigger_event": trigger_event,
            },
        )
        return run

    async def cancel_run(self, run_id: uuid.UUID, reason: str = "operator") -> bool:
        """Cancel a non-terminal run. Returns False when it was already terminal or unknown."""
        now = self._clock()
        async with self._session_factory() as db:
            run = await db.get(AutomationRun, run_id)
            if run is None:
                return False
            result = await db.execute(
                update(AutomationRun)
                .where(
                    AutomationRun.id == run_id,
                    AutomationRun.state.in_(ACTIVE_RUN_STATES),
                )
                .values(state="cancelled", cancel_reason=reason, completed_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            lead_id, client_id = run.lead_id, run.client_id

        self.queue.discard(run_id)
        if result.rowcount == 0:
            return False

        logger.info("Run %s cancelled: %s", short_id(run_id), reason)
        await record_event(
            self._session_factory,
            "run_cancelled",
            lead_id=lead_id,
            client_id=client_id,
            status="skipped",
            message=reason,
            data={"run_id": str(run_id)},
        )
        return True

    async def cancel_runs_for_lead(self, lead_id: uuid.UUID, reason: str) -> int:
        async with self._session_factory() as db:
            result = await db.execute(
                select(AutomationRun.id).where(
                    AutomationRun.lead_id == lead_id,
                    AutomationRun.state.in_(ACTIVE_RUN_STATES),
                )
            )
            run_ids = list(result.scalars().all())

        cancelled = 0
        for run_id in run_ids:
            if await self.cancel_run(run_id, reason):
                cancelled += 1
        return cancelled

    async def runs_for_lead(self, lead_id: uuid.UUID) -> list[AutomationRun]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(AutomationRun)
                .where(AutomationRun.lead_id == lead_id)
                .order_by(AutomationRun.started_at.desc())
            )
            return list(result.scalars().all())

    def pending_steps(self) -> list[ScheduledStep]:
        return self.queue.pending()

    # ------------------------------------------------------------- execution

    async def execute_step(
        self,
        run_id: uuid.UUID,
        step_index: int,
        now: Optional[datetime] = None,
    ) -> Optional[DeliveryOutcome]:
        """
        Fire one step of a run. Returns the delivery outcome, or None when
        nothing was sent (stale entry, cancellation, deferral).
        """
        async with self._exec_locks.hold(run_id):
            set_correlation_id(generate_correlation_id())
            return await self._execute_step(run_id, step_index, as_utc(now) or self._clock())

    async def _execute_step(
        self,
        run_id: uuid.UUID,
        step_index: int,
        now: datetime,
    ) -> Optional[DeliveryOutcome]:
        async with self._session_factory() as db:
            run = await db.get(AutomationRun, run_id)
            if run is None or not run.is_active or run.current_step_index != step_index:
                logger.debug("Dropping stale step %d for run %s", step_index, short_id(run_id))
                return None

            automation = await db.get(Automation, run.automation_id)
            lead = await db.get(Lead, run.lead_id)
            reason = self._cancel_reason(automation, lead)
            if reason:
                await self._finish(db, run, "cancelled", now, reason)
                return None

            steps = automation.steps()
            if step_index >= len(steps):
                await self._finish(db, run, "completed", now)
                return None

            client = await db.get(Client, lead.client_id)
            result = await db.execute(
                select(SMSSettings).where(SMSSettings.client_id == lead.client_id)
            )
            sms_settings = result.scalar_one_or_none()

            if automation.business_hours_only:
                hours = BusinessHours.for_client(client, sms_settings, self._settings)
                if not hours.is_open(now):
                    await self._defer(db, run, hours.next_open(now), now)
                    return None

            run.state = "running"
            run.last_fired_at = now
            await db.commit()

            body = render_step(steps[step_index], lead, client, self._settings.booking_base_url)
            context = LeadContext(lead=lead, client=client, sms_settings=sms_settings)
            automation_id = automation.id

        try:
            outcome = await self._messenger.deliver(
                lead.id,
                body,
                origin="automation",
                automation_id=automation_id,
                run_id=run_id,
                step_index=step_index,
                context=context,
            )
        except LedgerError as e:
            logger.warning("Run %s step %d could not be ledgered: %s", short_id(run_id), step_index, str(e))
            await self.cancel_run(run_id, "lead_deleted")
            return None
        except Exception as e:
            # The step counts as attempted and is not fired again
            logger.error(
                "Run %s step %d raised during delivery: %s",
                short_id(run_id), step_index, str(e), exc_info=True,
            )
            await record_event(
                self._session_factory,
                "step_failed",
                lead_id=lead.id,
                client_id=lead.client_id,
                status="failure",
                message=str(e)[:500],
                error_code="step_error",
                data={"run_id": str(run_id), "step_index": step_index},
            )
            outcome = None

        await self._advance(run_id, step_index, steps, now, lead)
        return outcome

    def _cancel_reason(self, automation: Optional[Automation], lead: Optional[Lead]) -> Optional[str]:
        if automation is None:
            return "automation_deleted"
        if not automation.is_active:
            return "automation_inactive"
        if lead is None:
            return "lead_deleted"
        if not lead.is_in_funnel:
            return f"lead_{lead.status}"
        return None

    async def _defer(self, db, run: AutomationRun, fire_at: datetime, now: datetime) -> None:
        run.scheduled_at = fire_at
        run.deferral_count = (run.deferral_count or 0) + 1
        await db.commit()
        self.queue.push(run.id, run.current_step_index, fire_at)

        logger.info(
            "Run %s step %d deferred to %s (outside business hours)",
            short_id(run.id), run.current_step_index, fire_at.isoformat(),
        )
        await record_event(
            self._session_factory,
            "step_deferred",
            lead_id=run.lead_id,
            client_id=run.client_id,
            status="skipped",
            message="Outside business hours",
            data={
                "run_id": str(run.id),
                "step_index": run.current_step_index,
                "deferred_from": now.isoformat(),
                "deferred_to": fire_at.isoformat(),
            },
        )

    async def _finish(
        self,
        db,
        run: AutomationRun,
        state: str,
        now: datetime,
        reason: Optional[str] = None,
    ) -> None:
        run.state = state
        run.completed_at = now
        run.cancel_reason = reason
        await db.commit()
        self.queue.discard(run.id)

        logger.info("Run %s %s%s", short_id(run.id), state, f": {reason}" if reason else "")
        await record_event(
            self._session_factory,
            f"run_{state}",
            lead_id=run.lead_id,
            client_id=run.client_id,
            status="skipped" if state == "cancelled" else "success",
            message=reason,
            data={"run_id": str(run.id), "step_index": run.current_step_index},
        )

    async def _advance(self, run_id, step_index: int, steps: list, fired_at: datetime, lead: Lead) -> None:
        """Schedule the next step, or complete the run. No-op if the run was cancelled mid-send."""
        next_index = step_index + 1
        if next_index < len(steps):
            next_at = fired_at + timedelta(minutes=steps[next_index].delay_minutes)
            values = {
                "current_step_index": next_index,
                "scheduled_at": next_at,
                "state": "pending",
            }
        else:
            next_at = None
            values = {
                "current_step_index": next_index,
                "state": "completed",
                "completed_at": fired_at,
            }

        async with self._session_factory() as db:
            result = await db.execute(
                update(AutomationRun)
                .where(AutomationRun.id == run_id, AutomationRun.state == "running")
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        if result.rowcount == 0:
            logger.info("Run %s cancelled during step %d, not advancing", short_id(run_id), step_index)
            return

        if next_at is not None:
            self.queue.push(run_id, next_index, next_at)
            logger.info(
                "Run %s step %d sent, step %d at %s",
                short_id(run_id), step_index, next_index, next_at.isoformat(),
            )
        else:
            logger.info("Run %s completed after %d step(s)", short_id(run_id), len(steps))
            await record_event(
                self._session_factory,
                "run_completed",
                lead_id=lead.id,
                client_id=lead.client_id,
                data={"run_id": str(run_id), "steps": len(steps)},
            )

    # ---------------------------------------------------------------- recovery

    async def rehydrate(self) -> int:
        """
        Re-enqueue every non-terminal run from the store.
        A run left "running" by a crash is advanced if its step already reached
        the ledger, otherwise the step fires again.
        """
        async with self._session_factory() as db:
            result = await db.execute(
                select(AutomationRun).where(AutomationRun.state.in_(ACTIVE_RUN_STATES))
            )
            runs = list(result.scalars().all())

            for run in runs:
                if run.state != "running":
                    continue
                ledgered = await db.execute(
                    select(ConversationMessage.id).where(
                        ConversationMessage.run_id == run.id,
                        ConversationMessage.step_index == run.current_step_index,
                    ).limit(1)
                )
                run.state = "pending"
                if ledgered.scalar_one_or_none() is None:
                    continue

                automation = await db.get(Automation, run.automation_id)
                steps = automation.steps() if automation else []
                fired_at = as_utc(run.last_fired_at) or as_utc(run.scheduled_at)
                run.current_step_index += 1
                if run.current_step_index < len(steps):
                    run.scheduled_at = fired_at + timedelta(
                        minutes=steps[run.current_step_index].delay_minutes
                    )
                else:
                    run.state = "completed"
                    run.completed_at = fired_at
            await db.commit()

        restored = 0
        for run in runs:
            if run.state == "pending":
                self.queue.push(run.id, run.current_step_index, run.scheduled_at)
                restored += 1
        if restored:
            logger.info("Rehydrated %d pending run(s)", restored)
        return restored

    # -------------------------------------------------------------------- loop

    async def dispatch_due(self, now: Optional[datetime] = None) -> int:
        """Start a task for every queued step whose fire time has passed."""
        now = as_utc(now) or self._clock()
        due = self.queue.pop_due(now)
        for item in due:
            task = asyncio.create_task(self._run_step(item))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
        return len(due)

    async def _run_step(self, item: ScheduledStep) -> None:
        async with self._semaphore:
            try:
                await self.execute_step(item.run_id, item.step_index)
            except Exception as e:
                logger.error(
                    "Run %s step %d failed: %s",
                    short_id(item.run_id), item.step_index, str(e), exc_info=True,
                )
                await self._abandon(item.run_id)

    async def _abandon(self, run_id: uuid.UUID) -> None:
        """Cancel a run whose step could not finish, so the lead can be triggered again."""
        try:
            await self.cancel_run(run_id, "step_error")
        except Exception as e:
            logger.error("Run %s could not be cancelled after a step error: %s", short_id(run_id), str(e))

    async def wait_idle(self) -> None:
        """Wait for every in-flight step task."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def _wait_for_work(self) -> None:
        head = self.queue.peek()
        timeout = IDLE_POLL_SECONDS
        if head is not None:
            timeout = min(timeout, max(0.0, (head.fire_at - self._clock()).total_seconds()))
        self.queue.changed.clear()
        if timeout <= 0:
            return
        try:
            await asyncio.wait_for(self.queue.changed.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def run_forever(self) -> None:
        """Main loop - fire due steps, then sleep until the next one (or new work)."""
        logger.info("Sequence scheduler started (max concurrency %d)", self._settings.scheduler_max_concurrency)
        await self.rehydrate()

        while True:
            try:
                await self.dispatch_due()
            except Exception as e:
                logger.error("Sequence scheduler error: %s", str(e))

            await heartbeat("sequence_scheduler")
            await self._wait_for_work()
