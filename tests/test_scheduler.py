"""
Sequence scheduler tests - run creation, sequencing, deferral, cancellation,
concurrency and restart recovery.
"""
import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import patch

from leadflow.models.automation import Automation
from leadflow.models.automation_run import AutomationRun
from leadflow.schemas.automation import Channel
from leadflow.services.engine import ConversationEngine
from leadflow.services.scheduler import SequenceScheduler, WorkQueue
from leadflow.services.transports.base import Transport, TransportReceipt
from leadflow.utils.timezone import as_utc

BASE = datetime(2026, 3, 3, 15, 0, tzinfo=timezone.utc)

THREE_STEPS = [
    {"delay_minutes": 5, "message_text": "Step one for {name}"},
    {"delay_minutes": 60, "message_text": "Step two for {name}"},
    {"delay_minutes": 1440, "message_text": "Step three for {name}"},
]


class GatedTransport(Transport):
    """Holds sends for chosen recipients until released."""
    provider_name = "gated"

    def __init__(self, blocked: set[str] | None = None):
        self.blocked = blocked if blocked is not None else set()
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.sent: list[str] = []

    async def send(self, to, body, sender=None, subject=None):
        if to in self.blocked:
            self.started.set()
            await self.release.wait()
        self.sent.append(to)
        return TransportReceipt(message_id=f"gated-{len(self.sent)}-{to}", provider=self.provider_name)

    @staticmethod
    def map_status(provider_status):
        return None


def _gated_engine(session_factory, settings, clock, gated):
    relaxed = settings.model_copy(update={"dispatch_timeout_seconds": 30})
    return ConversationEngine(session_factory, relaxed, transports={Channel.SMS: gated}, clock=clock)


async def _get_run(session_factory, run_id) -> AutomationRun:
    async with session_factory() as db:
        return await db.get(AutomationRun, run_id)


async def _setup(seed, steps=None, business_hours_only=False, **lead_kwargs):
    client = await seed.client()
    await seed.sms_settings(client, quota_period="2026-03")
    lead = await seed.lead(client, **lead_kwargs)
    automation = await seed.automation(
        client, steps=steps or THREE_STEPS, business_hours_only=business_hours_only,
    )
    return client, lead, automation


class TestWorkQueue:
    def test_pops_in_fire_order(self):
        queue = WorkQueue()
        a, b, c = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
        queue.push(a, 0, BASE + timedelta(minutes=10))
        queue.push(b, 0, BASE + timedelta(minutes=1))
        queue.push(c, 0, BASE + timedelta(minutes=5))

        due = queue.pop_due(BASE + timedelta(minutes=6))

        assert [item.run_id for item in due] == [b, c]
        assert len(queue) == 1

    def test_push_replaces_entry_for_same_run(self):
        queue = WorkQueue()
        run_id = uuid.uuid4()
        queue.push(run_id, 0, BASE)
        queue.push(run_id, 1, BASE + timedelta(hours=1))

        assert queue.pop_due(BASE) == []
        assert queue.get(run_id).step_index == 1
        assert len(queue) == 1

    def test_discard(self):
        queue = WorkQueue()
        run_id = uuid.uuid4()
        queue.push(run_id, 0, BASE)

        assert queue.discard(run_id) is True
        assert queue.discard(run_id) is False
        assert queue.peek() is None
        assert run_id not in queue

    def test_pending_is_sorted(self):
        queue = WorkQueue()
        late, early = uuid.uuid4(), uuid.uuid4()
        queue.push(late, 0, BASE + timedelta(hours=2))
        queue.push(early, 0, BASE)
        assert [item.run_id for item in queue.pending()] == [early, late]

    def test_naive_fire_times_are_utc(self):
        queue = WorkQueue()
        item = queue.push(uuid.uuid4(), 0, datetime(2026, 3, 3, 15, 0))
        assert item.fire_at == BASE


class TestStartRun:
    async def test_creates_pending_run_at_first_delay(self, engine, seed, session_factory):
        _, lead, automation = await _setup(seed)

        run = await engine.scheduler.start_run(automation, lead.id, trigger_event="new_lead")

        stored = await _get_run(session_factory, run.id)
        assert stored.state == "pending"
        assert stored.current_step_index == 0
        assert engine.scheduler.queue.get(run.id).fire_at == BASE + timedelta(minutes=5)

    async def test_duplicate_run_is_ignored(self, engine, seed):
        _, lead, automation = await _setup(seed)

        first = await engine.scheduler.start_run(automation, lead.id)
        second = await engine.scheduler.start_run(automation, lead.id)

        assert first is not None
        assert second is None
        assert len(await engine.scheduler.runs_for_lead(lead.id)) == 1

    async def test_concurrent_starts_create_one_run(self, engine, seed):
        _, lead, automation = await _setup(seed)

        results = await asyncio.gather(*[
            engine.scheduler.start_run(automation, lead.id) for _ in range(5)
        ])

        assert sum(1 for r in results if r is not None) == 1

    async def test_new_run_allowed_after_completion(self, engine, seed, session_factory):
        _, lead, automation = await _setup(seed, steps=[{"delay_minutes": 0, "message_text": "Hi"}])

        run = await engine.scheduler.start_run(automation, lead.id)
        await engine.scheduler.execute_step(run.id, 0)

        assert (await _get_run(session_factory, run.id)).state == "completed"
        assert await engine.scheduler.start_run(automation, lead.id) is not None

    async def test_empty_sequence_starts_nothing(self, engine, seed):
        client = await seed.client()
        lead = await seed.lead(client)
        automation = await seed.automation(client, steps=[])

        assert await engine.scheduler.start_run(automation, lead.id) is None


class TestSequencing:
    async def test_three_steps_fire_in_order_with_delays(self, engine, seed, clock, transports, session_factory):
        """Step N+1 is scheduled from step N's actual fire time."""
        _, lead, automation = await _setup(seed)
        scheduler = engine.scheduler
        run = await scheduler.start_run(automation, lead.id)

        assert await scheduler.dispatch_due(BASE + timedelta(minutes=4)) == 0

        fire_times = []
        for delay in (5, 60, 1440):
            clock.advance(minutes=delay)
            assert await scheduler.dispatch_due() == 1
            await scheduler.wait_idle()
            fire_times.append(clock.now)

        entries = await engine.ledger.read(lead.id)
        assert [e.message for e in entries] == [
            "Step one for Alex", "Step two for Alex", "Step three for Alex",
        ]
        assert [e.step_index for e in entries] == [0, 1, 2]
        assert fire_times[1] - fire_times[0] >= timedelta(minutes=60)
        assert fire_times[2] - fire_times[1] >= timedelta(minutes=1440)

        stored = await _get_run(session_factory, run.id)
        assert stored.state == "completed"
        assert run.id not in scheduler.queue
        assert len(transports[Channel.SMS].sent) == 3

    async def test_late_step_schedules_next_from_actual_fire_time(self, engine, seed, clock):
        _, lead, automation = await _setup(seed)
        run = await engine.scheduler.start_run(automation, lead.id)

        clock.advance(minutes=45)  # 40 minutes late
        await engine.scheduler.execute_step(run.id, 0)

        assert engine.scheduler.queue.get(run.id).fire_at == clock.now + timedelta(minutes=60)

    async def test_stale_step_is_dropped(self, engine, seed, clock):
        _, lead, automation = await _setup(seed)
        run = await engine.scheduler.start_run(automation, lead.id)

        assert await engine.scheduler.execute_step(run.id, 2) is None
        assert await engine.ledger.read(lead.id) == []

    async def test_same_step_never_runs_twice_concurrently(self, engine, seed, clock):
        _, lead, automation = await _setup(seed)
        run = await engine.scheduler.start_run(automation, lead.id)

        await asyncio.gather(
            engine.scheduler.execute_step(run.id, 0),
            engine.scheduler.execute_step(run.id, 0),
        )

        assert len(await engine.ledger.read(lead.id)) == 1

    async def test_price_list_scenario(self, engine, seed, transports):
        client, lead, _ = await _setup(seed)
        await seed.automation(
            client,
            name="Price list",
            trigger_type="keyword_match",
            trigger_keywords=["price", "info"],
            steps=[{"delay_minutes": 0, "message_text": "Hi {name}, our price list is attached."}],
        )

        runs = await engine.receive_inbound(lead.id, "what's the price?", "sms")
        assert len(runs) == 1
        await engine.scheduler.dispatch_due()
        await engine.scheduler.wait_idle()

        outbound = [e for e in await engine.ledger.read(lead.id) if e.sender == "system"]
        assert len(outbound) == 1
        assert outbound[0].message == "Hi Alex, our price list is attached."


class TestBusinessHours:
    async def test_step_at_23h_defers_to_next_opening(self, engine, seed, clock, session_factory):
        _, lead, automation = await _setup(
            seed, steps=[{"delay_minutes": 0, "message_text": "Hi {name}"}], business_hours_only=True,
        )
        clock.now = datetime(2026, 3, 4, 4, 0, tzinfo=timezone.utc)  # 23:00 New York
        run = await engine.scheduler.start_run(automation, lead.id)

        assert await engine.scheduler.execute_step(run.id, 0) is None

        next_open = datetime(2026, 3, 4, 14, 0, tzinfo=timezone.utc)  # 09:00 New York
        stored = await _get_run(session_factory, run.id)
        assert stored.deferral_count == 1
        assert stored.state == "pending"
        assert engine.scheduler.queue.get(run.id).fire_at == next_open
        assert await engine.ledger.read(lead.id) == []

        clock.now = next_open
        outcome = await engine.scheduler.execute_step(run.id, 0)
        assert outcome is not None
        assert as_utc(outcome.entry.timestamp) >= next_open

    async def test_business_hours_ignored_when_not_required(self, engine, seed, clock):
        _, lead, automation = await _setup(
            seed, steps=[{"delay_minutes": 0, "message_text": "Hi"}], business_hours_only=False,
        )
        clock.now = datetime(2026, 3, 4, 4, 0, tzinfo=timezone.utc)
        run = await engine.scheduler.start_run(automation, lead.id)

        assert await engine.scheduler.execute_step(run.id, 0) is not None


class TestCancellation:
    async def test_inactive_automation_cancels_run(self, engine, seed, clock, session_factory):
        _, lead, automation = await _setup(seed)
        run = await engine.scheduler.start_run(automation, lead.id)
        async with session_factory() as db:
            (await db.get(Automation, automation.id)).is_active = False
            await db.commit()

        clock.advance(minutes=5)
        assert await engine.scheduler.execute_step(run.id, 0) is None

        stored = await _get_run(session_factory, run.id)
        assert stored.state == "cancelled"
        assert stored.cancel_reason == "automation_inactive"
        assert await engine.ledger.read(lead.id) == []

    async def test_converted_lead_cancels_run(self, engine, seed, clock, session_factory):
        from leadflow.models.lead import Lead

        _, lead, automation = await _setup(seed)
        run = await engine.scheduler.start_run(automation, lead.id)
        async with session_factory() as db:
            (await db.get(Lead, lead.id)).status = "converted"
            await db.commit()

        assert await engine.scheduler.execute_step(run.id, 0) is None
        assert (await _get_run(session_factory, run.id)).cancel_reason == "lead_converted"

    async def test_cancel_run_removes_pending_step(self, engine, seed, session_factory):
        _, lead, automation = await _setup(seed)
        run = await engine.scheduler.start_run(automation, lead.id)

        assert await engine.scheduler.cancel_run(run.id, "operator") is True
        assert await engine.scheduler.cancel_run(run.id, "operator") is False
        assert run.id not in engine.scheduler.queue
        assert (await _get_run(session_factory, run.id)).state == "cancelled"

    async def test_send_in_flight_completes_but_run_stops(self, seed, session_factory, settings, clock, mock_redis):
        gated = GatedTransport(blocked={"+15125559876"})
        engine = _gated_engine(session_factory, settings, clock, gated)
        _, lead, automation = await _setup(seed)
        run = await engine.scheduler.start_run(automation, lead.id)

        task = asyncio.create_task(engine.scheduler.execute_step(run.id, 0))
        await asyncio.wait_for(gated.started.wait(), timeout=5)
        assert await engine.scheduler.cancel_run(run.id, "operator") is True
        gated.release.set()
        outcome = await task

        assert outcome.entry.delivery_status == "sent"
        assert len(await engine.ledger.read(lead.id)) == 1
        assert (await _get_run(session_factory, run.id)).state == "cancelled"
        assert run.id not in engine.scheduler.queue

    async def test_cancel_runs_for_lead(self, engine, seed):
        client, lead, automation = await _setup(seed)
        other = await seed.automation(client, name="Second")
        await engine.scheduler.start_run(automation, lead.id)
        await engine.scheduler.start_run(other, lead.id)

        assert await engine.scheduler.cancel_runs_for_lead(lead.id, "lead_lost") == 2
        assert len(engine.scheduler.pending_steps()) == 0


class TestFailures:
    async def test_failed_step_is_ledgered_and_run_continues(self, engine, seed, clock, session_factory):
        client = await seed.client()
        lead = await seed.lead(client, email=None)  # no whatsapp, no SMS config, no email
        automation = await seed.automation(client, steps=THREE_STEPS)
        run = await engine.scheduler.start_run(automation, lead.id)

        clock.advance(minutes=5)
        outcome = await engine.scheduler.execute_step(run.id, 0)

        assert outcome.entry.delivery_status == "failed"
        assert outcome.entry.error_code == "no_channel"
        stored = await _get_run(session_factory, run.id)
        assert stored.current_step_index == 1
        assert stored.state == "pending"

    async def test_quota_exhaustion_is_ledgered_distinctly(self, engine, seed, clock, transports):
        client = await seed.client()
        await seed.sms_settings(client, quota_period="2026-03", monthly_sms_limit=1, sms_sent_this_month=1)
        lead = await seed.lead(client)
        automation = await seed.automation(client, steps=[{"delay_minutes": 0, "message_text": "Hi"}])
        run = await engine.scheduler.start_run(automation, lead.id)

        outcome = await engine.scheduler.execute_step(run.id, 0)

        assert outcome.entry.delivery_status == "failed"
        assert outcome.entry.error_code == "limit_exceeded"
        assert transports[Channel.SMS].sent == []

    async def test_unexpected_delivery_error_still_finishes_run(self, engine, seed, session_factory):
        _, lead, automation = await _setup(seed, steps=[{"delay_minutes": 0, "message_text": "Hi"}])
        run = await engine.scheduler.start_run(automation, lead.id)

        with patch.object(engine.ledger, "append", side_effect=RuntimeError("database is locked")):
            await engine.scheduler.dispatch_due()
            await engine.scheduler.wait_idle()

        stored = await _get_run(session_factory, run.id)
        assert stored.state == "completed"
        assert run.id not in engine.scheduler.queue
        assert await engine.scheduler.start_run(automation, lead.id) is not None

    async def test_unexpected_error_mid_sequence_moves_to_next_step(self, engine, seed, clock, session_factory):
        _, lead, automation = await _setup(seed)
        run = await engine.scheduler.start_run(automation, lead.id)
        clock.advance(minutes=5)

        with patch.object(engine.ledger, "append", side_effect=RuntimeError("database is locked")):
            await engine.scheduler.dispatch_due()
            await engine.scheduler.wait_idle()

        stored = await _get_run(session_factory, run.id)
        assert stored.state == "pending"
        assert stored.current_step_index == 1
        assert engine.scheduler.queue.get(run.id).step_index == 1

    async def test_step_that_cannot_finish_cancels_run(self, engine, seed, session_factory):
        _, lead, automation = await _setup(seed, steps=[{"delay_minutes": 0, "message_text": "Hi"}])
        run = await engine.scheduler.start_run(automation, lead.id)

        with patch.object(engine.scheduler, "_advance", side_effect=RuntimeError("connection reset")):
            await engine.scheduler.dispatch_due()
            await engine.scheduler.wait_idle()

        stored = await _get_run(session_factory, run.id)
        assert stored.state == "cancelled"
        assert stored.cancel_reason == "step_error"
        assert await engine.scheduler.start_run(automation, lead.id) is not None


class TestConcurrency:
    async def test_slow_run_does_not_block_other_runs(self, seed, session_factory, settings, clock, mock_redis):
        gated = GatedTransport(blocked={"+15125550001"})
        engine = _gated_engine(session_factory, settings, clock, gated)
        client = await seed.client()
        await seed.sms_settings(client, quota_period="2026-03")
        slow_lead = await seed.lead(client, phone="+15125550001")
        fast_lead = await seed.lead(client, phone="+15125550002")
        automation = await seed.automation(client, steps=[{"delay_minutes": 0, "message_text": "Hi"}])
        slow_run = await engine.scheduler.start_run(automation, slow_lead.id)
        fast_run = await engine.scheduler.start_run(automation, fast_lead.id)

        slow_task = asyncio.create_task(engine.scheduler.execute_step(slow_run.id, 0))
        await asyncio.wait_for(gated.started.wait(), timeout=5)

        fast_outcome = await asyncio.wait_for(engine.scheduler.execute_step(fast_run.id, 0), timeout=5)
        assert fast_outcome.entry.delivery_status == "sent"
        assert not slow_task.done()

        gated.release.set()
        await slow_task
        assert gated.sent == ["+15125550002", "+15125550001"]


class TestRehydrate:
    async def test_pending_runs_are_requeued(self, engine, seed, session_factory, settings, clock, transports):
        _, lead, automation = await _setup(seed)
        run = await engine.scheduler.start_run(automation, lead.id)

        fresh = SequenceScheduler(session_factory, engine.messenger, settings, clock=clock)
        assert await fresh.rehydrate() == 1
        assert fresh.queue.get(run.id).fire_at == BASE + timedelta(minutes=5)

    async def test_running_run_with_ledgered_step_advances(self, engine, seed, session_factory, settings, clock):
        _, lead, automation = await _setup(seed)
        run = await engine.scheduler.start_run(automation, lead.id)
        clock.advance(minutes=5)
        await engine.scheduler.execute_step(run.id, 0)
        # Simulate a crash after the send was ledgered but before the run advanced
        async with session_factory() as db:
            stored = await db.get(AutomationRun, run.id)
            stored.state = "running"
            stored.current_step_index = 0
            await db.commit()

        fresh = SequenceScheduler(session_factory, engine.messenger, settings, clock=clock)
        assert await fresh.rehydrate() == 1

        item = fresh.queue.get(run.id)
        assert item.step_index == 1
        assert item.fire_at == clock.now + timedelta(minutes=60)

    async def test_running_run_without_ledger_entry_refires(self, engine, seed, session_factory, settings, clock):
        _, lead, automation = await _setup(seed)
        run = await engine.scheduler.start_run(automation, lead.id)
        async with session_factory() as db:
            (await db.get(AutomationRun, run.id)).state = "running"
            await db.commit()

        fresh = SequenceScheduler(session_factory, engine.messenger, settings, clock=clock)
        await fresh.rehydrate()

        assert fresh.queue.get(run.id).step_index == 0
        assert (await _get_run(session_factory, run.id)).state == "pending"

    async def test_terminal_runs_are_not_requeued(self, engine, seed, session_factory, settings, clock):
        _, lead, automation = await _setup(seed)
        run = await engine.scheduler.start_run(automation, lead.id)
        await engine.scheduler.cancel_run(run.id)

        fresh = SequenceScheduler(session_factory, engine.messenger, settings, clock=clock)
        assert await fresh.rehydrate() == 0
