"""
Trigger evaluator tests - one matcher per trigger type, funnel gating, scheduled condition.
"""
import uuid
from datetime import timedelta

import pytest

from leadflow.models.automation_run import AutomationRun
from leadflow.schemas.events import (
    ClockTickEvent,
    MessageReceivedEvent,
    NewLeadEvent,
    StatusChangeEvent,
)
from leadflow.services.triggers import TriggerEvaluator, idle_condition, keywords_match


class TestKeywordsMatch:
    def test_case_insensitive_substring(self):
        assert keywords_match(["price", "info"], "What's the PRICE?")

    def test_no_match(self):
        assert not keywords_match(["price"], "When can you come?")

    def test_empty_keywords_never_match(self):
        assert not keywords_match(["", "  "], "anything at all")
        assert not keywords_match([], "anything")
        assert not keywords_match(None, "anything")

    def test_empty_text(self):
        assert not keywords_match(["price"], "")


class TestEvaluate:
    async def test_new_lead_matches_active_new_lead_automations(self, session_factory, seed, clock):
        client = await seed.client()
        lead = await seed.lead(client)
        welcome = await seed.automation(client, name="Welcome")
        await seed.automation(client, name="Paused", is_active=False)
        await seed.automation(client, name="Keyword", trigger_type="keyword_match", trigger_keywords=["price"])
        other_client = await seed.client(business_name="Other Co")
        await seed.automation(other_client, name="Other tenant")

        evaluator = TriggerEvaluator(session_factory, clock=clock)
        matched = await evaluator.evaluate(NewLeadEvent(lead_id=lead.id))

        assert [a.id for a in matched] == [welcome.id]

    async def test_keyword_match_fires_all_matches(self, session_factory, seed, clock):
        client = await seed.client()
        lead = await seed.lead(client)
        price = await seed.automation(client, name="Price", trigger_type="keyword_match", trigger_keywords=["price", "info"])
        cost = await seed.automation(client, name="Cost", trigger_type="keyword_match", trigger_keywords=["PRICE"])
        await seed.automation(client, name="Hours", trigger_type="keyword_match", trigger_keywords=["hours"])

        evaluator = TriggerEvaluator(session_factory, clock=clock)
        matched = await evaluator.evaluate(MessageReceivedEvent(lead_id=lead.id, text="what's the price?"))

        assert {a.id for a in matched} == {price.id, cost.id}

    async def test_status_change_is_broad_match(self, session_factory, seed, clock):
        client = await seed.client()
        lead = await seed.lead(client, status="interested")
        automation = await seed.automation(client, trigger_type="status_change")

        evaluator = TriggerEvaluator(session_factory, clock=clock)
        matched = await evaluator.evaluate(
            StatusChangeEvent(lead_id=lead.id, previous_status="new", new_status="interested")
        )

        assert [a.id for a in matched] == [automation.id]

    async def test_out_of_funnel_lead_matches_nothing(self, session_factory, seed, clock):
        client = await seed.client()
        lead = await seed.lead(client, status="converted")
        await seed.automation(client, trigger_type="status_change")

        evaluator = TriggerEvaluator(session_factory, clock=clock)
        matched = await evaluator.evaluate(StatusChangeEvent(lead_id=lead.id, new_status="converted"))

        assert matched == []

    async def test_unknown_lead(self, session_factory, clock):
        evaluator = TriggerEvaluator(session_factory, clock=clock)
        assert await evaluator.evaluate(NewLeadEvent(lead_id=uuid.uuid4())) == []


class TestScheduledTrigger:
    async def test_idle_lead_is_due(self, session_factory, seed, clock):
        client = await seed.client()
        lead = await seed.lead(client, last_message_sent=clock.now - timedelta(hours=25))
        automation = await seed.automation(client, trigger_type="scheduled")

        evaluator = TriggerEvaluator(session_factory, default_idle_minutes=1440, clock=clock)
        matched = await evaluator.evaluate(ClockTickEvent(lead_id=lead.id))

        assert [a.id for a in matched] == [automation.id]

    async def test_recently_messaged_lead_is_not_due(self, session_factory, seed, clock):
        client = await seed.client()
        lead = await seed.lead(client, last_message_sent=clock.now - timedelta(hours=2))
        await seed.automation(client, trigger_type="scheduled")

        evaluator = TriggerEvaluator(session_factory, default_idle_minutes=1440, clock=clock)
        assert await evaluator.evaluate(ClockTickEvent(lead_id=lead.id)) == []

    async def test_automation_idle_override(self, session_factory, seed, clock):
        client = await seed.client()
        lead = await seed.lead(client, last_message_sent=clock.now - timedelta(hours=2))
        automation = await seed.automation(client, trigger_type="scheduled", schedule_idle_minutes=60)

        evaluator = TriggerEvaluator(session_factory, default_idle_minutes=1440, clock=clock)
        matched = await evaluator.evaluate(ClockTickEvent(lead_id=lead.id))

        assert [a.id for a in matched] == [automation.id]

    async def test_recent_run_blocks_rerun_whatever_its_outcome(self, session_factory, seed, clock):
        client = await seed.client()
        lead = await seed.lead(client, last_message_sent=clock.now - timedelta(days=3))
        automation = await seed.automation(client, trigger_type="scheduled", schedule_idle_minutes=1440)
        async with session_factory() as db:
            db.add(AutomationRun(
                automation_id=automation.id,
                lead_id=lead.id,
                client_id=client.id,
                current_step_index=1,
                scheduled_at=clock.now - timedelta(hours=3),
                state="completed",
                deferral_count=0,
                started_at=clock.now - timedelta(hours=3),
            ))
            await db.commit()

        evaluator = TriggerEvaluator(session_factory, default_idle_minutes=1440, clock=clock)
        assert await evaluator.evaluate(ClockTickEvent(lead_id=lead.id)) == []

        clock.advance(hours=21)
        matched = await evaluator.evaluate(ClockTickEvent(lead_id=lead.id))
        assert [a.id for a in matched] == [automation.id]

    async def test_injected_condition(self, session_factory, seed, clock):
        client = await seed.client()
        lead = await seed.lead(client)
        await seed.automation(client, trigger_type="scheduled")
        seen = []

        async def never_due(automation, lead, now):
            seen.append(now)
            return False

        evaluator = TriggerEvaluator(session_factory, scheduled_condition=never_due, clock=clock)
        assert await evaluator.evaluate(ClockTickEvent(lead_id=lead.id)) == []
        assert seen == [clock.now]

    def test_idle_condition_uses_created_at_when_never_messaged(self, clock):
        from types import SimpleNamespace

        is_due = idle_condition(60)
        automation = SimpleNamespace(schedule_idle_minutes=None)
        lead = SimpleNamespace(last_message_sent=None, created_at=clock.now - timedelta(minutes=61))
        assert is_due(automation, lead, clock.now)
