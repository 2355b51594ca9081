"""
Seed a demo client with SMS settings, a lead and two automations.

Usage:
    python scripts/seed_demo_client.py
"""
import asyncio
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from leadflow.config import get_settings
from leadflow.models.automation import Automation
from leadflow.models.client import Client
from leadflow.models.lead import Lead
from leadflow.models.sms_settings import SMSSettings
from leadflow.schemas.automation import AutomationConfig

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DEMO_BUSINESS = "Austin Comfort HVAC"

DEMO_AUTOMATIONS = [
    {
        "name": "New lead welcome",
        "trigger_type": "new_lead",
        "trigger_keywords": [],
        "message_sequence": [
            {"delay_minutes": 0, "message_text": "Hi {name}, thanks for reaching out to Austin Comfort HVAC!"},
            {"delay_minutes": 60, "message_text": "Hi {name}, want to pick a time for a visit?", "has_booking_link": True},
            {"delay_minutes": 1440, "message_text": "Just checking in, {name}. Any questions we can answer?"},
        ],
        "business_hours_only": True,
    },
    {
        "name": "Price list",
        "trigger_type": "keyword_match",
        "trigger_keywords": ["price", "info"],
        "message_sequence": [
            {"delay_minutes": 0, "message_text": "Hi {name}, our price list is attached."},
        ],
        "business_hours_only": False,
    },
]


async def seed():
    settings = get_settings()
    engine = create_async_engine(settings.database_url, echo=False)
    async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with async_session() as session:
        result = await session.execute(
            select(Client).where(Client.business_name == DEMO_BUSINESS)
        )
        existing = result.scalar_one_or_none()
        if existing:
            logger.info("Demo client already exists (id=%s). Skipping.", existing.id)
            await engine.dispose()
            return

        client = Client(
            business_name=DEMO_BUSINESS,
            timezone="America/Chicago",
            is_active=True,
        )
        session.add(client)
        await session.flush()

        session.add(SMSSettings(
            client_id=client.id,
            twilio_phone_number="+15125550199",
            sender_name=DEMO_BUSINESS,
            business_hours_start="07:00",
            business_hours_end="19:00",
            monthly_sms_limit=1000,
        ))

        lead = Lead(
            client_id=client.id,
            name="Alex",
            phone="+15125559876",
            email="alex@example.com",
            source="website",
        )
        session.add(lead)

        for raw in DEMO_AUTOMATIONS:
            config = AutomationConfig.model_validate(raw)
            session.add(Automation(client_id=client.id, **config.model_dump(mode="json")))

        await session.commit()
        logger.info("Seeded demo client %s with lead %s", client.id, lead.id)

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(seed())
