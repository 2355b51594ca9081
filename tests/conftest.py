"""
Test configuration and fixtures.
Uses a file-backed SQLite database per test. Transports and Redis are always faked.
"""
import asyncio
import itertools
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB

from leadflow.config import Settings
from leadflow.database import Base
import leadflow.models  # noqa: F401  (registers every table on Base.metadata)
from leadflow.models.automation import Automation
from leadflow.models.client import Client
from leadflow.models.lead import Lead
from leadflow.models.sms_settings import SMSSettings
from leadflow.schemas.automation import Channel
from leadflow.services.engine import ConversationEngine
from leadflow.services.transports.base import Transport, TransportReceipt

# Tuesday 10:00 in America/New_York (EST)
BASE_NOW = datetime(2026, 3, 3, 15, 0, tzinfo=timezone.utc)


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


class FakeClock:
    """Injectable clock; tests move time explicitly."""

    def __init__(self, now: datetime = BASE_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeTransport(Transport):
    """Records sends instead of calling a provider."""

    def __init__(self, provider_name: str):
        self.provider_name = provider_name
        self.sent: list[dict] = []
        self.fail_with: Exception | None = None
        self.delay: float = 0
        self._ids = itertools.count(1)

    async def send(self, to, body, sender=None, subject=None):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append({"to": to, "body": body, "sender": sender, "subject": subject})
        return TransportReceipt(
            message_id=f"{self.provider_name}-{next(self._ids)}",
            status="sent",
            provider=self.provider_name,
        )

    @staticmethod
    def map_status(provider_status):
        return {
            "sent": "sent",
            "delivered": "delivered",
            "read": "read",
            "failed": "failed",
        }.get(provider_status)


class Seeder:
    """Creates committed rows for tests."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def _add(self, obj):
        async with self.session_factory() as session:
            session.add(obj)
            await session.commit()
        return obj

    async def client(self, **kwargs) -> Client:
        values = {"business_name": "Austin Comfort HVAC", "is_active": True}
        values.update(kwargs)
        return await self._add(Client(**values))

    async def sms_settings(self, client: Client, **kwargs) -> SMSSettings:
        values = {
            "client_id": client.id,
            "twilio_phone_number": "+15125550199",
            "business_hours_start": "09:00",
            "business_hours_end": "18:00",
            "auto_reply_enabled": False,
            "monthly_sms_limit": 1000,
            "sms_sent_this_month": 0,
        }
        values.update(kwargs)
        return await self._add(SMSSettings(**values))

    async def lead(self, client: Client, **kwargs) -> Lead:
        values = {
            "client_id": client.id,
            "name": "Alex",
            "phone": "+15125559876",
            "email": "alex@example.com",
            "status": "new",
            "whatsapp_available": False,
            "preferred_channel": "auto",
            "created_at": BASE_NOW - timedelta(days=2),
        }
        values.update(kwargs)
        return await self._add(Lead(**values))

    async def automation(self, client: Client, steps=None, **kwargs) -> Automation:
        values = {
            "client_id": client.id,
            "name": "Welcome",
            "trigger_type": "new_lead",
            "trigger_keywords": [],
            "message_sequence": steps if steps is not None else [
                {"delay_minutes": 0, "message_text": "Hi {name}, thanks for reaching out!"},
            ],
            "is_active": True,
            "business_hours_only": False,
        }
        values.update(kwargs)
        return await self._add(Automation(**values))


@pytest.fixture
async def session_factory(tmp_path):
    """File-backed SQLite so separate sessions see each other's commits."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'leadflow.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        app_env="test",
        default_timezone="America/New_York",
        default_business_hours_start="09:00",
        default_business_hours_end="18:00",
        booking_base_url="https://book.example.com",
        dispatch_timeout_seconds=0.5,
        scheduler_max_concurrency=5,
        scheduled_idle_minutes_default=1440,
        auto_reply_cooldown_minutes=720,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transports():
    return {
        Channel.WHATSAPP: FakeTransport("whatsapp_cloud"),
        Channel.SMS: FakeTransport("twilio"),
        Channel.EMAIL: FakeTransport("sendgrid"),
    }


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)


@pytest.fixture
def engine(session_factory, settings, transports, clock, mock_redis):
    return ConversationEngine(session_factory, settings, transports=transports, clock=clock)


@pytest.fixture
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    with patch("leadflow.utils.dedup.get_redis") as mock:
        redis_mock = AsyncMock()
        redis_mock.set = AsyncMock(return_value=True)
        redis_mock.get = AsyncMock(return_value=None)
        redis_mock.ping = AsyncMock(return_value=True)
        mock.return_value = redis_mock
        yield redis_mock
