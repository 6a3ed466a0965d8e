"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- Fake external collaborators (Redis, SMS gateway, decision oracle)
- Test data factories (conversations, messages, facts)
"""
# מפתח מפעיל לפני ייבוא app - בלעדיו ה-endpoints הידניים חסומים
import os
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")

import json
from datetime import datetime, timedelta
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.circuit_breaker import CircuitBreaker
from app.db.database import Base, get_db
from app.db.models import Conversation, LeadFact, Message, MessageDirection, MessageStatus, SentBy
from app.domain.services.classifiers import set_classifier
from app.domain.services.dispatch_service import MessageDispatcher
from app.domain.services.lead_agent_service import LeadAgent
from app.domain.services.messaging import BaseSmsProvider, reset_providers
from app.domain.services.oracle import (
    BaseDecisionOracle,
    OracleAction,
    OracleContext,
    OracleDecision,
    reset_oracle,
)
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

ADMIN_HEADERS = {"X-Admin-API-Key": "test-admin-key"}

# יום שלישי, 12:00 בניו יורק (EDT) - בתוך שעות הפעילות
FIXED_NOW = datetime(2026, 3, 10, 16, 0, 0)


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
def session_maker(async_engine):
    """Session factory for tests that need a second, independent session (race simulation)"""
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, fake_sms, fake_oracle):
    """Create test client with database and collaborators overridden"""
    from httpx import AsyncClient, ASGITransport

    from app.api.routes.agent import get_lead_agent
    from app.api.routes.messages import get_dispatcher

    async def override_get_db():
        yield db_session

    async def override_get_lead_agent():
        return LeadAgent(
            db_session,
            oracle=fake_oracle,
            dispatcher=MessageDispatcher(db_session, provider=fake_sms),
            sleep=AsyncMock(),
            clock=lambda: FIXED_NOW,
        )

    async def override_get_dispatcher():
        return MessageDispatcher(db_session, provider=fake_sms)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_lead_agent] = override_get_lead_agent
    app.dependency_overrides[get_dispatcher] = override_get_dispatcher

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Singletons reset
# ============================================================================

@pytest.fixture(autouse=True)
def reset_singletons():
    """circuit breakers, oracle, ספק SMS ו-classifier - מצב נקי לכל בדיקה"""
    CircuitBreaker.reset_all()
    reset_oracle()
    reset_providers()
    set_classifier(None)
    yield
    CircuitBreaker.reset_all()
    reset_oracle()
    reset_providers()
    set_classifier(None)


# ============================================================================
# Mock External Services
# ============================================================================

class FakeRedis:
    """Redis בזיכרון - רק הפקודות שהקוד משתמש בהן (SET NX EX, DELETE, PUBLISH)"""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.published: list[tuple[str, dict]] = []

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
        return removed

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, json.loads(message)))
        return 1

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        return None


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch) -> FakeRedis:
    """כל גישה ל-Redis עוברת דרך get_redis - מחליפים אותו ב-FakeRedis"""
    client = FakeRedis()

    async def _get_redis():
        return client

    monkeypatch.setattr("app.core.redis_client.get_redis", _get_redis)
    return client


@pytest.fixture(autouse=True)
def mock_enrichment_task():
    """Celery broker לא זמין בבדיקות - מחליפים את משימת הסנכרון"""
    with patch("app.workers.tasks.sync_lead_documents") as task:
        task.delay = MagicMock()
        yield task


class FakeSmsProvider(BaseSmsProvider):
    """ספק SMS שרושם כל שליחה; fail_with גורם לכשלון השליחות הבאות"""

    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.fail_with: Exception | None = None

    @property
    def provider_name(self) -> str:
        return "fake"

    async def send_text(self, to: str, text: str) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((to, text))
        return f"sms-{len(self.sent)}"

    @property
    def texts(self) -> list[str]:
        return [text for _, text in self.sent]


@pytest.fixture
def fake_sms() -> FakeSmsProvider:
    return FakeSmsProvider()


class FakeOracle(BaseDecisionOracle):
    """
    Oracle שמחזיר החלטות מתוך תור (או ברירת מחדל) ושומר כל context שקיבל.
    """

    def __init__(self):
        self.decisions: list[OracleDecision] = []
        self.default = OracleDecision(
            action=OracleAction.RESPOND,
            message="sounds good, what would you need to move forward?",
            reason="default reply",
        )
        self.contexts: list[OracleContext] = []
        self.error: Exception | None = None

    @property
    def provider_name(self) -> str:
        return "fake"

    def will_return(self, **kwargs: Any) -> None:
        self.decisions.append(OracleDecision(**kwargs))

    async def decide(self, context: OracleContext) -> OracleDecision:
        self.contexts.append(context)
        if self.error is not None:
            raise self.error
        if self.decisions:
            return self.decisions.pop(0)
        return self.default

    @property
    def calls(self) -> int:
        return len(self.contexts)


@pytest.fixture
def fake_oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def no_sleep() -> AsyncMock:
    """מחליף asyncio.sleep - ההשהיות נרשמות אבל לא מבוצעות"""
    return AsyncMock()


@pytest.fixture
def clock():
    """שעון קבוע שאפשר להזיז: clock.now = ..."""
    class _Clock:
        def __init__(self):
            self.now = FIXED_NOW

        def __call__(self) -> datetime:
            return self.now

        def advance(self, **kwargs) -> datetime:
            self.now = self.now + timedelta(**kwargs)
            return self.now

    return _Clock()


@pytest.fixture
def dispatcher(db_session: AsyncSession, fake_sms: FakeSmsProvider) -> MessageDispatcher:
    return MessageDispatcher(db_session, provider=fake_sms)


@pytest.fixture
def lead_agent(db_session, fake_oracle, dispatcher, no_sleep, clock) -> LeadAgent:
    return LeadAgent(
        db_session,
        oracle=fake_oracle,
        dispatcher=dispatcher,
        sleep=no_sleep,
        clock=clock,
    )


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def conversation_factory(db_session: AsyncSession):
    """Factory for creating test conversations"""
    async def _create_conversation(
        state: str = "ACTIVE",
        first_name: str | None = "John",
        business_name: str | None = "Acme Trucking",
        lead_phone: str | None = "+15551234567",
        nudge_count: int = 0,
        stall_count: int = 0,
        last_activity: datetime | None = None,
        created_at: datetime | None = None,
        **kwargs: Any,
    ) -> Conversation:
        conversation = Conversation(
            state=state,
            first_name=first_name,
            business_name=business_name,
            lead_phone=lead_phone,
            nudge_count=nudge_count,
            stall_count=stall_count,
            last_activity=last_activity or FIXED_NOW - timedelta(minutes=10),
            created_at=created_at or FIXED_NOW - timedelta(days=1),
            **kwargs,
        )
        db_session.add(conversation)
        await db_session.commit()
        await db_session.refresh(conversation)
        return conversation

    return _create_conversation


@pytest.fixture
def message_factory(db_session: AsyncSession):
    """Factory for creating log messages; `at` defaults to FIXED_NOW - 10 minutes"""
    async def _create_message(
        conversation: Conversation,
        content: str,
        direction: MessageDirection = MessageDirection.INBOUND,
        sent_by: SentBy | None = None,
        at: datetime | None = None,
        status: MessageStatus | None = None,
        **kwargs: Any,
    ) -> Message:
        if sent_by is None:
            sent_by = SentBy.CUSTOMER if direction == MessageDirection.INBOUND else SentBy.AI
        if status is None:
            status = MessageStatus.DELIVERED if direction == MessageDirection.INBOUND else MessageStatus.SENT
        message = Message(
            conversation_id=conversation.id,
            direction=direction,
            content=content,
            sent_by=sent_by,
            status=status,
            timestamp=at or FIXED_NOW - timedelta(minutes=10),
            **kwargs,
        )
        db_session.add(message)
        await db_session.commit()
        await db_session.refresh(message)
        return message

    return _create_message


@pytest.fixture
def fact_factory(db_session: AsyncSession):
    async def _create_fact(conversation: Conversation, key: str, value: str) -> LeadFact:
        fact = LeadFact(conversation_id=conversation.id, fact_key=key, fact_value=value)
        db_session.add(fact)
        await db_session.commit()
        return fact

    return _create_fact
