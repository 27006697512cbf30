from datetime import datetime
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from n7_threat.database.base import Base, new_id
from n7_threat.models.alert import SecurityAlert
from n7_threat.schemas.alert import AlertStatus, AlertType, Severity
from n7_threat.store.sql import SQLAlchemyAlertStore

NOW = datetime(2026, 3, 2, 12, 0, 0)


@pytest.fixture
def now():
    return NOW


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def store(session_factory):
    return SQLAlchemyAlertStore(session_factory)


@pytest.fixture
def make_alert():
    def _make(**overrides) -> SecurityAlert:
        values = dict(
            id=new_id(),
            type=AlertType.THREAT_RULE_MATCH.value,
            severity=Severity.HIGH.value,
            status=AlertStatus.PENDING.value,
            title="Test alert",
            description="test",
            fingerprint=uuid4().hex[:16],
            is_correlated=False,
            correlation_id=None,
            correlated_alerts=[],
            rule_id=None,
            user_id=None,
            user_email=None,
            ip_address=None,
            session_id=None,
            score=50,
            occurrence_count=1,
            first_seen=NOW,
            last_seen=NOW,
            evidence={},
            context={},
            tags=[],
            created_at=NOW,
            updated_at=NOW,
        )
        values.update(overrides)
        return SecurityAlert(**values)

    return _make
