import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..models.alert import SecurityAlert
from ..schemas.alert import AlertStatus

logger = logging.getLogger("n7-threat.alert-store")

_CLOSED_STATUSES = (AlertStatus.RESOLVED.value, AlertStatus.SUPPRESSED.value)

# Attributes that make two alerts candidates for correlation
_LINK_ATTRIBUTES = ("user_id", "ip_address", "session_id", "user_email", "rule_id")


class SQLAlchemyAlertStore:
    """
    AlertStore backed by the security_alerts table.
    Every call opens its own session from the injected factory.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def find_related(self, alert: SecurityAlert, since: datetime, limit: int = 50) -> List[SecurityAlert]:
        conditions = [
            getattr(SecurityAlert, attr) == getattr(alert, attr)
            for attr in _LINK_ATTRIBUTES
            if getattr(alert, attr)
        ]
        if not conditions:
            return []

        stmt = (
            select(SecurityAlert)
            .where(
                or_(*conditions),
                SecurityAlert.id != alert.id,
                SecurityAlert.created_at >= since,
                SecurityAlert.status.not_in(_CLOSED_STATUSES),
            )
            .order_by(SecurityAlert.created_at.desc())
            .limit(limit)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def find_by_correlation_id(self, correlation_id: str) -> List[SecurityAlert]:
        stmt = (
            select(SecurityAlert)
            .where(SecurityAlert.correlation_id == correlation_id)
            .order_by(SecurityAlert.created_at.desc())
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def find_by_fingerprint(self, fingerprint: str) -> Optional[SecurityAlert]:
        stmt = (
            select(SecurityAlert)
            .where(SecurityAlert.fingerprint == fingerprint)
            .order_by(SecurityAlert.created_at.desc())
            .limit(1)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalars().first()

    async def get(self, alert_id: str) -> Optional[SecurityAlert]:
        async with self._session_factory() as session:
            return await session.get(SecurityAlert, alert_id)

    async def add(self, alert: SecurityAlert) -> SecurityAlert:
        async with self._session_factory() as session:
            session.add(alert)
            await session.commit()
        logger.debug(f"Stored alert {alert.id} ({alert.type})")
        return alert

    async def touch_occurrence(self, alert_id: str, seen_at: datetime) -> Optional[SecurityAlert]:
        async with self._session_factory() as session:
            await session.execute(
                update(SecurityAlert)
                .where(SecurityAlert.id == alert_id)
                .values(occurrence_count=SecurityAlert.occurrence_count + 1, last_seen=seen_at)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return await session.get(SecurityAlert, alert_id)

    async def mark_correlated(self, correlation_id: str, edges: Dict[str, List[str]]) -> None:
        if not edges:
            return
        rows = [
            {
                "id": alert_id,
                "correlation_id": correlation_id,
                "is_correlated": True,
                "correlated_alerts": related,
            }
            for alert_id, related in edges.items()
        ]
        async with self._session_factory() as session:
            # ORM bulk UPDATE by primary key
            await session.execute(update(SecurityAlert), rows)
            await session.commit()

    async def reassign_correlation(self, correlation_ids: List[str], new_correlation_id: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                update(SecurityAlert)
                .where(SecurityAlert.correlation_id.in_(correlation_ids))
                .values(correlation_id=new_correlation_id, is_correlated=True)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount
