from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ..database.base import Base, TimestampMixin, UUIDMixin
from ..schemas.alert import AlertStatus
from ..utils import utcnow


class SecurityAlert(Base, UUIDMixin, TimestampMixin):
    """
    Security Alert Model.
    One row per distinct (fingerprinted) alert. Recurrences bump
    occurrence_count/last_seen instead of inserting new rows.
    """
    __tablename__ = "security_alerts"

    type: Mapped[str] = mapped_column(String(64), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)  # LOW, MEDIUM, HIGH, CRITICAL
    status: Mapped[str] = mapped_column(String(16), default=AlertStatus.PENDING.value, nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Correlation; only the correlation service writes these
    is_correlated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    correlation_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    correlated_alerts: Mapped[list] = mapped_column(JSON, default=list)

    # Origin
    rule_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    rule_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    event_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Attribution
    user_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    user_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    session_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    location: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    score: Mapped[int] = mapped_column(Integer, default=0)
    occurrence_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    first_seen: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    last_seen: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    evidence: Mapped[dict] = mapped_column(JSON, default=dict)
    context: Mapped[dict] = mapped_column(JSON, default=dict)
    tags: Mapped[list] = mapped_column(JSON, default=list)

    def __repr__(self) -> str:
        return f"<SecurityAlert id={self.id} type={self.type} severity={self.severity}>"
