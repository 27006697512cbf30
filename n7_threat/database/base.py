from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime, String
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ..utils import utcnow


def new_id() -> str:
    return str(uuid4())


class Base(AsyncAttrs, DeclarativeBase):
    """
    Base class for all ORM models.
    """
    pass


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class UUIDMixin:
    # Stored as text so the same schema runs on Postgres and SQLite
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
