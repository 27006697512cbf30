from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ..config import settings
from .base import Base


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=echo, future=True)
    return create_async_engine(
        url,
        echo=echo,
        future=True,
        pool_pre_ping=True,  # Check connection liveness before checkout
        pool_size=20,
        max_overflow=10
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


# Async Engine
engine = build_engine(str(settings.DATABASE_URL), echo=settings.DEBUG)

# Session Factory
async_session_factory = build_session_factory(engine)


async def init_db(bind: AsyncEngine = engine):
    """Create any missing tables."""
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
