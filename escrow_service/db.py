from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def get_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(database_url, echo=False, future=True)


def get_session(engine: AsyncEngine):
    return async_sessionmaker(
        bind=engine,
        expire_on_commit=False
    )


async def create_all(engine: AsyncEngine):
    from . import models  # noqa: F401  registers tables on Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
