"""
Database engine, session factory and transaction helpers.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from config import settings


engine = create_async_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO, pool_pre_ping=True)
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()


async def get_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency yielding a request-scoped session."""
    async with async_session_maker() as session:
        yield session


@asynccontextmanager
async def atomic(db: AsyncSession) -> AsyncIterator[AsyncSession]:
    """Run a unit of work: commit on success, roll back everything on failure."""
    try:
        yield db
        await db.commit()
    except BaseException:
        await db.rollback()
        raise
