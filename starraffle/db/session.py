from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import BigInteger, Integer
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import declarative_base
from starraffle.core.config import settings

engine = create_async_engine(settings.DATABASE_URL, pool_pre_ping=True, pool_recycle=3600)
AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)
Base = declarative_base()

# sqlite only autoincrements INTEGER PRIMARY KEY
IdType = BigInteger().with_variant(Integer, "sqlite")

async def get_session() -> AsyncSession:
    async with AsyncSessionLocal() as session:
        yield session

@asynccontextmanager
async def transaction(session_factory: async_sessionmaker = AsyncSessionLocal) -> AsyncIterator[AsyncSession]:
    """One unit of work: commits on clean exit, rolls back on any exception."""
    async with session_factory() as session:
        async with session.begin():
            yield session
