# backend/core/database.py
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine
from sqlalchemy.orm import DeclarativeBase

from backend.core.config import get_database_url


def build_engine(db_url: str) -> AsyncEngine:
    # Configure engine based on database type
    if "sqlite" in db_url:
        return create_async_engine(
            db_url,
            echo=False,
            connect_args={"check_same_thread": False}
        )
    return create_async_engine(
        db_url,
        pool_pre_ping=True,
        pool_recycle=3600
    )


engine = build_engine(get_database_url())

SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the DATETIME columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


async def get_db():
    async with SessionLocal() as session:
        yield session


def get_session_factory() -> async_sessionmaker:
    """Factory for code that needs more than one session at a time (fan-out reads)."""
    return SessionLocal
