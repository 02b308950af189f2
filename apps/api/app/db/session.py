from __future__ import annotations

import os
from collections.abc import AsyncIterator

from dotenv import load_dotenv
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

load_dotenv()


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _raw_database_pool_url() -> str:
    database_pool_url = os.getenv("DATABASE_POOL_URL")
    if not database_pool_url:
        raise RuntimeError("DATABASE_POOL_URL must be set for API DB sessions.")
    return database_pool_url


def _command_timeout_seconds() -> float:
    raw = os.getenv("DATABASE_COMMAND_TIMEOUT_SECONDS")
    if not raw:
        return 10.0
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError("DATABASE_COMMAND_TIMEOUT_SECONDS must be a float.") from exc


def _to_async_driver(dsn: str) -> str:
    if dsn.startswith("postgresql+asyncpg://"):
        return dsn
    if dsn.startswith("postgresql+psycopg://"):
        return dsn.replace("postgresql+psycopg://", "postgresql+asyncpg://", 1)
    if dsn.startswith("postgresql://"):
        return dsn.replace("postgresql://", "postgresql+asyncpg://", 1)
    raise RuntimeError("DATABASE_POOL_URL must use a PostgreSQL DSN.")


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = create_async_engine(
            _to_async_driver(_raw_database_pool_url()),
            pool_pre_ping=True,
            pool_size=5,
            pool_timeout=_command_timeout_seconds(),
            # statement_cache_size=0 keeps asyncpg compatible with pgbouncer transaction pooling.
            connect_args={"statement_cache_size": 0, "command_timeout": _command_timeout_seconds()},
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
            autocommit=False,
        )
    return _session_factory


async def get_db(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
