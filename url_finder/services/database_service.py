# url_finder/services/database_service.py
"""
Database service for async SQLAlchemy session management.

Provides a singleton service for managing database connections,
sessions, and health checks. Supports both SQLite (development, tests)
and PostgreSQL (production).

Usage:
    from url_finder.services.database_service import database_service

    async with database_service.get_session() as session:
        result = await session.execute(select(StorageProvider))
        providers = result.scalars().all()

    await database_service.init_db()
    health = await database_service.health_check()
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..config import settings
from ..database.base import Base

_COUNTED_TABLES = ("storage_providers", "url_results", "deal_labels", "bms_bandwidth_results")


class DatabaseService:
    """
    Database service for managing async SQLAlchemy sessions.

    Singleton with a module-level instance. The engine is created lazily so
    that importing the module never opens a connection; tests pass an
    explicit ``database_url`` to get an isolated engine.

    Methods:
        get_session(): Async session context manager (commit/rollback)
        init_db(): Create all tables
        health_check(): Check database connectivity
        close(): Dispose the engine
    """

    def __init__(self, database_url: Optional[str] = None):
        self._logger = logging.getLogger("url_finder.database")
        self._database_url = database_url or settings.database_url
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None

    @property
    def database_url(self) -> str:
        return self._database_url

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._initialize_engine()
        return self._engine

    def _initialize_engine(self) -> None:
        """
        Create the async engine for the configured URL.

        SQLite:
            - aiosqlite driver, check_same_thread=False
            - Creates the data directory for file databases
            - In-memory databases share one connection (StaticPool)

        PostgreSQL:
            - asyncpg driver
            - Pool sized from settings (db_pool_size, db_max_overflow)
            - Pre-ping and periodic recycle
        """
        database_url = self._database_url
        self._logger.info(f"Initializing database: {database_url.split('@')[-1].split('?')[0]}")

        if database_url.startswith("sqlite"):
            if ":///" in database_url and ":memory:" not in database_url:
                db_path = database_url.split("///")[1].split("?")[0]
                db_dir = os.path.dirname(db_path)
                if db_dir and not os.path.exists(db_dir):
                    os.makedirs(db_dir, exist_ok=True)
                    self._logger.info(f"Created database directory: {db_dir}")

            engine_kwargs: Dict[str, Any] = {
                "connect_args": {"check_same_thread": False},
                "echo": settings.debug,
            }
            if ":memory:" in database_url:
                from sqlalchemy.pool import StaticPool

                engine_kwargs["poolclass"] = StaticPool
            else:
                engine_kwargs["pool_pre_ping"] = True

            self._engine = create_async_engine(database_url, **engine_kwargs)
            self._logger.info("Using SQLite database")
        else:
            self._engine = create_async_engine(
                database_url,
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_pre_ping=True,
                pool_recycle=settings.db_pool_recycle,
                echo=settings.debug,
            )
            self._logger.info(
                f"Using PostgreSQL database (pool_size={settings.db_pool_size}, "
                f"max_overflow={settings.db_max_overflow})"
            )

        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get async database session as context manager.

        Commits on success and rolls back on any error, so every block of
        writes inside one ``async with`` applies completely or not at all.

        Yields:
            AsyncSession: Async database session
        """
        if self._session_factory is None:
            self._initialize_engine()

        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def init_db(self) -> None:
        """
        Create all tables defined on ``Base.metadata`` if missing.

        Note:
            For production schema changes use the Alembic migrations.
        """
        self._logger.info("Creating database tables...")

        async with self.engine.begin() as conn:
            from ..database import models  # noqa: F401

            await conn.run_sync(Base.metadata.create_all)

        self._logger.info("Database tables created successfully")

    async def health_check(self) -> Dict[str, Any]:
        """
        Check database connectivity and gather row counts.

        Returns:
            Dict with health status:
                {
                    "status": "healthy" | "unhealthy",
                    "connected": True | False,
                    "database_type": "sqlite" | "postgresql",
                    "tables": {"storage_providers": count, ...},
                    "error": "message" (if unhealthy),
                }
        """
        db_type = "sqlite" if self._database_url.startswith("sqlite") else "postgresql"
        try:
            async with self.get_session() as session:
                await session.execute(text("SELECT 1"))

                tables: Dict[str, int] = {}
                for table in _COUNTED_TABLES:
                    result = await session.execute(text(f"SELECT COUNT(*) FROM {table}"))
                    tables[table] = result.scalar() or 0

            return {
                "status": "healthy",
                "connected": True,
                "database_type": db_type,
                "tables": tables,
            }

        except (SQLAlchemyError, OSError) as e:
            self._logger.error(f"Database health check failed: {str(e)}")
            return {
                "status": "unhealthy",
                "connected": False,
                "database_type": db_type,
                "error": str(e),
            }

    async def close(self) -> None:
        """Dispose the engine and all pooled connections."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            self._logger.info("Database connections closed")


# Global database service instance
database_service = DatabaseService()
