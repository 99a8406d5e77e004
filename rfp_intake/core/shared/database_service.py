"""
Database service for async SQLAlchemy session management.

PostgreSQL (asyncpg) is the production backend; SQLite (aiosqlite) is
accepted for local runs and tests.

Usage:
    from rfp_intake.core.shared.database_service import database_service

    async with database_service.get_session() as session:
        result = await session.execute(select(SavedSearch))

    await database_service.init_db()
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from rfp_intake.config import settings
from rfp_intake.core.database.base import Base


def _is_celery_worker() -> bool:
    """Check if we're running inside a Celery worker process."""
    return (
        os.getenv("CELERY_WORKER") == "1" or
        "celery" in os.getenv("_", "").lower() or
        os.getenv("FORKED_BY_MULTIPROCESSING") == "1"
    )


class DatabaseService:
    """
    Database service for managing async SQLAlchemy sessions.

    Methods:
        get_session(): Get async database session (context manager)
        init_db(): Create all tables
        close(): Dispose the engine
    """

    def __init__(self, database_url: Optional[str] = None):
        self._logger = logging.getLogger("rfp_intake.database")
        self._database_url = database_url or settings.database_url
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None
        self._initialize_engine()

    def _initialize_engine(self) -> None:
        """
        Create the async engine.

        Raises:
            ValueError: If the URL is neither PostgreSQL nor SQLite
        """
        database_url = self._database_url
        safe_url = database_url.split("@")[-1] if "@" in database_url else database_url

        if database_url.startswith("sqlite"):
            self._logger.info(f"Initializing SQLite database: {safe_url}")
            # Celery tasks call asyncio.run() per task; share nothing across loops
            self._engine = create_async_engine(
                database_url,
                poolclass=NullPool if _is_celery_worker() else None,
                echo=settings.debug,
                connect_args={"check_same_thread": False},
            )
        elif "postgresql" in database_url.lower():
            self._logger.info(f"Initializing PostgreSQL database: {safe_url}")
            if _is_celery_worker():
                self._engine = create_async_engine(
                    database_url,
                    poolclass=NullPool,
                    echo=settings.debug,
                    connect_args={"server_settings": {"application_name": "rfp-intake-worker"}},
                )
                self._logger.info("PostgreSQL configured with NullPool for Celery worker")
            else:
                self._engine = create_async_engine(
                    database_url,
                    pool_size=settings.db_pool_size,
                    max_overflow=settings.db_max_overflow,
                    pool_pre_ping=True,
                    pool_recycle=settings.db_pool_recycle,
                    echo=settings.debug,
                    connect_args={"server_settings": {"application_name": "rfp-intake"}},
                )
                self._logger.info(
                    f"PostgreSQL connection pool: size={settings.db_pool_size}, "
                    f"max_overflow={settings.db_max_overflow}, recycle={settings.db_pool_recycle}s"
                )
        else:
            raise ValueError(
                f"Unsupported database URL: {safe_url}. "
                "Use postgresql+asyncpg://... or sqlite+aiosqlite://..."
            )

        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @property
    def session_factory(self) -> async_sessionmaker:
        if not self._session_factory:
            raise RuntimeError("Database not initialized")
        return self._session_factory

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get async database session as context manager.

        Commits on success, rolls back and re-raises on error.
        """
        if not self._session_factory:
            raise RuntimeError("Database not initialized")

        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def init_db(self) -> None:
        """Create all tables that do not exist yet."""
        if not self._engine:
            raise RuntimeError("Database engine not initialized")

        self._logger.info("Creating database tables...")
        async with self._engine.begin() as conn:
            from rfp_intake.core.database import models  # noqa: F401

            await conn.run_sync(Base.metadata.create_all)
        self._logger.info("Database tables created successfully")

    async def close(self) -> None:
        if self._engine:
            await self._engine.dispose()
            self._logger.info("Database engine disposed")


database_service = DatabaseService()
