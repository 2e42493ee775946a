"""
Database Configuration and Session Management
============================================

Async engine, session factory and table creation for the gig ledger.
A Database object is built once at process start and injected into services.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker, AsyncEngine
from sqlalchemy.pool import NullPool
from config import Config
from models import Base

logger = logging.getLogger(__name__)


def normalize_async_url(database_url: str) -> str:
    """Map plain driver URLs onto their async drivers"""
    if database_url.startswith('postgresql://'):
        database_url = database_url.replace('postgresql://', 'postgresql+asyncpg://', 1)
        # asyncpg uses 'ssl' instead of 'sslmode' parameter
        database_url = database_url.replace('sslmode=require', 'ssl=require')
        database_url = database_url.replace('sslmode=prefer', 'ssl=prefer')
        database_url = database_url.replace('sslmode=disable', 'ssl=disable')
    elif database_url.startswith('sqlite://'):
        database_url = database_url.replace('sqlite://', 'sqlite+aiosqlite://', 1)
    return database_url


class Database:
    """Owns the async engine and session factory"""

    def __init__(self, database_url: Optional[str] = None, echo: Optional[bool] = None):
        self.url = normalize_async_url(database_url or Config.DATABASE_URL)
        echo = Config.DATABASE_ECHO if echo is None else echo

        if not self.url:
            raise ValueError("DATABASE_URL environment variable is required")

        self.is_sqlite = self.url.startswith('sqlite')

        if self.is_sqlite:
            self.engine: AsyncEngine = create_async_engine(
                self.url,
                poolclass=NullPool,
                echo=echo,
                connect_args={"timeout": 30},  # busy timeout while another writer holds the lock
            )
            self._serialize_sqlite_writers()
        else:
            self.engine = create_async_engine(
                self.url,
                pool_size=Config.DATABASE_POOL_SIZE,
                max_overflow=Config.DATABASE_MAX_OVERFLOW,
                pool_pre_ping=True,
                pool_recycle=3600,
                pool_timeout=30,
                echo=echo,
                connect_args={
                    "server_settings": {"application_name": "gig_ledger"},
                    "timeout": 10,
                    "command_timeout": 30,
                },
            )

        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            autoflush=False,
            expire_on_commit=False,
        )

    def _serialize_sqlite_writers(self):
        """SQLite: take the write lock at BEGIN so concurrent units of work queue instead of deadlocking"""

        @event.listens_for(self.engine.sync_engine, "connect")
        def _disable_driver_begin(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(self.engine.sync_engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    @asynccontextmanager
    async def managed_session(self):
        """Unit of work: commit on success, rollback on error, always close"""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    async def create_tables(self):
        """Create all database tables if they don't exist"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("✅ DATABASE: Tables created/verified")

    async def test_connection(self) -> bool:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"❌ DATABASE: Connection test failed: {e}")
            return False

    async def dispose(self):
        await self.engine.dispose()
        logger.info("🔌 DATABASE: Engine disposed")
