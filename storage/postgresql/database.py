"""
Database Manager
PostgreSQL connections and the parent-document store built on them
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Optional
import logging
import os

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from hybrid_retrieval.context.parent_retriever import ParentDocumentStore
from hybrid_retrieval.errors import BackendError, BackendUnavailable
from hybrid_retrieval.models import ParentDocument
from storage.postgresql.models import ParentDocumentRecord

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Async PostgreSQL database manager"""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or self._get_database_url()
        self.engine = create_async_engine(
            self.database_url,
            echo=False,
            pool_size=10,
            max_overflow=20
        )
        self.SessionLocal = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

    def _get_database_url(self) -> str:
        """Get database URL from environment variables"""
        if url := os.getenv("DATABASE_URL"):
            return url

        host = os.getenv("POSTGRES_HOST", "localhost")
        port = os.getenv("POSTGRES_PORT", "5432")
        user = os.getenv("POSTGRES_USER", "postgres")
        password = os.getenv("POSTGRES_PASSWORD", "password")
        db_name = os.getenv("POSTGRES_DB", "hybrid_retrieval")

        return f"postgresql+asyncpg://{user}:{password}@{host}:{port}/{db_name}"

    @asynccontextmanager
    async def get_session(self):
        """Get async database session"""
        async with self.SessionLocal() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    async def health_check(self) -> bool:
        """Check database connectivity"""
        try:
            async with self.get_session() as session:
                result = await session.execute(text("SELECT 1"))
                return result.scalar() == 1
        except Exception as e:
            logger.warning(f"Database health check failed: {e}")
            return False

    async def close(self):
        """Close database connection"""
        if self.engine:
            await self.engine.dispose()


class PostgresParentStore(ParentDocumentStore):
    """Parent-document lookup over the parent_documents table"""

    name = "postgres"

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def health_check(self) -> bool:
        return await self.db.health_check()

    async def get(self, parent_id: str) -> Optional[ParentDocument]:
        try:
            async with self.db.get_session() as session:
                record = await session.get(ParentDocumentRecord, parent_id)
                return record.to_parent_document() if record else None
        except (OperationalError, InterfaceError) as e:
            raise BackendUnavailable(self.name, str(e.orig or e)) from e
        except (DBAPIError, SQLAlchemyError) as e:
            raise BackendError(self.name, str(e)) from e
        except (asyncio.TimeoutError, ConnectionError, OSError) as e:
            raise BackendUnavailable(self.name, str(e) or type(e).__name__) from e
