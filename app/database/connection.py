# app/database/connection.py
import asyncpg
from typing import Optional
from app.config import settings
import logging

logger = logging.getLogger(__name__)

class DatabaseConnection:
    """Process-wide asyncpg pool shared by the PostgreSQL storage backend"""
    _pool: Optional[asyncpg.Pool] = None

    @classmethod
    async def get_pool(cls) -> asyncpg.Pool:
        if cls._pool is None:
            if not settings.database_url:
                raise ValueError("DATABASE_URL is not configured")
            try:
                cls._pool = await asyncpg.create_pool(
                    settings.database_url,
                    min_size=settings.db_pool_min_size,
                    max_size=settings.db_pool_max_size,
                    command_timeout=settings.db_command_timeout,
                    server_settings={"application_name": "campaign-api"},
                )
                logger.info(
                    f"Database pool created (min={settings.db_pool_min_size}, "
                    f"max={settings.db_pool_max_size})"
                )
            except Exception as e:
                logger.error(f"Failed to create database pool: {e}")
                raise
        return cls._pool

    @classmethod
    async def ping(cls) -> bool:
        """True when a pooled connection answers a trivial query"""
        try:
            pool = await cls.get_pool()
            async with pool.acquire() as connection:
                return await connection.fetchval("SELECT 1") == 1
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    @classmethod
    async def close_pool(cls):
        if cls._pool:
            await cls._pool.close()
            cls._pool = None
            logger.info("Database connection pool closed")

async def get_db_connection() -> asyncpg.Connection:
    pool = await DatabaseConnection.get_pool()
    return await pool.acquire()

async def release_db_connection(connection: asyncpg.Connection):
    pool = await DatabaseConnection.get_pool()
    await pool.release(connection)
