"""
Shared PostgreSQL pool
-----------------------
One bounded asyncpg pool is created per RagService and shared by the
pgvector store, the tenant settings store and the document repository.
Callers must not assume a dedicated connection; under load they queue on
``pool.acquire()``.
"""
from __future__ import annotations

import asyncpg
import orjson
from loguru import logger
from pgvector.asyncpg import register_vector


def _json_encoder(value) -> str:
    return orjson.dumps(value).decode("utf-8")


def _json_decoder(value):
    return orjson.loads(value) if isinstance(value, (str, bytes)) else value


async def _init_connection(conn: asyncpg.Connection) -> None:
    for type_name in ("jsonb", "json"):
        await conn.set_type_codec(
            type_name,
            encoder=_json_encoder,
            decoder=_json_decoder,
            schema="pg_catalog",
            format="text",
        )
    await register_vector(conn)


async def create_pool(dsn: str, max_size: int = 5) -> asyncpg.Pool:
    """
    Create the pool. The pgvector extension is created first on a one-off
    connection because every pooled connection registers the vector codec.
    """
    conn = await asyncpg.connect(dsn)
    try:
        await conn.execute("CREATE EXTENSION IF NOT EXISTS vector")
    finally:
        await conn.close()

    try:
        pool = await asyncpg.create_pool(
            dsn,
            min_size=1,
            max_size=max_size,
            timeout=2.0,
            command_timeout=60.0,
            max_inactive_connection_lifetime=30.0,
            init=_init_connection,
        )
    except (asyncpg.exceptions.InvalidPasswordError, OSError) as exc:
        logger.error(f"[DB] Failed to connect to PostgreSQL: {exc}")
        raise ConnectionError(f"Failed to connect to PostgreSQL: {exc}") from exc

    logger.info(f"[DB] Connection pool ready | max_size={max_size}")
    return pool
