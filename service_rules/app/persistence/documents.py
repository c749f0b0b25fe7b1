"""
PostgreSQL document store for canonical rule content.

Each collection is a table holding one JSONB document per row. Matches
use JSONB containment, so a match condition constrains exactly the keys
it names.
"""

import asyncio
import json
from contextlib import contextmanager
from typing import Any, Dict, List, Mapping, Optional

import asyncpg

from shared.errors import (
    QueryFailure,
    StorageError,
    StorageTimeout,
    StorageUnavailable,
    ValidationError,
    WriteFailure,
)
from shared.logging import get_logger
from shared.metrics import MetricsCollector, get_metrics_collector

STORE_NAME = "documents"
COLLECTIONS = ("rules", "table_data")

CONNECTION_ERRORS = (
    OSError,
    asyncpg.exceptions.InterfaceError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.CannotConnectNowError,
)


class Documents:
    """Schemaless collections of JSON documents backed by PostgreSQL."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        command_timeout: float = 30.0,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.logger = get_logger("rules.persistence.documents")
        self.metrics = metrics or get_metrics_collector("rules")
        self.pool: Optional[asyncpg.Pool] = None
        self._connect_lock = asyncio.Lock()

    async def start(self):
        """Connect eagerly instead of on first use."""
        await self.connection()

    async def close(self):
        """Release the connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("Document store closed")

    async def connection(self) -> asyncpg.Pool:
        """Return the shared pool, creating it on first use."""
        if self.pool is None:
            async with self._connect_lock:
                if self.pool is None:
                    self.pool = await self._connect()
        return self.pool

    async def _connect(self) -> asyncpg.Pool:
        self.logger.info("Connecting to document store", dsn=_redact(self.dsn))
        with self._translate("connect", StorageUnavailable):
            pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout
            )
        self.logger.info("Connected to document store")
        return pool

    async def ensure_schema(self):
        """Create collection tables if they don't exist."""
        pool = await self.connection()
        with self._translate("ensure_schema", WriteFailure):
            async with pool.acquire() as conn:
                for collection in COLLECTIONS:
                    await conn.execute(f"""
                        CREATE TABLE IF NOT EXISTS {collection} (
                            seq BIGSERIAL PRIMARY KEY,
                            doc JSONB NOT NULL
                        );
                    """)
                    await conn.execute(f"""
                        CREATE INDEX IF NOT EXISTS idx_{collection}_doc ON {collection} USING GIN (doc);
                    """)

    async def insert_one(self, collection: str, doc: Mapping[str, Any]) -> None:
        """Insert one document into a collection."""
        table = _collection(collection)
        pool = await self.connection()
        with self._translate("insert_one", WriteFailure, collection=collection):
            await pool.execute(
                f"INSERT INTO {table} (doc) VALUES ($1::jsonb)",
                json.dumps(doc, default=str)
            )
        self.logger.info("Document inserted", collection=collection)

    async def delete_many(self, collection: str, match: Mapping[str, Any]) -> int:
        """Delete every document containing ``match``; returns the count."""
        table = _collection(collection)
        pool = await self.connection()
        with self._translate("delete_many", WriteFailure, collection=collection):
            status = await pool.execute(
                f"DELETE FROM {table} WHERE doc @> $1::jsonb",
                json.dumps(dict(match), default=str)
            )
        deleted = _affected(status)
        self.logger.info("Documents deleted", collection=collection, match=dict(match), count=deleted)
        return deleted

    async def find(self, collection: str, match: Mapping[str, Any]) -> List[Dict[str, Any]]:
        """Return every document containing ``match``, oldest first."""
        table = _collection(collection)
        pool = await self.connection()
        with self._translate("find", QueryFailure, collection=collection):
            rows = await pool.fetch(
                f"SELECT doc FROM {table} WHERE doc @> $1::jsonb ORDER BY seq",
                json.dumps(dict(match), default=str)
            )
        docs = [_decode(row["doc"]) for row in rows]
        self.logger.debug("Documents found", collection=collection, count=len(docs))
        return docs

    async def ping(self) -> bool:
        """Return True when the document store answers."""
        try:
            pool = await self.connection()
            await pool.fetchval("SELECT 1")
            return True
        except Exception as e:
            self.logger.warning("Document store ping failed", error=str(e))
            return False

    @contextmanager
    def _translate(self, operation: str, failure: type, **context):
        """Map driver exceptions onto the shared storage errors."""
        with self.metrics.time_store_operation(STORE_NAME, operation):
            try:
                yield
            except asyncio.TimeoutError as e:
                self.logger.error("Document store timed out", operation=operation, error=str(e), **context)
                raise self._failed(StorageTimeout(STORE_NAME, str(e) or operation)) from e
            except CONNECTION_ERRORS as e:
                self.logger.error("Document store unavailable", operation=operation, error=str(e), **context)
                raise self._failed(StorageUnavailable(STORE_NAME, str(e))) from e
            except asyncpg.PostgresError as e:
                self.logger.error("Document store rejected operation", operation=operation, error=str(e), **context)
                raise self._failed(failure(STORE_NAME, str(e), {"sqlstate": getattr(e, "sqlstate", None)})) from e

    def _failed(self, error: StorageError) -> StorageError:
        self.metrics.record_error(error.code)
        return error


def _collection(name: str) -> str:
    if name not in COLLECTIONS:
        raise ValidationError(f"Unknown collection: {name}", {"collection": name})
    return name


def _affected(status: str) -> int:
    # asyncpg returns the command tag, e.g. "DELETE 3"
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


def _decode(value: Any) -> Dict[str, Any]:
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


def _redact(dsn: str) -> str:
    if "@" not in dsn:
        return dsn
    scheme, _, rest = dsn.partition("://")
    return f"{scheme}://***@{rest.split('@', 1)[1]}"
