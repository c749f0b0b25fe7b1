"""
Async ClickHouse HTTP client wrapper used by the projection tables.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence

import httpx

from shared.errors import QueryFailure, StorageError, StorageTimeout, StorageUnavailable, WriteFailure
from shared.logging import get_logger
from shared.metrics import MetricsCollector

STORE_NAME = "clickhouse"


class ClickHouseClient:
    """Lightweight async client for ClickHouse's HTTP interface."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.logger = get_logger("rules.clickhouse")
        self.metrics = metrics
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def query(self, sql: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Execute a SQL query against ClickHouse and return the JSON-decoded response.

        Parameters are bound using ClickHouse HTTP named parameter semantics by
        passing them as `param_<name>` query parameters.
        """
        query_params: Dict[str, Any] = {"query": sql}
        if params:
            for key, value in params.items():
                query_params[f"param_{key}"] = value

        response = await self._send(query_params, None, QueryFailure)
        return response.json()

    async def execute(self, sql: str) -> None:
        """Run a statement that returns no rows (DDL)."""
        await self._send({"query": sql}, None, WriteFailure)

    async def insert_rows(
        self,
        table: str,
        columns: Sequence[str],
        rows: Iterable[Mapping[str, Any]],
    ) -> None:
        """
        Insert rows in one request using the JSONEachRow input format.

        Rows are written in the order given.
        """
        sql = f"INSERT INTO {table} ({', '.join(columns)}) FORMAT JSONEachRow"
        body = "\n".join(json.dumps(dict(row), default=str) for row in rows)
        await self._send({"query": sql}, body, WriteFailure)

    async def ping(self) -> bool:
        """Return True when ClickHouse responds successfully."""
        try:
            await self.query("SELECT 1 FORMAT JSON")
            return True
        except (QueryFailure, StorageUnavailable, StorageTimeout):
            return False

    async def _send(self, params: Dict[str, Any], body: Optional[str], failure: type) -> httpx.Response:
        try:
            response = await self._client.post("/", params=params, content=body)
            response.raise_for_status()
            return response
        except httpx.TimeoutException as exc:
            self.logger.error("ClickHouse request timed out", error=str(exc))
            raise self._failed(StorageTimeout(STORE_NAME, str(exc))) from exc
        except (httpx.ConnectError, httpx.NetworkError) as exc:
            self.logger.error("ClickHouse unreachable", url=self.base_url, error=str(exc))
            raise self._failed(StorageUnavailable(STORE_NAME, str(exc))) from exc
        except httpx.HTTPStatusError as exc:
            self.logger.error(
                "ClickHouse rejected request",
                status_code=exc.response.status_code,
                error=exc.response.text,
            )
            raise self._failed(failure(STORE_NAME, exc.response.text, {"status_code": exc.response.status_code})) from exc
        except httpx.HTTPError as exc:
            self.logger.error("ClickHouse request failed", error=str(exc))
            raise self._failed(failure(STORE_NAME, str(exc))) from exc

    def _failed(self, error: StorageError) -> StorageError:
        if self.metrics is not None:
            self.metrics.record_error(error.code)
        return error
