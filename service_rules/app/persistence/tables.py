"""
ClickHouse projection tables for rule lookups.

A stored rule is decomposed into query-shaped rows:

- repositories: source repositories known to the platform.
- rules: one metadata row per rule.
- when_keys: the distinct section/key pairs a rule's conditions read.
- whens: the full condition clauses.
- effective: the geographic and temporal windows a rule applies in.

Every read and write is first built as a statement value (table, ordered
columns, ordered values or conditions) and only rendered to SQL by the
client, so the generated traffic can be checked without a server.
"""

import inspect
from dataclasses import dataclass
from itertools import groupby
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from shared.errors import ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector, get_metrics_collector
from ..adapters.clickhouse_client import ClickHouseClient
from ..models import Applicable, Effective, Repository, RuleMeta, WhenKey

STORE_NAME = "tables"

ROW_MODELS = {
    "repositories": Repository,
    "rules": RuleMeta,
    "when_keys": WhenKey,
    "whens": Applicable,
    "effective": Effective,
}

# Column store sort keys; these columns are never nullable
ORDER_KEYS = {
    "repositories": ("clone_url",),
    "rules": ("rule_id",),
    "when_keys": ("section", "key"),
    "whens": ("section", "key", "rule_id"),
    "effective": ("key", "rule_id"),
}


@dataclass(frozen=True)
class InsertStatement:
    """One row to insert into a table."""

    table: str
    columns: Tuple[str, ...]
    values: Tuple[Any, ...]

    def as_row(self) -> Dict[str, Any]:
        return dict(zip(self.columns, self.values))


@dataclass(frozen=True)
class Condition:
    """An equality condition in a WHERE clause."""

    key: str
    value: Any


@dataclass(frozen=True)
class SelectStatement:
    """A read of some columns from a table, filtered by equality."""

    table: str
    columns: Tuple[str, ...]
    conditions: Tuple[Condition, ...]

    def render(self, database: str) -> Tuple[str, Dict[str, Any]]:
        """Render to SQL with bound parameters."""
        sql = f"SELECT {', '.join(self.columns)} FROM {database}.{self.table}"
        params: Dict[str, Any] = {}
        if self.conditions:
            clauses = []
            for c in self.conditions:
                clauses.append(f"{c.key} = {{{c.key}:String}}")
                params[c.key] = c.value
            sql += " WHERE " + " AND ".join(clauses)
        return sql + " FORMAT JSON", params


class Tables:
    """Writes and reads rule projections in ClickHouse."""

    def __init__(
        self,
        client: ClickHouseClient,
        database: str = "rules",
        metrics: Optional[MetricsCollector] = None,
    ):
        self.client = client
        self.database = database
        self.logger = get_logger("rules.persistence.tables")
        self.metrics = metrics or get_metrics_collector("rules")

    @classmethod
    def from_url(cls, url: str, database: str = "rules", timeout: float = 5.0, **kwargs) -> "Tables":
        metrics = kwargs.pop("metrics", None) or get_metrics_collector("rules")
        client = ClickHouseClient(url, timeout=timeout, metrics=metrics)
        return cls(client, database, metrics=metrics, **kwargs)

    async def close(self):
        await self.client.close()

    async def ensure_schema(self):
        """Create the database and projection tables if they don't exist."""
        with self.metrics.time_store_operation(STORE_NAME, "ensure_schema"):
            await self.client.execute(f"CREATE DATABASE IF NOT EXISTS {self.database}")
            for table, order in ORDER_KEYS.items():
                await self.client.execute(
                    f"CREATE TABLE IF NOT EXISTS {self.database}.{table} ({_column_ddl(table)}) "
                    f"ENGINE = MergeTree ORDER BY ({', '.join(order)})"
                )

    async def store_repository(self, row: Mapping[str, Any]):
        """Insert a repository row with the columns it was given."""
        if "clone_url" not in row:
            raise ValidationError("Repository row needs a clone_url", {"keys": list(row)})
        unknown = sorted(set(row) - set(Repository.columns()))
        if unknown:
            raise ValidationError("Repository row has unknown columns", {"columns": unknown})
        repo = Repository.coerce(row)
        await self.execute_inserts(
            [InsertStatement("repositories", tuple(row), tuple(getattr(repo, k) for k in row))]
        )

    async def store_meta(self, meta: Union[RuleMeta, Mapping[str, Any]]):
        """Insert the metadata row of a rule."""
        await self.execute_inserts([self._insert("rules", RuleMeta.coerce(meta))])

    async def store_applicables(self, clauses: Iterable[Union[Applicable, Mapping[str, Any]]]):
        """
        Insert condition clauses.

        All ``when_keys`` rows go first, in input order, followed by all
        ``whens`` rows in input order; readers rely on a key row being
        visible no later than its clauses.
        """
        apps = [Applicable.coerce(c) for c in clauses]
        await self.execute_inserts(
            [self._insert("when_keys", app.when_key()) for app in apps]
            + [self._insert("whens", app) for app in apps]
        )

    async def store_effectives(self, windows: Iterable[Union[Effective, Mapping[str, Any]]]):
        """Insert applicability windows in input order."""
        await self.execute_inserts(
            [self._insert("effective", Effective.coerce(w)) for w in windows]
        )

    async def repository_exists(self, clone_url: str) -> bool:
        """Return True when a repository with this clone URL is known."""
        rows = await self.execute_select(
            SelectStatement("repositories", ("*",), (Condition("clone_url", clone_url),))
        )
        return len(rows) > 0

    async def if_has_repository(self, clone_url: str, on_found: Callable[[], Any]):
        """Call ``on_found`` once if the repository is known."""
        if await self.repository_exists(clone_url):
            await _call(on_found)

    async def unless_has_repository(self, clone_url: str, on_not_found: Callable[[], Any]):
        """Call ``on_not_found`` once if the repository is unknown."""
        if not await self.repository_exists(clone_url):
            await _call(on_not_found)

    async def execute_inserts(self, statements: Sequence[InsertStatement]):
        """Send inserts, one request per run of rows for the same table."""
        if not statements:
            return
        with self.metrics.time_store_operation(STORE_NAME, "insert"):
            for (table, columns), run in groupby(statements, key=lambda s: (s.table, s.columns)):
                rows = [s.as_row() for s in run]
                await self.client.insert_rows(f"{self.database}.{table}", columns, rows)
                self.logger.info("Projection rows inserted", table=table, count=len(rows))

    async def execute_select(self, statement: SelectStatement) -> List[Dict[str, Any]]:
        sql, params = statement.render(self.database)
        with self.metrics.time_store_operation(STORE_NAME, "select"):
            result = await self.client.query(sql, params)
        rows = result.get("data", [])
        self.logger.debug("Projection rows read", table=statement.table, count=len(rows))
        return rows

    async def ping(self) -> bool:
        return await self.client.ping()

    @staticmethod
    def _insert(table: str, row) -> InsertStatement:
        return InsertStatement(table, row.columns(), row.values())


def _column_ddl(table: str) -> str:
    model = ROW_MODELS.get(table)
    if model is None:
        raise ValueError(f"No row model for table: {table}")
    cols = []
    for name, info in model.model_fields.items():
        kind = "String" if info.is_required() else "Nullable(String)"
        cols.append(f"{name} {kind}")
    return ", ".join(cols)


async def _call(callback: Callable[[], Any]):
    result = callback()
    if inspect.isawaitable(result):
        await result
