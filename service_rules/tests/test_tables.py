"""
Unit tests for the ClickHouse projection tables.
"""

import json
from unittest.mock import MagicMock

import httpx
import pydantic
import pytest

from shared.errors import ValidationError
from service_rules.app.adapters.clickhouse_client import ClickHouseClient
from service_rules.app.models import Applicable, Effective
from service_rules.app.persistence.tables import Condition, SelectStatement, Tables, _column_ddl


def captured_inserts(clickhouse):
    """Flatten insert_rows calls into (table, sorted keys, sorted values)."""
    inserts = []
    for call in clickhouse.insert_rows.await_args_list:
        table, columns, rows = call.args
        for row in rows:
            inserts.append({
                "tbl": table.split(".", 1)[1],
                "keys": sorted(columns),
                "vals": sorted(str(v) for v in row.values()),
            })
    return inserts


def expectation(tbl, doc):
    return {"tbl": tbl, "keys": sorted(doc.keys()), "vals": sorted(str(v) for v in doc.values())}


def applicable(i):
    return {
        "section": f"envelope{i}",
        "key": f"party{i}",
        "op": "eq",
        "val": f"value{i}",
        "rule_id": f"rule{i}",
    }


class TestInserts:
    """Decomposition of rules into projection rows."""

    @pytest.mark.asyncio
    async def test_store_repository(self, tables, clickhouse):
        row = {"clone_url": "https://github.com/example/rules.git"}

        await tables.store_repository(row)

        assert captured_inserts(clickhouse) == [expectation("repositories", row)]

    @pytest.mark.asyncio
    async def test_store_repository_needs_clone_url(self, tables, clickhouse):
        with pytest.raises(ValidationError):
            await tables.store_repository({"name": "rules"})
        clickhouse.insert_rows.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_store_repository_columns_exist_in_table(self, tables, clickhouse):
        await tables.ensure_schema()
        ddl = next(call.args[0] for call in clickhouse.execute.await_args_list if "rules.repositories" in call.args[0])
        declared = {col.split()[0] for col in ddl[ddl.index("(") + 1:ddl.index(") ENGINE")].split(", ")}

        await tables.store_repository({"clone_url": "https://github.com/example/rules.git", "branch": "main"})

        table, columns, rows = clickhouse.insert_rows.await_args.args
        assert table == "rules.repositories"
        assert columns == ("clone_url", "branch")
        assert set(columns) <= declared
        assert rows == [{"clone_url": "https://github.com/example/rules.git", "branch": "main"}]

    @pytest.mark.asyncio
    async def test_store_repository_rejects_unknown_columns(self, tables, clickhouse):
        with pytest.raises(ValidationError) as exc_info:
            await tables.store_repository({"clone_url": "https://github.com/example/rules.git", "colour": "red"})

        assert exc_info.value.details == {"columns": ["colour"]}
        clickhouse.insert_rows.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_store_meta(self, tables, clickhouse):
        meta = {
            "ns": "org.example",
            "name": "invoice-tax",
            "origin": "https://github.com/example/rules.git",
            "branch": "main",
            "rule_id": "3f786850e387550fdab836ed7e6dc881de23001b",
            "version": "1.0.0",
            "runtime": "0.4.0",
            "criticality": "normal",
        }

        await tables.store_meta(meta)

        assert captured_inserts(clickhouse) == [expectation("rules", meta)]

    @pytest.mark.asyncio
    async def test_store_applicables_orders_keys_before_clauses(self, tables, clickhouse):
        apps = [applicable(1), applicable(2)]

        await tables.store_applicables(apps)

        key_of = lambda a: {"section": a["section"], "key": a["key"]}
        assert captured_inserts(clickhouse) == [
            expectation("when_keys", key_of(apps[0])),
            expectation("when_keys", key_of(apps[1])),
            expectation("whens", apps[0]),
            expectation("whens", apps[1]),
        ]

    @pytest.mark.asyncio
    async def test_store_applicables_batches_one_request_per_table(self, tables, clickhouse):
        await tables.store_applicables([applicable(i) for i in range(5)])

        tables_hit = [call.args[0] for call in clickhouse.insert_rows.await_args_list]
        assert tables_hit == ["rules.when_keys", "rules.whens"]

    @pytest.mark.asyncio
    async def test_store_applicables_accepts_models(self, tables, clickhouse):
        app = Applicable(**applicable(7))

        await tables.store_applicables([app])

        assert captured_inserts(clickhouse)[-1] == expectation("whens", applicable(7))

    @pytest.mark.asyncio
    async def test_store_applicables_rejects_unknown_columns(self, tables, clickhouse):
        bad = dict(applicable(1), colour="red")

        with pytest.raises(pydantic.ValidationError):
            await tables.store_applicables([bad])
        clickhouse.insert_rows.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_store_nothing(self, tables, clickhouse):
        await tables.store_applicables([])
        await tables.store_effectives([])

        clickhouse.insert_rows.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_store_effectives(self, tables, clickhouse):
        effs = [
            {
                "country": "CA",
                "region": f"region{i}",
                "timezone": "America/Toronto",
                "starts": "2018-01-01T00:00:00",
                "ends": "2019-01-01T00:00:00",
                "key": f"key{i}",
                "rule_id": f"rule{i}",
            }
            for i in range(3)
        ]

        await tables.store_effectives(effs)

        assert captured_inserts(clickhouse) == [expectation("effective", e) for e in effs]

    @pytest.mark.asyncio
    async def test_store_effectives_allows_open_windows(self, tables, clickhouse):
        await tables.store_effectives([Effective(key="k", rule_id="r")])

        _, columns, rows = clickhouse.insert_rows.await_args.args
        assert columns == ("country", "region", "timezone", "starts", "ends", "key", "rule_id")
        assert rows[0]["starts"] is None


class TestRepositoryQueries:
    """Existence checks against the repositories table."""

    URL = "https://github.com/example/rules.git"

    def check_query(self, clickhouse):
        sql, params = clickhouse.query.await_args.args
        assert sql == "SELECT * FROM rules.repositories WHERE clone_url = {clone_url:String} FORMAT JSON"
        assert params == {"clone_url": self.URL}

    @pytest.mark.asyncio
    async def test_repository_exists(self, tables, clickhouse):
        clickhouse.query.return_value = {"data": [{"clone_url": self.URL}]}

        assert await tables.repository_exists(self.URL) is True
        self.check_query(clickhouse)

    @pytest.mark.asyncio
    async def test_repository_missing(self, tables, clickhouse):
        assert await tables.repository_exists(self.URL) is False
        self.check_query(clickhouse)

    @pytest.mark.asyncio
    async def test_if_has_repository_calls_back_when_found(self, tables, clickhouse):
        clickhouse.query.return_value = {"data": [{"clone_url": self.URL}]}
        found = MagicMock(return_value=None)

        await tables.if_has_repository(self.URL, found)

        found.assert_called_once_with()
        self.check_query(clickhouse)

    @pytest.mark.asyncio
    async def test_if_has_repository_silent_when_missing(self, tables, clickhouse):
        found = MagicMock(return_value=None)

        await tables.if_has_repository(self.URL, found)

        found.assert_not_called()

    @pytest.mark.asyncio
    async def test_unless_has_repository_calls_back_when_missing(self, tables, clickhouse):
        missing = MagicMock(return_value=None)

        await tables.unless_has_repository(self.URL, missing)

        missing.assert_called_once_with()
        self.check_query(clickhouse)

    @pytest.mark.asyncio
    async def test_unless_has_repository_silent_when_found(self, tables, clickhouse):
        clickhouse.query.return_value = {"data": [{"clone_url": self.URL}]}
        missing = MagicMock(return_value=None)

        await tables.unless_has_repository(self.URL, missing)

        missing.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("data", [[], [{"clone_url": URL}], [{"clone_url": URL}] * 2])
    async def test_exactly_one_callback_family_fires(self, tables, clickhouse, data):
        clickhouse.query.return_value = {"data": data}
        calls = []

        await tables.if_has_repository(self.URL, lambda: calls.append("found"))
        await tables.unless_has_repository(self.URL, lambda: calls.append("missing"))

        assert calls == (["found"] if data else ["missing"])

    @pytest.mark.asyncio
    async def test_async_callbacks_are_awaited(self, tables, clickhouse):
        calls = []

        async def on_missing():
            calls.append("missing")

        await tables.unless_has_repository(self.URL, on_missing)

        assert calls == ["missing"]


def test_select_statement_render_without_conditions():
    statement = SelectStatement("rules", ("rule_id", "version"), ())

    assert statement.render("rules") == ("SELECT rule_id, version FROM rules.rules FORMAT JSON", {})


def test_select_statement_render_joins_conditions():
    statement = SelectStatement("rules", ("*",), (Condition("ns", "a"), Condition("name", "b")))

    sql, params = statement.render("db")

    assert sql == "SELECT * FROM db.rules WHERE ns = {ns:String} AND name = {name:String} FORMAT JSON"
    assert params == {"ns": "a", "name": "b"}


@pytest.mark.asyncio
async def test_ensure_schema_creates_all_tables(tables, clickhouse):
    await tables.ensure_schema()

    statements = [call.args[0] for call in clickhouse.execute.await_args_list]
    assert statements[0] == "CREATE DATABASE IF NOT EXISTS rules"
    created = [s.split()[5] for s in statements[1:]]
    assert created == ["rules.repositories", "rules.rules", "rules.when_keys", "rules.whens", "rules.effective"]
    assert "version Nullable(String)" in statements[2]
    assert "rule_id String" in statements[2]


def test_column_ddl_needs_a_row_model():
    with pytest.raises(ValueError):
        _column_ddl("nope")


class TestClickHouseClient:
    """Rendering of requests by the HTTP client."""

    def make_client(self, handler):
        return ClickHouseClient("http://clickhouse:8123/", transport=httpx.MockTransport(handler))

    @pytest.mark.asyncio
    async def test_insert_rows_posts_json_each_row(self):
        seen = {}

        def handler(request):
            seen["query"] = request.url.params["query"]
            seen["body"] = request.content.decode()
            return httpx.Response(200, text="")

        client = self.make_client(handler)
        await client.insert_rows("rules.whens", ("section", "key"), [{"section": "a", "key": "b"}, {"section": "c", "key": "d"}])
        await client.close()

        assert seen["query"] == "INSERT INTO rules.whens (section, key) FORMAT JSONEachRow"
        assert [json.loads(line) for line in seen["body"].split("\n")] == [
            {"section": "a", "key": "b"},
            {"section": "c", "key": "d"},
        ]

    @pytest.mark.asyncio
    async def test_query_binds_parameters(self):
        seen = {}

        def handler(request):
            seen.update(request.url.params)
            return httpx.Response(200, json={"data": [{"clone_url": "x"}]})

        client = self.make_client(handler)
        result = await client.query("SELECT * FROM t WHERE clone_url = {clone_url:String}", {"clone_url": "x"})
        await client.close()

        assert result["data"] == [{"clone_url": "x"}]
        assert seen["param_clone_url"] == "x"

    @pytest.mark.asyncio
    async def test_rejected_insert_raises_write_failure(self):
        from shared.errors import WriteFailure

        client = self.make_client(lambda request: httpx.Response(400, text="Code: 16. DB::Exception"))
        with pytest.raises(WriteFailure) as exc_info:
            await client.insert_rows("rules.whens", ("section",), [{"section": "a"}])
        await client.close()

        assert exc_info.value.details == {"status_code": 400}

    @pytest.mark.asyncio
    async def test_rejected_query_raises_query_failure(self):
        from shared.errors import QueryFailure

        client = self.make_client(lambda request: httpx.Response(500, text="boom"))
        with pytest.raises(QueryFailure):
            await client.query("SELECT 1 FORMAT JSON")
        await client.close()

    @pytest.mark.asyncio
    async def test_unreachable_server_raises_unavailable(self):
        from shared.errors import StorageUnavailable

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = self.make_client(handler)
        with pytest.raises(StorageUnavailable):
            await client.query("SELECT 1 FORMAT JSON")
        assert await client.ping() is False
        await client.close()

    @pytest.mark.asyncio
    async def test_timeout_raises_storage_timeout(self):
        from shared.errors import StorageTimeout

        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = self.make_client(handler)
        with pytest.raises(StorageTimeout):
            await client.query("SELECT 1 FORMAT JSON")
        await client.close()

    @pytest.mark.asyncio
    async def test_failures_are_counted(self, metrics):
        from shared.errors import StorageUnavailable

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = ClickHouseClient("http://clickhouse:8123", transport=httpx.MockTransport(handler), metrics=metrics)
        for _ in range(2):
            with pytest.raises(StorageUnavailable):
                await client.query("SELECT 1 FORMAT JSON")
        await client.close()

        count = metrics.registry.get_sample_value(
            "errors_total", {"error_type": "STORAGE_UNAVAILABLE", "service": "rules"}
        )
        assert count == 2
