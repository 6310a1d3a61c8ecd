import base64
import json

import httpx
import pytest

from conftest import GRIDDB_URL, FakeGridDB
from errors import StoreError
from griddb_client import RECORD_COLUMNS, GridDBClient, SQLStatement, StoredRecord, rows_to_records, to_row


def _client(db: FakeGridDB) -> GridDBClient:
    return GridDBClient(GRIDDB_URL, "admin", "secret", transport=db.transport)


class TestEnsureContainer:
    @pytest.mark.asyncio
    async def test_creates_missing_container_once(self, griddb):
        client = _client(griddb)
        await client.ensure_container()
        second = await client.ensure_container()

        assert len(griddb.calls("create")) == 1
        assert len(griddb.calls("info")) == 2
        assert second == {"message": "Container camvidai already exists"}

    @pytest.mark.asyncio
    async def test_create_payload(self, griddb):
        await _client(griddb).ensure_container()
        body = json.loads(griddb.calls("create")[0].content)
        assert body == {
            "container_name": "camvidai",
            "container_type": "COLLECTION",
            "rowkey": True,
            "columns": [
                {"name": "id", "type": "INTEGER"},
                {"name": "imageURL", "type": "STRING"},
                {"name": "prompt", "type": "STRING"},
                {"name": "generatedVideoURL", "type": "STRING"},
            ],
        }

    @pytest.mark.asyncio
    async def test_other_status_counts_as_existing(self, griddb):
        griddb.fail_on["info"] = 500
        result = await _client(griddb).ensure_container("other")
        assert result["message"] == "Container other already exists"
        assert griddb.calls("create") == []

    @pytest.mark.asyncio
    async def test_transport_failure_propagates(self):
        def _boom(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = GridDBClient(GRIDDB_URL, "admin", "secret", transport=httpx.MockTransport(_boom))
        with pytest.raises(StoreError) as exc:
            await client.ensure_container()
        assert exc.value.status is None
        assert "connection refused" in exc.value.details


class TestInsert:
    @pytest.mark.asyncio
    async def test_positional_row(self, griddb):
        record = StoredRecord(id=42, imageURL="https://x/a.jpg", prompt="dance", generatedVideoURL="https://x/v.mp4")
        await _client(griddb).insert(record)

        request = griddb.calls("insert")[0]
        assert request.method == "PUT"
        assert request.url.path.endswith("/containers/camvidai/rows")
        assert json.loads(request.content) == [[42, "https://x/a.jpg", "dance", "https://x/v.mp4"]]

    @pytest.mark.asyncio
    async def test_every_request_carries_basic_auth(self, griddb):
        client = _client(griddb)
        await client.ensure_container()
        await client.insert({"id": "7", "imageURL": "a", "prompt": "b", "generatedVideoURL": "c"})

        expected = "Basic " + base64.b64encode(b"admin:secret").decode()
        assert all(r.headers["Authorization"] == expected for r in griddb.requests)
        assert griddb.rows == [[7, "a", "b", "c"]]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad_id", ["abc", None])
    async def test_non_numeric_id_is_caller_error(self, griddb, bad_id):
        with pytest.raises(ValueError):
            await _client(griddb).insert({"id": bad_id, "imageURL": "a", "prompt": "b", "generatedVideoURL": "c"})
        assert griddb.requests == []

    @pytest.mark.asyncio
    async def test_integral_float_id_is_accepted(self, griddb):
        await _client(griddb).insert({"id": 42.0, "imageURL": "a", "prompt": "b", "generatedVideoURL": "c"})
        assert griddb.rows == [[42, "a", "b", "c"]]

    @pytest.mark.asyncio
    async def test_fractional_id_is_caller_error(self, griddb):
        with pytest.raises(ValueError):
            await _client(griddb).insert({"id": 42.5, "imageURL": "a", "prompt": "b", "generatedVideoURL": "c"})
        assert griddb.requests == []

    @pytest.mark.asyncio
    async def test_missing_id_is_caller_error(self, griddb):
        with pytest.raises(KeyError):
            await _client(griddb).insert({"imageURL": "a", "prompt": "b", "generatedVideoURL": "c"})

    @pytest.mark.asyncio
    async def test_http_error_is_store_error(self, griddb):
        griddb.fail_on["insert"] = 400
        with pytest.raises(StoreError) as exc:
            await _client(griddb).insert({"id": 1, "imageURL": "a", "prompt": "b", "generatedVideoURL": "c"})
        assert exc.value.status == exc.value.code == 400
        assert exc.value.details == "store exploded"
        assert "status: 400" in exc.value.message


class TestQuery:
    @pytest.mark.asyncio
    async def test_empty_statement_list_rejected_before_network(self, griddb):
        with pytest.raises(StoreError):
            await _client(griddb).query([])
        assert griddb.requests == []

    @pytest.mark.asyncio
    async def test_query_returns_raw_result(self, griddb):
        griddb.rows = [[42, "a", "b", "c"], [43, "d", "e", "f"]]
        result = await _client(griddb).query([{"type": "sql-select", "stmt": "SELECT * FROM T WHERE id = 42"}])

        assert result == [{"columns": [], "results": [[42, "a", "b", "c"]]}]
        assert json.loads(griddb.calls("query")[0].content) == [
            {"type": "sql-select", "stmt": "SELECT * FROM T WHERE id = 42"}
        ]
        records = rows_to_records(result)
        assert [r.model_dump() for r in records] == [
            {"id": 42, "imageURL": "a", "prompt": "b", "generatedVideoURL": "c"}
        ]

    @pytest.mark.asyncio
    async def test_statement_models_are_serialized(self, griddb):
        await _client(griddb).query([SQLStatement(stmt="SELECT * FROM camvidai")])
        assert json.loads(griddb.calls("query")[0].content) == [{"type": "sql-select", "stmt": "SELECT * FROM camvidai"}]


def test_rows_to_records_tolerates_empty_answers():
    assert rows_to_records([]) == []
    assert rows_to_records([{"results": []}]) == []
    assert rows_to_records({"message": "ok"}) == []


def test_row_order_matches_columns():
    row = to_row(StoredRecord(id=1, imageURL="i", prompt="p", generatedVideoURL="v"))
    assert [c.name for c in RECORD_COLUMNS] == ["id", "imageURL", "prompt", "generatedVideoURL"]
    assert row == [1, "i", "p", "v"]
