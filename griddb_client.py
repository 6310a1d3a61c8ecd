import base64
import json
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Union

import httpx
from loguru import logger
from pydantic import BaseModel

from errors import StoreError
from settings import Settings

DEFAULT_CONTAINER_NAME = "camvidai"


class Column(BaseModel):
    name: str
    type: str


# Positional: rows are written and read back in exactly this order.
RECORD_COLUMNS = [
    Column(name="id", type="INTEGER"),
    Column(name="imageURL", type="STRING"),
    Column(name="prompt", type="STRING"),
    Column(name="generatedVideoURL", type="STRING"),
]


class StoredRecord(BaseModel):
    id: int
    imageURL: str
    prompt: str
    generatedVideoURL: str


class SQLStatement(BaseModel):
    type: str = "sql-select"
    stmt: str


def _record_id(value: Any) -> int:
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"record id must be an integer, got {value!r}")
        return int(value)
    return int(str(value))


def to_row(record: Union[StoredRecord, Mapping[str, Any]]) -> list:
    """Serialize a record into the container's column order.

    A missing or non-numeric id raises KeyError/ValueError/TypeError; that is a
    caller bug, not a store failure.
    """
    if isinstance(record, StoredRecord):
        record = record.model_dump()
    return [
        _record_id(record["id"]),
        record["imageURL"],
        record["prompt"],
        record["generatedVideoURL"],
    ]


def rows_to_records(result: Any) -> List[StoredRecord]:
    """Project the first result set of a query response onto StoredRecord.

    The store answers ``[{"results": [[id, imageURL, prompt, generatedVideoURL], ...]}]``.
    """
    if not isinstance(result, list) or not result:
        return []
    first = result[0]
    rows = first.get("results") if isinstance(first, dict) else None
    if not isinstance(rows, list):
        return []
    return [
        StoredRecord(id=row[0], imageURL=row[1], prompt=row[2], generatedVideoURL=row[3])
        for row in rows
    ]


def _process_response(text: str, success_message: str = "Operation completed successfully") -> Any:
    if text:
        try:
            return json.loads(text)
        except ValueError:
            return {"message": success_message, "response": text}
    return {"message": success_message}


class GridDBClient:
    """Thin client for the GridDB Web API.

    Holds only configuration and a Basic credential computed once, so a single
    instance can be shared by concurrent inserts and queries.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        container_name: str = DEFAULT_CONTAINER_NAME,
        timeout: Optional[float] = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.container_name = container_name
        token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
        self._auth = f"Basic {token}"
        self._timeout = httpx.Timeout(timeout)
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> "GridDBClient":
        return cls(
            settings.griddb_webapi_url,
            settings.griddb_username,
            settings.griddb_password,
            container_name=settings.griddb_container,
            timeout=settings.request_timeout_s,
            transport=transport,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def _request(self, path: str, payload: Any, method: str = "POST") -> Any:
        headers = {
            "Content-Type": "application/json; charset=UTF-8",
            "Authorization": self._auth,
        }
        try:
            async with self._client() as client:
                r = await client.request(method, f"{self.base_url}{path}", json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"GridDB {method} {path} failed: {e}")
            raise StoreError("Failed to make request to GridDB", details=str(e))

        if r.status_code >= 300:
            logger.error(f"GridDB {method} {path} returned {r.status_code}")
            raise StoreError(
                f"HTTP error! status: {r.status_code} - {r.text or r.reason_phrase}",
                status=r.status_code,
                details=r.text,
            )
        return _process_response(r.text)

    async def ensure_container(
        self,
        name: Optional[str] = None,
        columns: Optional[Sequence[Column]] = None,
    ) -> dict:
        """Create the container unless it exists. Safe to call on every start."""
        name = name or self.container_name
        columns = list(columns or RECORD_COLUMNS)

        try:
            async with self._client() as client:
                r = await client.get(f"{self.base_url}/containers/{name}/info", headers={"Authorization": self._auth})
        except httpx.HTTPError as e:
            logger.error(f"GridDB container check for {name} failed: {e}")
            raise StoreError(f"Failed to create GridDB container: {e}", details=str(e))

        if r.status_code != 404:
            logger.debug(f"GridDB container {name} already exists ({r.status_code})")
            return {"message": f"Container {name} already exists"}

        payload = {
            "container_name": name,
            "container_type": "COLLECTION",
            "rowkey": True,
            "columns": [c.model_dump() for c in columns],
        }
        result = await self._request("/containers", payload)
        logger.info(f"GridDB container {name} created")
        return result

    async def insert(
        self,
        record: Union[StoredRecord, Mapping[str, Any]],
        container_name: Optional[str] = None,
    ) -> Any:
        row = to_row(record)
        name = container_name or self.container_name
        return await self._request(f"/containers/{name}/rows", [row], method="PUT")

    async def query(self, statements: Iterable[Union[SQLStatement, Mapping[str, Any]]]) -> Any:
        """Run SQL statements; the raw tabular response is returned untouched."""
        statements = list(statements or [])
        if not statements:
            raise StoreError("Queries must be a non-empty array of SQL query objects.")
        payload = [s.model_dump() if isinstance(s, SQLStatement) else dict(s) for s in statements]
        return await self._request("/sql/dml/query", payload)
