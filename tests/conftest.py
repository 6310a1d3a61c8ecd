"""Shared fixtures.

The job API and GridDB are replaced by in-memory fakes served through
``httpx.MockTransport``; nothing leaves the process.
"""

import json
import re

import httpx
import pytest

from settings import Settings

MODEL_ID = "fal-ai/kling-video/v2.1/pro/image-to-video"
IMAGE_URL = "https://cdn.test/files/captured-image.jpg"
VIDEO_URL = "https://cdn.test/files/output.mp4"
REQUEST_ID = "req-123"
GRIDDB_URL = "https://griddb.test/griddb/v2/cluster/dbs/public"


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        fal_key="test-key",
        fal_model_id=MODEL_ID,
        fal_queue_url="https://queue.test",
        fal_storage_url="https://storage.test",
        griddb_webapi_url=GRIDDB_URL,
        griddb_username="admin",
        griddb_password="secret",
        griddb_container="camvidai",
        poll_interval_ms=0,
        poll_max_attempts=10,
        storage="fal",
    )


class FakeJobAPI:
    """Job API double: storage upload, queue submit, status, result, cancel."""

    def __init__(self, statuses=("IN_PROGRESS", "COMPLETED"), error=None, video_url=VIDEO_URL, logs=None):
        self.statuses = list(statuses)
        self.error = error
        self.logs = logs
        self.video_url = video_url
        self.fail_on = {}
        self.requests = []

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def kinds(self) -> list:
        return [self.kind(r) for r in self.requests]

    @staticmethod
    def kind(request: httpx.Request) -> str:
        path = request.url.path
        if request.url.host == "storage.test":
            return "initiate"
        if request.url.host == "upload.test":
            return "put"
        if path.endswith("/status"):
            return "status"
        if path.endswith("/cancel"):
            return "cancel"
        if request.method == "POST":
            return "submit"
        return "result"

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        kind = self.kind(request)
        if kind in self.fail_on:
            return httpx.Response(self.fail_on[kind], text="boom")

        if kind == "initiate":
            return httpx.Response(200, json={"upload_url": "https://upload.test/put/abc", "file_url": IMAGE_URL})
        if kind == "put":
            return httpx.Response(200)
        if kind == "submit":
            return httpx.Response(200, json={"request_id": REQUEST_ID, "status": "IN_QUEUE"})
        if kind == "status":
            status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
            body = {"status": status, "request_id": REQUEST_ID}
            if self.error and status in ("FAILED", "CANCELLED"):
                body["error"] = self.error
            if self.logs is not None:
                body["logs"] = self.logs
            return httpx.Response(200, json=body)
        if kind == "cancel":
            return httpx.Response(202, json={"status": "CANCELLATION_REQUESTED"})
        return httpx.Response(200, json={"video": {"url": self.video_url}})


class FakeGridDB:
    """GridDB Web API double with just enough SQL for id lookups and listings."""

    def __init__(self, existing=False):
        self.containers = {}
        self.rows = []
        self.requests = []
        self.fail_on = {}
        if existing:
            self.containers["camvidai"] = {"container_name": "camvidai"}

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls(self, kind: str) -> list:
        return [r for r in self.requests if self.kind(r) == kind]

    @staticmethod
    def kind(request: httpx.Request) -> str:
        path = request.url.path
        if path.endswith("/info"):
            return "info"
        if path.endswith("/rows"):
            return "insert"
        if path.endswith("/sql/dml/query"):
            return "query"
        return "create"

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        kind = self.kind(request)
        if kind in self.fail_on:
            return httpx.Response(self.fail_on[kind], text="store exploded")

        if kind == "info":
            name = request.url.path.split("/")[-2]
            if name not in self.containers:
                return httpx.Response(404, json={"errorMessage": "Container not found"})
            return httpx.Response(200, json=self.containers[name])
        if kind == "create":
            body = json.loads(request.content)
            self.containers[body["container_name"]] = body
            return httpx.Response(201)
        if kind == "insert":
            self.rows.extend(json.loads(request.content))
            return httpx.Response(200, json={"count": 1})
        return httpx.Response(200, json=[self._select(s["stmt"]) for s in json.loads(request.content)])

    def _select(self, stmt: str) -> dict:
        rows = list(self.rows)
        match = re.search(r"WHERE id = (\d+)", stmt)
        if match:
            rows = [r for r in rows if r[0] == int(match.group(1))]
        if "ORDER BY id DESC" in stmt:
            rows.sort(key=lambda r: r[0], reverse=True)
        match = re.search(r"LIMIT (\d+)", stmt)
        if match:
            rows = rows[: int(match.group(1))]
        if stmt.startswith("SELECT id "):
            rows = [[r[0]] for r in rows]
        return {"columns": [], "results": rows}


@pytest.fixture()
def job_api() -> FakeJobAPI:
    return FakeJobAPI()


@pytest.fixture()
def griddb() -> FakeGridDB:
    return FakeGridDB()
