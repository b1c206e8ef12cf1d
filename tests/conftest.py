"""Shared fixtures: an in-memory playbook server behind httpx.MockTransport."""

import json

import httpx
import pytest

from chordbook.connectivity import ConnectivityMonitor
from chordbook.engine import ReconciliationEngine
from chordbook.gateway import RemoteGateway
from chordbook.store import LocalRecordStore

BASE_URL = "http://chordbook.test/api"
SERVER_TIME = "2024-06-01T12:00:00+00:00"


class FakeServer:
    """Just enough of the playbook REST API to exercise the client.

    ``calls`` records ``(method, path)`` for every request. ``fail()`` makes
    matching requests answer with an error status instead.
    """

    def __init__(self):
        self.docs: dict[str, dict[str, dict]] = {"playbooks": {}, "songs": {}}
        self.calls: list[tuple[str, str]] = []
        self._rules = []
        self._next_id = 0

    def fail(self, status: int, predicate=lambda request, body: True) -> None:
        self._rules.append((predicate, status))

    def heal(self) -> None:
        self._rules.clear()

    def seed(self, collection: str, doc: dict) -> dict:
        self.docs[collection][doc["_id"]] = doc
        return doc

    def count(self, method: str, path: str) -> int:
        return sum(1 for call in self.calls if call == (method, path))

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        path = request.url.path
        self.calls.append((request.method, path))
        for predicate, status in self._rules:
            if predicate(request, body):
                return httpx.Response(status, json={"error": "injected failure"})

        parts = path.removeprefix("/api/").split("/")
        collection = parts[0]
        if collection not in self.docs:
            return httpx.Response(404, json={"error": "no such route"})
        docs = self.docs[collection]
        doc_id = parts[1] if len(parts) > 1 else None

        if doc_id is None and request.method == "GET":
            user_id = request.url.params.get("userId")
            return httpx.Response(200, json=[d for d in docs.values() if d.get("userId") == user_id])
        if doc_id is None and request.method == "POST":
            self._next_id += 1
            doc = {**body, "_id": f"srv{self._next_id}", "createdAt": SERVER_TIME, "updatedAt": SERVER_TIME}
            docs[doc["_id"]] = doc
            return httpx.Response(201, json=doc)
        if doc_id not in docs:
            return httpx.Response(404, json={"error": "not found"})
        if request.method == "GET":
            return httpx.Response(200, json=docs[doc_id])
        if request.method == "PUT":
            docs[doc_id] = {**docs[doc_id], **body, "_id": doc_id, "updatedAt": SERVER_TIME}
            return httpx.Response(200, json=docs[doc_id])
        if request.method == "DELETE":
            del docs[doc_id]
            return httpx.Response(204)
        return httpx.Response(405)


async def always_online() -> bool:
    return True


def make_gateway(server: FakeServer) -> RemoteGateway:
    client = httpx.AsyncClient(transport=httpx.MockTransport(server.handler))
    return RemoteGateway(BASE_URL, client=client)


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
async def gateway(server):
    gw = make_gateway(server)
    yield gw
    await gw.aclose()


@pytest.fixture
def monitor():
    return ConnectivityMonitor(always_online)


@pytest.fixture
def store():
    return LocalRecordStore()


@pytest.fixture
def engine(store, gateway, monitor):
    return ReconciliationEngine(store, gateway, monitor)
