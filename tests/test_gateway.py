import json

import httpx
import pytest

from chordbook.exceptions import RemoteError
from chordbook.gateway import RemoteGateway
from chordbook.models import LocalId, Playbook, RemoteId, Song, SyncStatus
from chordbook.registry import PLAYBOOKS, SONGS

from conftest import BASE_URL, SERVER_TIME


def _gateway(handler) -> RemoteGateway:
    return RemoteGateway(BASE_URL, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


# ---------------------------------------------------------------------------
# Happy paths against the fake server
# ---------------------------------------------------------------------------


async def test_list_filters_by_user(server, gateway):
    server.seed("playbooks", {"_id": "p1", "userId": "u1", "name": "Gigs", "songs": []})
    server.seed("playbooks", {"_id": "p2", "userId": "u2", "name": "Other", "songs": []})

    playbooks = await gateway.list_playbooks("u1")

    assert [p.id for p in playbooks] == [RemoteId("p1")]
    assert all(p.sync_status is SyncStatus.SYNCED for p in playbooks)


async def test_list_sends_user_id_query_param():
    seen = []

    def handler(request):
        seen.append(request.url.params.get("userId"))
        return httpx.Response(200, json=[])

    async with _gateway(handler) as gw:
        assert await gw.list_songs("u42") == []
    assert seen == ["u42"]


async def test_create_returns_server_copy(server, gateway):
    song = Song(id=LocalId("1"), owner_id="u1", title="Ripple", key="G")

    created = await gateway.create_song(song)

    assert created.id == RemoteId("srv1")
    assert created.title == "Ripple"
    assert created.sync_status is SyncStatus.SYNCED
    assert created.created_at == SERVER_TIME


async def test_create_strips_local_fields():
    bodies = []

    def handler(request):
        body = json.loads(request.content)
        bodies.append(body)
        return httpx.Response(201, json={**body, "_id": "srv9"})

    playbook = Playbook(id=LocalId("1"), owner_id="u1", name="Gigs", songs=[LocalId("2")])
    async with _gateway(handler) as gw:
        await gw.create(PLAYBOOKS, playbook)

    body = bodies[0]
    assert "_id" not in body
    assert "syncStatus" not in body
    assert "markedForDeletion" not in body
    assert body["songs"] == ["local_2"]


async def test_update_merges_on_server(server, gateway):
    server.seed("songs", {"_id": "s1", "userId": "u1", "title": "Old", "key": "C", "sections": []})

    updated = await gateway.update_song(RemoteId("s1"), {"title": "New"})

    assert updated.title == "New"
    assert updated.updated_at == SERVER_TIME
    assert server.docs["songs"]["s1"]["title"] == "New"


async def test_delete_removes_on_server(server, gateway):
    server.seed("songs", {"_id": "s1", "userId": "u1", "title": "Gone"})
    await gateway.delete_song(RemoteId("s1"))
    assert "s1" not in server.docs["songs"]
    assert server.count("DELETE", "/api/songs/s1") == 1


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


async def test_missing_entity_raises_with_status(gateway):
    with pytest.raises(RemoteError) as exc_info:
        await gateway.get_playbook(RemoteId("nope"))
    assert exc_info.value.status_code == 404
    assert exc_info.value.is_rejection
    assert "not found" in exc_info.value.body


async def test_server_error_is_not_a_rejection(server, gateway):
    server.fail(503)
    with pytest.raises(RemoteError) as exc_info:
        await gateway.list_playbooks("u1")
    assert exc_info.value.status_code == 503
    assert not exc_info.value.is_rejection


async def test_transport_failure_has_status_zero():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with _gateway(refuse) as gw:
        with pytest.raises(RemoteError) as exc_info:
            await gw.get(SONGS, RemoteId("s1"))
    assert exc_info.value.status_code == 0
    assert exc_info.value.url == f"{BASE_URL}/songs/s1"


async def test_malformed_body_is_a_remote_error():
    async with _gateway(lambda request: httpx.Response(200, json={"userId": "u1"})) as gw:
        with pytest.raises(RemoteError, match="200"):
            await gw.get_song(RemoteId("s1"))


async def test_malformed_list_is_a_remote_error():
    async with _gateway(lambda request: httpx.Response(200, json=[{"_id": "p1"}])) as gw:
        with pytest.raises(RemoteError):
            await gw.list_playbooks("u1")


async def test_local_id_has_no_server_path(gateway):
    with pytest.raises(ValueError):
        await gateway.delete_playbook(LocalId("1"))


async def test_base_url_trailing_slash_is_ignored(server):
    gw = RemoteGateway(f"{BASE_URL}/", client=httpx.AsyncClient(transport=httpx.MockTransport(server.handler)))
    async with gw:
        await gw.list_songs("u1")
    assert server.calls == [("GET", "/api/songs")]
