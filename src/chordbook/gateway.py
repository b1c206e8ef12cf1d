"""HTTP client for the playbook server's REST API.

Endpoints (relative to the configured base URL)::

    GET    /playbooks?userId=<id>     list
    GET    /playbooks/<id>            fetch one
    POST   /playbooks                 create
    PUT    /playbooks/<id>            partial update
    DELETE /playbooks/<id>            delete

and the same under ``/songs``. Bodies are JSON with ``_id`` as the server id.

The gateway issues exactly one request per call and never retries; retrying
is the sync service's job.
"""

import logging

import httpx

from .exceptions import RemoteError
from .models import Entity, LocalId, Playbook, RemoteId, Song
from .registry import PLAYBOOKS, SONGS, Collection

logger = logging.getLogger(__name__)

# Errors raised while decoding a response body into a model.
_DECODE_ERRORS = (ValueError, KeyError, TypeError)


class RemoteGateway:
    """CRUD against the playbook server."""

    def __init__(self, base_url: str, timeout: float = 10.0, client: httpx.AsyncClient | None = None):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "RemoteGateway":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # --- Generic verbs ---

    async def list_for_user(self, collection: Collection, user_id: str) -> list[Entity]:
        resp = await self._send("GET", collection.path, params={"userId": user_id})
        try:
            return [collection.model.from_wire(item) for item in resp.json()]
        except _DECODE_ERRORS as exc:
            raise RemoteError(str(resp.url), resp.status_code, f"Malformed {collection.name} list: {exc}") from exc

    async def get(self, collection: Collection, entity_id: RemoteId) -> Entity:
        resp = await self._send("GET", _item_path(collection, entity_id))
        return _decode_one(collection, resp)

    async def create(self, collection: Collection, entity: Entity) -> Entity:
        resp = await self._send("POST", collection.path, json=entity.to_wire(include_id=False))
        return _decode_one(collection, resp)

    async def update(self, collection: Collection, entity_id: RemoteId, patch: dict) -> Entity:
        resp = await self._send("PUT", _item_path(collection, entity_id), json=patch)
        return _decode_one(collection, resp)

    async def delete(self, collection: Collection, entity_id: RemoteId) -> None:
        await self._send("DELETE", _item_path(collection, entity_id))

    # --- Playbooks ---

    async def list_playbooks(self, user_id: str) -> list[Playbook]:
        return await self.list_for_user(PLAYBOOKS, user_id)

    async def get_playbook(self, playbook_id: RemoteId) -> Playbook:
        return await self.get(PLAYBOOKS, playbook_id)

    async def create_playbook(self, playbook: Playbook) -> Playbook:
        return await self.create(PLAYBOOKS, playbook)

    async def update_playbook(self, playbook_id: RemoteId, patch: dict) -> Playbook:
        return await self.update(PLAYBOOKS, playbook_id, patch)

    async def delete_playbook(self, playbook_id: RemoteId) -> None:
        await self.delete(PLAYBOOKS, playbook_id)

    # --- Songs ---

    async def list_songs(self, user_id: str) -> list[Song]:
        return await self.list_for_user(SONGS, user_id)

    async def get_song(self, song_id: RemoteId) -> Song:
        return await self.get(SONGS, song_id)

    async def create_song(self, song: Song) -> Song:
        return await self.create(SONGS, song)

    async def update_song(self, song_id: RemoteId, patch: dict) -> Song:
        return await self.update(SONGS, song_id, patch)

    async def delete_song(self, song_id: RemoteId) -> None:
        await self.delete(SONGS, song_id)

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = f"{self.base_url}{path}"
        logger.debug("%s %s", method, url)
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.RequestError as exc:
            raise RemoteError(url, 0, str(exc)) from exc
        if not resp.is_success:
            raise RemoteError(url, resp.status_code, resp.text)
        return resp


def _item_path(collection: Collection, entity_id: RemoteId) -> str:
    if isinstance(entity_id, LocalId):
        raise ValueError(f"Local id {entity_id} has no server counterpart")
    return f"{collection.path}/{entity_id}"


def _decode_one(collection: Collection, resp: httpx.Response) -> Entity:
    try:
        return collection.model.from_wire(resp.json())
    except _DECODE_ERRORS as exc:
        raise RemoteError(str(resp.url), resp.status_code, f"Malformed {collection.name}: {exc}") from exc
