"""Offline-first reconciliation between the local store and the server.

Every read and write goes through :class:`ReconciliationEngine`. It asks the
connectivity monitor whether to talk to the server and falls back to the
local store when the answer is no or the request fails.

Sync status discipline
----------------------

+----------------------------------------------+-----------------------------+
| Outcome                                      | ``sync_status``             |
+==============================================+=============================+
| server confirmed the write                   | ``synced`` (server id)      |
+----------------------------------------------+-----------------------------+
| written locally only (offline, network or    | ``pending``                 |
| 5xx failure)                                 |                             |
+----------------------------------------------+-----------------------------+
| server rejected the write (4xx)              | ``error``                   |
+----------------------------------------------+-----------------------------+

Records in any state stay readable and editable. Deletes made offline only
set ``marked_for_deletion``; the replay service removes the record once the
server has been told.
"""

import logging
from dataclasses import replace
from typing import Callable

from .connectivity import ConnectivityMonitor
from .exceptions import LocalStoreCorruption, NotFound, RemoteError
from .gateway import RemoteGateway
from .models import (
    Entity,
    EntityId,
    LocalId,
    LocalIdFactory,
    Playbook,
    RemoteId,
    Section,
    Song,
    SongRef,
    SyncStatus,
    apply_changes,
    as_id,
    check_changes,
    ref_id,
    utc_now,
    wire_patch,
)
from .registry import COLLECTIONS, PLAYBOOKS, SONGS, Collection
from .store import LocalRecordStore

logger = logging.getLogger(__name__)

DEFAULT_PLAYBOOK_NAME = "My Songs"
DEFAULT_PLAYBOOK_DESCRIPTION = "Your default song collection"


class ReconciliationEngine:
    """CRUD for playbooks and songs that keeps working without a network."""

    def __init__(
        self,
        store: LocalRecordStore,
        gateway: RemoteGateway,
        monitor: ConnectivityMonitor,
        new_local_id: Callable[[], LocalId] | None = None,
        now: Callable[[], str] = utc_now,
    ):
        self.store = store
        self.gateway = gateway
        self.monitor = monitor
        self._new_local_id = new_local_id or LocalIdFactory()
        self._now = now

    # ------------------------------------------------------------------
    # Playbooks
    # ------------------------------------------------------------------

    async def get_playbooks(self, user_id: str) -> list[Playbook]:
        """The user's playbooks, with song references resolved.

        Offline, a user with no playbooks at all gets one default
        "My Songs" playbook, created once.
        """
        if await self._refresh(PLAYBOOKS, user_id):
            playbooks = self._visible(PLAYBOOKS, user_id)
        else:
            playbooks = self._visible(PLAYBOOKS, user_id)
            if not playbooks:
                playbooks = [self._create_default_playbook(user_id)]
        return [self.resolve_songs(playbook) for playbook in playbooks]

    async def get_playbook(self, playbook_id: EntityId | str) -> Playbook | None:
        playbook = await self._get_one(PLAYBOOKS, as_id(playbook_id))
        return self.resolve_songs(playbook) if playbook is not None else None

    async def create_playbook(
        self,
        owner_id: str,
        name: str,
        description: str | None = None,
        songs: list[SongRef] | None = None,
    ) -> Playbook:
        now = self._now()
        playbook = Playbook(
            id=self._new_local_id(),
            owner_id=owner_id,
            name=name,
            description=description,
            songs=list(songs or []),
            created_at=now,
            updated_at=now,
        )
        return await self._create(PLAYBOOKS, playbook)

    async def update_playbook(self, playbook_id: EntityId | str, **changes) -> Playbook:
        return await self._update(PLAYBOOKS, as_id(playbook_id), changes)

    async def delete_playbook(self, playbook_id: EntityId | str) -> None:
        await self._delete(PLAYBOOKS, as_id(playbook_id))

    async def add_song_to_playbook(self, playbook_id: EntityId | str, song_ref: SongRef | str) -> Playbook:
        """Append a song (by id, or embedded) unless the playbook already has it."""
        playbook = await self._require(PLAYBOOKS, as_id(playbook_id))
        ref = song_ref if isinstance(song_ref, Song) else as_id(song_ref)
        if any(ref_id(existing) == ref_id(ref) for existing in playbook.songs):
            return self.resolve_songs(playbook)
        updated = await self.update_playbook(playbook.id, songs=[*playbook.songs, ref])
        return self.resolve_songs(updated)

    async def remove_song_from_playbook(self, playbook_id: EntityId | str, song_id: EntityId | str) -> Playbook:
        playbook = await self._require(PLAYBOOKS, as_id(playbook_id))
        target = as_id(song_id)
        songs = [ref for ref in playbook.songs if ref_id(ref) != target]
        if len(songs) == len(playbook.songs):
            return self.resolve_songs(playbook)
        updated = await self.update_playbook(playbook.id, songs=songs)
        return self.resolve_songs(updated)

    def resolve_songs(self, playbook: Playbook) -> Playbook:
        """Swap bare song ids for the cached songs they name.

        Ids with no usable cached song are left in place, as the bare
        ``LocalId``/``RemoteId`` (``str()`` gives the raw id), so callers can
        tell the reference is unresolved.
        """
        resolved: list[SongRef] = []
        for ref in playbook.songs:
            if isinstance(ref, Song):
                resolved.append(ref)
                continue
            song = self.load(SONGS, ref)
            if song is None or song.marked_for_deletion:
                logger.debug("Unresolved song %s in playbook %s", ref, playbook.id)
                resolved.append(ref)
            else:
                resolved.append(song)
        return replace(playbook, songs=resolved)

    # ------------------------------------------------------------------
    # Songs
    # ------------------------------------------------------------------

    async def get_songs(self, user_id: str) -> list[Song]:
        await self._refresh(SONGS, user_id)
        return self._visible(SONGS, user_id)

    async def get_song(self, song_id: EntityId | str) -> Song | None:
        return await self._get_one(SONGS, as_id(song_id))

    async def create_song(
        self,
        owner_id: str,
        title: str,
        key: str = "C",
        sections: list[Section] | None = None,
    ) -> Song:
        now = self._now()
        song = Song(
            id=self._new_local_id(),
            owner_id=owner_id,
            title=title,
            key=key,
            sections=list(sections or []),
            created_at=now,
            updated_at=now,
        )
        return await self._create(SONGS, song)

    async def update_song(self, song_id: EntityId | str, **changes) -> Song:
        return await self._update(SONGS, as_id(song_id), changes)

    async def delete_song(self, song_id: EntityId | str) -> None:
        await self._delete(SONGS, as_id(song_id))

    # ------------------------------------------------------------------
    # Cache access, shared with the sync service
    # ------------------------------------------------------------------

    def load(self, collection: Collection, entity_id: EntityId) -> Entity | None:
        record = self.store.get(collection.prefix, entity_id)
        if record is None:
            return None
        try:
            return _decode(collection, record)
        except LocalStoreCorruption as exc:
            logger.warning("Ignoring %s", exc)
            return None

    def cached(self, collection: Collection) -> list[Entity]:
        """Every decodable cached entity in *collection*, deleted ones included."""
        entities = []
        for record in self.store.list_all(collection.prefix):
            try:
                entities.append(_decode(collection, record))
            except LocalStoreCorruption as exc:
                logger.warning("Skipping %s", exc)
        return entities

    def commit_synced(self, collection: Collection, entity: Entity) -> None:
        """Persist a server-confirmed entity."""
        entity.sync_status = SyncStatus.SYNCED
        self._put(collection, entity)

    def commit_migration(self, collection: Collection, local: Entity, server: Entity) -> None:
        """Replace a locally created record by its server copy in one store write."""
        server.sync_status = SyncStatus.SYNCED
        self.store.replace(collection.prefix, local.id, server.id, server.to_record())

    def rewrite_song_refs(self, old_id: EntityId, new_id: EntityId | None = None) -> list[Playbook]:
        """Point every cached playbook reference to *old_id* at *new_id* instead.

        Embedded copies of the song are replaced by the bare id. With no
        *new_id* the references are removed. Rewritten playbooks become
        pending and are returned.
        """
        rewritten = []
        for playbook in self.cached(PLAYBOOKS):
            if not any(ref_id(ref) == old_id for ref in playbook.songs):
                continue
            if new_id is None:
                songs = [ref for ref in playbook.songs if ref_id(ref) != old_id]
            else:
                songs = [new_id if ref_id(ref) == old_id else ref for ref in playbook.songs]
            playbook = replace(playbook, songs=songs, sync_status=SyncStatus.PENDING, updated_at=self._now())
            self._put(PLAYBOOKS, playbook)
            rewritten.append(playbook)
        return rewritten

    def sync_summary(self) -> dict[str, dict[str, int]]:
        """Count cached records per collection and sync state."""
        summary = {}
        for collection in COLLECTIONS:
            counts = {status.value: 0 for status in SyncStatus}
            counts["deleted"] = 0
            for entity in self.cached(collection):
                if entity.marked_for_deletion:
                    counts["deleted"] += 1
                else:
                    counts[entity.sync_status.value] += 1
            summary[collection.name] = counts
        return summary

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _put(self, collection: Collection, entity: Entity) -> None:
        self.store.set(collection.prefix, entity.id, entity.to_record())

    def _visible(self, collection: Collection, user_id: str) -> list[Entity]:
        entities = [
            entity
            for entity in self.cached(collection)
            if entity.owner_id == user_id and not entity.marked_for_deletion
        ]
        return sorted(entities, key=lambda entity: entity.created_at)

    async def _refresh(self, collection: Collection, user_id: str) -> bool:
        """Mirror the server's list for *user_id* into the store.

        Synced copies are dropped and rewritten from the server. Records with
        unsynced local changes are kept as they are until the sync service
        has replayed them. Returns False when the server could not be asked.
        """
        if not await self.monitor.check_now():
            return False
        try:
            fresh = await self.gateway.list_for_user(collection, user_id)
        except RemoteError as exc:
            logger.warning("Could not fetch %ss for %s (%s); using local copy", collection.name, user_id, exc)
            return False

        unsynced = set()
        for entity in self.cached(collection):
            if entity.owner_id != user_id:
                continue
            if _has_local_changes(entity):
                unsynced.add(entity.id)
            else:
                self.store.remove(collection.prefix, entity.id)
        for entity in fresh:
            if entity.id in unsynced:
                logger.debug("Keeping unsynced local copy of %s %s", collection.name, entity.id)
                continue
            self._put(collection, entity)
        return True

    async def _get_one(self, collection: Collection, entity_id: EntityId) -> Entity | None:
        local = self.load(collection, entity_id)
        if isinstance(entity_id, RemoteId) and not _has_local_changes(local) and await self.monitor.check_now():
            try:
                fresh = await self.gateway.get(collection, entity_id)
            except RemoteError as exc:
                if exc.status_code == 404:
                    self.store.remove(collection.prefix, entity_id)
                    return None
                logger.warning("Could not fetch %s %s (%s); using local copy", collection.name, entity_id, exc)
            else:
                self._put(collection, fresh)
                return fresh
        if local is None or local.marked_for_deletion:
            return None
        return local

    async def _require(self, collection: Collection, entity_id: EntityId) -> Entity:
        entity = await self._get_one(collection, entity_id)
        if entity is None:
            raise NotFound(collection.name, str(entity_id))
        return entity

    def _create_default_playbook(self, user_id: str) -> Playbook:
        now = self._now()
        playbook = Playbook(
            id=self._new_local_id(),
            owner_id=user_id,
            name=DEFAULT_PLAYBOOK_NAME,
            description=DEFAULT_PLAYBOOK_DESCRIPTION,
            created_at=now,
            updated_at=now,
        )
        self._put(PLAYBOOKS, playbook)
        logger.info("Created default playbook %s for %s", playbook.id, user_id)
        return playbook

    async def _create(self, collection: Collection, entity: Entity) -> Entity:
        if await self.monitor.check_now():
            try:
                created = await self.gateway.create(collection, entity)
            except RemoteError as exc:
                logger.warning("Could not create %s on server (%s); saved locally as %s", collection.name, exc, entity.id)
                entity.sync_status = _failure_status(exc)
            else:
                self.commit_synced(collection, created)
                return created
        self._put(collection, entity)
        return entity

    async def _update(self, collection: Collection, entity_id: EntityId, changes: dict) -> Entity:
        check_changes(collection.model, changes)
        now = self._now()
        local = self.load(collection, entity_id)
        if local is not None and local.marked_for_deletion:
            raise NotFound(collection.name, str(entity_id))
        merged = apply_changes(local, changes, now) if local is not None else None
        status = SyncStatus.PENDING

        if isinstance(entity_id, RemoteId) and await self.monitor.check_now():
            # Earlier offline edits have not reached the server yet: send everything.
            if merged is not None and _has_local_changes(local):
                patch = merged.to_wire(include_id=False)
            else:
                patch = wire_patch({**changes, "updated_at": now})
            try:
                updated = await self.gateway.update(collection, entity_id, patch)
            except RemoteError as exc:
                if exc.status_code == 404 and not _has_local_changes(local):
                    self.store.remove(collection.prefix, entity_id)
                    raise NotFound(collection.name, str(entity_id)) from exc
                logger.warning("Could not update %s %s on server (%s); saved locally", collection.name, entity_id, exc)
                status = _failure_status(exc)
            else:
                self.commit_synced(collection, updated)
                return updated

        if merged is None:
            raise NotFound(collection.name, str(entity_id))
        merged.sync_status = status
        self._put(collection, merged)
        return merged

    async def _delete(self, collection: Collection, entity_id: EntityId) -> None:
        local = self.load(collection, entity_id)
        if local is not None and local.marked_for_deletion:
            return

        if await self.monitor.check_now():
            if isinstance(entity_id, LocalId):
                # The server never saw it.
                if local is None:
                    raise NotFound(collection.name, str(entity_id))
                self.store.remove(collection.prefix, entity_id)
                if collection is SONGS:
                    self.rewrite_song_refs(entity_id)
                return
            try:
                await self.gateway.delete(collection, entity_id)
            except RemoteError as exc:
                if exc.status_code == 404:
                    if local is None:
                        raise NotFound(collection.name, str(entity_id)) from exc
                    self.store.remove(collection.prefix, entity_id)
                    return
                logger.warning("Could not delete %s %s on server (%s); will retry", collection.name, entity_id, exc)
            else:
                self.store.remove(collection.prefix, entity_id)
                return

        if local is None:
            raise NotFound(collection.name, str(entity_id))
        local.marked_for_deletion = True
        local.updated_at = self._now()
        self._put(collection, local)


def _decode(collection: Collection, record: dict) -> Entity:
    try:
        return collection.model.from_record(record)
    except (KeyError, ValueError, TypeError) as exc:
        raise LocalStoreCorruption(f"{collection.prefix}{record.get('_id', '?')}", str(exc)) from exc


def _has_local_changes(entity: Entity | None) -> bool:
    return entity is not None and (entity.sync_status is not SyncStatus.SYNCED or entity.marked_for_deletion)


def _failure_status(exc: RemoteError) -> SyncStatus:
    return SyncStatus.ERROR if exc.is_rejection else SyncStatus.PENDING
