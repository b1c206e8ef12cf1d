"""Replay of offline changes once the network is back.

There is no durable queue: the cached records are the queue. A sync pass
scans every collection in order (playbooks, then songs) and acts on each
record's flags:

* ``marked_for_deletion``: delete on the server (if it ever got there), then
  drop the local record whatever the server said (a dropped song that only
  had a local id is also removed from cached playbooks);
* ``sync_status != synced`` with a local id: create on the server, then move
  the record from its local id to the server id;
* ``sync_status != synced`` with a server id: push the record, then store the
  server's copy.

A failure only affects its own record, which keeps its state and is retried
on the next pass. Each pass costs O(cached records).
"""

import asyncio
import inspect
import logging
import time
from typing import Callable

from .engine import ReconciliationEngine
from .exceptions import RemoteError
from .models import Entity, LocalId, RemoteId, SyncStatus
from .registry import COLLECTIONS, PLAYBOOKS, SONGS, Collection

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN = 5.0  # seconds between reconnect-triggered passes


class SyncService:
    """Flushes pending and deleted records through the gateway.

    Never raises to its caller; per-record outcomes are visible through each
    record's ``sync_status``.
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        cooldown: float = DEFAULT_COOLDOWN,
        on_complete: Callable[[], object] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.engine = engine
        self.cooldown = cooldown
        self.on_complete = on_complete
        self._clock = clock
        self._lock = asyncio.Lock()
        self._last_run: float | None = None

    def start(self) -> Callable[[], None]:
        """Replay whenever the monitor reports the network coming back.

        Returns the unsubscribe function.
        """
        return self.engine.monitor.subscribe(self._on_connectivity_change)

    async def _on_connectivity_change(self, online: bool) -> None:
        if online:
            logger.info("Network connected, starting sync")
            await self.run()
        else:
            logger.info("Network disconnected")

    async def run(self, force: bool = False) -> None:
        """Run one sync pass.

        Skipped while another pass is running, and within ``cooldown`` seconds
        of the last completed pass unless *force* is set.
        """
        if self._lock.locked():
            logger.info("Sync already running, skipping")
            return
        if not force and self._last_run is not None and self._clock() - self._last_run < self.cooldown:
            logger.info("Skipping sync due to cooldown")
            return

        async with self._lock:
            try:
                completed = await self._replay_all()
            except Exception:
                logger.exception("Sync pass aborted")
                return
            if not completed:
                return
            self._last_run = self._clock()

        if self.on_complete is not None:
            try:
                result = self.on_complete()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Sync completion callback failed")

    async def _replay_all(self) -> bool:
        if not await self.engine.monitor.check_now():
            logger.info("Offline, nothing to sync")
            return False

        logger.info("Starting sync of offline changes")
        touched: dict[str, RemoteId | LocalId] = {}
        for collection in COLLECTIONS:
            for entity in self.engine.cached(collection):
                synced = await self._replay_record(collection, entity)
                if collection is not SONGS:
                    continue
                if synced is not None and synced.id != entity.id:
                    rewritten = self.engine.rewrite_song_refs(entity.id, synced.id)
                elif entity.marked_for_deletion and entity.is_local and self.engine.load(SONGS, entity.id) is None:
                    # Never reached the server; playbooks must not keep its local id.
                    rewritten = self.engine.rewrite_song_refs(entity.id)
                else:
                    continue
                for playbook in rewritten:
                    touched[str(playbook.id)] = playbook.id

        # Playbooks whose song references were just rewritten or dropped.
        for playbook_id in touched.values():
            playbook = self.engine.load(PLAYBOOKS, playbook_id)
            if playbook is not None:
                await self._replay_record(PLAYBOOKS, playbook)

        logger.info("Finished sync of offline changes")
        return True

    async def _replay_record(self, collection: Collection, entity: Entity) -> Entity | None:
        """Replay one record. Returns the server's copy when one was stored."""
        try:
            if entity.marked_for_deletion:
                await self._replay_delete(collection, entity)
            elif entity.sync_status is not SyncStatus.SYNCED:
                return await self._replay_upsert(collection, entity)
        except RemoteError as exc:
            logger.warning("Could not sync %s %s (%s); will retry", collection.name, entity.id, exc)
        except Exception:
            logger.exception("Unexpected error syncing %s %s", collection.name, entity.id)
        return None

    async def _replay_delete(self, collection: Collection, entity: Entity) -> None:
        if isinstance(entity.id, RemoteId):
            try:
                await self.engine.gateway.delete(collection, entity.id)
            except RemoteError as exc:
                logger.warning("Server delete of %s %s failed (%s); dropping it locally", collection.name, entity.id, exc)
        self.engine.store.remove(collection.prefix, entity.id)
        logger.info("Deleted %s %s", collection.name, entity.id)

    async def _replay_upsert(self, collection: Collection, entity: Entity) -> Entity:
        if isinstance(entity.id, LocalId):
            created = await self.engine.gateway.create(collection, entity)
            self.engine.commit_migration(collection, entity, created)
            logger.info("Synced new %s %s as %s", collection.name, entity.id, created.id)
            return created
        updated = await self.engine.gateway.update(collection, entity.id, entity.to_wire(include_id=False))
        self.engine.commit_synced(collection, updated)
        logger.info("Synced %s %s", collection.name, entity.id)
        return updated
