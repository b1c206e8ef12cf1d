"""Wires store, gateway, monitor, engine and sync service together.

Usage::

    async with Chordbook.from_settings() as book:
        stop = book.sync.start()
        playbooks = await book.engine.get_playbooks(user_id)
"""

from pathlib import Path

from .connectivity import ConnectivityMonitor, HttpProbe
from .engine import ReconciliationEngine
from .gateway import RemoteGateway
from .settings import Settings, get_settings
from .store import LocalRecordStore
from .sync import SyncService


class Chordbook:
    """One instance per app process; owns the local store and the HTTP client."""

    def __init__(
        self,
        store: LocalRecordStore,
        gateway: RemoteGateway,
        monitor: ConnectivityMonitor,
        sync_cooldown: float = 5.0,
    ):
        self.store = store
        self.gateway = gateway
        self.monitor = monitor
        self.engine = ReconciliationEngine(store, gateway, monitor)
        self.sync = SyncService(self.engine, cooldown=sync_cooldown)

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        store_path: Path | str | None = None,
        force_offline: bool = False,
    ) -> "Chordbook":
        settings = settings or get_settings()
        store = LocalRecordStore.open(Path(store_path).expanduser() if store_path else settings.store_file)
        gateway = RemoteGateway(settings.API_URL, timeout=settings.REQUEST_TIMEOUT)
        monitor = ConnectivityMonitor(
            HttpProbe(settings.probe_url, timeout=settings.PROBE_TIMEOUT),
            force_offline=force_offline or settings.FORCE_OFFLINE,
        )
        return cls(store, gateway, monitor, sync_cooldown=settings.SYNC_COOLDOWN)

    async def aclose(self) -> None:
        await self.gateway.aclose()

    async def __aenter__(self) -> "Chordbook":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
