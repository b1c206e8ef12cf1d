"""Network reachability: one-shot checks and change notifications.

:class:`ConnectivityMonitor` answers "are we online?" and tells subscribers
when the answer changes. It never raises from a check; anything that goes
wrong while probing counts as offline.
"""

import asyncio
import inspect
import logging
from typing import Awaitable, Callable

import httpx

from .exceptions import ConnectivityUnknown

logger = logging.getLogger(__name__)

Probe = Callable[[], Awaitable[bool]]
Listener = Callable[[bool], object]


class HttpProbe:
    """Issue one HEAD request; any HTTP response at all means the network is up."""

    def __init__(self, url: str, timeout: float = 5.0, client: httpx.AsyncClient | None = None):
        self.url = url
        self.timeout = timeout
        self._client = client

    async def __call__(self) -> bool:
        try:
            if self._client is not None:
                await self._client.head(self.url, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    await client.head(self.url)
        except httpx.RequestError as exc:
            logger.debug("Probe of %s failed: %s", self.url, exc)
            return False
        except (httpx.InvalidURL, ValueError) as exc:
            raise ConnectivityUnknown(str(exc)) from exc
        return True


class ConnectivityMonitor:
    """Reachability checks with a manual force-offline switch."""

    def __init__(self, probe: Probe, force_offline: bool = False):
        self._probe = probe
        self._force_offline = force_offline
        self._listeners: list[Listener] = []
        self._last_state: bool | None = None

    @property
    def force_offline(self) -> bool:
        return self._force_offline

    def set_force_offline(self) -> None:
        """Report offline from every check until :meth:`clear_force_offline`."""
        self._force_offline = True

    def clear_force_offline(self) -> None:
        self._force_offline = False

    @property
    def last_state(self) -> bool | None:
        """State seen by the last :meth:`refresh`, None before the first one."""
        return self._last_state

    async def check_now(self) -> bool:
        if self._force_offline:
            return False
        try:
            return bool(await self._probe())
        except ConnectivityUnknown as exc:
            logger.warning("%s; assuming offline", exc)
        except Exception:
            logger.exception("Connectivity probe crashed; assuming offline")
        return False

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call *listener(online)* on every transition. Returns an unsubscribe function.

        Listeners may be coroutine functions; they are awaited in turn.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def refresh(self) -> bool:
        """Check once and notify listeners if the state changed."""
        online = await self.check_now()
        if online != self._last_state:
            self._last_state = online
            logger.info("Network is %s", "online" if online else "offline")
            await self._notify(online)
        return online

    async def watch(self, interval: float) -> None:
        """Refresh every *interval* seconds until cancelled."""
        while True:
            await self.refresh()
            await asyncio.sleep(interval)

    async def _notify(self, online: bool) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(online)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Connectivity listener %r failed", listener)
