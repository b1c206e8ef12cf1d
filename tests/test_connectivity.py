import httpx
import pytest

from chordbook.connectivity import ConnectivityMonitor, HttpProbe
from chordbook.exceptions import ConnectivityUnknown


class SwitchProbe:
    """Probe whose answer the test flips by hand."""

    def __init__(self, online=True):
        self.online = online
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        return self.online


# ---------------------------------------------------------------------------
# check_now
# ---------------------------------------------------------------------------


async def test_check_now_reports_probe_result():
    probe = SwitchProbe(online=True)
    monitor = ConnectivityMonitor(probe)
    assert await monitor.check_now() is True
    probe.online = False
    assert await monitor.check_now() is False


async def test_check_now_never_raises():
    async def broken():
        raise RuntimeError("netinfo exploded")

    assert await ConnectivityMonitor(broken).check_now() is False


async def test_check_now_treats_unknown_as_offline():
    async def unknown():
        raise ConnectivityUnknown("no interface")

    assert await ConnectivityMonitor(unknown).check_now() is False


async def test_force_offline_overrides_probe_until_cleared():
    probe = SwitchProbe(online=True)
    monitor = ConnectivityMonitor(probe)
    monitor.set_force_offline()
    assert monitor.force_offline
    assert await monitor.check_now() is False
    assert await monitor.check_now() is False
    monitor.clear_force_offline()
    assert await monitor.check_now() is True


# ---------------------------------------------------------------------------
# subscribe / refresh
# ---------------------------------------------------------------------------


async def test_refresh_notifies_only_on_transitions():
    probe = SwitchProbe(online=False)
    monitor = ConnectivityMonitor(probe)
    seen = []
    monitor.subscribe(seen.append)

    await monitor.refresh()
    await monitor.refresh()
    probe.online = True
    await monitor.refresh()
    await monitor.refresh()
    await monitor.refresh()

    assert seen == [False, True]
    assert monitor.last_state is True


async def test_async_listeners_are_awaited():
    monitor = ConnectivityMonitor(SwitchProbe(online=True))
    seen = []

    async def listener(online):
        seen.append(online)

    monitor.subscribe(listener)
    await monitor.refresh()
    assert seen == [True]


async def test_unsubscribe_stops_notifications():
    probe = SwitchProbe(online=True)
    monitor = ConnectivityMonitor(probe)
    seen = []
    unsubscribe = monitor.subscribe(seen.append)
    await monitor.refresh()
    unsubscribe()
    unsubscribe()
    probe.online = False
    await monitor.refresh()
    assert seen == [True]


async def test_failing_listener_does_not_block_others():
    monitor = ConnectivityMonitor(SwitchProbe(online=True))
    seen = []

    def bad(online):
        raise RuntimeError("boom")

    monitor.subscribe(bad)
    monitor.subscribe(seen.append)
    await monitor.refresh()
    assert seen == [True]


# ---------------------------------------------------------------------------
# HttpProbe
# ---------------------------------------------------------------------------


async def test_http_probe_any_response_is_online():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
    async with client:
        assert await HttpProbe("http://chordbook.test/api", client=client)() is True


async def test_http_probe_connection_error_is_offline():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
    async with client:
        assert await HttpProbe("http://chordbook.test/api", client=client)() is False


def _invalid_url(request):
    raise httpx.InvalidURL("Invalid port: 'broken'")


async def test_http_probe_invalid_url_is_unknown():
    client = httpx.AsyncClient(transport=httpx.MockTransport(_invalid_url))
    async with client:
        with pytest.raises(ConnectivityUnknown, match="Invalid port"):
            await HttpProbe("http://chordbook.test:broken/api", client=client)()


async def test_bad_probe_url_counts_as_offline():
    client = httpx.AsyncClient(transport=httpx.MockTransport(_invalid_url))
    async with client:
        monitor = ConnectivityMonitor(HttpProbe("http://chordbook.test:broken/api", client=client))
        assert await monitor.check_now() is False
