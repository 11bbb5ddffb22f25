from __future__ import annotations

import asyncio

import pytest

from bleproxy.core.events import ScanTimedOut
from bleproxy.core.local_server import ServerState
from bleproxy.core.remote_link import LinkState
from tests.fakes import FakeCentral, Harness


class ClosingCentral(FakeCentral):
    def __init__(self) -> None:
        super().__init__()
        self.closed = False

    async def aclose(self) -> None:
        self.closed = True


async def _wait_for(predicate, attempts: int = 50) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


def test_relaying_reflects_both_sides(ready_harness: Harness) -> None:
    service = ready_harness.service

    assert service.link_state is LinkState.READY
    assert service.server_state is ServerState.ADVERTISING
    assert service.relaying is True

    service.stop()

    assert service.relaying is False


def test_not_relaying_before_mirror_is_published(harness: Harness) -> None:
    harness.connect_remote()
    harness.discover_remote()

    assert harness.link.state is LinkState.READY
    assert harness.server.state is ServerState.PUBLISHING
    assert harness.service.relaying is False


def test_run_returns_when_link_drops() -> None:
    async def scenario() -> Harness:
        harness = Harness(central=ClosingCentral())
        task = asyncio.create_task(harness.service.run())
        await _wait_for(lambda: harness.central.count("scan") == 1)
        harness.central.emit(ScanTimedOut())
        await asyncio.wait_for(task, timeout=1)
        return harness

    harness = asyncio.run(scenario())

    assert harness.central.count("scan") == 1
    assert harness.link.state is LinkState.DISCONNECTED
    assert harness.central.closed is True


def test_run_rescans_until_cancelled() -> None:
    async def scenario() -> Harness:
        harness = Harness()
        task = asyncio.create_task(harness.service.run(rescan_interval_s=0))
        await _wait_for(lambda: harness.central.count("scan") == 1)
        harness.central.emit(ScanTimedOut())
        await _wait_for(lambda: harness.central.count("scan") == 2)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return harness

    harness = asyncio.run(scenario())

    assert harness.link.state is LinkState.DISCONNECTED
    assert harness.link.disconnect_reason == "Proxy shutting down"
    assert harness.central.calls[-1] == ("stop_scan",)
