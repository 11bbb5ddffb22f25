"""Service layer used by the CLI and the public API."""

from __future__ import annotations

import asyncio
import logging

from bleproxy.core.local_server import LocalServer, ServerState
from bleproxy.core.mediator import Observer, RelayMediator
from bleproxy.core.model import ProxyConfig, ProxyEvent
from bleproxy.core.remote_link import LinkState, RemoteLink
from bleproxy.transports.base import CentralAdapter, PeripheralAdapter

LOGGER = logging.getLogger(__name__)


class ProxyService:
    """Assemble the Remote Link, Local Server and mediator for one config.

    Default adapters (bleak/bless) bind to the running event loop, so construct
    the service from inside a coroutine unless both adapters are supplied.
    """

    def __init__(
        self,
        config: ProxyConfig,
        *,
        central: CentralAdapter | None = None,
        peripheral: PeripheralAdapter | None = None,
    ) -> None:
        self.config = config
        if central is None:
            from bleproxy.transports.ble_central import BleakCentralAdapter

            central = BleakCentralAdapter(
                scan_timeout_s=config.scan_timeout_s,
                connect_timeout_s=config.connect_timeout_s,
            )
        if peripheral is None:
            from bleproxy.transports.ble_peripheral import BlessPeripheralAdapter

            peripheral = BlessPeripheralAdapter(config.local_name)
        self.central = central
        self.peripheral = peripheral
        self.link = RemoteLink(config, central)
        self.server = LocalServer(config, peripheral)
        self.mediator = RelayMediator(self.link, self.server)

    @property
    def link_state(self) -> LinkState:
        return self.link.state

    @property
    def server_state(self) -> ServerState:
        return self.server.state

    @property
    def relaying(self) -> bool:
        topology = self.server.topology
        return (
            self.link.state is LinkState.READY
            and self.server.state is ServerState.ADVERTISING
            and topology is not None
            and topology.is_complete()
        )

    def add_observer(self, observer: Observer) -> None:
        self.mediator.add_observer(observer)

    def start(self) -> None:
        self.link.connect()

    def stop(self, reason: str = "Stop requested") -> None:
        self.link.disconnect(reason)
        self.server.stop_advertising(reason)

    async def run(self, rescan_interval_s: float | None = None) -> None:
        """Run until the link drops, or forever when a rescan interval is set.

        Re-scanning after a disconnect is the only retry policy; it lives here
        rather than in the state machines.
        """
        loop = asyncio.get_running_loop()
        disconnected = asyncio.Event()

        def _watch(event: ProxyEvent) -> None:
            if event.source == "remote" and event.kind == "stopped":
                loop.call_soon_threadsafe(disconnected.set)

        self.add_observer(_watch)
        self.start()
        try:
            while True:
                await disconnected.wait()
                disconnected.clear()
                if rescan_interval_s is None:
                    return
                await asyncio.sleep(rescan_interval_s)
                LOGGER.info("Re-scanning for '%s'", self.config.target_name)
                self.start()
        finally:
            self.stop("Proxy shutting down")
            for adapter in (self.central, self.peripheral):
                aclose = getattr(adapter, "aclose", None)
                if aclose is not None:
                    await aclose()
