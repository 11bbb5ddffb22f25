"""Stable public API for embedding the proxy in other tools.

This module is the supported integration surface for third-party callers.
Avoid importing from private/internal modules unless intentionally depending on
non-stable internals.
"""

from __future__ import annotations

from pathlib import Path

from bleproxy.core.config_loader import build_config, load_config
from bleproxy.core.errors import (
    AdapterError,
    BleProxyError,
    CapabilityUnsupportedError,
    ConfigLoadError,
    ConfigValidationError,
    DiscoveryFailedError,
    NotConnectedError,
    ProxyTimeoutError,
    ServerStateError,
    UnknownCharacteristicError,
    UnknownIdentifierError,
)
from bleproxy.core.local_server import ServerState
from bleproxy.core.mediator import Observer
from bleproxy.core.model import (
    AttResult,
    CharacteristicProperty,
    ProxyConfig,
    ProxyEvent,
    ServiceConfig,
)
from bleproxy.core.remote_link import LinkState
from bleproxy.core.service import ProxyService
from bleproxy.core.topology import Topology
from bleproxy.transports.base import CentralAdapter, PeripheralAdapter

__all__ = [
    "AdapterError",
    "BleProxyError",
    "CapabilityUnsupportedError",
    "ConfigLoadError",
    "ConfigValidationError",
    "DiscoveryFailedError",
    "NotConnectedError",
    "ProxyTimeoutError",
    "ServerStateError",
    "UnknownCharacteristicError",
    "UnknownIdentifierError",
    "AttResult",
    "CharacteristicProperty",
    "LinkState",
    "ServerState",
    "ProxyConfig",
    "ProxyEvent",
    "ServiceConfig",
    "Topology",
    "CentralAdapter",
    "PeripheralAdapter",
    "build_config",
    "load_config",
    "Proxy",
]


class Proxy:
    """Public handle on a running BLE GATT proxy.

    A `Proxy` wires the client-role link to the real peripheral, the locally
    advertised mirror, and the relay between them. Supply adapters to run
    against something other than bleak/bless (tests, simulators).
    """

    def __init__(
        self,
        config: ProxyConfig,
        *,
        central: CentralAdapter | None = None,
        peripheral: PeripheralAdapter | None = None,
    ) -> None:
        self._service = ProxyService(config, central=central, peripheral=peripheral)

    @classmethod
    def from_file(
        cls,
        path: Path | None = None,
        *,
        target_name: str | None = None,
        central: CentralAdapter | None = None,
        peripheral: PeripheralAdapter | None = None,
    ) -> Proxy:
        config = load_config(path, target_name=target_name)
        return cls(config, central=central, peripheral=peripheral)

    @property
    def config(self) -> ProxyConfig:
        return self._service.config

    @property
    def link_state(self) -> LinkState:
        return self._service.link_state

    @property
    def server_state(self) -> ServerState:
        return self._service.server_state

    @property
    def relaying(self) -> bool:
        return self._service.relaying

    def add_observer(self, observer: Observer) -> None:
        self._service.add_observer(observer)

    def start(self) -> None:
        self._service.start()

    def stop(self, reason: str = "Stop requested") -> None:
        self._service.stop(reason)

    async def run(self, *, rescan_interval_s: float | None = None) -> None:
        await self._service.run(rescan_interval_s=rescan_interval_s)
