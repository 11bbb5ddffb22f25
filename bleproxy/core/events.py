"""Typed adapter events delivered to the Remote Link and Local Server.

Adapters never call into the state machines directly; they post one of these
messages to the inbound entry point they were attached to.

Central events tied to a connection carry the ``attempt`` number the Remote Link
handed to ``scan``/``connect``; the adapter stamps each event with the attempt
that was current when the operation was issued. ``WriteCompleted`` also echoes
the ``correlation`` number of the write it answers.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from bleproxy.core.errors import BleProxyError
from bleproxy.core.model import DiscoveredDevice, LocalRequest, RemoteCharacteristic, RemoteService


# Central (client-role) side


@dataclass(frozen=True)
class DeviceDiscovered:
    device: DiscoveredDevice


@dataclass(frozen=True)
class ScanTimedOut:
    attempt: int = 0


@dataclass(frozen=True)
class Connected:
    device_ref: Any
    attempt: int = 0


@dataclass(frozen=True)
class ConnectFailed:
    device_ref: Any
    error: BleProxyError
    attempt: int = 0


@dataclass(frozen=True)
class LinkLost:
    device_ref: Any
    reason: str
    attempt: int = 0


@dataclass(frozen=True)
class CentralPoweredOff:
    pass


@dataclass(frozen=True)
class ServicesDiscovered:
    device_ref: Any
    services: tuple[RemoteService, ...] = ()
    error: BleProxyError | None = None
    attempt: int = 0


@dataclass(frozen=True)
class CharacteristicsDiscovered:
    device_ref: Any
    service_id: str
    characteristics: tuple[RemoteCharacteristic, ...] = ()
    error: BleProxyError | None = None
    attempt: int = 0


@dataclass(frozen=True)
class WriteCompleted:
    characteristic_id: str
    result: int
    error: BleProxyError | None = None
    correlation: int = 0
    attempt: int = 0


@dataclass(frozen=True)
class ValueUpdated:
    characteristic_id: str
    value: bytes = b""
    error: BleProxyError | None = None
    attempt: int = 0


@dataclass(frozen=True)
class NotifyStateChanged:
    characteristic_id: str
    enabled: bool
    error: BleProxyError | None = None
    attempt: int = 0


# Peripheral (server-role) side


@dataclass(frozen=True)
class ServicePublished:
    service_id: str
    handle: Any = None
    characteristic_handles: tuple[tuple[str, Any], ...] = ()
    error: BleProxyError | None = None


@dataclass(frozen=True)
class AdvertisingStarted:
    error: BleProxyError | None = None


@dataclass(frozen=True)
class AdvertisingStopped:
    reason: str


@dataclass(frozen=True)
class PeripheralPoweredOff:
    pass


@dataclass(frozen=True)
class ReadRequested:
    request: LocalRequest


@dataclass(frozen=True)
class WriteRequested:
    requests: tuple[LocalRequest, ...]


@dataclass(frozen=True)
class Subscribed:
    characteristic_id: str
    client: str


@dataclass(frozen=True)
class Unsubscribed:
    characteristic_id: str
    client: str
