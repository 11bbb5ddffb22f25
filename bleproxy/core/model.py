"""Core data models shared by the topology, state machines, adapters and CLI."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any


class CharacteristicProperty(enum.Flag):
    NONE = 0
    READ = enum.auto()
    WRITE = enum.auto()
    WRITE_WITHOUT_RESPONSE = enum.auto()
    NOTIFY = enum.auto()
    INDICATE = enum.auto()


class AttributePermission(enum.Flag):
    NONE = 0
    READABLE = enum.auto()
    WRITEABLE = enum.auto()


class AttResult(enum.IntEnum):
    """ATT result codes the core produces itself.

    Adapters may report any other integer code; it is forwarded unchanged.
    """

    SUCCESS = 0x00
    INVALID_HANDLE = 0x01
    READ_NOT_PERMITTED = 0x02
    WRITE_NOT_PERMITTED = 0x03
    UNLIKELY_ERROR = 0x0E


NOTIFY_PROPERTIES = CharacteristicProperty.NOTIFY | CharacteristicProperty.INDICATE
WRITE_PROPERTIES = CharacteristicProperty.WRITE | CharacteristicProperty.WRITE_WITHOUT_RESPONSE

_PROPERTY_NAMES = {
    "read": CharacteristicProperty.READ,
    "write": CharacteristicProperty.WRITE,
    "write-without-response": CharacteristicProperty.WRITE_WITHOUT_RESPONSE,
    "notify": CharacteristicProperty.NOTIFY,
    "indicate": CharacteristicProperty.INDICATE,
}


def parse_properties(names: Any) -> CharacteristicProperty:
    """Translate GATT property names (as bleak reports them) into flags.

    Unknown names such as ``broadcast`` or ``extended-properties`` are ignored.
    """
    flags = CharacteristicProperty.NONE
    for name in names:
        flags |= _PROPERTY_NAMES.get(str(name).lower(), CharacteristicProperty.NONE)
    return flags


def permissions_for(properties: CharacteristicProperty) -> AttributePermission:
    if properties & WRITE_PROPERTIES:
        return AttributePermission.WRITEABLE
    return AttributePermission.READABLE


@dataclass(frozen=True)
class ServiceConfig:
    uuid: str
    characteristics: tuple[str, ...]


@dataclass(frozen=True)
class ProxyConfig:
    target_name: str
    services: tuple[ServiceConfig, ...]
    advertise_name: str | None = None
    scan_timeout_s: float | None = None
    connect_timeout_s: float = 10.0

    @property
    def local_name(self) -> str:
        return self.advertise_name or self.target_name


@dataclass(frozen=True)
class DiscoveredDevice:
    ref: Any
    name: str | None = None
    local_name: str | None = None
    address: str | None = None


@dataclass(frozen=True)
class RemoteService:
    uuid: str
    ref: Any


@dataclass(frozen=True)
class RemoteCharacteristic:
    uuid: str
    ref: Any
    properties: CharacteristicProperty


@dataclass(frozen=True)
class CharacteristicSpec:
    uuid: str
    properties: CharacteristicProperty
    permissions: AttributePermission


@dataclass(frozen=True)
class ServiceSpec:
    uuid: str
    characteristics: tuple[CharacteristicSpec, ...]


@dataclass(frozen=True)
class LocalRequest:
    """A read or write issued by a local client against the mirrored peripheral.

    ``ref`` is the adapter's own request object, handed back on ``respond``.
    """

    ref: Any
    characteristic_id: str
    client: str | None = None
    value: bytes | None = None
    needs_response: bool = True


@dataclass(frozen=True)
class ProxyEvent:
    source: str
    kind: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
