"""Expected-vs-discovered GATT topology shared by both proxy roles."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from bleproxy.core.errors import UnknownIdentifierError
from bleproxy.core.model import CharacteristicProperty, ProxyConfig


@dataclass
class CharacteristicDescriptor:
    id: str
    properties: CharacteristicProperty = CharacteristicProperty.NONE
    remote_handle: Any = None
    mirror_handle: Any = None

    @property
    def remote_bound(self) -> bool:
        return self.remote_handle is not None

    @property
    def mirror_bound(self) -> bool:
        return self.mirror_handle is not None

    @property
    def usable(self) -> bool:
        return self.remote_bound and self.mirror_bound


@dataclass
class ServiceDescriptor:
    id: str
    characteristics: list[CharacteristicDescriptor] = field(default_factory=list)
    remote_handle: Any = None
    mirror_handle: Any = None

    def characteristic(self, characteristic_id: str) -> CharacteristicDescriptor:
        for characteristic in self.characteristics:
            if characteristic.id == characteristic_id:
                return characteristic
        raise UnknownIdentifierError(
            f"Characteristic {characteristic_id} is not configured for service {self.id}"
        )


class Topology:
    """Services and characteristics the proxy expects, with their bound handles.

    A topology is built empty from the configuration; the Remote Link binds
    remote handles as discovery completes and the Local Server binds mirror
    handles on its own snapshot as publishing completes. Handles are never
    unbound individually: a disconnect discards the whole topology.
    """

    def __init__(self, services: list[ServiceDescriptor]) -> None:
        self._services = services
        self._by_id = {service.id: service for service in services}
        self._characteristics = {
            characteristic.id: characteristic
            for service in services
            for characteristic in service.characteristics
        }

    @classmethod
    def build(cls, config: ProxyConfig) -> Topology:
        return cls(
            [
                ServiceDescriptor(
                    id=service.uuid,
                    characteristics=[CharacteristicDescriptor(id=c) for c in service.characteristics],
                )
                for service in config.services
            ]
        )

    @property
    def services(self) -> tuple[ServiceDescriptor, ...]:
        return tuple(self._services)

    def __iter__(self) -> Iterator[ServiceDescriptor]:
        return iter(self._services)

    def characteristics(self) -> Iterator[CharacteristicDescriptor]:
        for service in self._services:
            yield from service.characteristics

    def service(self, service_id: str) -> ServiceDescriptor:
        service = self._by_id.get(service_id)
        if service is None:
            raise UnknownIdentifierError(f"Service {service_id} is not configured")
        return service

    def has_service(self, service_id: str) -> bool:
        return service_id in self._by_id

    def characteristic(self, characteristic_id: str) -> CharacteristicDescriptor:
        characteristic = self._characteristics.get(characteristic_id)
        if characteristic is None:
            raise UnknownIdentifierError(f"Characteristic {characteristic_id} is not configured")
        return characteristic

    def find_characteristic(self, characteristic_id: str) -> CharacteristicDescriptor | None:
        return self._characteristics.get(characteristic_id)

    def bind_remote(
        self,
        service_id: str,
        characteristic_id: str | None,
        handle: Any,
        *,
        properties: CharacteristicProperty | None = None,
    ) -> None:
        service = self.service(service_id)
        if characteristic_id is None:
            service.remote_handle = handle
            return
        characteristic = service.characteristic(characteristic_id)
        characteristic.remote_handle = handle
        if properties is not None:
            characteristic.properties = properties

    def bind_mirror(self, service_id: str, characteristic_id: str | None, handle: Any) -> None:
        service = self.service(service_id)
        if characteristic_id is None:
            service.mirror_handle = handle
            return
        service.characteristic(characteristic_id).mirror_handle = handle

    def is_remote_complete(self) -> bool:
        return all(
            service.remote_handle is not None and all(c.remote_bound for c in service.characteristics)
            for service in self._services
        )

    def is_complete(self) -> bool:
        return all(
            service.remote_handle is not None
            and service.mirror_handle is not None
            and all(c.usable for c in service.characteristics)
            for service in self._services
        )

    def snapshot(self) -> Topology:
        """Copy the descriptors so the receiver can bind its own handles."""
        return Topology(
            [
                ServiceDescriptor(
                    id=service.id,
                    characteristics=[
                        CharacteristicDescriptor(
                            id=c.id,
                            properties=c.properties,
                            remote_handle=c.remote_handle,
                            mirror_handle=c.mirror_handle,
                        )
                        for c in service.characteristics
                    ],
                    remote_handle=service.remote_handle,
                    mirror_handle=service.mirror_handle,
                )
                for service in self._services
            ]
        )

    def describe(self) -> list[str]:
        lines: list[str] = []
        for service in self._services:
            lines.append(f"service {service.id}")
            for characteristic in service.characteristics:
                lines.append(f"  characteristic {characteristic.id}")
        return lines
