"""Recording adapters and a harness that drives the proxy without a radio.

Fake adapters record every call the core makes and let tests inject the
adapter events a real radio stack would deliver.
"""

from __future__ import annotations

import dataclasses
from typing import Any

from bleproxy.core.events import (
    AdvertisingStarted,
    CharacteristicsDiscovered,
    Connected,
    DeviceDiscovered,
    ServicePublished,
    ServicesDiscovered,
    WriteCompleted,
)
from bleproxy.core.model import (
    CharacteristicProperty,
    DiscoveredDevice,
    LocalRequest,
    ProxyConfig,
    RemoteCharacteristic,
    RemoteService,
    ServiceConfig,
    ServiceSpec,
)
from bleproxy.core.service import ProxyService

HEART_RATE = "0000180d-0000-1000-8000-00805f9b34fb"
HR_MEASUREMENT = "00002a37-0000-1000-8000-00805f9b34fb"
HR_CONTROL = "00002a39-0000-1000-8000-00805f9b34fb"
BATTERY = "0000180f-0000-1000-8000-00805f9b34fb"
BATTERY_LEVEL = "00002a19-0000-1000-8000-00805f9b34fb"

RW_NOTIFY = CharacteristicProperty.READ | CharacteristicProperty.WRITE | CharacteristicProperty.NOTIFY

PROPERTIES = {
    HR_MEASUREMENT: RW_NOTIFY,
    HR_CONTROL: CharacteristicProperty.WRITE,
    BATTERY_LEVEL: CharacteristicProperty.READ | CharacteristicProperty.NOTIFY,
}


def make_config(**overrides: Any) -> ProxyConfig:
    values: dict[str, Any] = {
        "target_name": "Heart Sensor",
        "services": (
            ServiceConfig(uuid=HEART_RATE, characteristics=(HR_MEASUREMENT, HR_CONTROL)),
            ServiceConfig(uuid=BATTERY, characteristics=(BATTERY_LEVEL,)),
        ),
    }
    values.update(overrides)
    return ProxyConfig(**values)


class FakeCentral:
    def __init__(self) -> None:
        self.calls: list[tuple[Any, ...]] = []
        self.sink: Any = None
        self.attempt = 0
        self.in_flight_writes: dict[Any, list[int]] = {}

    def attach(self, sink: Any) -> None:
        self.sink = sink

    def emit(self, event: object) -> None:
        # Unstamped events belong to the attempt in progress and answer the oldest write.
        if isinstance(event, WriteCompleted) and event.correlation == 0:
            in_flight = self.in_flight_writes.get(f"chr:{event.characteristic_id}")
            if in_flight:
                event = dataclasses.replace(event, correlation=in_flight.pop(0))
        if getattr(event, "attempt", None) == 0:
            event = dataclasses.replace(event, attempt=self.attempt)
        self.sink(event)

    def names(self) -> list[str]:
        return [call[0] for call in self.calls]

    def count(self, name: str) -> int:
        return self.names().count(name)

    def scan(self, target_name: str, attempt: int) -> None:
        self.attempt = attempt
        self.calls.append(("scan", target_name))

    def stop_scan(self) -> None:
        self.calls.append(("stop_scan",))

    def connect(self, device_ref: Any, attempt: int) -> None:
        self.attempt = attempt
        self.in_flight_writes.clear()
        self.calls.append(("connect", device_ref))

    def disconnect(self, device_ref: Any) -> None:
        self.calls.append(("disconnect", device_ref))

    def discover_services(self, device_ref: Any) -> None:
        self.calls.append(("discover_services", device_ref))

    def discover_characteristics(self, device_ref: Any, service_ref: Any) -> None:
        self.calls.append(("discover_characteristics", device_ref, service_ref))

    def read_value(self, characteristic_ref: Any) -> None:
        self.calls.append(("read_value", characteristic_ref))

    def write_value(self, characteristic_ref: Any, value: bytes, *, with_response: bool, correlation: int) -> None:
        self.calls.append(("write_value", characteristic_ref, value, with_response))
        self.in_flight_writes.setdefault(characteristic_ref, []).append(correlation)

    def set_notify(self, characteristic_ref: Any, enabled: bool) -> None:
        self.calls.append(("set_notify", characteristic_ref, enabled))


class FakePeripheral:
    def __init__(self) -> None:
        self.calls: list[tuple[Any, ...]] = []
        self.published: list[ServiceSpec] = []
        self.responses: list[tuple[LocalRequest, int, bytes | None]] = []
        self.notifications: list[tuple[Any, bytes, tuple[str, ...]]] = []
        self.sink: Any = None

    def attach(self, sink: Any) -> None:
        self.sink = sink

    def emit(self, event: object) -> None:
        self.sink(event)

    def names(self) -> list[str]:
        return [call[0] for call in self.calls]

    def count(self, name: str) -> int:
        return self.names().count(name)

    def publish(self, service: ServiceSpec) -> None:
        self.calls.append(("publish", service.uuid))
        self.published.append(service)

    def unpublish_all(self) -> None:
        self.calls.append(("unpublish_all",))

    def start_advertising(self, name: str, service_ids: tuple[str, ...]) -> None:
        self.calls.append(("start_advertising", name, service_ids))

    def stop_advertising(self) -> None:
        self.calls.append(("stop_advertising",))

    def respond(self, request: LocalRequest, result: int, value: bytes | None = None) -> None:
        self.responses.append((request, result, value))

    def notify(self, characteristic_ref: Any, value: bytes, clients: tuple[str, ...]) -> None:
        self.notifications.append((characteristic_ref, value, clients))

    def results_for(self, ref: Any) -> list[int]:
        return [result for request, result, _ in self.responses if request.ref == ref]


DEVICE = DiscoveredDevice(ref="dev-1", name="Heart Sensor", local_name=None, address="AA:BB:CC:DD:EE:01")


def connect_remote(central: FakeCentral, device: DiscoveredDevice = DEVICE) -> None:
    central.emit(DeviceDiscovered(device))
    central.emit(Connected(device.ref))


def discover_remote(central: FakeCentral, config: ProxyConfig, device: DiscoveredDevice = DEVICE) -> None:
    central.emit(
        ServicesDiscovered(
            device.ref,
            services=tuple(RemoteService(uuid=s.uuid, ref=f"svc:{s.uuid}") for s in config.services),
        )
    )
    for service in config.services:
        central.emit(
            CharacteristicsDiscovered(
                device.ref,
                service.uuid,
                tuple(
                    RemoteCharacteristic(uuid=c, ref=f"chr:{c}", properties=PROPERTIES.get(c, RW_NOTIFY))
                    for c in service.characteristics
                ),
            )
        )


def publish_mirror(peripheral: FakePeripheral) -> None:
    for spec in list(peripheral.published):
        peripheral.emit(
            ServicePublished(
                spec.uuid,
                handle=f"mirror:{spec.uuid}",
                characteristic_handles=tuple((c.uuid, f"mirror:{c.uuid}") for c in spec.characteristics),
            )
        )
    peripheral.emit(AdvertisingStarted())


class Harness:
    """A full proxy on fake adapters, with shortcuts for the common phases."""

    device = DEVICE

    def __init__(
        self,
        config: ProxyConfig | None = None,
        *,
        central: FakeCentral | None = None,
        peripheral: FakePeripheral | None = None,
    ) -> None:
        self.config = config or make_config()
        self.central = central or FakeCentral()
        self.peripheral = peripheral or FakePeripheral()
        self.service = ProxyService(self.config, central=self.central, peripheral=self.peripheral)
        self.link = self.service.link
        self.server = self.service.server
        self.events: list[Any] = []
        self.service.add_observer(self.events.append)

    def connect_remote(self) -> None:
        self.service.start()
        connect_remote(self.central, self.device)

    def discover_remote(self) -> None:
        discover_remote(self.central, self.config, self.device)

    def publish_mirror(self) -> None:
        publish_mirror(self.peripheral)

    def bring_up(self) -> None:
        self.connect_remote()
        self.discover_remote()
        self.publish_mirror()
