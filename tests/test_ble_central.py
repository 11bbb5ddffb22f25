from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest
from bleak.exc import BleakError

from bleproxy.core.errors import AdapterError, ProxyTimeoutError
from bleproxy.core.events import CharacteristicsDiscovered, Connected, ConnectFailed, LinkLost, WriteCompleted
from bleproxy.core.model import AttResult, CharacteristicProperty
from bleproxy.transports import ble_central


class FakeClient:
    instances: list[FakeClient] = []
    connect_error: Exception | None = None

    def __init__(self, device, disconnected_callback=None, timeout=10.0) -> None:
        self.device = device
        self.disconnected_callback = disconnected_callback
        self.timeout = timeout
        self.is_connected = False
        self.writes: list[tuple[object, bytes, bool]] = []
        FakeClient.instances.append(self)

    async def connect(self) -> None:
        if FakeClient.connect_error is not None:
            raise FakeClient.connect_error
        self.is_connected = True

    async def disconnect(self) -> None:
        self.is_connected = False

    async def write_gatt_char(self, characteristic, value, response=True) -> None:
        self.writes.append((characteristic, value, response))


@pytest.fixture(autouse=True)
def _fake_client(monkeypatch: pytest.MonkeyPatch) -> None:
    FakeClient.instances.clear()
    FakeClient.connect_error = None
    monkeypatch.setattr(ble_central, "BleakClient", FakeClient)


def _device(address: str, name: str | None) -> SimpleNamespace:
    return SimpleNamespace(address=address, name=name)


def test_scan_devices_reports_names_and_local_names(monkeypatch: pytest.MonkeyPatch) -> None:
    async def _discover(timeout: float, return_adv: bool):
        assert return_adv is True
        return {
            "AA": (_device("AA:BB:CC:DD:EE:01", None), SimpleNamespace(local_name="Heart Sensor")),
            "00": (_device("00:11:22:33:44:55", "Kettle"), None),
        }

    monkeypatch.setattr(ble_central, "BleakScanner", SimpleNamespace(discover=_discover))

    devices = asyncio.run(ble_central.scan_devices(2.0))

    assert [(d.address, d.name, d.local_name) for d in devices] == [
        ("AA:BB:CC:DD:EE:01", None, "Heart Sensor"),
        ("00:11:22:33:44:55", "Kettle", None),
    ]


def test_scan_devices_wraps_bleak_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    async def _discover(timeout: float, return_adv: bool):
        raise BleakError("No Bluetooth adapters found.")

    monkeypatch.setattr(ble_central, "BleakScanner", SimpleNamespace(discover=_discover))

    with pytest.raises(AdapterError, match="No Bluetooth adapters found"):
        asyncio.run(ble_central.scan_devices())


def _run_adapter(steps) -> list[object]:
    async def scenario() -> list[object]:
        events: list[object] = []
        adapter = ble_central.BleakCentralAdapter(connect_timeout_s=3.0)
        adapter.attach(events.append)
        for step in steps:
            step(adapter)
            await adapter.aclose()
        return events

    return asyncio.run(scenario())


def test_connect_reports_connected_and_link_loss() -> None:
    device = _device("AA:BB:CC:DD:EE:01", "Heart Sensor")

    events = _run_adapter([lambda adapter: adapter.connect(device, 1)])

    assert events == [Connected(device, attempt=1)]
    client = FakeClient.instances[0]
    assert client.timeout == 3.0

    client.disconnected_callback(client)
    assert events[-1] == LinkLost(device, "Peripheral disconnected", attempt=1)


def test_link_loss_from_earlier_connection_keeps_its_attempt() -> None:
    device = _device("AA:BB:CC:DD:EE:01", "Heart Sensor")

    events = _run_adapter(
        [
            lambda adapter: adapter.connect(device, 1),
            lambda adapter: adapter.connect(device, 2),
        ]
    )

    first, second = FakeClient.instances
    first.disconnected_callback(first)

    assert events == [
        Connected(device, attempt=1),
        Connected(device, attempt=2),
        LinkLost(device, "Peripheral disconnected", attempt=1),
    ]
    assert second.is_connected is True


def test_connect_timeout_is_reported() -> None:
    FakeClient.connect_error = asyncio.TimeoutError()
    device = _device("AA:BB:CC:DD:EE:01", "Heart Sensor")

    events = _run_adapter([lambda adapter: adapter.connect(device, 1)])

    assert len(events) == 1
    assert isinstance(events[0], ConnectFailed)
    assert isinstance(events[0].error, ProxyTimeoutError)


def test_characteristics_are_reported_with_properties() -> None:
    service = SimpleNamespace(
        uuid="0000180d-0000-1000-8000-00805f9b34fb",
        characteristics=[
            SimpleNamespace(uuid="00002a37-0000-1000-8000-00805f9b34fb", properties=["read", "notify"]),
            SimpleNamespace(uuid="00002a39-0000-1000-8000-00805f9b34fb", properties=["write"]),
        ],
    )

    events = _run_adapter([lambda adapter: adapter.discover_characteristics("dev-1", service)])

    assert len(events) == 1
    discovered = events[0]
    assert isinstance(discovered, CharacteristicsDiscovered)
    assert discovered.service_id == service.uuid
    assert [(c.uuid, c.properties) for c in discovered.characteristics] == [
        ("00002a37-0000-1000-8000-00805f9b34fb", CharacteristicProperty.READ | CharacteristicProperty.NOTIFY),
        ("00002a39-0000-1000-8000-00805f9b34fb", CharacteristicProperty.WRITE),
    ]


def test_write_uses_requested_response_mode() -> None:
    device = _device("AA:BB:CC:DD:EE:01", "Heart Sensor")
    characteristic = SimpleNamespace(uuid="00002a39-0000-1000-8000-00805f9b34fb")

    events = _run_adapter(
        [
            lambda adapter: adapter.connect(device, 2),
            lambda adapter: adapter.write_value(characteristic, b"\x01", with_response=False, correlation=7),
        ]
    )

    assert FakeClient.instances[0].writes == [(characteristic, b"\x01", False)]
    assert events[-1] == WriteCompleted(characteristic.uuid, AttResult.SUCCESS, correlation=7, attempt=2)


def test_write_without_connection_fails_operation() -> None:
    characteristic = SimpleNamespace(uuid="00002a39-0000-1000-8000-00805f9b34fb")

    events = _run_adapter(
        [lambda adapter: adapter.write_value(characteristic, b"\x01", with_response=True, correlation=3)]
    )

    assert len(events) == 1
    assert events[0].result == AttResult.UNLIKELY_ERROR
    assert events[0].correlation == 3
    assert isinstance(events[0].error, AdapterError)
