"""Central-role adapter backed by bleak."""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.backends.service import BleakGATTService
from bleak.exc import BleakError

from bleproxy.core.errors import AdapterError, DiscoveryFailedError, ProxyTimeoutError
from bleproxy.core.events import (
    CentralPoweredOff,
    CharacteristicsDiscovered,
    Connected,
    ConnectFailed,
    DeviceDiscovered,
    LinkLost,
    NotifyStateChanged,
    ScanTimedOut,
    ServicesDiscovered,
    ValueUpdated,
    WriteCompleted,
)
from bleproxy.core.model import (
    AttResult,
    DiscoveredDevice,
    RemoteCharacteristic,
    RemoteService,
    parse_properties,
)
from bleproxy.transports.base import EventSink

LOGGER = logging.getLogger(__name__)

_POWERED_OFF_HINTS = ("powered off", "turned off", "not powered", "bluetooth is off")


def _discovered(device: BLEDevice, advertisement: AdvertisementData | None) -> DiscoveredDevice:
    return DiscoveredDevice(
        ref=device,
        name=device.name,
        local_name=advertisement.local_name if advertisement else None,
        address=device.address,
    )


async def scan_devices(timeout_s: float = 5.0) -> list[DiscoveredDevice]:
    """One-shot scan used by the ``devices`` command."""
    try:
        found = await BleakScanner.discover(timeout=timeout_s, return_adv=True)
    except BleakError as exc:
        raise AdapterError(f"BLE scan failed: {exc}") from exc
    return [_discovered(device, advertisement) for device, advertisement in found.values()]


class BleakCentralAdapter:
    """Run bleak operations on the proxy loop and report them as events.

    Methods may be called from any thread; each schedules a coroutine on the
    loop and returns immediately.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        scan_timeout_s: float | None = None,
        connect_timeout_s: float = 10.0,
        operation_timeout_s: float = 10.0,
    ) -> None:
        self._loop = loop or asyncio.get_running_loop()
        self._scan_timeout_s = scan_timeout_s
        self._connect_timeout_s = connect_timeout_s
        self._operation_timeout_s = operation_timeout_s
        self._sink: EventSink | None = None
        self._scanner: BleakScanner | None = None
        self._client: BleakClient | None = None
        self._attempt = 0
        self._futures: set[concurrent.futures.Future[Any]] = set()

    def attach(self, sink: EventSink) -> None:
        self._sink = sink

    def _post(self, event: object) -> None:
        if self._sink is not None:
            self._sink(event)

    def _spawn(self, factory: Callable[..., Coroutine[Any, Any, None]], *args: Any) -> None:
        future = asyncio.run_coroutine_threadsafe(factory(*args), self._loop)
        self._futures.add(future)
        future.add_done_callback(self._finished)

    def _finished(self, future: concurrent.futures.Future[Any]) -> None:
        self._futures.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            LOGGER.error("Central adapter task failed: %s", exc, exc_info=exc)

    async def aclose(self) -> None:
        pending = [asyncio.wrap_future(f, loop=self._loop) for f in list(self._futures)]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def scan(self, target_name: str, attempt: int) -> None:
        self._attempt = attempt
        self._spawn(self._scan, target_name, attempt)

    def stop_scan(self) -> None:
        self._spawn(self._stop_scan)

    def connect(self, device_ref: Any, attempt: int) -> None:
        self._attempt = attempt
        self._spawn(self._connect, device_ref, attempt)

    def disconnect(self, device_ref: Any) -> None:
        self._spawn(self._disconnect, device_ref)

    def discover_services(self, device_ref: Any) -> None:
        self._spawn(self._discover_services, device_ref, self._attempt)

    def discover_characteristics(self, device_ref: Any, service_ref: Any) -> None:
        self._spawn(self._discover_characteristics, device_ref, service_ref, self._attempt)

    def read_value(self, characteristic_ref: Any) -> None:
        self._spawn(self._read, characteristic_ref, self._attempt)

    def write_value(self, characteristic_ref: Any, value: bytes, *, with_response: bool, correlation: int) -> None:
        self._spawn(self._write, characteristic_ref, value, with_response, correlation, self._attempt)

    def set_notify(self, characteristic_ref: Any, enabled: bool) -> None:
        self._spawn(self._set_notify, characteristic_ref, enabled, self._attempt)

    async def _scan(self, target_name: str, attempt: int) -> None:
        def _detected(device: BLEDevice, advertisement: AdvertisementData) -> None:
            self._post(DeviceDiscovered(_discovered(device, advertisement)))

        scanner = BleakScanner(detection_callback=_detected)
        self._scanner = scanner
        LOGGER.debug("Starting BLE scan for '%s'", target_name)
        try:
            await scanner.start()
        except BleakError as exc:
            self._scanner = None
            if any(hint in str(exc).lower() for hint in _POWERED_OFF_HINTS):
                self._post(CentralPoweredOff())
            else:
                self._post(LinkLost(None, f"Scan failed: {exc}", attempt=attempt))
            return

        if self._scan_timeout_s is None:
            return
        await asyncio.sleep(self._scan_timeout_s)
        if self._scanner is scanner:
            await self._stop_scan()
            self._post(ScanTimedOut(attempt=attempt))

    async def _stop_scan(self) -> None:
        scanner, self._scanner = self._scanner, None
        if scanner is None:
            return
        try:
            await scanner.stop()
        except BleakError as exc:
            LOGGER.warning("Stopping scan failed: %s", exc)

    async def _connect(self, device_ref: BLEDevice, attempt: int) -> None:
        def _disconnected(_: BleakClient) -> None:
            self._post(LinkLost(device_ref, "Peripheral disconnected", attempt=attempt))

        client = BleakClient(device_ref, disconnected_callback=_disconnected, timeout=self._connect_timeout_s)
        self._client = client
        try:
            await client.connect()
        except asyncio.TimeoutError as exc:
            self._client = None
            error = ProxyTimeoutError(f"Connecting to {device_ref.address} timed out")
            self._post(ConnectFailed(device_ref, error, attempt=attempt))
            LOGGER.debug("Connect timeout detail: %s", exc)
            return
        except (BleakError, OSError) as exc:
            self._client = None
            self._post(ConnectFailed(device_ref, AdapterError(str(exc)), attempt=attempt))
            return
        self._post(Connected(device_ref, attempt=attempt))

    async def _disconnect(self, device_ref: Any) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.disconnect()
        except (BleakError, OSError) as exc:
            LOGGER.warning("Disconnecting from %s failed: %s", getattr(device_ref, "address", device_ref), exc)

    async def _discover_services(self, device_ref: Any, attempt: int) -> None:
        client = self._client
        if client is None:
            self._post(ServicesDiscovered(device_ref, error=DiscoveryFailedError("not connected"), attempt=attempt))
            return
        try:
            services = tuple(RemoteService(uuid=service.uuid, ref=service) for service in client.services)
        except BleakError as exc:
            self._post(ServicesDiscovered(device_ref, error=DiscoveryFailedError(str(exc)), attempt=attempt))
            return
        self._post(ServicesDiscovered(device_ref, services=services, attempt=attempt))

    async def _discover_characteristics(self, device_ref: Any, service_ref: BleakGATTService, attempt: int) -> None:
        characteristics = tuple(
            RemoteCharacteristic(
                uuid=characteristic.uuid,
                ref=characteristic,
                properties=parse_properties(characteristic.properties),
            )
            for characteristic in service_ref.characteristics
        )
        self._post(CharacteristicsDiscovered(device_ref, service_ref.uuid, characteristics, attempt=attempt))

    def _connected_client(self) -> BleakClient:
        client = self._client
        if client is None or not client.is_connected:
            raise AdapterError("Peripheral is not connected")
        return client

    async def _read(self, characteristic: BleakGATTCharacteristic, attempt: int) -> None:
        try:
            client = self._connected_client()
            value = await asyncio.wait_for(client.read_gatt_char(characteristic), self._operation_timeout_s)
        except asyncio.TimeoutError:
            error = ProxyTimeoutError(f"Reading {characteristic.uuid} timed out")
            self._post(ValueUpdated(characteristic.uuid, error=error, attempt=attempt))
            return
        except (BleakError, AdapterError, OSError) as exc:
            self._post(ValueUpdated(characteristic.uuid, error=AdapterError(str(exc)), attempt=attempt))
            return
        self._post(ValueUpdated(characteristic.uuid, bytes(value), attempt=attempt))

    async def _write(
        self,
        characteristic: BleakGATTCharacteristic,
        value: bytes,
        with_response: bool,
        correlation: int,
        attempt: int,
    ) -> None:
        def _completed(result: int, error: AdapterError | None = None) -> WriteCompleted:
            return WriteCompleted(characteristic.uuid, result, error=error, correlation=correlation, attempt=attempt)

        try:
            client = self._connected_client()
            await asyncio.wait_for(
                client.write_gatt_char(characteristic, value, response=with_response),
                self._operation_timeout_s,
            )
        except asyncio.TimeoutError:
            error = ProxyTimeoutError(f"Writing {characteristic.uuid} timed out")
            self._post(_completed(AttResult.UNLIKELY_ERROR, error))
            return
        except (BleakError, AdapterError, OSError) as exc:
            self._post(_completed(AttResult.UNLIKELY_ERROR, AdapterError(str(exc))))
            return
        self._post(_completed(AttResult.SUCCESS))

    async def _set_notify(self, characteristic: BleakGATTCharacteristic, enabled: bool, attempt: int) -> None:
        def _notified(_: BleakGATTCharacteristic, data: bytearray) -> None:
            self._post(ValueUpdated(characteristic.uuid, bytes(data), attempt=attempt))

        try:
            client = self._connected_client()
            if enabled:
                await client.start_notify(characteristic, _notified)
            else:
                await client.stop_notify(characteristic)
        except (BleakError, AdapterError, OSError) as exc:
            self._post(NotifyStateChanged(characteristic.uuid, enabled, error=AdapterError(str(exc)), attempt=attempt))
            return
        self._post(NotifyStateChanged(characteristic.uuid, enabled, attempt=attempt))
