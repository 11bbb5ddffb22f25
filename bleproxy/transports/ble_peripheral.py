"""Peripheral-role adapter backed by bless.

bless answers reads synchronously from the characteristic's stored value and
does not report which clients subscribe. This adapter therefore answers reads
with the last value relayed from the real device (refreshing it in the
background through the normal read relay), and reports a single synthetic
subscriber for every notify/indicate characteristic while advertising.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import functools
import logging
import operator
from collections.abc import Callable, Coroutine
from typing import Any

from bless import (
    BlessGATTCharacteristic,
    BlessServer,
    GATTAttributePermissions,
    GATTCharacteristicProperties,
)

from bleproxy.core.errors import AdapterError
from bleproxy.core.events import (
    AdvertisingStarted,
    ReadRequested,
    ServicePublished,
    Subscribed,
    Unsubscribed,
    WriteRequested,
)
from bleproxy.core.model import (
    NOTIFY_PROPERTIES,
    AttResult,
    AttributePermission,
    CharacteristicProperty,
    LocalRequest,
    ServiceSpec,
)
from bleproxy.transports.base import EventSink

LOGGER = logging.getLogger(__name__)

SYNTHETIC_SUBSCRIBER = "bless-subscribers"

_PROPERTY_MAP = (
    (CharacteristicProperty.READ, GATTCharacteristicProperties.read),
    (CharacteristicProperty.WRITE, GATTCharacteristicProperties.write),
    (CharacteristicProperty.WRITE_WITHOUT_RESPONSE, GATTCharacteristicProperties.write_without_response),
    (CharacteristicProperty.NOTIFY, GATTCharacteristicProperties.notify),
    (CharacteristicProperty.INDICATE, GATTCharacteristicProperties.indicate),
)


def bless_properties(properties: CharacteristicProperty) -> GATTCharacteristicProperties:
    selected = [flag for ours, flag in _PROPERTY_MAP if ours in properties]
    return functools.reduce(operator.or_, selected, GATTCharacteristicProperties(0))


def bless_permissions(permissions: AttributePermission) -> GATTAttributePermissions:
    if AttributePermission.WRITEABLE in permissions:
        return GATTAttributePermissions.writeable
    return GATTAttributePermissions.readable


class BlessPeripheralAdapter:
    def __init__(self, name: str, *, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._name = name
        self._loop = loop or asyncio.get_running_loop()
        self._sink: EventSink | None = None
        self._server: BlessServer | None = None
        self._advertising = False
        self._service_of: dict[str, str] = {}
        self._notifiable: list[str] = []
        self._lock = asyncio.Lock()
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
            LOGGER.error("Peripheral adapter task failed: %s", exc, exc_info=exc)

    async def aclose(self) -> None:
        pending = [asyncio.wrap_future(f, loop=self._loop) for f in list(self._futures)]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def publish(self, service: ServiceSpec) -> None:
        self._spawn(self._publish, service)

    def unpublish_all(self) -> None:
        self._spawn(self._unpublish_all)

    def start_advertising(self, name: str, service_ids: tuple[str, ...]) -> None:
        if name != self._name:
            LOGGER.warning("bless advertises under its construction name '%s', not '%s'", self._name, name)
        self._spawn(self._start_advertising, service_ids)

    def stop_advertising(self) -> None:
        self._spawn(self._stop_advertising)

    def respond(self, request: LocalRequest, result: int, value: bytes | None = None) -> None:
        # bless already answered the request when its callback returned; keep
        # the stored value current so the next read sees the relayed data.
        if result == AttResult.SUCCESS and value is not None:
            self._loop.call_soon_threadsafe(self._store, request.characteristic_id, value)
        elif result != AttResult.SUCCESS:
            LOGGER.debug("Request on %s resolved with result %s", request.characteristic_id, result)

    def notify(self, characteristic_ref: Any, value: bytes, clients: tuple[str, ...]) -> None:
        self._spawn(self._notify, characteristic_ref, value)

    def _store(self, characteristic_id: str, value: bytes) -> None:
        if self._server is None:
            return
        characteristic = self._server.get_characteristic(characteristic_id)
        if characteristic is not None:
            characteristic.value = bytearray(value)

    def _ensure_server(self) -> BlessServer:
        if self._server is None:
            server = BlessServer(name=self._name, loop=self._loop)
            server.read_request_func = self._on_read
            server.write_request_func = self._on_write
            self._server = server
        return self._server

    async def _publish(self, service: ServiceSpec) -> None:
        async with self._lock:
            server = self._ensure_server()
            try:
                await server.add_new_service(service.uuid)
                for characteristic in service.characteristics:
                    await server.add_new_characteristic(
                        service.uuid,
                        characteristic.uuid,
                        bless_properties(characteristic.properties),
                        None,
                        bless_permissions(characteristic.permissions),
                    )
                    self._service_of[characteristic.uuid] = service.uuid
                    if characteristic.properties & NOTIFY_PROPERTIES:
                        self._notifiable.append(characteristic.uuid)
            except Exception as exc:  # bless surfaces backend-specific exception types
                self._post(ServicePublished(service.uuid, error=AdapterError(str(exc))))
                return
        self._post(
            ServicePublished(
                service.uuid,
                handle=service.uuid,
                characteristic_handles=tuple((c.uuid, c.uuid) for c in service.characteristics),
            )
        )

    async def _start_advertising(self, service_ids: tuple[str, ...]) -> None:
        async with self._lock:
            server = self._ensure_server()
            try:
                await server.start()
            except Exception as exc:  # bless surfaces backend-specific exception types
                self._post(AdvertisingStarted(error=AdapterError(str(exc))))
                return
            self._advertising = True
        LOGGER.debug("Advertising services %s", ", ".join(service_ids))
        self._post(AdvertisingStarted())
        for characteristic_id in self._notifiable:
            self._post(Subscribed(characteristic_id, SYNTHETIC_SUBSCRIBER))

    async def _stop_advertising(self) -> None:
        async with self._lock:
            if self._server is None or not self._advertising:
                return
            self._advertising = False
            try:
                await self._server.stop()
            except Exception as exc:  # bless surfaces backend-specific exception types
                LOGGER.warning("Stopping bless server failed: %s", exc)
        for characteristic_id in self._notifiable:
            self._post(Unsubscribed(characteristic_id, SYNTHETIC_SUBSCRIBER))

    async def _unpublish_all(self) -> None:
        async with self._lock:
            self._server = None
            self._service_of.clear()
            self._notifiable.clear()

    async def _notify(self, characteristic_id: str, value: bytes) -> None:
        server = self._server
        service_id = self._service_of.get(characteristic_id)
        if server is None or service_id is None:
            return
        characteristic = server.get_characteristic(characteristic_id)
        if characteristic is None:
            return
        characteristic.value = bytearray(value)
        server.update_value(service_id, characteristic_id)

    def _on_read(self, characteristic: BlessGATTCharacteristic, **kwargs: Any) -> bytearray:
        characteristic_id = str(characteristic.uuid).lower()
        self._post(ReadRequested(LocalRequest(ref=characteristic_id, characteristic_id=characteristic_id)))
        return characteristic.value or bytearray()

    def _on_write(self, characteristic: BlessGATTCharacteristic, value: Any, **kwargs: Any) -> None:
        characteristic_id = str(characteristic.uuid).lower()
        request = LocalRequest(ref=characteristic_id, characteristic_id=characteristic_id, value=bytes(value))
        self._post(WriteRequested((request,)))
