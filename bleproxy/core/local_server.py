"""Server-role state machine: owns the locally advertised mirror."""

from __future__ import annotations

import enum
import logging
from typing import Protocol

from bleproxy.core.dispatch import SerialQueue
from bleproxy.core.errors import ServerStateError
from bleproxy.core.events import (
    AdvertisingStarted,
    AdvertisingStopped,
    PeripheralPoweredOff,
    ReadRequested,
    ServicePublished,
    Subscribed,
    Unsubscribed,
    WriteRequested,
)
from bleproxy.core.model import (
    NOTIFY_PROPERTIES,
    WRITE_PROPERTIES,
    AttResult,
    CharacteristicProperty,
    CharacteristicSpec,
    LocalRequest,
    ProxyConfig,
    ServiceSpec,
    permissions_for,
)
from bleproxy.core.topology import CharacteristicDescriptor, Topology
from bleproxy.transports.base import PeripheralAdapter

LOGGER = logging.getLogger(__name__)


class ServerState(enum.Enum):
    IDLE = "idle"
    PUBLISHING = "publishing"
    ADVERTISING = "advertising"
    STOPPED = "stopped"


_RUNNING = frozenset({ServerState.PUBLISHING, ServerState.ADVERTISING})


class LocalServerListener(Protocol):
    def server_state_changed(self, state: ServerState, message: str) -> None: ...

    def advertising_started(self) -> None: ...

    def server_stopped(self, reason: str, external: bool) -> None: ...

    def read_requested(self, characteristic_id: str) -> None: ...

    def write_requested(self, characteristic_id: str, value: bytes, needs_response: bool) -> None: ...

    def subscription_started(self, characteristic_id: str) -> None: ...

    def subscription_ended(self, characteristic_id: str) -> None: ...


class LocalServer:
    """Publish the mirrored topology and broker local clients' requests.

    Every read and response-requiring write stays open until the relay
    answers it through ``data_received``/``confirm_write``/``reject_reads``,
    or until the server stops, at which point it is failed.
    """

    def __init__(
        self,
        config: ProxyConfig,
        adapter: PeripheralAdapter,
        listener: LocalServerListener | None = None,
    ) -> None:
        self.config = config
        self.listener = listener
        self.queue = SerialQueue("local-server")
        self._adapter = adapter
        self._state = ServerState.IDLE
        self._reason: str | None = None
        self._topology: Topology | None = None
        self._awaiting: set[str] = set()
        self._open_reads: dict[str, list[LocalRequest]] = {}
        self._open_writes: dict[str, list[LocalRequest]] = {}
        self._subscribers: dict[str, set[str]] = {}
        self._values: dict[str, bytes] = {}
        self._handlers = {
            ServicePublished: self._on_service_published,
            AdvertisingStarted: self._on_advertising_started,
            AdvertisingStopped: self._on_advertising_stopped,
            PeripheralPoweredOff: self._on_powered_off,
            ReadRequested: self._on_read_requested,
            WriteRequested: self._on_write_requested,
            Subscribed: self._on_subscribed,
            Unsubscribed: self._on_unsubscribed,
        }
        adapter.attach(self.post)

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def stop_reason(self) -> str | None:
        return self._reason

    @property
    def topology(self) -> Topology | None:
        return self._topology

    def open_reads(self, characteristic_id: str) -> tuple[LocalRequest, ...]:
        return tuple(self._open_reads.get(characteristic_id, ()))

    def open_writes(self, characteristic_id: str) -> tuple[LocalRequest, ...]:
        return tuple(self._open_writes.get(characteristic_id, ()))

    def open_request_count(self) -> int:
        return sum(len(r) for r in self._open_reads.values()) + sum(len(w) for w in self._open_writes.values())

    def subscribers(self, characteristic_id: str) -> frozenset[str]:
        return frozenset(self._subscribers.get(characteristic_id, ()))

    def cached_value(self, characteristic_id: str) -> bytes | None:
        return self._values.get(characteristic_id)

    def post(self, event: object) -> None:
        self.queue.submit(self._handle, event)

    def stop_advertising(self, reason: str = "Stop requested") -> None:
        self.queue.submit(self._stop, reason, False)

    # Relay entry points. Callers run these on ``queue`` (the mediator does).

    def start_advertising(self, topology: Topology) -> None:
        if self._state not in (ServerState.IDLE, ServerState.STOPPED):
            raise ServerStateError(f"Cannot start advertising while {self._state.value}")
        self._topology = topology.snapshot()
        self._reason = None
        self._awaiting = {service.id for service in self._topology}
        self._open_reads.clear()
        self._open_writes.clear()
        self._subscribers.clear()
        self._values.clear()
        self._set_state(ServerState.PUBLISHING, "Publishing mirrored services")
        for service in self._topology:
            self._adapter.publish(
                ServiceSpec(
                    uuid=service.id,
                    characteristics=tuple(
                        CharacteristicSpec(
                            uuid=c.id,
                            properties=c.properties,
                            permissions=permissions_for(c.properties),
                        )
                        for c in service.characteristics
                    ),
                )
            )

    def confirm_write(self, characteristic_id: str, result: int) -> None:
        requests = self._open_writes.pop(characteristic_id, [])
        if not requests:
            LOGGER.debug("No open writes on %s to confirm", characteristic_id)
            return
        for request in requests:
            self._adapter.respond(request, result)
        LOGGER.debug("Confirmed %d write(s) on %s with result %s", len(requests), characteristic_id, result)

    def reject_reads(self, characteristic_id: str, result: int) -> None:
        for request in self._open_reads.pop(characteristic_id, []):
            self._adapter.respond(request, result)

    def data_received(self, value: bytes, characteristic_id: str) -> None:
        characteristic = self._topology.find_characteristic(characteristic_id) if self._topology else None
        if characteristic is None:
            LOGGER.debug("Dropping data for %s while %s", characteristic_id, self._state.value)
            return
        value = bytes(value)
        self._values[characteristic_id] = value
        for request in self._open_reads.pop(characteristic_id, []):
            self._adapter.respond(request, AttResult.SUCCESS, value)
        subscribers = tuple(sorted(self._subscribers.get(characteristic_id, ())))
        if subscribers:
            self._adapter.notify(characteristic.mirror_handle, value, subscribers)

    def _set_state(self, state: ServerState, message: str) -> None:
        self._state = state
        LOGGER.info(message)
        if self.listener is not None:
            self.listener.server_state_changed(state, message)

    def _handle(self, event: object) -> None:
        handler = self._handlers.get(type(event))
        if handler is None:
            LOGGER.debug("Local server ignoring unsupported event %r", event)
            return
        handler(event)

    def _drop(self, event: object) -> None:
        LOGGER.debug("Dropping %s while %s", type(event).__name__, self._state.value)

    def _stop(self, reason: str, external: bool) -> None:
        if self._state not in _RUNNING:
            LOGGER.debug("stop ignored while %s", self._state.value)
            return

        failed = 0
        for pending in (self._open_reads, self._open_writes):
            for requests in pending.values():
                for request in requests:
                    self._adapter.respond(request, AttResult.UNLIKELY_ERROR)
                    failed += 1
            pending.clear()
        if failed:
            LOGGER.warning("Failed %d open request(s) on stop", failed)

        self._adapter.stop_advertising()
        self._adapter.unpublish_all()
        self._subscribers.clear()
        self._values.clear()
        self._awaiting.clear()
        self._topology = None
        self._reason = reason
        self._set_state(ServerState.STOPPED, f"Advertising stopped: {reason}")
        if self.listener is not None:
            self.listener.server_stopped(reason, external)

    def _on_service_published(self, event: ServicePublished) -> None:
        if self._state is not ServerState.PUBLISHING or event.service_id not in self._awaiting:
            self._drop(event)
            return
        assert self._topology is not None
        if event.error is not None:
            LOGGER.error("Publishing service %s failed: %s", event.service_id, event.error)
            self._stop(f"There was an error when adding the service {event.service_id}, error: {event.error}", True)
            return

        self._topology.bind_mirror(event.service_id, None, event.handle)
        for characteristic_id, handle in event.characteristic_handles:
            self._topology.bind_mirror(event.service_id, characteristic_id, handle)
        self._awaiting.discard(event.service_id)
        LOGGER.info("The service %s was added.", event.service_id)
        if self._awaiting:
            return

        if not self._topology.is_complete():
            unbound = [c.id for c in self._topology.characteristics() if not c.mirror_bound]
            self._stop(f"Mirror is incomplete; unpublished characteristics: {', '.join(unbound)}", True)
            return
        self._adapter.start_advertising(self.config.local_name, tuple(s.id for s in self._topology))

    def _on_advertising_started(self, event: AdvertisingStarted) -> None:
        if self._state is not ServerState.PUBLISHING:
            self._drop(event)
            return
        if event.error is not None:
            self._stop(f"There was an error in starting the advertising: {event.error}", True)
            return
        self._set_state(ServerState.ADVERTISING, f"Advertising as '{self.config.local_name}'")
        if self.listener is not None:
            self.listener.advertising_started()

    def _on_advertising_stopped(self, event: AdvertisingStopped) -> None:
        if self._state not in _RUNNING:
            self._drop(event)
            return
        self._stop(event.reason, True)

    def _on_powered_off(self, event: PeripheralPoweredOff) -> None:
        if self._state not in _RUNNING:
            self._drop(event)
            return
        self._stop("Bluetooth is turned off.", True)

    def _lookup(self, request: LocalRequest) -> CharacteristicDescriptor | None:
        if self._topology is None:
            return None
        return self._topology.find_characteristic(request.characteristic_id)

    def _on_read_requested(self, event: ReadRequested) -> None:
        request = event.request
        characteristic = self._lookup(request)
        if characteristic is None:
            self._adapter.respond(request, AttResult.INVALID_HANDLE)
            return
        if not characteristic.properties & CharacteristicProperty.READ:
            self._adapter.respond(request, AttResult.READ_NOT_PERMITTED)
            return
        if self._state is not ServerState.ADVERTISING:
            self._adapter.respond(request, AttResult.UNLIKELY_ERROR)
            return
        self._open_reads.setdefault(request.characteristic_id, []).append(request)
        LOGGER.debug("Read requested on %s by %s", request.characteristic_id, request.client)
        if self.listener is not None:
            self.listener.read_requested(request.characteristic_id)

    def _on_write_requested(self, event: WriteRequested) -> None:
        for request in event.requests:
            if request.value is None:
                continue
            characteristic = self._lookup(request)
            if characteristic is None:
                self._respond_if_needed(request, AttResult.INVALID_HANDLE)
                continue
            if not characteristic.properties & WRITE_PROPERTIES:
                self._respond_if_needed(request, AttResult.WRITE_NOT_PERMITTED)
                continue
            if self._state is not ServerState.ADVERTISING:
                self._respond_if_needed(request, AttResult.UNLIKELY_ERROR)
                continue
            if request.needs_response:
                self._open_writes.setdefault(request.characteristic_id, []).append(request)
            LOGGER.debug("Write of %s requested on %s by %s", request.value.hex(), request.characteristic_id, request.client)
            if self.listener is not None:
                self.listener.write_requested(request.characteristic_id, bytes(request.value), request.needs_response)

    def _respond_if_needed(self, request: LocalRequest, result: int) -> None:
        if request.needs_response:
            self._adapter.respond(request, result)

    def _on_subscribed(self, event: Subscribed) -> None:
        if self._state is not ServerState.ADVERTISING or self._topology is None:
            self._drop(event)
            return
        characteristic = self._topology.find_characteristic(event.characteristic_id)
        if characteristic is None:
            LOGGER.debug("Ignoring subscription to unknown characteristic %s", event.characteristic_id)
            return
        if not characteristic.properties & NOTIFY_PROPERTIES:
            LOGGER.warning(
                "Rejecting subscription by %s to %s; it supports neither notify nor indicate",
                event.client,
                event.characteristic_id,
            )
            return
        subscribers = self._subscribers.setdefault(event.characteristic_id, set())
        if event.client in subscribers:
            return
        first = not subscribers
        subscribers.add(event.client)
        LOGGER.info(
            "Central %s has registered for notifications on characteristic %s",
            event.client,
            event.characteristic_id,
        )
        if first and self.listener is not None:
            self.listener.subscription_started(event.characteristic_id)

    def _on_unsubscribed(self, event: Unsubscribed) -> None:
        subscribers = self._subscribers.get(event.characteristic_id)
        if not subscribers or event.client not in subscribers:
            self._drop(event)
            return
        subscribers.discard(event.client)
        LOGGER.info(
            "Central %s has unregistered from notifications on characteristic %s",
            event.client,
            event.characteristic_id,
        )
        if not subscribers:
            del self._subscribers[event.characteristic_id]
            if self.listener is not None:
                self.listener.subscription_ended(event.characteristic_id)
