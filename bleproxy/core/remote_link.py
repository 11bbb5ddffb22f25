"""Client-role state machine: owns the connection to the real peripheral."""

from __future__ import annotations

import enum
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from bleproxy.core.device_match import match_reason
from bleproxy.core.dispatch import SerialQueue
from bleproxy.core.errors import (
    CapabilityUnsupportedError,
    NotConnectedError,
    UnknownCharacteristicError,
)
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
from bleproxy.core.model import NOTIFY_PROPERTIES, AttResult, ProxyConfig
from bleproxy.core.topology import CharacteristicDescriptor, Topology
from bleproxy.transports.base import CentralAdapter

LOGGER = logging.getLogger(__name__)


class LinkState(enum.Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    DISCOVERING_SERVICES = "discovering-services"
    DISCOVERING_CHARACTERISTICS = "discovering-characteristics"
    READY = "ready"
    DISCONNECTED = "disconnected"


_IN_PROGRESS = frozenset(
    {
        LinkState.SCANNING,
        LinkState.CONNECTING,
        LinkState.DISCOVERING_SERVICES,
        LinkState.DISCOVERING_CHARACTERISTICS,
    }
)
_DISCOVERING = frozenset({LinkState.DISCOVERING_SERVICES, LinkState.DISCOVERING_CHARACTERISTICS})


class RemoteLinkListener(Protocol):
    def link_state_changed(self, state: LinkState, message: str) -> None: ...

    def link_ready(self, topology: Topology) -> None: ...

    def link_disconnected(self, reason: str) -> None: ...

    def data_received(self, characteristic_id: str, value: bytes) -> None: ...

    def read_failed(self, characteristic_id: str, result: int) -> None: ...

    def write_confirmed(self, characteristic_id: str, result: int) -> None: ...


@dataclass(frozen=True)
class PendingOperation:
    characteristic_id: str
    kind: str
    correlation: int


class RemoteLink:
    """Scan, connect, discover and relay GATT operations to the real device.

    Adapter events enter through ``post`` and are handled on ``queue``. Events
    that no longer fit the current state (late completions after a disconnect,
    duplicate connect callbacks) are dropped, as are events stamped with an
    earlier connection attempt.
    """

    def __init__(
        self,
        config: ProxyConfig,
        adapter: CentralAdapter,
        listener: RemoteLinkListener | None = None,
    ) -> None:
        self.config = config
        self.listener = listener
        self.queue = SerialQueue("remote-link")
        self._adapter = adapter
        self._state = LinkState.IDLE
        self._reason: str | None = None
        self._device_ref: Any = None
        self._topology: Topology | None = None
        self._awaiting: set[str] = set()
        self._pending: list[PendingOperation] = []
        self._notifying: set[str] = set()
        self._attempt = 0
        self._correlation = itertools.count(1)
        self._handlers = {
            DeviceDiscovered: self._on_device_discovered,
            ScanTimedOut: self._on_scan_timed_out,
            Connected: self._on_connected,
            ConnectFailed: self._on_connect_failed,
            LinkLost: self._on_link_lost,
            CentralPoweredOff: self._on_powered_off,
            ServicesDiscovered: self._on_services_discovered,
            CharacteristicsDiscovered: self._on_characteristics_discovered,
            ValueUpdated: self._on_value_updated,
            WriteCompleted: self._on_write_completed,
            NotifyStateChanged: self._on_notify_state_changed,
        }
        adapter.attach(self.post)

    @property
    def state(self) -> LinkState:
        return self._state

    @property
    def disconnect_reason(self) -> str | None:
        return self._reason

    @property
    def topology(self) -> Topology | None:
        return self._topology

    @property
    def pending(self) -> tuple[PendingOperation, ...]:
        return tuple(self._pending)

    @property
    def notifying(self) -> frozenset[str]:
        return frozenset(self._notifying)

    def post(self, event: object) -> None:
        self.queue.submit(self._handle, event)

    def connect(self) -> None:
        self.queue.submit(self._connect)

    def disconnect(self, reason: str = "Disconnect requested") -> None:
        self.queue.submit(self._disconnect, reason)

    # Relay operations. Callers run these on ``queue`` (the mediator does).

    def read_data(self, characteristic_id: str) -> None:
        characteristic = self._require(characteristic_id)
        self._track(characteristic_id, "read")
        LOGGER.debug("Reading %s from remote", characteristic_id)
        self._adapter.read_value(characteristic.remote_handle)

    def write_data(self, characteristic_id: str, value: bytes, with_response: bool = True) -> None:
        characteristic = self._require(characteristic_id)
        op = self._track(characteristic_id, "write")
        LOGGER.debug("Writing %s to remote %s", value.hex(), characteristic_id)
        self._adapter.write_value(
            characteristic.remote_handle,
            bytes(value),
            with_response=with_response,
            correlation=op.correlation,
        )

    def register_notify(self, characteristic_id: str) -> None:
        characteristic = self._require_notify(characteristic_id)
        if self._notify_target(characteristic_id):
            return
        self._track(characteristic_id, "subscribe")
        self._adapter.set_notify(characteristic.remote_handle, True)

    def unregister_notify(self, characteristic_id: str) -> None:
        characteristic = self._require_notify(characteristic_id)
        if not self._notify_target(characteristic_id):
            return
        self._track(characteristic_id, "unsubscribe")
        self._adapter.set_notify(characteristic.remote_handle, False)

    def _require(self, characteristic_id: str) -> CharacteristicDescriptor:
        if self._state is not LinkState.READY or self._topology is None:
            raise NotConnectedError(
                f"Remote link is {self._state.value}; cannot access characteristic {characteristic_id}"
            )
        characteristic = self._topology.find_characteristic(characteristic_id)
        if characteristic is None or not characteristic.remote_bound:
            raise UnknownCharacteristicError(f"Characteristic {characteristic_id} is not bound on the remote device")
        return characteristic

    def _require_notify(self, characteristic_id: str) -> CharacteristicDescriptor:
        characteristic = self._require(characteristic_id)
        if not characteristic.properties & NOTIFY_PROPERTIES:
            raise CapabilityUnsupportedError(
                f"Characteristic {characteristic_id} supports neither notify nor indicate"
            )
        return characteristic

    def _notify_target(self, characteristic_id: str) -> bool:
        """Whether notifications are on, or will be once in-flight requests settle."""
        enabled = characteristic_id in self._notifying
        for op in self._pending:
            if op.characteristic_id == characteristic_id and op.kind in ("subscribe", "unsubscribe"):
                enabled = op.kind == "subscribe"
        return enabled

    def _track(self, characteristic_id: str, kind: str) -> PendingOperation:
        op = PendingOperation(characteristic_id, kind, next(self._correlation))
        self._pending.append(op)
        return op

    def _take(self, characteristic_id: str, kinds: tuple[str, ...], *, first_only: bool) -> list[PendingOperation]:
        matching = [op for op in self._pending if op.characteristic_id == characteristic_id and op.kind in kinds]
        if first_only:
            matching = matching[:1]
        self._pending = [op for op in self._pending if op not in matching]
        return matching

    def _set_state(self, state: LinkState, message: str) -> None:
        self._state = state
        LOGGER.info(message)
        if self.listener is not None:
            self.listener.link_state_changed(state, message)

    def _handle(self, event: object) -> None:
        handler = self._handlers.get(type(event))
        if handler is None:
            LOGGER.debug("Remote link ignoring unsupported event %r", event)
            return
        handler(event)

    def _drop(self, event: object) -> None:
        LOGGER.debug("Dropping %s while %s", type(event).__name__, self._state.value)

    def _stale(self, event: Any) -> bool:
        if event.attempt == self._attempt:
            return False
        LOGGER.debug(
            "Dropping %s from connection attempt %d (current attempt %d)",
            type(event).__name__,
            event.attempt,
            self._attempt,
        )
        return True

    def _connect(self) -> None:
        if self._state not in (LinkState.IDLE, LinkState.DISCONNECTED):
            LOGGER.debug("connect() ignored while %s", self._state.value)
            return
        self._attempt += 1
        self._reason = None
        self._device_ref = None
        self._topology = None
        self._set_state(LinkState.SCANNING, f"Scanning for '{self.config.target_name}'")
        self._adapter.scan(self.config.target_name, self._attempt)

    def _disconnect(self, reason: str) -> None:
        if self._state is LinkState.DISCONNECTED:
            LOGGER.debug("disconnect() ignored while %s", self._state.value)
            return
        self._teardown(reason)

    def _teardown(self, reason: str, *, drop_link: bool = True) -> None:
        previous = self._state
        if previous is LinkState.SCANNING:
            self._adapter.stop_scan()
        elif drop_link and self._device_ref is not None:
            self._adapter.disconnect(self._device_ref)

        abandoned, self._pending = self._pending, []
        if self.listener is not None:
            for op in abandoned:
                if op.kind == "read":
                    self.listener.read_failed(op.characteristic_id, AttResult.UNLIKELY_ERROR)
                elif op.kind == "write":
                    self.listener.write_confirmed(op.characteristic_id, AttResult.UNLIKELY_ERROR)
        if abandoned:
            LOGGER.warning("Failed %d pending remote operation(s) on disconnect", len(abandoned))

        self._device_ref = None
        self._topology = None
        self._awaiting.clear()
        self._notifying.clear()
        self._reason = reason
        self._set_state(LinkState.DISCONNECTED, f"Disconnected: {reason}")
        if self.listener is not None:
            self.listener.link_disconnected(reason)

    def _on_device_discovered(self, event: DeviceDiscovered) -> None:
        if self._state is not LinkState.SCANNING:
            self._drop(event)
            return
        reason = match_reason(event.device, self.config.target_name)
        if reason is None:
            LOGGER.debug("Ignoring device %s (%s)", event.device.address, event.device.name)
            return
        self._adapter.stop_scan()
        self._device_ref = event.device.ref
        self._set_state(
            LinkState.CONNECTING,
            f"Found '{self.config.target_name}' at {event.device.address} (matched {reason}); connecting",
        )
        self._adapter.connect(event.device.ref, self._attempt)

    def _on_scan_timed_out(self, event: ScanTimedOut) -> None:
        if self._stale(event):
            return
        if self._state is not LinkState.SCANNING:
            self._drop(event)
            return
        self._teardown(f"No device named '{self.config.target_name}' found before the scan timed out")

    def _on_connected(self, event: Connected) -> None:
        if self._stale(event):
            return
        if self._state is LinkState.READY or self._state in _DISCOVERING:
            LOGGER.debug("Ignoring duplicate connected callback")
            return
        if self._state is not LinkState.CONNECTING or event.device_ref != self._device_ref:
            self._drop(event)
            return
        self._topology = Topology.build(self.config)
        self._awaiting.clear()
        self._set_state(LinkState.DISCOVERING_SERVICES, "Connected to peripheral; discovering services")
        self._adapter.discover_services(self._device_ref)

    def _on_connect_failed(self, event: ConnectFailed) -> None:
        if self._stale(event):
            return
        if self._state is not LinkState.CONNECTING or event.device_ref != self._device_ref:
            self._drop(event)
            return
        self._teardown(f"Failed to connect: {event.error}", drop_link=False)

    def _on_link_lost(self, event: LinkLost) -> None:
        if self._stale(event):
            return
        if self._state not in _IN_PROGRESS and self._state is not LinkState.READY:
            self._drop(event)
            return
        if event.device_ref != self._device_ref:
            self._drop(event)
            return
        self._teardown(event.reason, drop_link=False)

    def _on_powered_off(self, event: CentralPoweredOff) -> None:
        if self._state in (LinkState.IDLE, LinkState.DISCONNECTED):
            return
        self._teardown("Bluetooth is turned off.", drop_link=False)

    def _on_services_discovered(self, event: ServicesDiscovered) -> None:
        if self._stale(event):
            return
        if self._state not in _DISCOVERING or event.device_ref != self._device_ref:
            self._drop(event)
            return
        assert self._topology is not None
        if event.error is not None:
            self._teardown(f"Service discovery failed: {event.error}")
            return

        matched = [
            service
            for service in event.services
            if self._topology.has_service(service.uuid)
            and self._topology.service(service.uuid).remote_handle is None
        ]
        for service in matched:
            self._topology.bind_remote(service.uuid, None, service.ref)
            self._awaiting.add(service.uuid)
            LOGGER.info("Discovered service %s", service.uuid)

        if not any(service.remote_handle is not None for service in self._topology):
            self._teardown("None of the configured services were found on the peripheral")
            return
        if not matched:
            return

        if self._state is not LinkState.DISCOVERING_CHARACTERISTICS:
            self._set_state(LinkState.DISCOVERING_CHARACTERISTICS, "Discovering characteristics")
        for service in matched:
            self._adapter.discover_characteristics(self._device_ref, service.ref)

    def _on_characteristics_discovered(self, event: CharacteristicsDiscovered) -> None:
        if self._stale(event):
            return
        if (
            self._state is not LinkState.DISCOVERING_CHARACTERISTICS
            or event.device_ref != self._device_ref
            or event.service_id not in self._awaiting
        ):
            self._drop(event)
            return
        assert self._topology is not None
        if event.error is not None:
            self._teardown(f"Characteristic discovery failed for service {event.service_id}: {event.error}")
            return

        service = self._topology.service(event.service_id)
        configured = {c.id for c in service.characteristics}
        matched = [c for c in event.characteristics if c.uuid in configured]
        if not matched:
            self._teardown(f"None of the configured characteristics were found in service {event.service_id}")
            return

        self._awaiting.discard(event.service_id)
        for characteristic in matched:
            self._topology.bind_remote(
                event.service_id,
                characteristic.uuid,
                characteristic.ref,
                properties=characteristic.properties,
            )
            LOGGER.info("Discovered characteristic %s", characteristic.uuid)
            if self._topology.is_remote_complete():
                self._become_ready()
                return

        if not self._awaiting:
            missing = [c.id for c in self._topology.characteristics() if not c.remote_bound]
            missing += [s.id for s in self._topology if s.remote_handle is None]
            self._teardown(f"Peripheral is missing configured attributes: {', '.join(missing)}")

    def _become_ready(self) -> None:
        assert self._topology is not None
        self._set_state(LinkState.READY, "Remote peripheral ready")
        if self.listener is not None:
            self.listener.link_ready(self._topology.snapshot())

    def _on_value_updated(self, event: ValueUpdated) -> None:
        if self._stale(event):
            return
        if self._state is not LinkState.READY or self._topology is None:
            self._drop(event)
            return
        if event.error is not None:
            self._teardown(f"Error reading characteristic {event.characteristic_id}: {event.error}")
            return
        if self._topology.find_characteristic(event.characteristic_id) is None:
            LOGGER.debug("Ignoring value update for unconfigured characteristic %s", event.characteristic_id)
            return
        self._take(event.characteristic_id, ("read",), first_only=False)
        LOGGER.debug("Received %s from remote %s", event.value.hex(), event.characteristic_id)
        if self.listener is not None:
            self.listener.data_received(event.characteristic_id, bytes(event.value))

    def _on_write_completed(self, event: WriteCompleted) -> None:
        if self._stale(event):
            return
        if self._state is not LinkState.READY:
            self._drop(event)
            return
        op = next(
            (
                op
                for op in self._pending
                if op.kind == "write"
                and op.characteristic_id == event.characteristic_id
                and op.correlation == event.correlation
            ),
            None,
        )
        if op is None:
            LOGGER.debug(
                "Ignoring completion of write %d to %s; no such write is pending",
                event.correlation,
                event.characteristic_id,
            )
            return
        self._pending.remove(op)
        result = event.result
        if event.error is not None:
            LOGGER.warning("Write to %s failed: %s", event.characteristic_id, event.error)
            if result == AttResult.SUCCESS:
                result = AttResult.UNLIKELY_ERROR
        if self.listener is not None:
            self.listener.write_confirmed(event.characteristic_id, result)

    def _on_notify_state_changed(self, event: NotifyStateChanged) -> None:
        if self._stale(event):
            return
        if self._state is not LinkState.READY:
            self._drop(event)
            return
        if event.error is not None:
            self._teardown(f"Error changing notification state for {event.characteristic_id}: {event.error}")
            return
        self._take(event.characteristic_id, ("subscribe", "unsubscribe"), first_only=True)
        if event.enabled:
            self._notifying.add(event.characteristic_id)
            LOGGER.info("Notifications enabled on remote %s", event.characteristic_id)
        else:
            self._notifying.discard(event.characteristic_id)
            LOGGER.info("Notifications disabled on remote %s", event.characteristic_id)
