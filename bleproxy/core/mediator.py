"""Relay between the Remote Link and the Local Server."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from bleproxy.core.errors import BleProxyError
from bleproxy.core.local_server import LocalServer, ServerState
from bleproxy.core.model import AttResult, ProxyEvent
from bleproxy.core.remote_link import LinkState, RemoteLink
from bleproxy.core.topology import Topology

LOGGER = logging.getLogger(__name__)

Observer = Callable[[ProxyEvent], None]


class RelayMediator:
    """Forward requests and results between the two state machines.

    The mediator holds no relay state of its own. Each listener callback runs
    on the emitting machine's queue and hands work to the other machine by
    submitting to that machine's queue, never by calling it directly.
    """

    def __init__(self, link: RemoteLink, server: LocalServer) -> None:
        self._link = link
        self._server = server
        self._observers: list[Observer] = []
        link.listener = self
        server.listener = self

    def add_observer(self, observer: Observer) -> None:
        self._observers.append(observer)

    def _publish(self, source: str, kind: str, message: str, **details: Any) -> None:
        event = ProxyEvent(source=source, kind=kind, message=message, details=details)
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception:
                LOGGER.exception("Proxy event observer failed")

    # Remote Link -> Local Server

    def link_state_changed(self, state: LinkState, message: str) -> None:
        self._publish("remote", state.value, message)

    def link_ready(self, topology: Topology) -> None:
        self._server.queue.submit(self._start_server, topology)

    def _start_server(self, topology: Topology) -> None:
        try:
            self._server.start_advertising(topology)
        except BleProxyError as exc:
            LOGGER.error("Could not start the mirror: %s", exc)
            self._publish("local", "error", str(exc))
            self._link.disconnect(f"Could not start the mirror: {exc}")

    def link_disconnected(self, reason: str) -> None:
        self._publish("remote", "stopped", f"Stopped because: {reason}", reason=reason)
        self._server.stop_advertising(reason)

    def data_received(self, characteristic_id: str, value: bytes) -> None:
        self._publish(
            "remote",
            "data",
            f"Received {value.hex()} from peripheral to pass to central on characteristic {characteristic_id}",
            characteristic_id=characteristic_id,
        )
        self._server.queue.submit(self._server.data_received, value, characteristic_id)

    def read_failed(self, characteristic_id: str, result: int) -> None:
        self._server.queue.submit(self._server.reject_reads, characteristic_id, result)

    def write_confirmed(self, characteristic_id: str, result: int) -> None:
        self._publish(
            "remote",
            "written",
            f"Data written from central to peripheral on characteristic {characteristic_id} with result: {result}",
            characteristic_id=characteristic_id,
            result=result,
        )
        self._server.queue.submit(self._server.confirm_write, characteristic_id, result)

    # Local Server -> Remote Link

    def server_state_changed(self, state: ServerState, message: str) -> None:
        self._publish("local", state.value, message)

    def advertising_started(self) -> None:
        self._publish("local", "ready", "Proxy is relaying traffic")

    def server_stopped(self, reason: str, external: bool) -> None:
        if external:
            self._link.disconnect(f"Local server stopped: {reason}")

    def read_requested(self, characteristic_id: str) -> None:
        self._link.queue.submit(self._forward_read, characteristic_id)

    def _forward_read(self, characteristic_id: str) -> None:
        try:
            self._link.read_data(characteristic_id)
        except BleProxyError as exc:
            LOGGER.warning("Read of %s not relayed: %s", characteristic_id, exc)
            self._server.queue.submit(self._server.reject_reads, characteristic_id, AttResult.UNLIKELY_ERROR)

    def write_requested(self, characteristic_id: str, value: bytes, needs_response: bool) -> None:
        self._link.queue.submit(self._forward_write, characteristic_id, value)

    def _forward_write(self, characteristic_id: str, value: bytes) -> None:
        try:
            self._link.write_data(characteristic_id, value, with_response=True)
        except BleProxyError as exc:
            LOGGER.warning("Write to %s not relayed: %s", characteristic_id, exc)
            self._server.queue.submit(self._server.confirm_write, characteristic_id, AttResult.UNLIKELY_ERROR)

    def subscription_started(self, characteristic_id: str) -> None:
        self._link.queue.submit(self._forward_subscription, characteristic_id, True)

    def subscription_ended(self, characteristic_id: str) -> None:
        self._link.queue.submit(self._forward_subscription, characteristic_id, False)

    def _forward_subscription(self, characteristic_id: str, enabled: bool) -> None:
        try:
            if enabled:
                self._link.register_notify(characteristic_id)
            else:
                self._link.unregister_notify(characteristic_id)
        except BleProxyError as exc:
            LOGGER.warning("Notification change on %s not relayed: %s", characteristic_id, exc)
            self._publish("remote", "error", str(exc), characteristic_id=characteristic_id)
