"""Adapter interfaces consumed by the proxy core.

Every method is non-blocking: it starts the radio operation and returns.
Completion is reported by posting an event from ``bleproxy.core.events`` to
the sink given to ``attach``.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol

from bleproxy.core.model import LocalRequest, ServiceSpec

EventSink = Callable[[object], None]


class CentralAdapter(Protocol):
    def attach(self, sink: EventSink) -> None: ...

    def scan(self, target_name: str, attempt: int) -> None: ...

    def stop_scan(self) -> None: ...

    def connect(self, device_ref: Any, attempt: int) -> None: ...

    def disconnect(self, device_ref: Any) -> None: ...

    def discover_services(self, device_ref: Any) -> None: ...

    def discover_characteristics(self, device_ref: Any, service_ref: Any) -> None: ...

    def read_value(self, characteristic_ref: Any) -> None: ...

    def write_value(self, characteristic_ref: Any, value: bytes, *, with_response: bool, correlation: int) -> None: ...

    def set_notify(self, characteristic_ref: Any, enabled: bool) -> None: ...


class PeripheralAdapter(Protocol):
    def attach(self, sink: EventSink) -> None: ...

    def publish(self, service: ServiceSpec) -> None: ...

    def unpublish_all(self) -> None: ...

    def start_advertising(self, name: str, service_ids: tuple[str, ...]) -> None: ...

    def stop_advertising(self) -> None: ...

    def respond(self, request: LocalRequest, result: int, value: bytes | None = None) -> None:
        """Answer one open read or write request."""

    def notify(self, characteristic_ref: Any, value: bytes, clients: tuple[str, ...]) -> None:
        """Push a value to the given subscribed clients."""
