"""Serialization point for one state machine's handlers."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from typing import Any

LOGGER = logging.getLogger(__name__)


class SerialQueue:
    """Run submitted callables one at a time, in submission order.

    The submitting thread drains the queue unless a drain is already in
    progress, in which case the call is queued and picked up by the running
    drain. Handlers never run while the lock is held, so a handler may submit
    to its own queue or to another machine's queue without deadlocking.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._pending: deque[tuple[Callable[..., Any], tuple[Any, ...]]] = deque()
        self._draining = False

    def submit(self, fn: Callable[..., Any], *args: Any) -> None:
        with self._lock:
            self._pending.append((fn, args))
            if self._draining:
                return
            self._draining = True
        self._drain()

    def _drain(self) -> None:
        while True:
            with self._lock:
                if not self._pending:
                    self._draining = False
                    return
                fn, args = self._pending.popleft()
            try:
                fn(*args)
            except Exception:
                LOGGER.exception("Unhandled error in %s handler %s", self.name, getattr(fn, "__name__", fn))
