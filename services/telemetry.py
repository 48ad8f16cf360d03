"""Bounded in-process record of recent import abstains."""
from __future__ import annotations

import threading
from collections import deque
from typing import Deque, Tuple

from services.models import AbstainEvent

DEFAULT_CAPACITY = 20


class TelemetryRingBuffer:
    """Keeps the newest ``capacity`` abstain events; the oldest is evicted first.

    ``snapshot()`` hands out an immutable tuple of frozen events so callers
    cannot mutate the buffer.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError("Telemetry capacity must be at least 1.")
        self._lock = threading.RLock()
        self._events: Deque[AbstainEvent] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._events.maxlen or DEFAULT_CAPACITY

    def record(self, event: AbstainEvent) -> None:
        with self._lock:
            self._events.append(event)

    def snapshot(self) -> Tuple[AbstainEvent, ...]:
        """Events newest first."""
        with self._lock:
            return tuple(reversed(self._events))

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
