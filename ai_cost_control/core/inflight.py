"""
In-flight markers for concurrent misses on the same prompt.

The first caller to miss on a key owns the model call; later callers wait
for it to populate the cache instead of paying for a duplicate call. The
registry lock guards only the marker table, and waiting happens on a
per-key event, so unrelated firms never contend.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Tuple

InflightKey = Tuple[str, str, str]  # (firm_id, operation_type, prompt_hash)


@dataclass
class _Marker:
    acquired_at: float
    event: threading.Event = field(default_factory=threading.Event)


class InflightRegistry:
    """Process-local, short-lived ownership of pending model calls."""

    def __init__(self, marker_ttl_seconds: float = 120.0):
        self.marker_ttl_seconds = marker_ttl_seconds
        self._lock = threading.Lock()
        self._markers: Dict[InflightKey, _Marker] = {}

    def acquire(self, key: InflightKey) -> bool:
        """Claim ``key``; True if the caller now owns the model call.

        A marker older than its TTL is treated as abandoned and taken over,
        waking anyone still waiting on it.
        """
        now = time.monotonic()
        with self._lock:
            marker = self._markers.get(key)
            if marker is not None and now - marker.acquired_at < self.marker_ttl_seconds:
                return False
            if marker is not None:
                marker.event.set()
            self._markers[key] = _Marker(acquired_at=now)
            return True

    def wait(self, key: InflightKey, timeout: float) -> bool:
        """Wait for the owner of ``key`` to release it.

        Returns:
            True if released (or never held), False on timeout
        """
        with self._lock:
            marker = self._markers.get(key)
        if marker is None:
            return True
        return marker.event.wait(timeout)

    def release(self, key: InflightKey) -> None:
        with self._lock:
            marker = self._markers.pop(key, None)
        if marker is not None:
            marker.event.set()

    def is_held(self, key: InflightKey) -> bool:
        with self._lock:
            return key in self._markers
