"""
Per-stream runtime counters.

Incremented by the ingestion worker and the eviction watcher, read by
status reporting. Counters are monotonic except clouds_pending, which
tracks the current pending queue length.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
import threading


@dataclass
class StreamCounters:
    clouds_received: int = 0
    clouds_pending: int = 0
    merges: int = 0
    icp_converged: int = 0
    icp_fallbacks: int = 0
    clouds_evicted: int = 0
    points_evicted: int = 0
    clouds_discarded_stale: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class RuntimeCounters:
    """Lock-guarded StreamCounters."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters = StreamCounters()

    def add(self, **deltas: int) -> None:
        """Add deltas to named counters, e.g. add(merges=1, icp_fallbacks=1)."""
        with self._lock:
            for name, delta in deltas.items():
                setattr(self._counters, name, getattr(self._counters, name) + int(delta))

    def set(self, **values: int) -> None:
        with self._lock:
            for name, value in values.items():
                setattr(self._counters, name, int(value))

    def snapshot(self) -> StreamCounters:
        """Return a copy of the current counters (no reset)."""
        with self._lock:
            return StreamCounters(**asdict(self._counters))
