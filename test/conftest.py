import os
import sys
import threading
import time
from typing import Callable

import pytest

# Ensure local package import works for pytest collection.
_TEST_DIR = os.path.dirname(__file__)
_PKG_ROOT = os.path.abspath(os.path.join(_TEST_DIR, ".."))
if _PKG_ROOT not in sys.path:
    sys.path.insert(0, _PKG_ROOT)


# =============================================================================
# Clock
# =============================================================================


class ManualClock:
    """Thread-safe fake clock; streams read it, tests advance it."""

    def __init__(self, start: float = 0.0):
        self._now = float(start)
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self._now

    def advance(self, dt: float) -> float:
        with self._lock:
            self._now += float(dt)
            return self._now


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll `predicate` until it holds or `timeout` (real seconds) expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def manual_clock():
    return ManualClock()


# =============================================================================
# Parameters
# =============================================================================


@pytest.fixture
def stream_params():
    """
    Deterministic stream settings for tests driven by a manual clock.

    The long max_age / poll interval keep the background watcher asleep
    (in real time) while a test advances the fake clock and evicts by hand.
    """
    from pcl_aggregator.common.param_models import StreamParams
    return StreamParams(max_age=30.0, eviction_poll_interval=60.0, join_timeout_sec=5.0)


@pytest.fixture
def aggregator_params(stream_params):
    from pcl_aggregator.common.param_models import AggregatorParams
    return AggregatorParams(**stream_params.model_dump())


# =============================================================================
# Test Utility Fixtures
# =============================================================================


@pytest.fixture
def small_pointcloud():
    """Generate a small test point cloud for ICP tests."""
    import numpy as np
    rng = np.random.default_rng(42)
    return rng.uniform(-1.0, 1.0, size=(200, 3))


@pytest.fixture
def identity_tf():
    import numpy as np
    return np.eye(4, dtype=np.float64)
