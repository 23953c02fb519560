"""
Stream Manager - one sensor's point cloud timeline.

Handles:
- Wrapping raw input into labeled, timestamped clouds
- Deferring clouds until the sensor->robot transform is known
- ICP registration of each new cloud against the accumulated cloud
- Aging: removing a cloud's points once it is older than max_age

Threads (per stream):
- Ingestion worker: single writer. Consumes (cloud, transform) jobs in
  submission order, applies the transform, registers and merges.
- Eviction watcher: sleeps until the nearest deadline in a min-heap of
  timestamp + max_age, then runs an eviction pass.

Both mutate the accumulated cloud only under the merge-section lock, so a
merge and an eviction never interleave. Readers (get_cloud) take only the
cloud lock and get the current PointCloud, whose arrays are never modified
after publication.

Lock order: transform -> set, and merge -> set / cloud. Nothing acquires the
transform lock while holding another stream lock.
"""

from __future__ import annotations

import bisect
from collections import deque
import heapq
import logging
import queue
import threading
import time
from typing import Callable, Deque, List, Optional, Tuple

import numpy as np

from pcl_aggregator.common.errors import (
    InvalidStateError,
    RegistrationNonConvergence,
    TeardownError,
)
from pcl_aggregator.common.param_models import StreamParams
from pcl_aggregator.common.runtime_counters import RuntimeCounters, StreamCounters
from pcl_aggregator.common.transforms.se3 import as_rigid_transform
from pcl_aggregator.entities.point_cloud import PointCloud
from pcl_aggregator.entities.stamped_point_cloud import StampedPointCloud
from pcl_aggregator.managers.aging import AgingCallback, PointAgingChannel, Subscription
from pcl_aggregator.registration.icp import register

_logger = logging.getLogger(__name__)

_STOP = None


class StreamManager:
    """
    Manager of a stream of point clouds coming from a single sensor.

    For example, merges and ages the clouds captured by a single LiDAR.
    Two managers are equal iff they manage the same source.
    """

    def __init__(
        self,
        source_id: str,
        params: Optional[StreamParams] = None,
        max_age: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            source_id: Sensor / topic identifier
            params: Aging and ICP settings (defaults if None)
            max_age: Shortcut to override params.max_age
            clock: Time source in seconds; inject a fake clock for replay/tests
        """
        params = params or StreamParams()
        if max_age is not None:
            params = StreamParams(**{**params.model_dump(), "max_age": max_age})
        self.source_id = source_id
        self.params = params
        self._clock = clock

        self._pending: Deque[StampedPointCloud] = deque()
        self._tracked: List[StampedPointCloud] = []
        self._accumulated: Optional[StampedPointCloud] = None
        self._sensor_transform: Optional[np.ndarray] = None
        self._last_received: Optional[float] = None

        self._set_lock = threading.Lock()
        self._cloud_lock = threading.Lock()
        self._transform_lock = threading.Lock()
        self._merge_lock = threading.Lock()

        self.aging = PointAgingChannel(name=source_id)
        self.counters = RuntimeCounters()

        # Ingestion worker
        self._jobs: "queue.Queue[Optional[Tuple[StampedPointCloud, np.ndarray]]]" = queue.Queue()
        self._idle = threading.Condition()
        self._inflight = 0
        self._worker_error: Optional[BaseException] = None

        # Eviction watcher
        self._deadlines: List[Tuple[float, float, int]] = []
        self._deadline_cv = threading.Condition()
        self._alive = True

        self._ingestion_thread = threading.Thread(
            target=self._ingestion_loop, name=f"pcl-ingest-{source_id}", daemon=True
        )
        self._eviction_thread = threading.Thread(
            target=self._eviction_loop, name=f"pcl-evict-{source_id}", daemon=True
        )
        self._ingestion_thread.start()
        self._eviction_thread.start()
        _logger.info(f"[{source_id}] stream started (max_age={params.max_age}s)")

    # =========================================================================
    # Identity
    # =========================================================================

    def __eq__(self, other) -> bool:
        if not isinstance(other, StreamManager):
            return NotImplemented
        return self.source_id == other.source_id

    def __hash__(self) -> int:
        return hash(self.source_id)

    def __repr__(self) -> str:
        return f"StreamManager(source_id={self.source_id!r}, max_age={self.params.max_age})"

    def __enter__(self) -> "StreamManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def alive(self) -> bool:
        return self._alive

    # =========================================================================
    # Ingestion
    # =========================================================================

    def add_cloud(self, raw) -> Optional[int]:
        """
        Feed a point cloud to manage.

        Args:
            raw: PointCloud, (N, 3)/(N, 6) array or point records

        Returns:
            Label assigned to the cloud's points, or None for empty input
        """
        self._ensure_alive()
        cloud = PointCloud.coerce(raw)
        if cloud.is_empty:
            _logger.debug(f"[{self.source_id}] ignoring empty cloud")
            return None

        spcl = StampedPointCloud(cloud, clock=self._clock)
        self.counters.add(clouds_received=1)
        self._last_received = spcl.timestamp

        with self._transform_lock:
            tf = self._sensor_transform
            if tf is None:
                with self._set_lock:
                    self._pending.append(spcl)
                    self.counters.set(clouds_pending=len(self._pending))
            else:
                self._submit(spcl, tf)

        self._schedule_eviction(spcl)
        return spcl.label

    def set_sensor_transform(self, tf) -> None:
        """
        Set the transform from the sensor frame to the robot base frame.

        Clouds waiting for it are released to the ingestion worker in arrival
        order. Clouds already merged are not touched again.

        Raises:
            ValueError: tf is not a 4x4 rigid transform
        """
        self._ensure_alive()
        tf = as_rigid_transform(tf)
        with self._transform_lock:
            self._sensor_transform = tf
            with self._set_lock:
                drained = list(self._pending)
                self._pending.clear()
                self.counters.set(clouds_pending=0)
            for spcl in drained:
                self._submit(spcl, tf)
        _logger.info(f"[{self.source_id}] sensor transform set, released {len(drained)} pending clouds")

    @property
    def sensor_transform(self) -> Optional[np.ndarray]:
        with self._transform_lock:
            return None if self._sensor_transform is None else self._sensor_transform.copy()

    def _submit(self, spcl: StampedPointCloud, tf: np.ndarray) -> None:
        with self._idle:
            self._inflight += 1
        self._jobs.put((spcl, tf))

    def _ingestion_loop(self) -> None:
        while True:
            job = self._jobs.get()
            if job is _STOP:
                return
            spcl, tf = job
            try:
                self._integrate(spcl, tf)
            except Exception as e:
                _logger.exception(f"[{self.source_id}] failed to integrate cloud {spcl.label}")
                with self._idle:
                    if self._worker_error is None:
                        self._worker_error = e
            finally:
                with self._idle:
                    self._inflight -= 1
                    if self._inflight == 0:
                        self._idle.notify_all()

    def _integrate(self, spcl: StampedPointCloud, tf: np.ndarray) -> None:
        """Transform, register and merge one cloud (ingestion worker only)."""
        if not spcl.transformed:
            spcl.apply_transform(tf)

        with self._merge_lock:
            if spcl.older_than(self.params.max_age, self._clock()):
                # Deadline already passed; the watcher will not see it again
                self.counters.add(clouds_discarded_stale=1)
                _logger.debug(f"[{self.source_id}] discarded stale cloud {spcl.label}")
                return

            with self._cloud_lock:
                acc = self._accumulated

            if acc is None or len(acc) == 0:
                with self._cloud_lock:
                    self._accumulated = spcl.copy()
            else:
                refinement = self._refinement_for(spcl, acc)
                if refinement is not None:
                    spcl.apply_refinement(refinement)
                with self._cloud_lock:
                    acc.merge(spcl)

            with self._set_lock:
                bisect.insort(self._tracked, spcl)

        self.counters.add(merges=1)
        _logger.debug(f"[{self.source_id}] merged cloud {spcl.label} ({len(spcl)} points)")

    def _refinement_for(self, spcl: StampedPointCloud, acc: StampedPointCloud) -> Optional[np.ndarray]:
        """ICP refinement of spcl onto acc, or None to merge unrefined."""
        try:
            result = register(
                spcl.cloud.positions,
                acc.cloud.positions,
                max_correspondence_distance=self.params.icp_max_correspondence_distance,
                max_iterations=self.params.icp_max_iterations,
                tolerance=self.params.icp_tolerance,
                min_correspondences=self.params.icp_min_correspondences,
            )
        except RegistrationNonConvergence as e:
            self.counters.add(icp_fallbacks=1)
            _logger.warning(f"[{self.source_id}] {e}; merging cloud {spcl.label} without refinement")
            return None
        self.counters.add(icp_converged=1)
        return result.transform

    def flush(self, timeout: Optional[float] = None) -> bool:
        """
        Block until every submitted cloud has been merged (or discarded).

        Returns:
            False if the timeout expired first

        Raises:
            The first error the ingestion worker hit since the last flush
        """
        with self._idle:
            done = self._idle.wait_for(lambda: self._inflight == 0, timeout)
            error, self._worker_error = self._worker_error, None
        if error is not None:
            raise error
        return done

    # =========================================================================
    # Output
    # =========================================================================

    def get_cloud(self) -> PointCloud:
        """
        Get the merged version of the still valid clouds fed into this manager.

        Returns the live accumulated PointCloud without copying. Its arrays
        are replaced, never modified, by later merges and evictions.
        """
        with self._cloud_lock:
            acc = self._accumulated
            if acc is None:
                return PointCloud.empty()
            return acc.cloud

    def get_max_age(self) -> float:
        return self.params.max_age

    def tracked_labels(self) -> List[int]:
        """Labels currently contributing to the accumulated cloud, oldest first."""
        with self._set_lock:
            return [spcl.label for spcl in self._tracked]

    def pending_count(self) -> int:
        with self._set_lock:
            return len(self._pending)

    # =========================================================================
    # Aging
    # =========================================================================

    def get_point_aging_callback(self) -> Optional[AgingCallback]:
        return self.aging.get_primary()

    def set_point_aging_callback(self, func: Optional[AgingCallback]) -> None:
        """Set the callback invoked with each evicted label. Replaces any previous one."""
        self.aging.set_primary(func)

    def subscribe(self, func: AgingCallback) -> Subscription:
        """Add an aging listener alongside the primary callback."""
        return self.aging.subscribe(func)

    def _schedule_eviction(self, spcl: StampedPointCloud) -> None:
        deadline = spcl.timestamp + self.params.max_age
        with self._deadline_cv:
            heapq.heappush(self._deadlines, (deadline, spcl.timestamp, spcl.label))
            if self._deadlines[0][2] == spcl.label:
                self._deadline_cv.notify()

    def evict_expired(self, now: Optional[float] = None) -> List[int]:
        """
        Remove every cloud older than max_age.

        Tracked clouds lose their points from the accumulated cloud and their
        label is published to aging subscribers. Expired clouds still waiting
        for the sensor transform are dropped silently.

        Returns:
            Labels evicted from the accumulated cloud, oldest first
        """
        now = self._clock() if now is None else now
        max_age = self.params.max_age

        with self._merge_lock:
            with self._set_lock:
                n_expired = 0
                for spcl in self._tracked:
                    if not spcl.older_than(max_age, now):
                        break
                    n_expired += 1
                expired = self._tracked[:n_expired]
                del self._tracked[:n_expired]

                stale_pending = [spcl for spcl in self._pending if spcl.older_than(max_age, now)]
                if stale_pending:
                    self._pending = deque(spcl for spcl in self._pending if not spcl.older_than(max_age, now))
                    self.counters.set(clouds_pending=len(self._pending))

            removed_points = 0
            if expired:
                with self._cloud_lock:
                    removed_points = self._accumulated.remove_labels(spcl.label for spcl in expired)

        labels = [spcl.label for spcl in expired]
        if expired:
            self.counters.add(clouds_evicted=len(expired), points_evicted=removed_points)
            _logger.debug(f"[{self.source_id}] evicted labels {labels} ({removed_points} points)")
        if stale_pending:
            self.counters.add(clouds_discarded_stale=len(stale_pending))
            _logger.debug(f"[{self.source_id}] dropped {len(stale_pending)} expired pending clouds")

        for label in labels:
            self.aging.publish(label)
        return labels

    def _eviction_loop(self) -> None:
        poll = self.params.eviction_poll_interval
        while True:
            with self._deadline_cv:
                if not self._alive:
                    return
                now = self._clock()
                due = False
                while self._deadlines and now - self._deadlines[0][1] > self.params.max_age:
                    heapq.heappop(self._deadlines)
                    due = True
                if not due:
                    timeout = poll
                    if self._deadlines:
                        timeout = min(poll, max(self._deadlines[0][0] - now, 1e-3))
                    self._deadline_cv.wait(timeout)
                    continue
            try:
                self.evict_expired(now)
            except Exception as e:
                _logger.exception(f"[{self.source_id}] eviction pass failed")
                with self._idle:
                    if self._worker_error is None:
                        self._worker_error = e

    # =========================================================================
    # Status / teardown
    # =========================================================================

    def stats(self) -> StreamCounters:
        return self.counters.snapshot()

    def status(self) -> dict:
        """JSON-serializable stream summary."""
        with self._set_lock:
            tracked = len(self._tracked)
            pending = len(self._pending)
        last = self._last_received
        return {
            "source_id": self.source_id,
            "alive": self._alive,
            "max_age": self.params.max_age,
            "transform_set": self.sensor_transform is not None,
            "points": len(self.get_cloud()),
            "tracked": tracked,
            "pending": pending,
            "last_received_age_sec": None if last is None else self._clock() - last,
            "counters": self.stats().to_dict(),
        }

    def _ensure_alive(self) -> None:
        if not self._alive:
            raise InvalidStateError(f"Stream {self.source_id!r} is closed")

    def close(self, timeout: Optional[float] = None) -> None:
        """
        Stop both worker threads and drop aging subscribers.

        Clouds already queued for merging are processed before the ingestion
        worker exits. Idempotent.

        Raises:
            TeardownError: a worker did not stop within the timeout
        """
        with self._deadline_cv:
            if not self._alive:
                return
            self._alive = False
            self._deadline_cv.notify_all()
        self._jobs.put(_STOP)

        timeout = self.params.join_timeout_sec if timeout is None else timeout
        threads = (self._ingestion_thread, self._eviction_thread)
        for thread in threads:
            if thread is not threading.current_thread():
                thread.join(timeout)
        stuck = [t.name for t in threads if t.is_alive() and t is not threading.current_thread()]
        self.aging.close()
        if stuck:
            raise TeardownError(f"[{self.source_id}] worker threads did not stop: {stuck}")
        _logger.info(f"[{self.source_id}] stream closed")
