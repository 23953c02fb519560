"""
Aggregation Manager - composes all sensor streams into one robot-frame cloud.

Keeps one StreamManager per source identifier, created lazily on the first
cloud from that source. The merged cloud is recomputed from the streams on
every call; no global copy is cached, so a point evicted by its stream is
gone from the next merged cloud without any extra bookkeeping here.

Stream eviction events are relayed to aggregation subscribers as
(source_id, label).
"""

from __future__ import annotations

from functools import partial
import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from pcl_aggregator.common.errors import InvalidStateError, NotFoundError, TeardownError
from pcl_aggregator.common.param_models import AggregatorParams
from pcl_aggregator.entities.point_cloud import PointCloud, concatenate_clouds
from pcl_aggregator.managers.stream_manager import StreamManager

SourceAgingCallback = Callable[[str, int], None]

_logger = logging.getLogger(__name__)


class AggregationManager:
    """
    Registry of StreamManagers keyed by source identifier.

    Usage:
        with AggregationManager(params) as manager:
            manager.add_cloud("lidar_front", points)
            manager.set_sensor_transform("lidar_front", T_base_lidar)
            cloud = manager.get_merged_cloud()
    """

    def __init__(
        self,
        params: Optional[AggregatorParams] = None,
        clock: Callable[[], float] = time.monotonic,
        visualizer=None,
    ):
        """
        Args:
            params: Stream defaults, per-source overrides and output settings
            clock: Time source handed to every stream
            visualizer: Optional RerunVisualizer; built from params.use_rerun if None
        """
        self.params = params or AggregatorParams()
        self._clock = clock
        self._streams: Dict[str, StreamManager] = {}
        self._streams_lock = threading.Lock()
        self._closed = False
        self._subscribers: List[SourceAgingCallback] = []
        self._subscribers_lock = threading.Lock()

        if visualizer is None and self.params.use_rerun:
            from pcl_aggregator.visualization.rerun_visualizer import RerunVisualizer
            visualizer = RerunVisualizer(
                application_id=self.params.rerun_application_id,
                spawn=self.params.rerun_spawn,
                recording_path=self.params.rerun_recording_path,
            )
            if not visualizer.init():
                _logger.warning("Rerun output requested but rerun is not available")
        self.visualizer = visualizer

    def __enter__(self) -> "AggregationManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # =========================================================================
    # Streams
    # =========================================================================

    def _get_or_create_stream(self, source_id: str) -> StreamManager:
        with self._streams_lock:
            if self._closed:
                raise InvalidStateError("Aggregation manager is closed")
            stream = self._streams.get(source_id)
            if stream is None:
                stream = StreamManager(source_id, params=self.params.for_source(source_id), clock=self._clock)
                stream.set_point_aging_callback(partial(self.on_point_aged, source_id=source_id))
                self._streams[source_id] = stream
                _logger.info(f"Registered stream {source_id!r} ({len(self._streams)} streams)")
            return stream

    def get_stream(self, source_id: str) -> StreamManager:
        """
        Raises:
            NotFoundError: source_id is not registered
        """
        with self._streams_lock:
            stream = self._streams.get(source_id)
        if stream is None:
            raise NotFoundError(source_id)
        return stream

    def source_ids(self) -> List[str]:
        with self._streams_lock:
            return list(self._streams)

    def _snapshot_streams(self) -> List[StreamManager]:
        with self._streams_lock:
            return list(self._streams.values())

    def remove_stream(self, source_id: str) -> None:
        """
        Close and unregister a stream. Its points leave the merged cloud.

        Raises:
            NotFoundError: source_id is not registered
            TeardownError: the stream's workers did not stop
        """
        with self._streams_lock:
            stream = self._streams.pop(source_id, None)
        if stream is None:
            raise NotFoundError(source_id)
        stream.close()
        _logger.info(f"Removed stream {source_id!r}")

    # =========================================================================
    # Ingestion
    # =========================================================================

    def add_cloud(self, source_id: str, raw) -> Optional[int]:
        """
        Feed a cloud from `source_id`, creating its stream on first use.

        Returns:
            Label assigned to the cloud's points, or None for empty input

        Raises:
            InvalidStateError: the manager is closed
        """
        return self._get_or_create_stream(source_id).add_cloud(raw)

    def set_sensor_transform(self, source_id: str, tf) -> None:
        """
        Set the sensor->robot transform of a registered stream.

        Raises:
            NotFoundError: source_id is not registered (no stream is created)
            ValueError: tf is not a 4x4 rigid transform
        """
        self.get_stream(source_id).set_sensor_transform(tf)

    # =========================================================================
    # Output
    # =========================================================================

    def get_merged_cloud(self) -> PointCloud:
        """Union of every stream's current cloud, computed now. No cross-stream deduplication."""
        streams = self._snapshot_streams()
        return concatenate_clouds(stream.get_cloud() for stream in streams)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for every stream's ingestion worker to go idle."""
        done = True
        for stream in self._snapshot_streams():
            done = stream.flush(timeout) and done
        return done

    def evict_expired(self, now: Optional[float] = None) -> Dict[str, List[int]]:
        """Run one eviction pass on every stream. Returns evicted labels per source."""
        return {stream.source_id: stream.evict_expired(now) for stream in self._snapshot_streams()}

    def status(self) -> dict:
        """JSON-serializable summary of every stream."""
        streams = self._snapshot_streams()
        per_stream = {stream.source_id: stream.status() for stream in streams}
        return {
            "timestamp": self._clock(),
            "stream_count": len(per_stream),
            "total_points": sum(s["points"] for s in per_stream.values()),
            "streams": per_stream,
        }

    def publish(self, time_sec: Optional[float] = None) -> Optional[PointCloud]:
        """
        Log the merged cloud, and each stream's cloud, to the visualizer.

        Returns:
            The merged cloud that was logged, or None without a visualizer
        """
        if self.visualizer is None:
            return None
        time_sec = self._clock() if time_sec is None else time_sec
        streams = self._snapshot_streams()
        clouds = [(stream.source_id, stream.get_cloud()) for stream in streams]
        merged = concatenate_clouds(cloud for _, cloud in clouds)
        for source_id, cloud in clouds:
            self.visualizer.log_stream(source_id, cloud, time_sec)
        self.visualizer.log_cloud(merged, time_sec)
        return merged

    # =========================================================================
    # Aging
    # =========================================================================

    def subscribe(self, callback: SourceAgingCallback) -> None:
        """Receive (source_id, label) for every label any stream evicts."""
        with self._subscribers_lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: SourceAgingCallback) -> None:
        with self._subscribers_lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def on_point_aged(self, label: int, source_id: Optional[str] = None) -> None:
        """
        Stream aging callback.

        No merged cloud is cached here, so there is nothing to remove: the
        next get_merged_cloud() already excludes the label. The event is
        relayed to subscribers.
        """
        _logger.debug(f"Label {label} aged out of stream {source_id!r}")
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            callback(source_id, label)

    # =========================================================================
    # Teardown
    # =========================================================================

    def close(self) -> None:
        """
        Close every stream. No stream can be created afterwards.

        All streams are attempted even if one fails to stop.

        Raises:
            TeardownError: at least one stream's workers did not stop
        """
        with self._streams_lock:
            self._closed = True
            streams = list(self._streams.values())
            self._streams.clear()
        failures = []
        for stream in streams:
            try:
                stream.close()
            except TeardownError as e:
                failures.append(str(e))
        if failures:
            raise TeardownError("; ".join(failures))
