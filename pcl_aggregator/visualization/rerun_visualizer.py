"""
Rerun visualization of aggregated point clouds.

Logs the merged cloud (and optionally single streams) as Points3D. Points
keep their sensor color when the cloud has one; otherwise they are colored
by label so separate ingestion events stay distinguishable. Optional: spawn
a viewer or save to an .rrd file and open with `rerun recording.rrd`.
"""

from __future__ import annotations

from typing import Optional

import numpy as np

from pcl_aggregator.common import constants
from pcl_aggregator.entities.point_cloud import PointCloud


def _ensure_rerun():
    """Lazy import so rerun stays off the import path when use_rerun=False."""
    try:
        import rerun as rr
        return rr
    except ImportError:
        return None


def _set_rerun_time(rr, time_sec: float) -> None:
    """Set current time on the 'time' timeline across rerun API versions."""
    if hasattr(rr, "set_time_seconds"):
        rr.set_time_seconds("time", time_sec)
    else:
        rr.set_time("time", timestamp=time_sec)


def label_colors(labels: np.ndarray) -> np.ndarray:
    """Deterministic (N, 3) uint8 color per label (golden-ratio hue walk)."""
    labels = np.asarray(labels, dtype=np.uint64)
    hue = (labels.astype(float) * 0.618033988749895) % 1.0
    # HSV -> RGB with s = v = 0.9
    s, v = 0.9, 0.9
    i = np.floor(hue * 6.0).astype(int) % 6
    f = hue * 6.0 - np.floor(hue * 6.0)
    p = v * (1.0 - s)
    q = v * (1.0 - f * s)
    t = v * (1.0 - (1.0 - f) * s)
    table = np.stack([
        np.stack([np.full_like(f, v), t, np.full_like(f, p)], axis=1),
        np.stack([q, np.full_like(f, v), np.full_like(f, p)], axis=1),
        np.stack([np.full_like(f, p), np.full_like(f, v), t], axis=1),
        np.stack([np.full_like(f, p), q, np.full_like(f, v)], axis=1),
        np.stack([t, np.full_like(f, p), np.full_like(f, v)], axis=1),
        np.stack([np.full_like(f, v), np.full_like(f, p), q], axis=1),
    ], axis=0)
    rgb = table[i, np.arange(labels.shape[0])]
    return np.clip(np.rint(rgb * 255.0), 0, 255).astype(np.uint8)


class RerunVisualizer:
    """
    Log aggregated clouds to Rerun.

    Call init() once; then log_cloud() whenever a fresh merged cloud should
    be shown. Every log call is a no-op while rerun is unavailable.
    """

    def __init__(
        self,
        application_id: str = constants.RERUN_APPLICATION_ID_DEFAULT,
        spawn: bool = False,
        recording_path: Optional[str] = None,
    ):
        self._application_id = application_id
        self._spawn = spawn
        self._recording_path = recording_path
        self._initialized = False
        self._rr = None

    @property
    def active(self) -> bool:
        return self._rr is not None

    def init(self) -> bool:
        """Initialize Rerun (spawn viewer and/or record to file). Returns True if active."""
        if self._initialized:
            return self._rr is not None
        rr = _ensure_rerun()
        if rr is None:
            return False
        self._rr = rr
        rr.init(
            application_id=self._application_id,
            default_enabled=True,
            spawn=self._spawn,
        )
        # If recording to file: must call save() before any log (Rerun API).
        if self._recording_path and not self._spawn:
            rr.save(self._recording_path)
        self._initialized = True
        return True

    def log_cloud(
        self,
        cloud: PointCloud,
        time_sec: float,
        path: str = constants.RERUN_MERGED_CLOUD_PATH,
    ) -> None:
        """Log a labeled cloud as Points3D at `path`."""
        if self._rr is None:
            return
        rr = self._rr
        _set_rerun_time(rr, time_sec)
        if cloud.is_empty:
            rr.log(path, rr.Points3D(positions=np.zeros((0, 3), dtype=np.float32)))
            return
        colors = cloud.colors if cloud.colors is not None else label_colors(cloud.labels)
        rr.log(path, rr.Points3D(positions=cloud.positions.astype(np.float32), colors=colors))

    def log_stream(self, source_id: str, cloud: PointCloud, time_sec: float) -> None:
        """Log one stream's accumulated cloud under its own entity path."""
        self.log_cloud(cloud, time_sec, path=f"{constants.RERUN_STREAM_CLOUD_PREFIX}/{source_id}")
