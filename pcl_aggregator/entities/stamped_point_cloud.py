"""
Stamped point cloud: the unit of ingestion, transform and eviction.

A stamped cloud is one ingestion event from one sensor. It owns its points,
a capture timestamp and a label that every one of its points carries. Once
merged into a stream's accumulated cloud, the accumulated cloud's label set
records which events it contains, so any one of them can be removed again
by label when it ages out.
"""

from __future__ import annotations

import functools
import itertools
import threading
import time
from typing import Callable, Optional

import numpy as np

from pcl_aggregator.common import constants
from pcl_aggregator.common.errors import InvalidStateError
from pcl_aggregator.common.transforms.se3 import as_rigid_transform, transform_points
from pcl_aggregator.entities.point_cloud import LABEL_DTYPE, PointCloud

_label_lock = threading.Lock()
_label_counter = itertools.count(1)


def next_label() -> int:
    """Allocate a process-wide unique label (shared by all streams)."""
    with _label_lock:
        label = next(_label_counter)
    if label > constants.LABEL_DTYPE_MAX:
        raise OverflowError("Point cloud label space exhausted")
    return label


@functools.total_ordering
class StampedPointCloud:
    """
    Point cloud tagged with capture time and label.

    Ordered by (timestamp, label) so a stream can keep its clouds sorted and
    scan them oldest-first; the label breaks timestamp ties.
    """

    def __init__(
        self,
        cloud,
        label: Optional[int] = None,
        timestamp: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            cloud: Raw input (PointCloud, array or records, see PointCloud.coerce)
            label: Label for every point; a fresh one is allocated if None
            timestamp: Capture time in seconds; clock() if None
            clock: Time source for the default timestamp
        """
        self.label = next_label() if label is None else int(label)
        self.timestamp = float(clock() if timestamp is None else timestamp)
        self.cloud = PointCloud.coerce(cloud, self.label)
        self.labels = {self.label}
        self.transformed = False

    def __len__(self) -> int:
        return len(self.cloud)

    def copy(self) -> "StampedPointCloud":
        """Independent copy (points, label set and transformed flag)."""
        dup = StampedPointCloud.__new__(StampedPointCloud)
        dup.label = self.label
        dup.timestamp = self.timestamp
        dup.cloud = self.cloud.copy()
        dup.labels = set(self.labels)
        dup.transformed = self.transformed
        return dup

    def __repr__(self) -> str:
        return (
            f"StampedPointCloud(label={self.label}, timestamp={self.timestamp:.3f}, "
            f"points={len(self)}, transformed={self.transformed})"
        )

    # =========================================================================
    # Ordering
    # =========================================================================

    @property
    def sort_key(self) -> tuple:
        return (self.timestamp, self.label)

    def __eq__(self, other) -> bool:
        if not isinstance(other, StampedPointCloud):
            return NotImplemented
        return self.sort_key == other.sort_key

    def __lt__(self, other) -> bool:
        if not isinstance(other, StampedPointCloud):
            return NotImplemented
        return self.sort_key < other.sort_key

    def __hash__(self) -> int:
        return hash(self.sort_key)

    # =========================================================================
    # Operations
    # =========================================================================

    def apply_transform(self, tf: np.ndarray) -> None:
        """
        Transform every point in place. Allowed exactly once.

        Raises:
            InvalidStateError: the cloud was already transformed
            ValueError: tf is not a 4x4 rigid transform
        """
        if self.transformed:
            raise InvalidStateError(f"Cloud {self.label} is already transformed")
        tf = as_rigid_transform(tf)
        self.cloud.positions = transform_points(tf, self.cloud.positions)
        self.transformed = True

    def apply_refinement(self, tf: np.ndarray) -> None:
        """Apply a registration correction to an already transformed cloud."""
        if not self.transformed:
            raise InvalidStateError(f"Cloud {self.label} must be in the robot frame before refinement")
        self.cloud.positions = transform_points(tf, self.cloud.positions)

    def merge(self, other: "StampedPointCloud") -> None:
        """
        Union other's points and labels into this cloud (no deduplication).

        Raises:
            InvalidStateError: either operand is still in its sensor frame
        """
        if not (self.transformed and other.transformed):
            raise InvalidStateError("Both clouds must be transformed before merging")
        self.cloud = self.cloud.concatenate(other.cloud)
        self.labels |= other.labels

    def remove_label(self, label: int) -> int:
        """Drop every point bearing `label`. Returns the number of points removed."""
        return self.remove_labels([label])

    def remove_labels(self, labels) -> int:
        """Drop every point bearing any of `labels` in a single pass."""
        labels = [int(v) for v in labels]
        if not labels:
            return 0
        keep = ~np.isin(self.cloud.labels, np.asarray(labels, dtype=LABEL_DTYPE))
        removed = int(keep.shape[0] - np.count_nonzero(keep))
        if removed:
            self.cloud = self.cloud.select(keep)
        self.labels.difference_update(labels)
        return removed

    def older_than(self, max_age: float, now: float) -> bool:
        return now - self.timestamp > max_age
