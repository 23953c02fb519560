"""
Labeled point cloud with an explicit point schema.

Every point has a position and a label; color is optional and described by
the cloud's PointSchema. A cloud without color and a cloud with color are
the same type, so one stream can mix LiDAR (xyz) and RGBD (xyzrgb) input.

Arrays:
    positions: (N, 3) float64, meters
    colors:    (N, 3) uint8 or None
    labels:    (N,)   uint32
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional

import numpy as np

from pcl_aggregator.common.transforms.se3 import transform_points

LABEL_DTYPE = np.uint32
COLOR_DTYPE = np.uint8


@dataclass(frozen=True)
class PointSchema:
    """Fields present on every point. Position and label are always present."""
    has_color: bool = False

    @property
    def fields(self) -> tuple:
        if self.has_color:
            return ("x", "y", "z", "r", "g", "b", "label")
        return ("x", "y", "z", "label")

    def union(self, other: "PointSchema") -> "PointSchema":
        return PointSchema(has_color=self.has_color or other.has_color)


XYZL = PointSchema(has_color=False)
XYZRGBL = PointSchema(has_color=True)


@dataclass
class PointCloud:
    positions: np.ndarray
    labels: np.ndarray
    colors: Optional[np.ndarray] = None

    def __post_init__(self):
        self.positions = np.asarray(self.positions, dtype=float).reshape(-1, 3)
        self.labels = np.asarray(self.labels, dtype=LABEL_DTYPE).reshape(-1)
        if self.colors is not None:
            self.colors = np.asarray(self.colors, dtype=COLOR_DTYPE).reshape(-1, 3)
        n = self.positions.shape[0]
        if self.labels.shape[0] != n:
            raise ValueError(f"labels length {self.labels.shape[0]} != point count {n}")
        if self.colors is not None and self.colors.shape[0] != n:
            raise ValueError(f"colors length {self.colors.shape[0]} != point count {n}")

    def __len__(self) -> int:
        return int(self.positions.shape[0])

    @property
    def schema(self) -> PointSchema:
        return XYZRGBL if self.colors is not None else XYZL

    @property
    def is_empty(self) -> bool:
        return len(self) == 0

    def label_set(self) -> set:
        return {int(v) for v in np.unique(self.labels)}

    def copy(self) -> "PointCloud":
        return PointCloud(
            positions=self.positions.copy(),
            labels=self.labels.copy(),
            colors=None if self.colors is None else self.colors.copy(),
        )

    # =========================================================================
    # Construction
    # =========================================================================

    @classmethod
    def empty(cls, schema: PointSchema = XYZL) -> "PointCloud":
        return cls(
            positions=np.empty((0, 3), dtype=float),
            labels=np.empty((0,), dtype=LABEL_DTYPE),
            colors=np.empty((0, 3), dtype=COLOR_DTYPE) if schema.has_color else None,
        )

    @classmethod
    def from_array(cls, array: np.ndarray, label: int = 0) -> "PointCloud":
        """(N, 3) xyz or (N, 6) xyzrgb array. All points get `label`."""
        array = np.asarray(array, dtype=float)
        if array.size == 0:
            return cls.empty()
        if array.ndim != 2 or array.shape[1] not in (3, 6):
            raise ValueError(f"Expected (N, 3) or (N, 6) point array, got shape {array.shape}")
        n = array.shape[0]
        colors = None
        if array.shape[1] == 6:
            colors = np.clip(np.rint(array[:, 3:6]), 0, 255)
        return cls(positions=array[:, :3], labels=np.full(n, label, dtype=LABEL_DTYPE), colors=colors)

    @classmethod
    def from_records(cls, records: Iterable[Any], label: int = 0) -> "PointCloud":
        """
        Build from point records.

        Each record is a mapping with x, y, z and an optional color given as
        `color` = (r, g, b) or as separate r, g, b keys, or a tuple
        (x, y, z) / (x, y, z, r, g, b). Color is kept only if every record has it.
        """
        positions = []
        colors = []
        all_colored = True
        for rec in records:
            if isinstance(rec, Mapping):
                positions.append((rec["x"], rec["y"], rec["z"]))
                color = rec.get("color")
                if color is None and all(k in rec for k in ("r", "g", "b")):
                    color = (rec["r"], rec["g"], rec["b"])
            else:
                rec = tuple(rec)
                if len(rec) not in (3, 6):
                    raise ValueError(f"Point record must have 3 or 6 values, got {len(rec)}")
                positions.append(rec[:3])
                color = rec[3:6] if len(rec) == 6 else None
            if color is None:
                all_colored = False
            colors.append(color)

        if not positions:
            return cls.empty()
        n = len(positions)
        return cls(
            positions=np.asarray(positions, dtype=float),
            labels=np.full(n, label, dtype=LABEL_DTYPE),
            colors=np.clip(np.rint(np.asarray(colors, dtype=float)), 0, 255) if all_colored else None,
        )

    @classmethod
    def coerce(cls, raw: Any, label: int = 0) -> "PointCloud":
        """
        Normalize ingestion input into a PointCloud whose points all carry `label`.

        Accepts a PointCloud, an (N, 3)/(N, 6) array, or a sequence of records.
        None and empty inputs give an empty cloud. Points with a NaN or inf
        coordinate (organized-cloud padding) are dropped.
        """
        if raw is None:
            return cls.empty()
        if isinstance(raw, PointCloud):
            cloud = cls(
                positions=raw.positions.copy(),
                labels=np.full(len(raw), label, dtype=LABEL_DTYPE),
                colors=None if raw.colors is None else raw.colors.copy(),
            )
        elif isinstance(raw, np.ndarray):
            cloud = cls.from_array(raw, label)
        else:
            cloud = cls.from_records(raw, label)
        return cloud.finite()

    # =========================================================================
    # Set operations (return new clouds)
    # =========================================================================

    def concatenate(self, other: "PointCloud") -> "PointCloud":
        """Point-set union, no deduplication. Missing colors are filled with black."""
        schema = self.schema.union(other.schema)
        colors = None
        if schema.has_color:
            colors = np.concatenate([self._colors_or_black(), other._colors_or_black()])
        return PointCloud(
            positions=np.concatenate([self.positions, other.positions]),
            labels=np.concatenate([self.labels, other.labels]),
            colors=colors,
        )

    def finite(self) -> "PointCloud":
        """Points whose position is finite. Returns self when nothing is dropped."""
        keep = np.isfinite(self.positions).all(axis=1)
        if keep.all():
            return self
        return self.select(keep)

    def without_label(self, label: int) -> "PointCloud":
        keep = self.labels != label
        return self.select(keep)

    def select(self, mask: np.ndarray) -> "PointCloud":
        return PointCloud(
            positions=self.positions[mask],
            labels=self.labels[mask],
            colors=None if self.colors is None else self.colors[mask],
        )

    def transformed(self, T: np.ndarray) -> "PointCloud":
        """Copy with positions mapped through the 4x4 transform T."""
        return PointCloud(
            positions=transform_points(T, self.positions),
            labels=self.labels.copy(),
            colors=None if self.colors is None else self.colors.copy(),
        )

    def _colors_or_black(self) -> np.ndarray:
        if self.colors is not None:
            return self.colors
        return np.zeros((len(self), 3), dtype=COLOR_DTYPE)


def concatenate_clouds(clouds: Iterable[PointCloud]) -> PointCloud:
    """Union of many clouds in one copy."""
    clouds = [c for c in clouds if c is not None]
    if not clouds:
        return PointCloud.empty()
    if len(clouds) == 1:
        return clouds[0].copy()
    has_color = any(c.colors is not None for c in clouds)
    return PointCloud(
        positions=np.concatenate([c.positions for c in clouds]),
        labels=np.concatenate([c.labels for c in clouds]),
        colors=np.concatenate([c._colors_or_black() for c in clouds]) if has_color else None,
    )
