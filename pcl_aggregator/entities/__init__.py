"""Point cloud value types."""

from pcl_aggregator.entities.point_cloud import PointCloud, PointSchema
from pcl_aggregator.entities.stamped_point_cloud import StampedPointCloud, next_label

__all__ = [
    "PointCloud",
    "PointSchema",
    "StampedPointCloud",
    "next_label",
]
