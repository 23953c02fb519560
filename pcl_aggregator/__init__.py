"""
pcl_aggregator - multi-sensor point cloud aggregation.

Fuses point clouds from several sensors into one robot-frame cloud:
per-sensor streams register each new cloud against their accumulated cloud
(ICP) and age points out after a configurable lifetime; the aggregation
manager composes all streams on demand.
"""

from __future__ import annotations

from importlib import import_module
from typing import Any

__version__ = "0.1.0"

__all__ = [
    "AggregationManager",
    "AggregatorParams",
    "InvalidStateError",
    "NotFoundError",
    "PointCloud",
    "PointSchema",
    "RegistrationNonConvergence",
    "StampedPointCloud",
    "StreamManager",
    "StreamParams",
    "TeardownError",
    "load_params",
]

_LAZY_ATTRS: dict[str, tuple[str, str]] = {
    "AggregationManager": ("pcl_aggregator.managers.aggregation_manager", "AggregationManager"),
    "StreamManager": ("pcl_aggregator.managers.stream_manager", "StreamManager"),
    "PointCloud": ("pcl_aggregator.entities.point_cloud", "PointCloud"),
    "PointSchema": ("pcl_aggregator.entities.point_cloud", "PointSchema"),
    "StampedPointCloud": ("pcl_aggregator.entities.stamped_point_cloud", "StampedPointCloud"),
    "AggregatorParams": ("pcl_aggregator.common.param_models", "AggregatorParams"),
    "StreamParams": ("pcl_aggregator.common.param_models", "StreamParams"),
    "load_params": ("pcl_aggregator.common.param_models", "load_params"),
    "InvalidStateError": ("pcl_aggregator.common.errors", "InvalidStateError"),
    "NotFoundError": ("pcl_aggregator.common.errors", "NotFoundError"),
    "RegistrationNonConvergence": ("pcl_aggregator.common.errors", "RegistrationNonConvergence"),
    "TeardownError": ("pcl_aggregator.common.errors", "TeardownError"),
}


def __getattr__(name: str) -> Any:
    target = _LAZY_ATTRS.get(name)
    if target is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    module_name, attr_name = target
    return getattr(import_module(module_name), attr_name)


def __dir__() -> list[str]:
    return sorted(set(globals().keys()) | set(_LAZY_ATTRS.keys()))
