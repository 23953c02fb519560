"""Pydantic parameter models for point cloud aggregation."""

from __future__ import annotations

import os
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field

from pcl_aggregator.common import constants

DEFAULT_CONFIG_PATH = os.path.join(os.path.dirname(os.path.dirname(__file__)), "config", "aggregator.yaml")


class StreamParams(BaseModel):
    """Per-stream aging and registration settings. Fixed once a stream is built."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    max_age: float = Field(constants.STREAM_MAX_AGE_DEFAULT, gt=0.0)

    icp_max_correspondence_distance: float = Field(constants.STREAM_ICP_MAX_CORRESPONDENCE_DISTANCE, gt=0.0)
    icp_max_iterations: int = Field(constants.STREAM_ICP_MAX_ITERATIONS, ge=1)
    icp_tolerance: float = Field(constants.STREAM_ICP_TOLERANCE, gt=0.0)
    icp_min_correspondences: int = Field(constants.ICP_MIN_CORRESPONDENCES, ge=3)

    eviction_poll_interval: float = Field(constants.EVICTION_POLL_INTERVAL_SEC, gt=0.0)
    join_timeout_sec: float = Field(constants.WORKER_JOIN_TIMEOUT_SEC, gt=0.0)


class AggregatorParams(StreamParams):
    """Aggregation parameters: shared stream defaults plus per-source overrides."""

    streams: Dict[str, StreamParams] = Field(default_factory=dict)

    use_rerun: bool = False
    rerun_application_id: str = constants.RERUN_APPLICATION_ID_DEFAULT
    rerun_spawn: bool = False
    rerun_recording_path: Optional[str] = None

    def stream_defaults(self) -> StreamParams:
        return StreamParams(**{name: getattr(self, name) for name in StreamParams.model_fields})

    def for_source(self, source_id: str) -> StreamParams:
        """Stream params for a source: its override if configured, else the shared defaults."""
        override = self.streams.get(source_id)
        if override is not None:
            return override
        return self.stream_defaults()


def _unwrap_ros_parameters(data: Dict[str, Any]) -> Dict[str, Any]:
    # ROS2 YAML files wrap parameters in /**:/ros__parameters:
    if "/**" in data and "ros__parameters" in (data.get("/**") or {}):
        return data["/**"]["ros__parameters"] or {}
    return data


def load_params(path: Optional[str] = None) -> AggregatorParams:
    """
    Load AggregatorParams from a YAML file.

    Args:
        path: YAML file; defaults to the packaged config/aggregator.yaml

    Returns:
        Validated AggregatorParams (pydantic ValidationError on bad values)
    """
    path = path or DEFAULT_CONFIG_PATH
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return AggregatorParams(**_unwrap_ros_parameters(data))
