"""Stream and aggregation managers."""

from pcl_aggregator.managers.aggregation_manager import AggregationManager
from pcl_aggregator.managers.aging import PointAgingChannel, Subscription
from pcl_aggregator.managers.stream_manager import StreamManager

__all__ = [
    "AggregationManager",
    "PointAgingChannel",
    "StreamManager",
    "Subscription",
]
