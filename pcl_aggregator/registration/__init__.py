"""Point cloud registration."""

from pcl_aggregator.registration.icp import ICPResult, best_fit_transform, icp, register

__all__ = [
    "ICPResult",
    "best_fit_transform",
    "icp",
    "register",
]
