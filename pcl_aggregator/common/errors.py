"""Error taxonomy for point cloud aggregation."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pcl_aggregator.registration.icp import ICPResult


class AggregatorError(Exception):
    """Base class for all aggregation errors."""


class NotFoundError(AggregatorError, LookupError):
    """An operation referenced a source identifier that is not registered."""

    def __init__(self, source_id: str):
        super().__init__(f"No stream registered for source {source_id!r}")
        self.source_id = source_id


class InvalidStateError(AggregatorError, RuntimeError):
    """Operation not allowed in the object's current state (e.g. double transform)."""


class RegistrationNonConvergence(AggregatorError):
    """ICP did not converge. Carries the solver result for diagnostics."""

    def __init__(self, result: "ICPResult"):
        super().__init__(
            f"ICP did not converge after {result.iterations}/{result.max_iterations} iterations "
            f"({result.n_correspondences} correspondences, fitness={result.fitness:.3f})"
        )
        self.result = result


class TeardownError(AggregatorError, RuntimeError):
    """A worker thread could not be stopped when its stream was closed."""
