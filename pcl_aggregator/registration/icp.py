"""
Point-to-point Iterative Closest Point (ICP) registration.

Aligns a new cloud (source) to a stream's accumulated cloud (target) before
the two are merged. Both clouds are already in the robot frame, so the
result is a small refinement that absorbs sensor jitter and calibration
error, not a global alignment.

ICP alternates:
    - Correspondence: nearest target point for every transformed source
      point, rejected beyond max_correspondence_distance (scipy cKDTree)
    - Alignment: closed-form rigid fit on the accepted pairs via SVD
      (Arun et al. 1987)

Convergence:
    Converged when the mean squared correspondence error changes by less
    than `tolerance` between iterations, with at least `min_correspondences`
    accepted pairs. Running out of iterations, or of correspondences (e.g.
    clouds that do not overlap), is non-convergence.

Reference:
    - Besl & McKay (1992) for ICP algorithm
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from scipy.spatial import cKDTree

from pcl_aggregator.common import constants
from pcl_aggregator.common.errors import RegistrationNonConvergence
from pcl_aggregator.common.transforms.se3 import make_transform, transform_points


@dataclass
class ICPResult:
    """ICP solver output and diagnostics."""
    transform: np.ndarray       # 4x4 refinement, maps source onto target
    converged: bool             # Tolerance reached with enough correspondences
    mse: float                  # Final mean squared correspondence error
    fitness: float              # Fraction of source points with a correspondence
    iterations: int             # Iterations actually used
    max_iterations: int         # Iteration cap
    n_correspondences: int      # Accepted pairs in the last iteration
    n_source: int
    n_target: int


def best_fit_transform(src: np.ndarray, tgt: np.ndarray) -> np.ndarray:
    """
    Closed-form rigid registration via SVD.

    Finds the 4x4 T minimizing sum ||T(src_i) - tgt_i||^2 for paired points.
    """
    src_cent = np.mean(src, axis=0)
    tgt_cent = np.mean(tgt, axis=0)

    H = (src - src_cent).T @ (tgt - tgt_cent)
    U, _, Vt = np.linalg.svd(H)
    R = Vt.T @ U.T

    # Reflection case
    if np.linalg.det(R) < 0.0:
        Vt[2, :] *= -1.0
        R = Vt.T @ U.T

    t = tgt_cent - R @ src_cent
    return make_transform(R, t)


def icp(
    source: np.ndarray,
    target: np.ndarray,
    max_correspondence_distance: float = constants.STREAM_ICP_MAX_CORRESPONDENCE_DISTANCE,
    max_iterations: int = constants.STREAM_ICP_MAX_ITERATIONS,
    tolerance: float = constants.STREAM_ICP_TOLERANCE,
    min_correspondences: int = constants.ICP_MIN_CORRESPONDENCES,
    init: np.ndarray = None,
) -> ICPResult:
    """
    Register source onto target.

    Args:
        source: Source points (N, 3)
        target: Target points (M, 3)
        max_correspondence_distance: Reject pairs farther apart than this
        max_iterations: Iteration cap
        tolerance: Convergence threshold on MSE change
        min_correspondences: Fewer accepted pairs means non-convergence
        init: Initial 4x4 guess (identity if None)

    Returns:
        ICPResult; check `converged` before trusting `transform`
    """
    source = np.asarray(source, dtype=float).reshape(-1, 3)
    target = np.asarray(target, dtype=float).reshape(-1, 3)
    transform = np.eye(4, dtype=float) if init is None else np.asarray(init, dtype=float).copy()

    n_source = source.shape[0]
    n_target = target.shape[0]
    if n_source < min_correspondences or n_target < min_correspondences:
        return ICPResult(
            transform=transform, converged=False, mse=float("inf"), fitness=0.0,
            iterations=0, max_iterations=max_iterations, n_correspondences=0,
            n_source=n_source, n_target=n_target,
        )

    tree = cKDTree(target)
    prev_mse = None
    mse = float("inf")
    n_corr = 0
    iters = 0
    converged = False

    for i in range(max_iterations):
        iters = i + 1
        src_tf = transform_points(transform, source)

        dist, idx = tree.query(src_tf, k=1, distance_upper_bound=max_correspondence_distance)
        valid = np.isfinite(dist)
        n_corr = int(np.count_nonzero(valid))
        if n_corr < min_correspondences:
            break

        mse = float(np.mean(dist[valid] ** 2))
        if prev_mse is not None and abs(prev_mse - mse) < tolerance:
            converged = True
            break
        prev_mse = mse

        delta = best_fit_transform(src_tf[valid], target[idx[valid]])
        transform = delta @ transform

    return ICPResult(
        transform=transform,
        converged=converged,
        mse=mse,
        fitness=n_corr / n_source if n_source else 0.0,
        iterations=iters,
        max_iterations=max_iterations,
        n_correspondences=n_corr,
        n_source=n_source,
        n_target=n_target,
    )


def register(source: np.ndarray, target: np.ndarray, **icp_kwargs) -> ICPResult:
    """
    ICP that fails loudly.

    Raises:
        RegistrationNonConvergence: ICP did not converge; the result is attached
    """
    result = icp(source, target, **icp_kwargs)
    if not result.converged:
        raise RegistrationNonConvergence(result)
    return result
