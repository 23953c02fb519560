"""
Rigid transforms as 4x4 homogeneous matrices.

Sensor calibration enters the aggregator as T_base_sensor:

    | R  t |
    | 0  1 |      p_base = R @ p_sensor + t

Helpers convert from the common calibration encodings (rotation vector,
quaternion) and validate that a matrix is a proper rigid transform before a
stream accepts it.

Numerical Policy:
    - ROTATION_EPSILON = 1e-10: small-angle branch for rotvec <-> matrix
    - RIGIDITY_TOLERANCE = 1e-6: accepted deviation of R^T R from I and of
      det(R) from +1 (float32 calibration files round at ~1e-7)
"""

import math
from typing import Sequence

import numpy as np

ROTATION_EPSILON: float = 1e-10
RIGIDITY_TOLERANCE: float = 1e-6


# =============================================================================
# so(3) <-> SO(3)
# =============================================================================


def skew(v: np.ndarray) -> np.ndarray:
    """Skew-symmetric matrix from 3-vector (hat operator)."""
    v = np.asarray(v, dtype=float).reshape(-1)
    return np.array([
        [0.0, -v[2], v[1]],
        [v[2], 0.0, -v[0]],
        [-v[1], v[0], 0.0]
    ], dtype=float)


def rotvec_to_rotmat(rotvec: np.ndarray) -> np.ndarray:
    """Rotation vector to rotation matrix (Rodrigues)."""
    rotvec = np.asarray(rotvec, dtype=float).reshape(-1)
    theta = np.linalg.norm(rotvec)

    if theta < ROTATION_EPSILON:
        return np.eye(3, dtype=float) + skew(rotvec)

    K = skew(rotvec / theta)
    return np.eye(3, dtype=float) + math.sin(theta) * K + (1.0 - math.cos(theta)) * (K @ K)


def rotmat_to_rotvec(R: np.ndarray) -> np.ndarray:
    """
    Rotation matrix to rotation vector.

    Near theta = pi the skew part vanishes, so the axis is taken from the
    symmetric part (R + I) / 2 = a a^T instead.
    """
    R = np.asarray(R, dtype=float)
    cos_theta = float(np.clip((np.trace(R) - 1.0) / 2.0, -1.0, 1.0))
    theta = math.acos(cos_theta)
    w = np.array([R[2, 1] - R[1, 2], R[0, 2] - R[2, 0], R[1, 0] - R[0, 1]], dtype=float)

    if theta < ROTATION_EPSILON:
        return w / 2.0

    if math.pi - theta < 1e-6:
        aat = (R + np.eye(3)) / 2.0
        col = int(np.argmax(np.diag(aat)))
        axis = aat[:, col] / math.sqrt(max(aat[col, col], 1e-12))
        # sign is arbitrary at exactly pi; keep it consistent with the skew part
        if np.dot(axis, w) < 0.0:
            axis = -axis
        return axis / np.linalg.norm(axis) * theta

    return w / (2.0 * math.sin(theta)) * theta


def quat_to_rotmat(qx: float, qy: float, qz: float, qw: float) -> np.ndarray:
    """Quaternion (x, y, z, w) to rotation matrix. Normalizes the input."""
    n = math.sqrt(qx * qx + qy * qy + qz * qz + qw * qw)
    if n < 1e-12:
        raise ValueError("Zero-norm quaternion")
    qx, qy, qz, qw = qx / n, qy / n, qz / n, qw / n

    xx, yy, zz = qx * qx, qy * qy, qz * qz
    xy, xz, yz = qx * qy, qx * qz, qy * qz
    wx, wy, wz = qw * qx, qw * qy, qw * qz

    return np.array([
        [1.0 - 2.0 * (yy + zz), 2.0 * (xy - wz), 2.0 * (xz + wy)],
        [2.0 * (xy + wz), 1.0 - 2.0 * (xx + zz), 2.0 * (yz - wx)],
        [2.0 * (xz - wy), 2.0 * (yz + wx), 1.0 - 2.0 * (xx + yy)]
    ], dtype=float)


# =============================================================================
# Homogeneous transforms
# =============================================================================


def make_transform(R: np.ndarray, t: Sequence[float]) -> np.ndarray:
    """Assemble a 4x4 transform from rotation R (3x3) and translation t (3,)."""
    T = np.eye(4, dtype=float)
    T[:3, :3] = np.asarray(R, dtype=float)
    T[:3, 3] = np.asarray(t, dtype=float).reshape(3)
    return T


def se3_to_matrix(pose: Sequence[float]) -> np.ndarray:
    """[x, y, z, rx, ry, rz] to 4x4."""
    pose = np.asarray(pose, dtype=float).reshape(-1)
    if pose.shape[0] != 6:
        raise ValueError(f"Expected 6D pose [x, y, z, rx, ry, rz], got shape {pose.shape}")
    return make_transform(rotvec_to_rotmat(pose[3:6]), pose[:3])


def matrix_to_se3(T: np.ndarray) -> np.ndarray:
    """4x4 to [x, y, z, rx, ry, rz]."""
    T = np.asarray(T, dtype=float)
    rotvec = rotmat_to_rotvec(T[:3, :3])
    return np.concatenate([T[:3, 3], rotvec])


def pose_to_matrix(translation: Sequence[float], quaternion: Sequence[float]) -> np.ndarray:
    """
    Translation + quaternion (x, y, z, w) to 4x4.

    This is the layout of a geometry_msgs/TransformStamped, the usual source
    of sensor calibration.
    """
    qx, qy, qz, qw = (float(q) for q in quaternion)
    return make_transform(quat_to_rotmat(qx, qy, qz, qw), translation)


def is_rigid_transform(T: np.ndarray, tol: float = RIGIDITY_TOLERANCE) -> bool:
    """True if T is a 4x4 proper rigid transform (orthonormal R, det +1, [0 0 0 1] last row)."""
    T = np.asarray(T, dtype=float)
    if T.shape != (4, 4) or not np.all(np.isfinite(T)):
        return False
    R = T[:3, :3]
    if not np.allclose(T[3], [0.0, 0.0, 0.0, 1.0], atol=tol):
        return False
    if not np.allclose(R.T @ R, np.eye(3), atol=tol):
        return False
    return abs(np.linalg.det(R) - 1.0) < tol


def as_rigid_transform(T) -> np.ndarray:
    """
    Validate and copy a sensor transform.

    Raises:
        ValueError: T is not a 4x4 proper rigid transform
    """
    T = np.array(T, dtype=float)
    if T.shape != (4, 4):
        raise ValueError(f"Expected a 4x4 transform, got shape {T.shape}")
    if not is_rigid_transform(T):
        raise ValueError("Transform is not rigid (rotation must be orthonormal with det +1)")
    return T


def transform_points(T: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Apply 4x4 transform to (N, 3) points. Returns a new array."""
    T = np.asarray(T, dtype=float)
    points = np.asarray(points, dtype=float)
    return points @ T[:3, :3].T + T[:3, 3]
