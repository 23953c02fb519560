"""
Point cloud aggregation constants.

=============================================================================
CONVENTION QUICK REFERENCE
=============================================================================

TIME:
  Timestamps and ages are seconds on the stream clock (time.monotonic by
  default). max_age is a soft deadline: eviction happens at or after
  timestamp + max_age, never before.

TRANSFORMS:
  Sensor transforms are 4x4 homogeneous rigid transforms T_base_sensor.
  p_base = R_base_sensor @ p_sensor + t_base_sensor
  Internal 6D form (helpers only): [x, y, z, rx, ry, rz], rotation as rotvec.

LABELS:
  Every ingestion event gets one uint32 label, unique across all streams of
  the process. All points of that event carry it until they are evicted.
=============================================================================
"""

# =============================================================================
# ICP REGISTRATION DEFAULTS
# =============================================================================

# Nearest-neighbour correspondences farther than this (meters) are rejected
STREAM_ICP_MAX_CORRESPONDENCE_DISTANCE = 1.0

# Iteration cap for a single registration
STREAM_ICP_MAX_ITERATIONS = 10

# Convergence threshold on the change of mean squared error between iterations
STREAM_ICP_TOLERANCE = 1e-6

# SVD alignment needs 3 non-collinear correspondences
ICP_MIN_CORRESPONDENCES = 3

# =============================================================================
# AGING
# =============================================================================

# Default lifetime of a cloud's points (seconds)
STREAM_MAX_AGE_DEFAULT = 5.0

# Upper bound on how long the eviction watcher sleeps between clock checks
EVICTION_POLL_INTERVAL_SEC = 0.1

# =============================================================================
# THREAD LIFECYCLE
# =============================================================================

# Time allowed for ingestion/eviction workers to stop on teardown
WORKER_JOIN_TIMEOUT_SEC = 5.0

# =============================================================================
# LABELS
# =============================================================================

LABEL_DTYPE_MAX = 2**32 - 1

# =============================================================================
# VISUALIZATION
# =============================================================================

RERUN_APPLICATION_ID_DEFAULT = "pcl_aggregator"
RERUN_MERGED_CLOUD_PATH = "aggregator/merged"
RERUN_STREAM_CLOUD_PREFIX = "aggregator/streams"
