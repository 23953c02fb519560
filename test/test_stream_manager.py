"""
StreamManager tests.

Tests for:
- Pending clouds released by the sensor transform (in arrival order)
- Merging with ICP refinement and its identity fallback
- Aging: manual eviction passes and the background watcher
- Callback / subscription semantics
- Worker error propagation and teardown
"""

import numpy as np
import pytest

from conftest import ManualClock, wait_until
from pcl_aggregator.common.errors import InvalidStateError
from pcl_aggregator.common.param_models import StreamParams
from pcl_aggregator.common.transforms.se3 import make_transform, se3_to_matrix, transform_points
from pcl_aggregator.managers.stream_manager import StreamManager


@pytest.fixture
def stream(stream_params, manual_clock):
    manager = StreamManager("lidar1", params=stream_params, clock=manual_clock)
    yield manager
    manager.close()


def _points(n, offset=0.0, seed=0):
    rng = np.random.default_rng(seed)
    return rng.uniform(-1.0, 1.0, size=(n, 3)) + offset


# =============================================================================
# Pending transform
# =============================================================================


class TestPendingTransform:

    def test_cloud_waits_for_transform(self, stream, identity_tf):
        """Points appear only once the sensor transform is known."""
        pts = np.array([[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]])
        label = stream.add_cloud(pts)

        assert label is not None
        assert len(stream.get_cloud()) == 0
        assert stream.pending_count() == 1

        stream.set_sensor_transform(identity_tf)
        assert stream.flush(timeout=5.0)

        cloud = stream.get_cloud()
        assert np.allclose(cloud.positions, pts)
        assert set(cloud.labels.tolist()) == {label}
        assert stream.pending_count() == 0

    def test_pending_released_in_arrival_order(self, stream, identity_tf, manual_clock):
        labels = []
        for i in range(3):
            labels.append(stream.add_cloud(_points(10, offset=100.0 * i, seed=i)))
            manual_clock.advance(0.1)

        stream.set_sensor_transform(identity_tf)
        stream.flush(timeout=5.0)

        assert stream.tracked_labels() == labels
        assert len(stream.get_cloud()) == 30

    def test_transform_applied_to_points(self, stream):
        tf = make_transform(np.eye(3), [1.0, 0.0, -2.0])
        stream.set_sensor_transform(tf)
        stream.add_cloud(np.zeros((4, 3)))
        stream.flush(timeout=5.0)

        assert np.allclose(stream.get_cloud().positions, [[1.0, 0.0, -2.0]] * 4)

    def test_setting_transform_twice_does_not_retransform(self, stream, identity_tf):
        """Merged clouds keep the transform they were merged with."""
        stream.set_sensor_transform(identity_tf)
        stream.add_cloud(np.zeros((3, 3)))
        stream.flush(timeout=5.0)

        stream.set_sensor_transform(make_transform(np.eye(3), [5.0, 5.0, 5.0]))
        stream.flush(timeout=5.0)

        assert np.allclose(stream.get_cloud().positions, 0.0)
        assert np.allclose(stream.sensor_transform[:3, 3], 5.0)

    def test_invalid_transform_rejected(self, stream):
        with pytest.raises(ValueError):
            stream.set_sensor_transform(np.diag([2.0, 2.0, 2.0, 1.0]))
        assert stream.sensor_transform is None

    def test_empty_input_is_noop(self, stream, identity_tf):
        stream.set_sensor_transform(identity_tf)
        assert stream.add_cloud(np.zeros((0, 3))) is None
        assert stream.add_cloud([]) is None
        stream.flush(timeout=5.0)

        assert len(stream.get_cloud()) == 0
        assert stream.stats().clouds_received == 0

    def test_non_finite_points_do_not_block_later_merges(self, stream, identity_tf):
        """NaN padding is dropped at ingestion; the next cloud still merges."""
        stream.set_sensor_transform(identity_tf)
        padded = _points(20, seed=15)
        padded[0, 0] = np.nan
        stream.add_cloud(padded)
        stream.add_cloud(_points(20, seed=16))

        assert stream.flush(timeout=5.0)
        cloud = stream.get_cloud()
        assert len(cloud) == 39
        assert np.all(np.isfinite(cloud.positions))
        assert stream.stats().merges == 2

    def test_all_non_finite_input_is_noop(self, stream, identity_tf):
        stream.set_sensor_transform(identity_tf)
        assert stream.add_cloud(np.full((4, 3), np.inf)) is None
        assert stream.stats().clouds_received == 0


# =============================================================================
# Merging
# =============================================================================


class TestMerge:

    def test_non_overlapping_clouds_fall_back_to_identity(self, stream, identity_tf):
        """ICP non-convergence merges the cloud unrefined."""
        stream.set_sensor_transform(identity_tf)
        stream.add_cloud(_points(5, seed=1))
        second = _points(3, offset=50.0, seed=2)
        stream.add_cloud(second)
        stream.flush(timeout=5.0)

        cloud = stream.get_cloud()
        assert len(cloud) == 8
        assert np.allclose(cloud.positions[5:], second)
        assert stream.stats().icp_fallbacks == 1

    def test_overlapping_clouds_are_registered(self, stream, identity_tf):
        stream.set_sensor_transform(identity_tf)
        pts = _points(400, seed=3)
        stream.add_cloud(pts)
        stream.add_cloud(pts.copy())
        stream.flush(timeout=5.0)

        stats = stream.stats()
        assert stats.merges == 2
        assert stats.icp_converged == 1
        assert stats.icp_fallbacks == 0
        assert len(stream.get_cloud()) == 800

    def test_converged_refinement_applied_before_merge(self, stream, identity_tf):
        """A slightly offset copy is snapped onto the accumulated cloud."""
        stream.set_sensor_transform(identity_tf)
        pts = _points(400, seed=17)
        offset = se3_to_matrix([0.03, -0.02, 0.01, 0.0, 0.0, 0.01])
        stream.add_cloud(pts)
        stream.add_cloud(transform_points(offset, pts))
        stream.flush(timeout=5.0)

        assert stream.stats().icp_converged == 1
        merged = stream.get_cloud().positions
        assert np.allclose(merged[400:], pts, atol=1e-4)

    def test_colors_survive_merge(self, stream, identity_tf):
        stream.set_sensor_transform(identity_tf)
        stream.add_cloud(np.hstack([np.zeros((2, 3)), np.full((2, 3), 200.0)]))
        stream.flush(timeout=5.0)

        cloud = stream.get_cloud()
        assert cloud.schema.has_color
        assert np.all(cloud.colors == 200)

    def test_worker_error_surfaces_on_flush(self, stream, identity_tf, monkeypatch):
        def _boom(spcl, acc):
            raise RuntimeError("registration exploded")

        monkeypatch.setattr(stream, "_refinement_for", _boom)
        stream.set_sensor_transform(identity_tf)
        stream.add_cloud(_points(5, seed=4))
        stream.add_cloud(_points(5, seed=5))

        with pytest.raises(RuntimeError, match="registration exploded"):
            stream.flush(timeout=5.0)
        # Reported once
        assert stream.flush(timeout=5.0)
        assert len(stream.get_cloud()) == 5


# =============================================================================
# Aging
# =============================================================================


class TestAging:

    def test_evict_expired_oldest_first(self, stream, identity_tf, manual_clock):
        aged = []
        stream.set_point_aging_callback(aged.append)
        stream.set_sensor_transform(identity_tf)

        first = stream.add_cloud(_points(4, seed=6))
        manual_clock.advance(1.0)
        second = stream.add_cloud(_points(6, offset=50.0, seed=7))
        stream.flush(timeout=5.0)

        manual_clock.advance(29.5)  # first is 30.5s old, second 29.5s
        assert stream.evict_expired() == [first]
        assert len(stream.get_cloud()) == 6
        assert set(stream.get_cloud().labels.tolist()) == {second}

        manual_clock.advance(1.0)
        assert stream.evict_expired() == [second]
        assert len(stream.get_cloud()) == 0
        assert aged == [first, second]

        stats = stream.stats()
        assert stats.clouds_evicted == 2
        assert stats.points_evicted == 10

    def test_exactly_max_age_is_kept(self, stream, identity_tf, manual_clock):
        stream.set_sensor_transform(identity_tf)
        stream.add_cloud(_points(3, seed=8))
        stream.flush(timeout=5.0)

        manual_clock.advance(30.0)
        assert stream.evict_expired() == []
        assert len(stream.get_cloud()) == 3

    def test_expired_pending_dropped_silently(self, stream, manual_clock, identity_tf):
        aged = []
        stream.set_point_aging_callback(aged.append)
        stream.add_cloud(_points(3, seed=9))

        manual_clock.advance(31.0)
        assert stream.evict_expired() == []
        assert stream.pending_count() == 0
        assert aged == []

        stream.set_sensor_transform(identity_tf)
        stream.flush(timeout=5.0)
        assert len(stream.get_cloud()) == 0

    def test_stale_cloud_discarded_at_merge(self, stream, manual_clock, identity_tf):
        """A cloud whose deadline passed while pending is never merged."""
        stream.add_cloud(_points(3, seed=10))
        manual_clock.advance(31.0)

        stream.set_sensor_transform(identity_tf)
        stream.flush(timeout=5.0)

        assert len(stream.get_cloud()) == 0
        assert stream.tracked_labels() == []
        assert stream.stats().clouds_discarded_stale == 1

    def test_watcher_evicts_on_deadline(self, identity_tf):
        """Background watcher empties the cloud once max_age has elapsed."""
        clock = ManualClock()
        params = StreamParams(max_age=2.0, eviction_poll_interval=0.02)
        aged = []
        with StreamManager("lidar1", params=params, clock=clock) as stream:
            stream.set_point_aging_callback(aged.append)
            stream.set_sensor_transform(identity_tf)
            label = stream.add_cloud(np.array([[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]]))
            stream.flush(timeout=5.0)
            assert len(stream.get_cloud()) == 2

            clock.advance(2.5)
            assert wait_until(lambda: len(stream.get_cloud()) == 0)
            assert wait_until(lambda: aged == [label])

    def test_watcher_with_real_clock(self, identity_tf):
        params = StreamParams(max_age=0.3, eviction_poll_interval=0.05)
        aged = []
        with StreamManager("lidar1", params=params) as stream:
            stream.set_point_aging_callback(aged.append)
            stream.set_sensor_transform(identity_tf)
            stream.add_cloud(_points(5, seed=11))
            stream.flush(timeout=5.0)

            assert wait_until(lambda: len(stream.get_cloud()) == 0)
            assert wait_until(lambda: len(aged) == 1 or stream.stats().clouds_discarded_stale == 1)


# =============================================================================
# Callbacks
# =============================================================================


class TestCallbacks:

    def test_last_callback_wins(self, stream, identity_tf, manual_clock):
        a, b, extra = [], [], []
        stream.set_point_aging_callback(a.append)
        stream.set_point_aging_callback(b.append)
        stream.subscribe(extra.append)
        assert stream.get_point_aging_callback() == b.append

        stream.set_sensor_transform(identity_tf)
        label = stream.add_cloud(_points(3, seed=12))
        stream.flush(timeout=5.0)
        manual_clock.advance(31.0)
        stream.evict_expired()

        assert a == []
        assert b == [label]
        assert extra == [label]

    def test_failing_callback_does_not_stop_eviction(self, stream, identity_tf, manual_clock):
        def _raise(label):
            raise ValueError("listener bug")

        seen = []
        stream.set_point_aging_callback(_raise)
        stream.subscribe(seen.append)
        stream.set_sensor_transform(identity_tf)
        label = stream.add_cloud(_points(3, seed=13))
        stream.flush(timeout=5.0)
        manual_clock.advance(31.0)

        assert stream.evict_expired() == [label]
        assert seen == [label]

    def test_clear_callback(self, stream):
        stream.set_point_aging_callback(print)
        stream.set_point_aging_callback(None)
        assert stream.get_point_aging_callback() is None


# =============================================================================
# Identity / lifecycle
# =============================================================================


class TestLifecycle:

    def test_equality_by_source(self, stream_params):
        with StreamManager("a", params=stream_params) as a1, \
                StreamManager("a", params=stream_params) as a2, \
                StreamManager("b", params=stream_params) as b:
            assert a1 == a2
            assert a1 != b
            assert len({a1, a2, b}) == 2

    def test_max_age_override(self, stream_params):
        with StreamManager("a", params=stream_params, max_age=1.5) as stream:
            assert stream.get_max_age() == 1.5

    def test_close_is_idempotent(self, stream_params):
        stream = StreamManager("a", params=stream_params)
        stream.close()
        stream.close()
        assert not stream.alive

    def test_closed_stream_rejects_input(self, stream_params, identity_tf):
        stream = StreamManager("a", params=stream_params)
        stream.close()
        with pytest.raises(InvalidStateError):
            stream.add_cloud(np.zeros((1, 3)))
        with pytest.raises(InvalidStateError):
            stream.set_sensor_transform(identity_tf)

    def test_close_merges_queued_clouds(self, stream_params, identity_tf):
        stream = StreamManager("a", params=stream_params)
        stream.set_sensor_transform(identity_tf)
        for i in range(5):
            stream.add_cloud(_points(10, offset=100.0 * i, seed=20 + i))
        stream.close()
        assert len(stream.get_cloud()) == 50

    def test_status_is_plain_data(self, stream, identity_tf, manual_clock):
        stream.add_cloud(_points(3, seed=14))
        manual_clock.advance(0.5)
        status = stream.status()

        assert status["source_id"] == "lidar1"
        assert status["transform_set"] is False
        assert status["pending"] == 1
        assert status["points"] == 0
        assert status["last_received_age_sec"] == pytest.approx(0.5)
        assert status["counters"]["clouds_received"] == 1
