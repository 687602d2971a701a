"""
Unit tests for the per-worker laser track.
"""

import numpy as np
import pytest

try:
    import gtsam
except ImportError:
    pytest.skip("GTSAM not installed", allow_module_level=True)

from src.common.config import LaserTrackConfig
from src.common.errors import InvariantViolation
from src.estimation.gtsam_base import gtsam_to_matrix, pose_key, pose_to_gtsam
from src.estimation.laser_track import LaserTrack
from src.utils.math_utils import make_transform, se3_inverse, so3_exp, transform_points


def straight_track(track_id=0, n=5, period=10, step=1.0):
    track = LaserTrack(LaserTrackConfig(), track_id)
    for i in range(n):
        track.process_pose(i * period, make_transform(t=[step * i, 0.0, 0.0]))
    return track


class TestPoseRecording:
    """Test appending poses."""

    def test_empty_track(self):
        track = LaserTrack()
        assert track.is_empty()
        assert track.num_poses == 0
        with pytest.raises(InvariantViolation):
            track.get_min_time()
        with pytest.raises(InvariantViolation):
            track.get_max_time()
        with pytest.raises(InvariantViolation):
            track.get_pose_key(0)

    def test_time_bounds(self):
        track = straight_track(n=5, period=10)
        assert track.get_min_time() == 0
        assert track.get_max_time() == 40

    def test_non_increasing_time_rejected(self):
        track = straight_track(n=3)
        with pytest.raises(ValueError):
            track.process_pose(20, np.eye(4))
        with pytest.raises(ValueError):
            track.process_pose(5, np.eye(4))
        assert track.num_poses == 3

    def test_pose_keys_use_track_symbol(self):
        track = straight_track(track_id=2, n=3)
        assert track.get_pose_keys() == [pose_key(2, i) for i in range(3)]

    def test_initial_estimate_follows_corrected_pose(self):
        track = straight_track(n=2)
        # Correct the last pose, the next odometry increment is chained onto it
        values = gtsam.Values()
        values.insert(pose_key(0, 1), pose_to_gtsam(make_transform(t=[1.0, 2.0, 0.0])))
        track.update_from_values(values)

        pose = track.process_pose(20, make_transform(t=[2.0, 0.0, 0.0]))
        np.testing.assert_allclose(pose.T_w[:3, 3], [2.0, 2.0, 0.0])
        np.testing.assert_allclose(pose.T_w_odom[:3, 3], [2.0, 0.0, 0.0])


class TestPoseLookup:
    """Test time-based lookups."""

    def setup_method(self):
        self.track = straight_track(n=5, period=10)

    @pytest.mark.parametrize("time_ns,index", [
        (0, 0), (4, 0), (6, 1), (10, 1), (40, 4), (-100, 0), (1000, 4)
    ])
    def test_closest_pose(self, time_ns, index):
        assert self.track.get_pose_key(time_ns) == pose_key(0, index)

    def test_tie_goes_to_earlier_pose(self):
        assert self.track.get_pose_key(15) == pose_key(0, 1)

    def test_get_pose_returns_copy(self):
        pose = self.track.get_pose(20)
        pose.T_w[0, 3] = 100.0
        assert self.track.get_pose(20).T_w[0, 3] == pytest.approx(2.0)


class TestFactorGeneration:
    """Test prior and odometry factor creation."""

    def test_prior_factor(self):
        track = straight_track(track_id=1, n=3)
        graph, values = track.get_prior_factor()

        assert graph.size() == 1
        assert values.size() == 1
        assert values.exists(pose_key(1, 0))
        factor = graph.at(0)
        assert [int(k) for k in factor.keys()] == [pose_key(1, 0)]

    def test_prior_on_empty_track(self):
        with pytest.raises(InvariantViolation):
            LaserTrack().get_prior_factor()

    def test_odometry_factors_are_handed_out_once(self):
        track = straight_track(n=4)

        graph, values = track.get_new_odometry_factors()
        assert graph.size() == 3
        assert values.size() == 3
        assert not values.exists(pose_key(0, 0))

        graph, values = track.get_new_odometry_factors()
        assert graph.size() == 0

        track.process_pose(100, make_transform(t=[4.0, 0.0, 0.0]))
        graph, values = track.get_new_odometry_factors()
        assert graph.size() == 1
        assert [int(k) for k in graph.at(0).keys()] == [pose_key(0, 3), pose_key(0, 4)]

    def test_odometry_measurement(self):
        track = LaserTrack()
        T0 = make_transform(so3_exp(np.array([0.0, 0.0, 0.3])), [1.0, 2.0, 0.0])
        T1 = make_transform(so3_exp(np.array([0.0, 0.0, 0.5])), [2.0, 2.5, 0.1])
        track.process_pose(0, T0)
        track.process_pose(10, T1)

        graph, _ = track.get_new_odometry_factors()
        measured = gtsam_to_matrix(graph.at(0).measured())
        np.testing.assert_allclose(measured, se3_inverse(T0) @ T1, atol=1e-9)


class TestSubMaps:
    """Test local sub-map aggregation."""

    def test_sub_map_in_center_frame(self):
        world = np.array([[5.0, 0.0, 0.0], [5.0, 1.0, 0.0]])
        track = LaserTrack()
        poses = [make_transform(t=[float(i), 0.0, 0.0]) for i in range(5)]
        for i, T in enumerate(poses):
            track.process_pose(10 * i, T, transform_points(se3_inverse(T), world))

        sub_map = track.build_sub_map_around_time(20, 1)

        # Three scans of the same two points, all seen from pose 2
        assert sub_map.shape == (6, 3)
        expected = transform_points(se3_inverse(poses[2]), world)
        for i in range(3):
            np.testing.assert_allclose(sub_map[2 * i:2 * i + 2], expected, atol=1e-12)

    def test_sub_map_clipped_at_track_ends(self):
        track = LaserTrack()
        for i in range(4):
            track.process_pose(10 * i, np.eye(4), np.full((i + 1, 3), float(i)))

        assert track.build_sub_map_around_time(0, 2).shape == (1 + 2 + 3, 3)
        assert track.build_sub_map_around_time(30, 0).shape == (4, 3)

    def test_sub_map_without_scans(self):
        track = straight_track(n=3)
        assert track.build_sub_map_around_time(10, 1).shape == (0, 3)


class TestGlobalUpdate:
    """Test pushing optimized values into the track."""

    def test_update_from_values(self):
        track = straight_track(track_id=0, n=3)
        values = gtsam.Values()
        corrected = make_transform(t=[0.0, 0.0, 1.0])
        values.insert(pose_key(0, 1), pose_to_gtsam(corrected))
        values.insert(pose_key(1, 1), pose_to_gtsam(np.eye(4)))

        assert track.update_from_values(values) == 1

        np.testing.assert_allclose(track.get_pose(10).T_w, corrected)
        np.testing.assert_allclose(track.get_pose(20).T_w[:3, 3], [2.0, 0.0, 0.0])

    def test_trajectory_snapshot(self):
        track = straight_track(n=3)
        trajectory = track.get_trajectory()
        assert [t for t, _ in trajectory] == [0, 10, 20]
        trajectory[0][1][0, 3] = 42.0
        assert track.get_trajectory()[0][1][0, 3] == 0.0
