"""
Tests for the synthetic multi-worker session.
"""

import json

import numpy as np
import pytest

try:
    import gtsam
except ImportError:
    pytest.skip("GTSAM not installed", allow_module_level=True)

from mock_backend import MockBackend
from src.common.config import EstimatorParams, SessionConfig
from src.estimation.incremental_estimator import IncrementalEstimator
from src.simulation.multi_worker import MultiWorkerSession, position_rmse
from src.utils.math_utils import is_rigid_transform, make_transform, se3_inverse, transform_distance


def small_config(**overrides):
    values = dict(
        n_workers=2,
        poses_per_worker=20,
        num_landmarks=300,
        loop_closures_per_pair=2,
        seed=3
    )
    values.update(overrides)
    return SessionConfig(**values)


class TestSessionGeneration:
    """Test synthetic data generation."""

    def setup_method(self):
        # 21 poses split evenly between three workers, so shared places coincide
        self.session = MultiWorkerSession(small_config(n_workers=3, poses_per_worker=21))

    def test_worker_data(self):
        assert len(self.session.workers) == 3
        for data in self.session.workers:
            assert data.num_poses == 21
            assert data.times_ns == sorted(data.times_ns)
            assert len(set(data.times_ns)) == 21
            for T in data.T_w_odom:
                assert is_rigid_transform(T, tol=1e-6)

    def test_odometry_starts_at_ground_truth(self):
        for data in self.session.workers:
            np.testing.assert_allclose(data.T_w_odom[0], data.T_w_gt[0])

    def test_scans_in_range(self):
        for data in self.session.workers:
            for scan in data.scans:
                assert scan.shape[1] == 3
                assert np.all(np.linalg.norm(scan, axis=1) <= self.session.config.scan_range + 0.1)

    def test_loop_closures_are_valid(self):
        assert len(self.session.loop_closures) == 2 * 2
        for lc in self.session.loop_closures:
            assert lc.time_a_ns < lc.time_b_ns
            assert abs(lc.track_id_a - lc.track_id_b) == 1

    def test_loop_closures_match_ground_truth(self):
        period = self.session.config.pose_period_ns
        for lc in self.session.loop_closures:
            T_a = self.session.workers[lc.track_id_a].T_w_gt[lc.time_a_ns // period]
            T_b = self.session.workers[lc.track_id_b].T_w_gt[lc.time_b_ns // period]
            np.testing.assert_allclose(lc.T_a_b, se3_inverse(T_a) @ T_b, atol=1e-9)
            # Loop closures join nearby places
            trans, _ = transform_distance(np.eye(4), lc.T_a_b)
            assert trans < 1.0

    def test_single_worker_has_no_loop_closures(self):
        session = MultiWorkerSession(small_config(n_workers=1))
        assert session.loop_closures == []

    def test_seed_is_reproducible(self):
        other = MultiWorkerSession(small_config(n_workers=3, poses_per_worker=21))
        np.testing.assert_allclose(other.landmarks, self.session.landmarks)
        np.testing.assert_allclose(other.workers[1].T_w_odom[-1], self.session.workers[1].T_w_odom[-1])


class TestSessionRun:
    """Test replaying the session into the estimator."""

    def test_run_with_mock_backend(self):
        session = MultiWorkerSession(small_config())
        backend = MockBackend()
        estimator = IncrementalEstimator(EstimatorParams(), 2, backend=backend)

        result = session.run(estimator)

        # Priors, odometry and loop closures, one anchor prior removed
        assert backend.num_factors() == 2 * 20 + len(session.loop_closures) - 1
        assert result.num_factors == backend.num_factors()
        assert result.replaceable_prior_index is not None
        assert set(result.trajectories) == {0, 1}
        assert all(len(poses) == 20 for poses in result.trajectories.values())

    def test_run_with_isam2(self):
        session = MultiWorkerSession(small_config())

        result = session.run()

        for worker_id in (0, 1):
            assert np.isfinite(result.estimate_rmse[worker_id])
            assert result.estimate_rmse[worker_id] < 1.0
        assert result.num_factors == 2 * 20 + len(session.loop_closures) - 1

    def test_run_with_icp_refinement(self):
        config = small_config(estimator=EstimatorParams(
            do_icp_step_on_loop_closures=True, loop_closures_sub_maps_radius=1
        ))
        session = MultiWorkerSession(config)

        result = session.run()

        assert len(result.loop_closures) == 2
        for worker_id in (0, 1):
            assert np.isfinite(result.estimate_rmse[worker_id])

    def test_result_serializes_to_json(self):
        session = MultiWorkerSession(small_config())
        result = session.run(IncrementalEstimator(EstimatorParams(), 2, backend=MockBackend()))

        data = json.loads(json.dumps(result.to_dict()))

        assert set(data["trajectories"]) == {"0", "1"}
        assert len(data["loop_closures"]) == len(session.loop_closures)


class TestPositionRmse:
    """Test trajectory error helper."""

    def test_identical(self):
        poses = [make_transform(t=[float(i), 0.0, 0.0]) for i in range(3)]
        assert position_rmse(poses, poses) == 0.0

    def test_constant_offset(self):
        gt = [make_transform(t=[float(i), 0.0, 0.0]) for i in range(3)]
        est = [make_transform(t=[float(i), 0.3, 0.4]) for i in range(3)]
        assert position_rmse(est, gt) == pytest.approx(0.5)

    def test_empty(self):
        assert position_rmse([], []) == 0.0
