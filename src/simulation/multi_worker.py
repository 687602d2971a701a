"""
Synthetic multi-worker mapping session.

Every worker drives one lap of the same circle, starting at a different
phase, through a shared field of point landmarks. A worker records noisy
odometry and a local scan of the landmarks in range at each pose. Places
visited by two consecutive workers yield cross-track loop closure candidates
whose transform comes from ground truth.

The session feeds the estimator the way concurrent mapping workers would:
one thread per worker submits its prior and odometry, then each worker
submits the loop closures ending on its own track.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np

from src.common.config import SessionConfig
from src.common.data_structures import RelativePose
from src.estimation.incremental_estimator import IncrementalEstimator
from src.utils.math_utils import make_transform, se3_exp, se3_inverse, transform_points

logger = logging.getLogger(__name__)


@dataclass
class WorkerData:
    """Measurements and ground truth of one worker."""
    worker_id: int
    times_ns: List[int] = field(default_factory=list)
    T_w_gt: List[np.ndarray] = field(default_factory=list)
    T_w_odom: List[np.ndarray] = field(default_factory=list)
    scans: List[np.ndarray] = field(default_factory=list)

    @property
    def num_poses(self) -> int:
        return len(self.times_ns)


@dataclass
class SessionResult:
    """Outcome of a session run."""
    trajectories: Dict[int, List[tuple]]
    odometry_rmse: Dict[int, float]
    estimate_rmse: Dict[int, float]
    loop_closures: List[RelativePose]
    num_factors: Optional[int]
    replaceable_prior_index: Optional[int]
    duration_s: float

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "trajectories": {
                str(worker_id): [
                    {"time_ns": t, "T_w": T.tolist()} for t, T in poses
                ]
                for worker_id, poses in self.trajectories.items()
            },
            "odometry_rmse": {str(k): v for k, v in self.odometry_rmse.items()},
            "estimate_rmse": {str(k): v for k, v in self.estimate_rmse.items()},
            "loop_closures": [lc.to_dict() for lc in self.loop_closures],
            "num_factors": self.num_factors,
            "replaceable_prior_index": self.replaceable_prior_index,
            "duration_s": self.duration_s
        }


def position_rmse(estimated: List[np.ndarray], ground_truth: List[np.ndarray]) -> float:
    """Root mean square position error between two aligned pose lists."""
    if not estimated:
        return 0.0
    errors = [
        np.linalg.norm(T_est[:3, 3] - T_gt[:3, 3])
        for T_est, T_gt in zip(estimated, ground_truth)
    ]
    return float(np.sqrt(np.mean(np.square(errors))))


class MultiWorkerSession:
    """Generate and replay a synthetic session with several mapping workers."""

    def __init__(self, config: Optional[SessionConfig] = None):
        """
        Initialize the session and generate its data.

        Args:
            config: Session configuration
        """
        self.config = config or SessionConfig()
        self.rng = np.random.default_rng(self.config.seed)

        self.landmarks = self._generate_landmarks()
        self.workers = [self._generate_worker(i) for i in range(self.config.n_workers)]
        self.loop_closures = self._generate_loop_closures()

        logger.info(
            f"Generated session with {self.config.n_workers} workers, "
            f"{len(self.landmarks)} landmarks and {len(self.loop_closures)} loop closures"
        )

    # ------------------------------------------------------------------
    # Data generation
    # ------------------------------------------------------------------

    def _generate_landmarks(self) -> np.ndarray:
        """Landmarks scattered uniformly in a ring around the shared circle."""
        cfg = self.config
        n = cfg.num_landmarks
        radii = self.rng.uniform(
            max(0.0, cfg.circle_radius - cfg.scan_range), cfg.circle_radius + cfg.scan_range, n
        )
        angles = self.rng.uniform(0.0, 2 * np.pi, n)
        heights = self.rng.uniform(-1.0, 3.0, n)
        return np.column_stack([radii * np.cos(angles), radii * np.sin(angles), heights])

    def _ground_truth_pose(self, theta: float) -> np.ndarray:
        """Pose on the circle at angle theta, facing along the tangent."""
        yaw = theta + np.pi / 2
        R = np.array([
            [np.cos(yaw), -np.sin(yaw), 0],
            [np.sin(yaw), np.cos(yaw), 0],
            [0, 0, 1]
        ])
        position = self.config.circle_radius * np.array([np.cos(theta), np.sin(theta), 0.0])
        return make_transform(R, position)

    def _scan(self, T_w: np.ndarray) -> np.ndarray:
        """Landmarks within range, in the sensor frame with additive noise."""
        cfg = self.config
        local = transform_points(se3_inverse(T_w), self.landmarks)
        local = local[np.linalg.norm(local, axis=1) <= cfg.scan_range]
        if cfg.scan_noise_std > 0:
            local = local + self.rng.normal(0.0, cfg.scan_noise_std, local.shape)
        return local

    def _odometry_noise(self) -> np.ndarray:
        cfg = self.config
        xi = np.concatenate([
            self.rng.normal(0.0, cfg.odometry_rotation_noise, 3),
            self.rng.normal(0.0, cfg.odometry_translation_noise, 3)
        ])
        return se3_exp(xi)

    def _generate_worker(self, worker_id: int) -> WorkerData:
        cfg = self.config
        data = WorkerData(worker_id=worker_id)
        phase = 2 * np.pi * worker_id / cfg.n_workers
        step = 2 * np.pi / cfg.poses_per_worker

        for k in range(cfg.poses_per_worker):
            T_gt = self._ground_truth_pose(phase + k * step)
            if k == 0:
                T_odom = T_gt.copy()
            else:
                T_increment = se3_inverse(data.T_w_gt[-1]) @ T_gt
                T_odom = data.T_w_odom[-1] @ T_increment @ self._odometry_noise()

            data.times_ns.append(k * cfg.pose_period_ns)
            data.T_w_gt.append(T_gt)
            data.T_w_odom.append(T_odom)
            data.scans.append(self._scan(T_gt))
        return data

    def _generate_loop_closures(self) -> List[RelativePose]:
        """Candidates between each worker and the next one at shared places."""
        cfg = self.config
        if cfg.n_workers < 2 or cfg.loop_closures_per_pair == 0:
            return []

        # Worker i+1 reaches the start of worker i after this many poses
        offset = int(round(cfg.poses_per_worker / cfg.n_workers))
        if offset == 0:
            logger.warning("Too few poses per worker for cross-track loop closures")
            return []

        loop_closures = []
        for worker_id in range(cfg.n_workers - 1):
            earlier, later = self.workers[worker_id], self.workers[worker_id + 1]
            # Pose m of the next worker sits where this worker was at pose m + offset
            candidates = [(m + offset, m) for m in range(cfg.poses_per_worker - offset)]
            picks = np.linspace(0, len(candidates) - 1, min(cfg.loop_closures_per_pair, len(candidates)))
            for pick in np.unique(picks.astype(int)):
                k, m = candidates[pick]
                loop_closures.append(self._make_loop_closure(earlier, k, later, m))
        return loop_closures

    def _make_loop_closure(self, first: WorkerData, k: int, second: WorkerData, m: int) -> RelativePose:
        """Ground truth relative pose ordered so that pose a is the earlier one."""
        if first.times_ns[k] > second.times_ns[m]:
            first, k, second, m = second, m, first, k
        T_a_b = se3_inverse(first.T_w_gt[k]) @ second.T_w_gt[m]
        return RelativePose(
            T_a_b=T_a_b,
            time_a_ns=first.times_ns[k],
            time_b_ns=second.times_ns[m],
            track_id_a=first.worker_id,
            track_id_b=second.worker_id
        )

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------

    def _feed_worker(self, estimator: IncrementalEstimator, data: WorkerData) -> int:
        """Submit the prior and odometry of one worker, pose by pose."""
        track = estimator.get_laser_track(data.worker_id)
        for k in range(data.num_poses):
            track.process_pose(data.times_ns[k], data.T_w_odom[k], data.scans[k])
            if k == 0:
                graph, values = track.get_prior_factor()
                estimator.register_prior(graph, values, data.worker_id)
            else:
                graph, values = track.get_new_odometry_factors()
                estimator.estimate(graph, values)
        logger.info(f"Worker {data.worker_id} submitted {data.num_poses} poses")
        return data.num_poses

    def _submit_loop_closures(self, estimator: IncrementalEstimator, worker_id: int) -> int:
        """Submit the loop closures whose later pose belongs to this worker."""
        owned = [lc for lc in self.loop_closures if lc.track_id_b == worker_id]
        for loop_closure in owned:
            estimator.process_loop_closure(loop_closure)
        return len(owned)

    def run(self, estimator: Optional[IncrementalEstimator] = None) -> SessionResult:
        """
        Replay the session with one thread per worker.

        Args:
            estimator: Estimator to feed (a new one built from the config if None)

        Returns:
            SessionResult with the final trajectories and position errors
        """
        cfg = self.config
        estimator = estimator or IncrementalEstimator(cfg.estimator, cfg.n_workers)
        start = time.perf_counter()

        with ThreadPoolExecutor(max_workers=cfg.n_workers) as executor:
            # Future.result() re-raises worker exceptions in the caller
            feeds = [executor.submit(self._feed_worker, estimator, data) for data in self.workers]
            for future in feeds:
                future.result()

            submissions = [
                executor.submit(self._submit_loop_closures, estimator, data.worker_id)
                for data in self.workers
            ]
            n_submitted = sum(future.result() for future in submissions)

        duration = time.perf_counter() - start
        logger.info(f"Session finished in {duration:.2f} s with {n_submitted} loop closures")

        trajectories, odometry_rmse, estimate_rmse = {}, {}, {}
        for data in self.workers:
            trajectory = estimator.get_laser_track(data.worker_id).get_trajectory()
            trajectories[data.worker_id] = trajectory
            odometry_rmse[data.worker_id] = position_rmse(data.T_w_odom, data.T_w_gt)
            estimate_rmse[data.worker_id] = position_rmse([T for _, T in trajectory], data.T_w_gt)

        num_factors = estimator.backend.num_factors() if hasattr(estimator.backend, "num_factors") else None
        return SessionResult(
            trajectories=trajectories,
            odometry_rmse=odometry_rmse,
            estimate_rmse=estimate_rmse,
            loop_closures=list(self.loop_closures),
            num_factors=num_factors,
            replaceable_prior_index=estimator.replaceable_prior_index,
            duration_s=duration
        )
