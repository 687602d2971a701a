"""
Per-worker laser trajectory.

A LaserTrack stores the time-ordered poses recorded by one mapping worker
together with the local scan taken at each pose. It turns its odometry into
GTSAM factors, builds local sub-maps for loop closure refinement, and
receives the globally optimized poses back from the estimator.
"""

import bisect
import logging
import threading
from typing import List, Optional, Tuple

import numpy as np

try:
    import gtsam
except ImportError:
    raise ImportError(
        "GTSAM is required for LaserTrack. "
        "Install it with: pip install gtsam"
    )

from src.common.config import LaserTrackConfig
from src.common.data_structures import LaserScan, TrackPose
from src.common.errors import InvariantViolation
from src.estimation.gtsam_base import (
    diagonal_noise, gtsam_to_matrix, pose_key, pose_to_gtsam
)
from src.utils.math_utils import se3_inverse, transform_points

logger = logging.getLogger(__name__)


class LaserTrack:
    """Ordered, time-indexed pose history of one worker."""

    def __init__(self, config: Optional[LaserTrackConfig] = None, track_id: int = 0):
        """
        Initialize an empty track.

        Args:
            config: Noise configuration of the track's factors
            track_id: Worker id, selects the symbol of the pose variables
        """
        self.config = config or LaserTrackConfig()
        self.track_id = track_id

        self._lock = threading.RLock()
        self._poses: List[TrackPose] = []
        self._times: List[int] = []
        self._scans: List[LaserScan] = []
        # First pose index whose odometry factor has not been handed out yet
        self._next_odometry_index = 1

        self.prior_noise = diagonal_noise(self.config.prior_noise_sigmas)
        self.odometry_noise = diagonal_noise(self.config.odometry_noise_sigmas)

    # Pose recording

    def process_pose(
        self,
        time_ns: int,
        T_w_odom: np.ndarray,
        scan_points: Optional[np.ndarray] = None
    ) -> TrackPose:
        """
        Append a new odometry pose and its local scan.

        The initial world estimate chains the odometry increment onto the
        latest estimated pose, so optimized corrections carry forward.

        Args:
            time_ns: Acquisition time, strictly after the last pose
            T_w_odom: 4x4 odometry pose (odometry frame <- sensor)
            scan_points: Nx3 points in the sensor frame

        Returns:
            The stored pose
        """
        time_ns = int(time_ns)
        T_w_odom = np.asarray(T_w_odom, dtype=float)
        with self._lock:
            if self._times and time_ns <= self._times[-1]:
                raise ValueError(
                    f"Track {self.track_id}: poses must be added in chronological order "
                    f"({time_ns} <= {self._times[-1]})"
                )

            if not self._poses:
                T_w = T_w_odom.copy()
            else:
                previous = self._poses[-1]
                T_prev_curr = se3_inverse(previous.T_w_odom) @ T_w_odom
                T_w = previous.T_w @ T_prev_curr

            pose = TrackPose(
                time_ns=time_ns,
                key=pose_key(self.track_id, len(self._poses)),
                T_w=T_w,
                T_w_odom=T_w_odom
            )
            self._poses.append(pose)
            self._times.append(time_ns)
            self._scans.append(LaserScan(
                time_ns=time_ns,
                points=scan_points if scan_points is not None else np.zeros((0, 3))
            ))
            return pose

    # Queries

    @property
    def num_poses(self) -> int:
        with self._lock:
            return len(self._poses)

    def is_empty(self) -> bool:
        return self.num_poses == 0

    def get_min_time(self) -> int:
        """Time of the first pose."""
        with self._lock:
            if not self._times:
                raise InvariantViolation(f"Track {self.track_id} has no poses")
            return self._times[0]

    def get_max_time(self) -> int:
        """Time of the last pose."""
        with self._lock:
            if not self._times:
                raise InvariantViolation(f"Track {self.track_id} has no poses")
            return self._times[-1]

    def _closest_index(self, time_ns: int) -> int:
        if not self._times:
            raise InvariantViolation(f"Track {self.track_id} has no poses")
        i = bisect.bisect_left(self._times, time_ns)
        if i == 0:
            return 0
        if i == len(self._times):
            return i - 1
        # Ties go to the earlier pose
        if time_ns - self._times[i - 1] <= self._times[i] - time_ns:
            return i - 1
        return i

    def get_pose_key(self, time_ns: int) -> int:
        """Variable key of the pose closest in time to `time_ns`."""
        with self._lock:
            return self._poses[self._closest_index(time_ns)].key

    def get_pose(self, time_ns: int) -> TrackPose:
        """Copy of the pose closest in time to `time_ns`."""
        with self._lock:
            pose = self._poses[self._closest_index(time_ns)]
            return TrackPose(pose.time_ns, pose.key, pose.T_w.copy(), pose.T_w_odom.copy())

    def get_pose_keys(self) -> List[int]:
        with self._lock:
            return [pose.key for pose in self._poses]

    def get_trajectory(self) -> List[Tuple[int, np.ndarray]]:
        """Snapshot of (time_ns, T_w) for every pose."""
        with self._lock:
            return [(pose.time_ns, pose.T_w.copy()) for pose in self._poses]

    # Factor generation

    def get_prior_factor(self) -> Tuple[gtsam.NonlinearFactorGraph, gtsam.Values]:
        """
        Prior anchoring the first pose at its current estimate.

        Returns:
            Graph with a single PriorFactorPose3 and the initial value of the first pose
        """
        with self._lock:
            if not self._poses:
                raise InvariantViolation(f"Track {self.track_id} has no pose to anchor")
            first = self._poses[0]
            graph = gtsam.NonlinearFactorGraph()
            values = gtsam.Values()
            graph.add(gtsam.PriorFactorPose3(first.key, pose_to_gtsam(first.T_w), self.prior_noise))
            values.insert(first.key, pose_to_gtsam(first.T_w))
            return graph, values

    def get_new_odometry_factors(self) -> Tuple[gtsam.NonlinearFactorGraph, gtsam.Values]:
        """
        Between factors for every pose appended since the previous call.

        The first pose's initial value comes with its prior, so values start at
        the second pose.

        Returns:
            New odometry factors and initial values of the new poses
        """
        graph = gtsam.NonlinearFactorGraph()
        values = gtsam.Values()
        with self._lock:
            for i in range(self._next_odometry_index, len(self._poses)):
                previous, current = self._poses[i - 1], self._poses[i]
                T_prev_curr = se3_inverse(previous.T_w_odom) @ current.T_w_odom
                graph.add(gtsam.BetweenFactorPose3(
                    previous.key, current.key, pose_to_gtsam(T_prev_curr), self.odometry_noise
                ))
                values.insert(current.key, pose_to_gtsam(current.T_w))
            self._next_odometry_index = max(self._next_odometry_index, len(self._poses))
        return graph, values

    # Sub-maps

    def build_sub_map_around_time(self, time_ns: int, sub_map_radius: int) -> np.ndarray:
        """
        Aggregate the scans around a time into the frame of the closest pose.

        Args:
            time_ns: Center time
            sub_map_radius: Number of neighbouring scans taken on each side

        Returns:
            Mx3 points expressed in the frame of the pose closest to `time_ns`
        """
        with self._lock:
            center = self._closest_index(time_ns)
            T_center_w = se3_inverse(self._poses[center].T_w)
            first = max(0, center - sub_map_radius)
            last = min(len(self._poses) - 1, center + sub_map_radius)

            clouds = []
            for i in range(first, last + 1):
                scan = self._scans[i]
                if scan.num_points == 0:
                    continue
                T_center_i = T_center_w @ self._poses[i].T_w
                clouds.append(transform_points(T_center_i, scan.points))

        if not clouds:
            return np.zeros((0, 3))
        return np.vstack(clouds)

    # Global estimate sink

    def update_from_values(self, values: gtsam.Values) -> int:
        """
        Overwrite stored poses with the optimized values present in `values`.

        Returns:
            Number of poses updated
        """
        updated = 0
        with self._lock:
            for pose in self._poses:
                if values.exists(pose.key):
                    pose.T_w = gtsam_to_matrix(values.atPose3(pose.key))
                    updated += 1
        logger.debug(f"Track {self.track_id}: updated {updated}/{len(self._poses)} poses")
        return updated
