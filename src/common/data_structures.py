"""
Core data structures for multi-track pose-graph estimation.
Following the naming convention: T_A_B transforms points FROM B TO A.
Timestamps are integer nanoseconds.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List

import numpy as np

from src.utils.math_utils import is_rigid_transform


def _as_transform(T: Any, name: str) -> np.ndarray:
    T = np.asarray(T, dtype=float)
    if T.shape != (4, 4):
        raise ValueError(f"{name} must be a 4x4 matrix, got shape {T.shape}")
    if not is_rigid_transform(T, tol=1e-5):
        raise ValueError(f"{name} is not a rigid transform")
    return T


# ============================================================================
# Loop Closures
# ============================================================================

@dataclass
class RelativePose:
    """
    Loop closure candidate between two (possibly identical) tracks.

    Attributes:
        T_a_b: 4x4 transform taking points from the frame of pose b to pose a
        time_a_ns: Time of pose a on track a
        time_b_ns: Time of pose b on track b
        track_id_a: Track (worker) id of pose a
        track_id_b: Track (worker) id of pose b
    """
    T_a_b: np.ndarray
    time_a_ns: int
    time_b_ns: int
    track_id_a: int
    track_id_b: int

    def __post_init__(self):
        """Validate the transform and normalize integer fields."""
        self.T_a_b = _as_transform(self.T_a_b, "T_a_b")
        self.time_a_ns = int(self.time_a_ns)
        self.time_b_ns = int(self.time_b_ns)
        self.track_id_a = int(self.track_id_a)
        self.track_id_b = int(self.track_id_b)

    def with_transform(self, T_a_b: np.ndarray) -> 'RelativePose':
        """Copy of this loop closure carrying a refined transform."""
        return replace(self, T_a_b=np.array(T_a_b, dtype=float))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "T_a_b": self.T_a_b.tolist(),
            "time_a_ns": self.time_a_ns,
            "time_b_ns": self.time_b_ns,
            "track_id_a": self.track_id_a,
            "track_id_b": self.track_id_b
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RelativePose':
        """Create from dictionary."""
        return cls(
            T_a_b=np.array(data["T_a_b"]),
            time_a_ns=data["time_a_ns"],
            time_b_ns=data["time_b_ns"],
            track_id_a=data["track_id_a"],
            track_id_b=data["track_id_b"]
        )


# ============================================================================
# Track Data Structures
# ============================================================================

@dataclass
class LaserScan:
    """Point cloud expressed in the sensor frame at acquisition time."""
    time_ns: int
    points: np.ndarray  # Nx3

    def __post_init__(self):
        """Validate point dimensions."""
        self.time_ns = int(self.time_ns)
        self.points = np.asarray(self.points, dtype=float).reshape(-1, 3)

    @property
    def num_points(self) -> int:
        return self.points.shape[0]


@dataclass
class TrackPose:
    """
    One pose of a track.

    Attributes:
        time_ns: Acquisition time
        key: Optimizer variable key of this pose
        T_w: 4x4 current world pose estimate (world <- sensor)
        T_w_odom: 4x4 raw odometry pose as measured by the worker
    """
    time_ns: int
    key: int
    T_w: np.ndarray
    T_w_odom: np.ndarray

    def __post_init__(self):
        self.time_ns = int(self.time_ns)
        self.T_w = _as_transform(self.T_w, "T_w")
        self.T_w_odom = _as_transform(self.T_w_odom, "T_w_odom")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "time_ns": self.time_ns,
            "key": self.key,
            "T_w": self.T_w.tolist(),
            "T_w_odom": self.T_w_odom.tolist()
        }


# ============================================================================
# Optimizer Data Structures
# ============================================================================

@dataclass
class BackendUpdateResult:
    """Outcome of one optimizer update call."""
    new_factor_indices: List[int] = field(default_factory=list)
    removed_factor_indices: List[int] = field(default_factory=list)
