"""
Common GTSAM plumbing for the multi-track estimator.

Provides per-track variable symbols, conversions between 4x4 NumPy
transforms and gtsam.Pose3, and noise model construction.
"""

import logging
from typing import Optional, Sequence

import numpy as np

try:
    import gtsam
except ImportError:
    raise ImportError(
        "GTSAM is required for the multi-track estimator. "
        "Install it with: pip install gtsam"
    )

from src.common.config import EstimatorParams

logger = logging.getLogger(__name__)


# One symbol character per track: worker i owns variables chr(TRACK_SYMBOLS[i]) + index
TRACK_SYMBOLS = "abcdefghijklmnopqrstuvwxyz"


# Symbol generation

def track_symbol(track_id: int) -> str:
    """Symbol character of a track's pose variables."""
    if not 0 <= track_id < len(TRACK_SYMBOLS):
        raise ValueError(f"Track id {track_id} outside [0, {len(TRACK_SYMBOLS)})")
    return TRACK_SYMBOLS[track_id]


def pose_key(track_id: int, index: int) -> int:
    """Generate the variable key of pose `index` on track `track_id`."""
    return gtsam.symbol(track_symbol(track_id), index)


# Data conversion utilities

def pose_to_gtsam(T: np.ndarray) -> gtsam.Pose3:
    """Convert a 4x4 transform to a GTSAM Pose3."""
    T = np.asarray(T, dtype=float)
    return gtsam.Pose3(gtsam.Rot3(T[:3, :3]), np.array(T[:3, 3]))


def gtsam_to_matrix(pose: gtsam.Pose3) -> np.ndarray:
    """Convert a GTSAM Pose3 to a 4x4 transform."""
    return np.array(pose.matrix(), dtype=float)


# Noise models

def diagonal_noise(sigmas: Sequence[float]) -> gtsam.noiseModel.Diagonal:
    """Diagonal Gaussian noise model, sigmas in Pose3 tangent order."""
    return gtsam.noiseModel.Diagonal.Sigmas(np.asarray(sigmas, dtype=float))


# Kernel name -> (mEstimator class name, default tuning constant)
M_ESTIMATORS = {
    "cauchy": ("Cauchy", 1.0),
    "huber": ("Huber", 1.345),
}


def robustify(base, kind: Optional[str] = None, k: Optional[float] = None):
    """
    Wrap a noise model in an M-estimator.

    Args:
        base: Gaussian noise model to wrap
        kind: Kernel name from M_ESTIMATORS (case-insensitive), None keeps `base`
        k: Kernel scale (kernel default if None)

    Returns:
        Robust noise model, or `base` itself when no kernel is requested
    """
    if kind is None:
        return base
    try:
        class_name, default_k = M_ESTIMATORS[kind.lower()]
    except KeyError:
        raise ValueError(f"Unknown M-estimator '{kind}', expected one of {sorted(M_ESTIMATORS)}")
    kernel = getattr(gtsam.noiseModel.mEstimator, class_name).Create(default_k if k is None else k)
    return gtsam.noiseModel.Robust.Create(kernel, base)


def make_loop_closure_noise_model(params: EstimatorParams):
    """Noise model applied to every loop closure constraint."""
    base = diagonal_noise(params.loop_closure_noise_sigmas)
    if params.add_m_estimator_on_loop_closures:
        logger.info("Creating loop closure noise model with cauchy.")
        return robustify(base, "cauchy", params.m_estimator_scale)
    return base


# Optimizer parameters

def make_isam2_params(relinearize_skip: int, relinearize_threshold: float) -> gtsam.ISAM2Params:
    """Build ISAM2Params across wheels exposing either setters or properties."""
    params = gtsam.ISAM2Params()

    def _set(prop: str, setter: str, value):
        if hasattr(params, setter):
            getattr(params, setter)(value)
        else:
            setattr(params, prop, value)

    _set("relinearizeSkip", "setRelinearizeSkip", relinearize_skip)
    _set("relinearizeThreshold", "setRelinearizeThreshold", relinearize_threshold)
    return params


def factor_indices(indices: Sequence[int]):
    """Factor index vector accepted by ISAM2.update (opaque KeyVector on some wheels)."""
    vector_type = getattr(gtsam, "KeyVector", None)
    if vector_type is None:
        return [int(i) for i in indices]
    return vector_type([int(i) for i in indices])
