"""
Point-to-point ICP used to refine loop closure transforms.

ICP alternates between:
    - Correspondences: nearest target point of every transformed source point
      (KD-tree), rejected beyond a maximum distance and trimmed to the closest
      fraction of pairs.
    - Update: closed-form rigid fit of the pairs via SVD (Arun et al. 1987).

Iteration stops when the incremental update falls below the translation and
rotation tolerances or after the configured number of iterations.
"""

import logging
import math
from pathlib import Path
from typing import Optional, Union

import numpy as np
import yaml
from pydantic import ValidationError
from scipy.spatial import cKDTree

from src.common.config import IcpConfig, load_icp_config
from src.common.errors import RecoverableConfigError, ScanMatchingError
from src.utils.config_loader import CircularIncludeError
from src.utils.math_utils import make_transform, rotation_angle, transform_points

logger = logging.getLogger(__name__)


def best_fit_transform(src: np.ndarray, tgt: np.ndarray) -> np.ndarray:
    """
    Closed-form rigid registration of paired points.

    Finds T = argmin_T sum ||T*src_i - tgt_i||^2 using Procrustes analysis.

    Args:
        src: Nx3 source points
        tgt: Nx3 target points paired with src

    Returns:
        4x4 transform mapping src onto tgt
    """
    src_cent = np.mean(src, axis=0)
    tgt_cent = np.mean(tgt, axis=0)

    H = (src - src_cent).T @ (tgt - tgt_cent)
    U, _, Vt = np.linalg.svd(H)
    R = Vt.T @ U.T

    # Handle reflection case
    if np.linalg.det(R) < 0.0:
        Vt[2, :] *= -1.0
        R = Vt.T @ U.T

    return make_transform(R, tgt_cent - R @ src_cent)


def voxel_downsample(points: np.ndarray, voxel_size: float) -> np.ndarray:
    """Replace the points of each occupied voxel by their centroid."""
    if voxel_size <= 0 or points.shape[0] == 0:
        return points
    cells = np.floor(points / voxel_size).astype(np.int64)
    _, inverse, counts = np.unique(cells, axis=0, return_inverse=True, return_counts=True)
    inverse = inverse.reshape(-1)
    centroids = np.zeros((counts.shape[0], 3))
    np.add.at(centroids, inverse, points)
    return centroids / counts[:, None]


class IcpScanMatcher:
    """Rigid alignment of a source cloud onto a target cloud."""

    def __init__(self, config: Optional[IcpConfig] = None):
        self.config = config or IcpConfig()

    def configure(self, config_source: Union[str, Path]) -> None:
        """
        Load ICP parameters from a YAML file.

        Raises:
            RecoverableConfigError: If the file is missing, unreadable or invalid.
                The current configuration is left untouched in that case.
        """
        try:
            config = load_icp_config(config_source)
        except (OSError, UnicodeDecodeError, yaml.YAMLError, ValidationError, CircularIncludeError) as e:
            raise RecoverableConfigError(
                f"Could not load ICP configuration from '{config_source}': {e}"
            ) from e
        self.config = config
        logger.info(f"Loaded ICP configuration from: {config_source}")

    def configure_default(self) -> None:
        """Use the built-in ICP parameters."""
        self.config = IcpConfig()

    def align(
        self,
        source: np.ndarray,
        target: np.ndarray,
        initial_guess: Optional[np.ndarray] = None
    ) -> np.ndarray:
        """
        Align `source` onto `target`.

        Args:
            source: Nx3 points to move (reading)
            target: Mx3 fixed points (reference)
            initial_guess: 4x4 initial estimate of target <- source

        Returns:
            4x4 refined transform target <- source

        Raises:
            ScanMatchingError: If either cloud is too small or too few
                correspondences survive rejection.
        """
        cfg = self.config
        source = voxel_downsample(np.asarray(source, dtype=float).reshape(-1, 3), cfg.voxel_size)
        target = voxel_downsample(np.asarray(target, dtype=float).reshape(-1, 3), cfg.voxel_size)
        T = np.eye(4) if initial_guess is None else np.array(initial_guess, dtype=float)

        if source.shape[0] < cfg.min_correspondences or target.shape[0] < cfg.min_correspondences:
            raise ScanMatchingError(
                f"Not enough points to align ({source.shape[0]} source, "
                f"{target.shape[0]} target, need {cfg.min_correspondences})"
            )

        tree = cKDTree(target)
        converged = False
        iterations = 0
        for iterations in range(1, cfg.max_iterations + 1):
            src_tf = transform_points(T, source)
            dist, idx = tree.query(src_tf, k=1, distance_upper_bound=cfg.max_correspondence_distance)

            # Unmatched queries come back with infinite distance
            valid = np.isfinite(dist)
            if np.count_nonzero(valid) < cfg.min_correspondences:
                raise ScanMatchingError(
                    f"Only {np.count_nonzero(valid)} correspondences within "
                    f"{cfg.max_correspondence_distance} m at iteration {iterations}"
                )
            dist, src_matched, tgt_matched = dist[valid], src_tf[valid], target[idx[valid]]

            if cfg.trim_ratio < 1.0:
                n_keep = max(cfg.min_correspondences, int(math.ceil(cfg.trim_ratio * dist.shape[0])))
                keep = np.argsort(dist)[:n_keep]
                src_matched, tgt_matched = src_matched[keep], tgt_matched[keep]

            delta = best_fit_transform(src_matched, tgt_matched)
            T = delta @ T

            if (np.linalg.norm(delta[:3, 3]) < cfg.translation_tolerance
                    and rotation_angle(delta[:3, :3]) < cfg.rotation_tolerance):
                converged = True
                break

        if not converged:
            logger.debug(f"ICP stopped after {iterations} iterations without converging")
        return T
