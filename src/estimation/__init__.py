"""
Multi-track pose-graph estimation.

GTSAM-backed modules (incremental_estimator, isam2_backend, laser_track,
gtsam_base) are imported from their own modules.
"""

from .scan_matcher import (
    IcpScanMatcher,
    best_fit_transform,
    voxel_downsample
)

__all__ = [
    'IcpScanMatcher',
    'best_fit_transform',
    'voxel_downsample'
]
