"""
Configuration models using Pydantic for type safety and validation.
"""

from pathlib import Path
from typing import List, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from src.utils.config_loader import load_config


# Pose3 tangent order used by gtsam: rotation (rx, ry, rz) then translation (x, y, z)
POSE3_DIM = 6


def _validate_pose_sigmas(v: List[float]) -> List[float]:
    if len(v) != POSE3_DIM:
        raise ValueError(f'Pose sigmas must have exactly {POSE3_DIM} components')
    if any(s <= 0 for s in v):
        raise ValueError('All sigmas must be positive')
    return [float(s) for s in v]


class IcpConfig(BaseModel):
    """Point-to-point ICP parameters used to refine loop closures."""
    max_iterations: int = Field(40, ge=1, le=1000, description="Maximum ICP iterations")
    max_correspondence_distance: float = Field(
        1.0,
        gt=0,
        description="Pairs farther apart than this are rejected (meters)"
    )
    trim_ratio: float = Field(
        0.9,
        gt=0,
        le=1.0,
        description="Fraction of closest correspondences kept each iteration"
    )
    min_correspondences: int = Field(
        10,
        ge=3,
        description="Minimum accepted correspondences for a valid update"
    )
    voxel_size: float = Field(
        0.0,
        ge=0,
        description="Voxel grid size for down-sampling (meters, 0 disables)"
    )
    translation_tolerance: float = Field(
        1e-4,
        gt=0,
        description="Convergence threshold on translation increment (meters)"
    )
    rotation_tolerance: float = Field(
        1e-4,
        gt=0,
        description="Convergence threshold on rotation increment (radians)"
    )


class LaserTrackConfig(BaseModel):
    """Per-worker trajectory configuration."""
    prior_noise_sigmas: List[float] = Field(
        default=[0.001, 0.001, 0.001, 0.001, 0.001, 0.001],
        description="Prior sigmas on the first pose [rx, ry, rz, x, y, z]"
    )
    odometry_noise_sigmas: List[float] = Field(
        default=[0.01, 0.01, 0.01, 0.05, 0.05, 0.05],
        description="Odometry between-factor sigmas [rx, ry, rz, x, y, z]"
    )

    @field_validator('prior_noise_sigmas', 'odometry_noise_sigmas')
    @classmethod
    def validate_sigmas(cls, v: List[float]) -> List[float]:
        return _validate_pose_sigmas(v)


class EstimatorParams(BaseModel):
    """Parameters of the multi-track incremental estimator."""
    # iSAM2 relinearization policy
    relinearize_skip: int = Field(1, ge=1, description="Relinearize every N updates")
    relinearize_threshold: float = Field(
        0.001,
        gt=0,
        description="Relinearize variables that moved more than this"
    )

    # Loop closures
    loop_closure_noise_sigmas: List[float] = Field(
        default=[0.05, 0.05, 0.05, 0.1, 0.1, 0.1],
        description="Loop closure sigmas [rx, ry, rz, x, y, z]"
    )
    add_m_estimator_on_loop_closures: bool = Field(
        True,
        description="Wrap the loop closure noise model in a Cauchy M-estimator"
    )
    m_estimator_scale: float = Field(1.0, gt=0, description="Cauchy kernel scale")
    do_icp_step_on_loop_closures: bool = Field(
        False,
        description="Refine loop closure transforms by aligning local sub-maps"
    )
    loop_closures_sub_maps_radius: int = Field(
        3,
        ge=0,
        description="Neighbouring scans on each side aggregated into a sub-map"
    )
    icp_configuration_file: str = Field(
        "",
        description="YAML file with ICP parameters (default ICP when unreadable)"
    )

    # Deduplication of convergence priors
    anchor_worker_id: int = Field(
        1,
        ge=0,
        description="Worker whose registered prior fills the replaceable-prior slot"
    )

    laser_track: LaserTrackConfig = Field(default_factory=LaserTrackConfig)

    @field_validator('loop_closure_noise_sigmas')
    @classmethod
    def validate_sigmas(cls, v: List[float]) -> List[float]:
        return _validate_pose_sigmas(v)


class SessionConfig(BaseModel):
    """Synthetic multi-worker session used by the command line tool."""
    n_workers: int = Field(2, ge=1, le=26, description="Number of mapping workers")
    poses_per_worker: int = Field(40, ge=4, description="Poses recorded by each worker")
    pose_period_ns: int = Field(100_000_000, gt=0, description="Time between poses (ns)")
    circle_radius: float = Field(10.0, gt=0, description="Radius of each worker's loop (m)")
    num_landmarks: int = Field(400, ge=10, description="Landmarks in the shared environment")
    scan_range: float = Field(8.0, gt=0, description="Sensor range used to build scans (m)")
    scan_noise_std: float = Field(0.01, ge=0, description="Point noise (m)")
    odometry_translation_noise: float = Field(0.02, ge=0, description="Odometry drift per step (m)")
    odometry_rotation_noise: float = Field(0.002, ge=0, description="Odometry drift per step (rad)")
    loop_closures_per_pair: int = Field(2, ge=0, description="Candidates between consecutive workers")
    seed: Optional[int] = Field(None, description="Random seed for reproducibility")
    estimator: EstimatorParams = Field(default_factory=EstimatorParams)

    @model_validator(mode='after')
    def validate_anchor(self):
        """Anchor worker must exist when more than one worker shares the map."""
        if self.n_workers > 1 and self.estimator.anchor_worker_id >= self.n_workers:
            raise ValueError('anchor_worker_id must be smaller than n_workers')
        return self


def _load_yaml(path: Union[str, Path]) -> dict:
    return load_config(path)


def _resolve_icp_file(data: dict, config_dir: Path) -> dict:
    """Resolve a relative `icp_configuration_file` against the declaring file's directory."""
    icp_file = data.get('icp_configuration_file')
    if isinstance(icp_file, str) and icp_file and not Path(icp_file).is_absolute():
        data['icp_configuration_file'] = str((config_dir / icp_file).resolve())
    return data


def load_estimator_params(path: Union[str, Path]) -> EstimatorParams:
    """Load estimator parameters from YAML file."""
    path = Path(path)
    data = _resolve_icp_file(_load_yaml(path), path.resolve().parent)
    return EstimatorParams.model_validate(data)


def load_session_config(path: Union[str, Path]) -> SessionConfig:
    """
    Load synthetic session configuration from YAML file.

    An inline estimator block resolves its ICP file against the session file;
    an included one should mark the path with ``!path`` to keep it relative to
    the included file.
    """
    path = Path(path)
    data = _load_yaml(path)
    if isinstance(data.get('estimator'), dict):
        _resolve_icp_file(data['estimator'], path.resolve().parent)
    return SessionConfig.model_validate(data)


def load_icp_config(path: Union[str, Path]) -> IcpConfig:
    """Load ICP parameters from YAML file."""
    return IcpConfig.model_validate(_load_yaml(path))


def save_config(config: BaseModel, path: Union[str, Path]) -> None:
    """Save configuration to YAML file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    data = config.model_dump(mode='json')

    with open(path, 'w') as f:
        yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
