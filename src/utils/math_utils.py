"""
Rigid-body math on 4x4 homogeneous matrices.
Uses scipy.spatial.transform.Rotation for the rotation maps.

Naming convention: T_a_b transforms points FROM frame b TO frame a.
"""

import numpy as np
from scipy.spatial.transform import Rotation


# ============================================================================
# SO3 Operations
# ============================================================================

def so3_exp(omega: np.ndarray) -> np.ndarray:
    """
    Exponential map from so3 to SO3.

    Args:
        omega: 3x1 axis-angle vector (rotation vector)

    Returns:
        3x3 rotation matrix
    """
    omega = np.asarray(omega, dtype=float).flatten()
    if np.linalg.norm(omega) < 1e-12:
        return np.eye(3)
    return Rotation.from_rotvec(omega).as_matrix()


def so3_log(R: np.ndarray) -> np.ndarray:
    """
    Logarithmic map from SO3 to so3.

    Args:
        R: 3x3 rotation matrix (re-orthogonalized if slightly off-manifold)

    Returns:
        3x1 axis-angle vector
    """
    R = np.asarray(R, dtype=float)
    if not is_rotation_matrix(R):
        R = project_to_so3(R)
    return Rotation.from_matrix(R).as_rotvec()


def skew(v: np.ndarray) -> np.ndarray:
    """Hat operator: 3D vector to skew-symmetric matrix."""
    v = np.asarray(v).flatten()
    return np.array([
        [0, -v[2], v[1]],
        [v[2], 0, -v[0]],
        [-v[1], v[0], 0]
    ])


def is_rotation_matrix(R: np.ndarray, tol: float = 1e-6) -> bool:
    """Check that R is orthogonal with determinant +1."""
    R = np.asarray(R)
    if R.shape != (3, 3):
        return False
    if not np.allclose(R @ R.T, np.eye(3), atol=tol):
        return False
    return bool(np.isclose(np.linalg.det(R), 1.0, atol=tol))


def project_to_so3(R: np.ndarray) -> np.ndarray:
    """
    Closest rotation matrix in the Frobenius sense, via SVD.

    Args:
        R: 3x3 matrix (possibly not orthogonal)

    Returns:
        3x3 rotation matrix
    """
    R = np.asarray(R, dtype=float).reshape(3, 3)
    U, _, Vt = np.linalg.svd(R)
    R_projected = U @ Vt
    if np.linalg.det(R_projected) < 0:
        Vt[-1, :] *= -1
        R_projected = U @ Vt
    return R_projected


def rotation_angle(R: np.ndarray) -> float:
    """Magnitude of the rotation encoded by R (radians)."""
    return float(np.linalg.norm(so3_log(R)))


# ============================================================================
# SE3 Operations
# ============================================================================

def make_transform(R: np.ndarray = None, t: np.ndarray = None) -> np.ndarray:
    """Assemble a 4x4 transform from rotation and translation (identity parts by default)."""
    T = np.eye(4)
    if R is not None:
        T[:3, :3] = np.asarray(R, dtype=float).reshape(3, 3)
    if t is not None:
        T[:3, 3] = np.asarray(t, dtype=float).flatten()
    return T


def se3_exp(xi: np.ndarray) -> np.ndarray:
    """
    Exponential map from se3 to SE3.

    Args:
        xi: 6x1 twist vector [angular; linear]

    Returns:
        4x4 transformation matrix
    """
    xi = np.asarray(xi, dtype=float).flatten()
    omega, v = xi[:3], xi[3:]
    theta = np.linalg.norm(omega)

    if theta < 1e-8:
        return make_transform(np.eye(3) + skew(omega), v)

    omega_hat = skew(omega)
    # Left Jacobian of SO3
    V = np.eye(3) + ((1 - np.cos(theta)) / theta ** 2) * omega_hat + \
        ((theta - np.sin(theta)) / theta ** 3) * (omega_hat @ omega_hat)
    return make_transform(so3_exp(omega), V @ v)


def se3_inverse(T: np.ndarray) -> np.ndarray:
    """Inverse of a rigid transform without a general matrix inversion."""
    T = np.asarray(T, dtype=float)
    R = T[:3, :3]
    return make_transform(R.T, -R.T @ T[:3, 3])


def is_rigid_transform(T: np.ndarray, tol: float = 1e-6) -> bool:
    """Check shape, bottom row and rotation block of a homogeneous transform."""
    T = np.asarray(T)
    if T.shape != (4, 4):
        return False
    if not np.allclose(T[3], [0.0, 0.0, 0.0, 1.0], atol=tol):
        return False
    return is_rotation_matrix(T[:3, :3], tol=tol)


def transform_points(T: np.ndarray, points: np.ndarray) -> np.ndarray:
    """
    Apply a rigid transform to Nx3 points (or a single 3-vector).

    Args:
        T: 4x4 transformation matrix
        points: Nx3 array or 3-vector

    Returns:
        Transformed points with the input's shape
    """
    points = np.asarray(points, dtype=float)
    single_point = points.ndim == 1
    if single_point:
        points = points.reshape(1, 3)

    result = points @ T[:3, :3].T + T[:3, 3]
    return result[0] if single_point else result


def transform_distance(T1: np.ndarray, T2: np.ndarray) -> tuple:
    """Translation (m) and rotation (rad) magnitudes of T1^-1 * T2."""
    delta = se3_inverse(T1) @ np.asarray(T2, dtype=float)
    return float(np.linalg.norm(delta[:3, 3])), rotation_angle(delta[:3, :3])
