from __future__ import annotations
from dataclasses import dataclass
from typing import Mapping

import numpy as np
from scipy.spatial.transform import Rotation

# Head-fixed (extrinsic) convention: torsion first, then elevation, then azimuth.
# The reverse order would be the eye-fixed Fick scheme.
ROTATION_ORDER = ("tor", "ele", "azi")


def eye_rotation_matrices(azimuth: float, elevation: float, torsion: float) -> dict[str, np.ndarray]:
    """
    Rotation matrices (eye coordinates p1, p2, p3) for one pose, angles in degrees.
    Positive azimuth, elevation and torsion are leftward, downward and clockwise
    movements as seen by the subject.
    """
    a, e, t = np.deg2rad([azimuth, elevation, torsion])
    ca, sa = np.cos(a), np.sin(a)
    ce, se = np.cos(e), np.sin(e)
    ct, st = np.cos(t), np.sin(t)
    return {
        "azi": np.array([[ca, -sa, 0.0], [sa, ca, 0.0], [0.0, 0.0, 1.0]]),
        "ele": np.array([[ce, 0.0, se], [0.0, 1.0, 0.0], [-se, 0.0, ce]]),
        "tor": np.array([[1.0, 0.0, 0.0], [0.0, ct, -st], [0.0, st, ct]]),
    }


@dataclass(frozen=True)
class RigidTransform:
    """x_out = M @ x + b"""
    M: np.ndarray
    b: np.ndarray

    def apply_points(self, X: np.ndarray) -> np.ndarray:
        X = np.asarray(X, dtype=float)
        if X.ndim == 1:
            return self.M @ X + self.b
        if X.ndim == 2 and X.shape[1] == 3:
            return X @ self.M.T + self.b
        raise ValueError("X must be shape (3,) or (N,3)")

    def apply_dirs(self, D: np.ndarray) -> np.ndarray:
        D = np.asarray(D, dtype=float)
        return D @ self.M.T if D.ndim == 2 else self.M @ D


def eye_pose_transform(rotation_centers: Mapping[str, np.ndarray],
                       azimuth: float, elevation: float, torsion: float) -> RigidTransform:
    """
    Compose the three rotations, each about its own center, into one rigid
    transform from eye coordinates to head coordinates.
    """
    R = eye_rotation_matrices(azimuth, elevation, torsion)
    M = np.eye(3)
    b = np.zeros(3)
    for key in ROTATION_ORDER:
        c = np.asarray(rotation_centers[key], dtype=float)
        M = R[key] @ M
        b = R[key] @ (b - c) + c
    return RigidTransform(M, b)


def rotate_eye_points(points: np.ndarray, rotation_centers: Mapping[str, np.ndarray],
                      azimuth: float, elevation: float, torsion: float) -> np.ndarray:
    return eye_pose_transform(rotation_centers, azimuth, elevation, torsion).apply_points(points)


def _orientation(azimuth, elevation, torsion) -> Rotation:
    # Rz(azi) @ Ry(ele) @ Rx(tor), matching eye_rotation_matrices
    angles = np.stack(np.broadcast_arrays(torsion, elevation, azimuth), axis=-1)
    return Rotation.from_euler("xyz", angles, degrees=True)


def listing_torsion(azimuth, elevation, primary_position=(0.0, 0.0)) -> np.ndarray:
    """
    Pseudo-torsion (deg) that Listing's law assigns to the eye at the given
    azimuth/elevation (deg, scalars or arrays), given the primary position
    [azimuth, elevation].

    The eye reaches each orientation from primary position by a single rotation
    about an axis perpendicular to the primary gaze direction. Expressed in the
    head-fixed tor-ele-azi convention this rotation carries a torsional component,
    which is returned.
    """
    azimuth = np.asarray(azimuth, dtype=float)
    elevation = np.asarray(elevation, dtype=float)
    shape = np.broadcast(azimuth, elevation).shape
    azimuth = np.broadcast_to(azimuth, shape).ravel()
    elevation = np.broadcast_to(elevation, shape).ravel()

    primary = _orientation(primary_position[0], primary_position[1], 0.0)
    g_primary = primary.apply([1.0, 0.0, 0.0])
    target = _orientation(azimuth, elevation, np.zeros_like(azimuth))
    g_target = np.atleast_2d(target.apply([1.0, 0.0, 0.0]))

    axis = np.cross(g_primary, g_target)
    sin_angle = np.linalg.norm(axis, axis=1)
    cos_angle = g_target @ g_primary
    angle = np.arctan2(sin_angle, cos_angle)
    with np.errstate(invalid="ignore", divide="ignore"):
        unit = np.where(sin_angle[:, None] > 1e-12, axis / sin_angle[:, None], 0.0)
    listing = Rotation.from_rotvec(unit * angle[:, None]) * primary

    # Remaining rotation about p1 once azimuth and elevation are undone
    residual = (target.inv() * listing).as_matrix().reshape(-1, 3, 3)
    torsion = np.rad2deg(np.arctan2(residual[:, 2, 1], residual[:, 1, 1]))
    return torsion.reshape(shape)
