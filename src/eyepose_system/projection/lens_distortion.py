from __future__ import annotations

import numpy as np
import cv2


def _normalize(points_px: np.ndarray, K: np.ndarray) -> np.ndarray:
    return (points_px - K[[0, 1], [2, 2]]) / K[[0, 1], [0, 1]]


def _denormalize(points_n: np.ndarray, K: np.ndarray) -> np.ndarray:
    return points_n * K[[0, 1], [0, 1]] + K[[0, 1], [2, 2]]


def distort_normalized(points_n: np.ndarray, radial_distortion) -> np.ndarray:
    """Scale normalized coordinates by 1 + k1 r^2 + k2 r^4."""
    k1, k2 = radial_distortion
    r2 = np.sum(points_n ** 2, axis=-1, keepdims=True)
    return points_n * (1 + k1 * r2 + k2 * r2 * r2)


def apply_radial_distortion(points_px: np.ndarray, K: np.ndarray, radial_distortion) -> np.ndarray:
    """
    points_px: (N,2) undistorted pixel coordinates.
    Returns: (N,2) pixel coordinates as seen through the lens.
    """
    pts = np.asarray(points_px, dtype=np.float64).reshape(-1, 2)
    K = np.asarray(K, dtype=np.float64).reshape(3, 3)
    return _denormalize(distort_normalized(_normalize(pts, K), radial_distortion), K)


def remove_radial_distortion(points_px: np.ndarray, K: np.ndarray, radial_distortion,
                             max_iter: int = 100, eps: float = 1e-12) -> np.ndarray:
    """
    Inverse of apply_radial_distortion by OpenCV's iterative undistortion.
    points_px: (N,2) distorted pixel coordinates. Returns (N,2) pixel coordinates.
    """
    pts = np.asarray(points_px, dtype=np.float64).reshape(-1, 1, 2)
    K = np.asarray(K, dtype=np.float64).reshape(3, 3)
    k1, k2 = radial_distortion
    dist = np.array([k1, k2, 0.0, 0.0], dtype=np.float64)
    criteria = (cv2.TERM_CRITERIA_COUNT | cv2.TERM_CRITERIA_EPS, max_iter, eps)
    out = cv2.undistortPointsIter(pts, K, dist, None, K, criteria)  # (N,1,2)
    return out.reshape(-1, 2)
