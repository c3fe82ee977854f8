from __future__ import annotations

import numpy as np

from eyepose_system.errors import DegenerateEllipseFit
from eyepose_system.projection.transparent_ellipse import transparent_to_explicit

# Bisection steps for the foot point; enough to exhaust float64 resolution
_FOOT_POINT_ITERATIONS = 100


def fit_ellipse_direct(points: np.ndarray) -> np.ndarray:
    """
    Direct least-squares ellipse fit (Fitzgibbon, numerically stable form of
    Halir & Flusser) to (N, 2) points, N >= 5.

    Returns the implicit conic [A, B, C, D, E, F] scaled to unit norm.

    Raises:
        DegenerateEllipseFit: for near-linear point sets or when no ellipse
            solution exists.
    """
    pts = np.asarray(points, dtype=float).reshape(-1, 2)
    if pts.shape[0] < 5:
        raise DegenerateEllipseFit(f"Need at least 5 points to fit an ellipse, got {pts.shape[0]}")
    if not np.all(np.isfinite(pts)):
        raise DegenerateEllipseFit("Non-finite point in ellipse fit")

    # Normalize for conditioning: centroid at 0, mean distance sqrt(2)
    mean = pts.mean(axis=0)
    spread = np.mean(np.linalg.norm(pts - mean, axis=1))
    if not spread > 0:
        raise DegenerateEllipseFit("All points coincide")
    s = np.sqrt(2) / spread
    x = (pts[:, 0] - mean[0]) * s
    y = (pts[:, 1] - mean[1]) * s

    D1 = np.column_stack([x * x, x * y, y * y])
    D2 = np.column_stack([x, y, np.ones_like(x)])
    S1 = D1.T @ D1
    S2 = D1.T @ D2
    S3 = D2.T @ D2
    try:
        T = -np.linalg.solve(S3, S2.T)
        M = S1 + S2 @ T
        # premultiply by the inverse of the constraint matrix [[0,0,2],[0,-1,0],[2,0,0]]
        M = np.vstack([M[2] / 2, -M[1], M[0] / 2])
        evals, evecs = np.linalg.eig(M)
    except np.linalg.LinAlgError as e:
        raise DegenerateEllipseFit(f"Ellipse fit failed: {e}") from e

    evals = np.real(evals)
    evecs = np.real(evecs)
    cond = 4 * evecs[0] * evecs[2] - evecs[1] ** 2
    candidates = np.flatnonzero(cond > 0)
    if candidates.size == 0:
        raise DegenerateEllipseFit("No elliptical solution for the point set")
    best = candidates[np.argmin(np.abs(evals[candidates]))]
    a1 = evecs[:, best]
    a2 = T @ a1

    # Back to pixel coordinates: Q = H^T Q' H
    A, B, C = a1
    D, E, F = a2
    Qn = np.array([[A, B / 2, D / 2], [B / 2, C, E / 2], [D / 2, E / 2, F]])
    H = np.array([[s, 0, -s * mean[0]], [0, s, -s * mean[1]], [0, 0, 1]])
    Q = H.T @ Qn @ H
    conic = np.array([Q[0, 0], 2 * Q[0, 1], Q[1, 1], 2 * Q[0, 2], 2 * Q[1, 2], Q[2, 2]])
    norm = np.linalg.norm(conic)
    if not np.isfinite(norm) or norm == 0:
        raise DegenerateEllipseFit("Ellipse fit returned a null conic")
    conic /= norm
    if not 4 * conic[0] * conic[2] - conic[1] ** 2 > 0:
        raise DegenerateEllipseFit("Fitted conic is not an ellipse")
    return conic


def ellipse_distance(points: np.ndarray, transparent) -> np.ndarray:
    """
    Signed Euclidean distance from each (x, y) point to the ellipse boundary,
    negative inside. The foot point is found with Eberly's robust bisection
    ("Distance from a point to an ellipse", Geometric Tools).
    """
    pts = np.asarray(points, dtype=float).reshape(-1, 2)
    cx, cy, e0, e1, phi = transparent_to_explicit(transparent)
    if not (np.isfinite(e0) and np.isfinite(e1) and e1 > 0):
        return np.full(pts.shape[0], np.nan)

    # Into the ellipse frame, folded into the first quadrant
    c, s = np.cos(phi), np.sin(phi)
    dx = pts[:, 0] - cx
    dy = pts[:, 1] - cy
    u = c * dx + s * dy
    v = -s * dx + c * dy
    y0 = np.abs(u)
    y1 = np.abs(v)

    # Implicit equation in the ellipse frame: < 0 inside
    g = (u / e0) ** 2 + (v / e1) ** 2 - 1
    dist = np.empty_like(y0)

    general = (y0 > 0) & (y1 > 0)
    on_minor = (y0 == 0) & (y1 > 0)
    on_major = y1 == 0

    if np.any(general):
        z0 = y0[general] / e0
        z1 = y1[general] / e1
        r0 = (e0 / e1) ** 2
        sbar = _bisect_root(r0, z0, z1, g[general])
        x0 = r0 * y0[general] / (sbar + r0)
        x1 = y1[general] / (sbar + 1)
        dist[general] = np.hypot(x0 - y0[general], x1 - y1[general])

    dist[on_minor] = np.abs(y1[on_minor] - e1)

    if np.any(on_major):
        numer = e0 * y0[on_major]
        denom = e0 ** 2 - e1 ** 2
        with np.errstate(divide="ignore", invalid="ignore"):
            xde0 = np.where(denom > 0, numer / denom, np.inf)
        inside = xde0 < 1
        xd = np.where(inside, xde0, 0.0)
        d_inside = np.hypot(e0 * xd - y0[on_major], e1 * np.sqrt(1 - xd ** 2))
        d_outside = np.abs(y0[on_major] - e0)
        dist[on_major] = np.where(inside, d_inside, d_outside)

    return np.where(g < 0, -dist, dist)


def _bisect_root(r0: float, z0: np.ndarray, z1: np.ndarray, g: np.ndarray) -> np.ndarray:
    n0 = r0 * z0
    s0 = z1 - 1
    s1 = np.where(g < 0, 0.0, np.hypot(n0, z1) - 1)
    for _ in range(_FOOT_POINT_ITERATIONS):
        s = (s0 + s1) / 2
        ratio0 = n0 / (s + r0)
        ratio1 = z1 / (s + 1)
        gs = ratio0 ** 2 + ratio1 ** 2 - 1
        s0 = np.where(gs > 0, s, s0)
        s1 = np.where(gs < 0, s, s1)
    s = (s0 + s1) / 2
    # points exactly on the ellipse
    return np.where(g == 0, 0.0, s)
