"""
Ellipse parameterizations.

implicit    : conic [A, B, C, D, E, F] with A x^2 + B xy + C y^2 + D x + E y + F = 0
explicit    : [cx, cy, a, b, phi], semi-major a >= semi-minor b, phi = major axis angle
transparent : [cx, cy, area, eccentricity, theta], theta = major axis angle in [0, pi)

The transparent form is the one reported and searched over: each entry can be
bounded on its own (area >= 0, 0 <= eccentricity < 1).
"""
from __future__ import annotations

import numpy as np

from eyepose_system.errors import DegenerateEllipseFit

NAN_ELLIPSE = np.full(5, np.nan)
NAN_ELLIPSE.setflags(write=False)


def nan_ellipse() -> np.ndarray:
    return np.full(5, np.nan)


def is_nan_ellipse(ellipse) -> bool:
    return bool(np.any(~np.isfinite(np.asarray(ellipse, dtype=float))))


def normalize_theta(theta):
    """Map an axis angle into [0, pi); the ellipse is symmetric under theta + pi."""
    out = np.mod(theta, np.pi)
    # mod rounds up to exactly pi for tiny negative inputs
    out = np.where(out >= np.pi, 0.0, out)
    return float(out) if np.ndim(out) == 0 else out


def implicit_to_explicit(conic) -> np.ndarray:
    A, B, C, D, E, F = np.asarray(conic, dtype=float)
    if not 4 * A * C - B * B > 0:
        raise DegenerateEllipseFit("Conic is not an ellipse")

    Mq = np.array([[A, B / 2], [B / 2, C]])
    try:
        cx, cy = np.linalg.solve(2 * Mq, [-D, -E])
    except np.linalg.LinAlgError as e:
        raise DegenerateEllipseFit(f"Ellipse center undefined: {e}") from e
    f_center = F + (D * cx + E * cy) / 2

    evals, evecs = np.linalg.eigh(Mq)
    if evals[0] < 0:
        evals, f_center = -evals[::-1], -f_center
        evecs = evecs[:, ::-1]
    if not f_center < 0:
        raise DegenerateEllipseFit("Conic describes an empty or point ellipse")

    # smaller eigenvalue -> longer axis
    a = np.sqrt(-f_center / evals[0])
    b = np.sqrt(-f_center / evals[1])
    phi = np.arctan2(evecs[1, 0], evecs[0, 0])
    return np.array([cx, cy, a, b, normalize_theta(phi)])


def explicit_to_implicit(explicit) -> np.ndarray:
    cx, cy, a, b, phi = np.asarray(explicit, dtype=float)
    c, s = np.cos(phi), np.sin(phi)
    A = (c / a) ** 2 + (s / b) ** 2
    C = (s / a) ** 2 + (c / b) ** 2
    B = 2 * c * s * (1 / a ** 2 - 1 / b ** 2)
    D = -2 * A * cx - B * cy
    E = -B * cx - 2 * C * cy
    F = A * cx ** 2 + B * cx * cy + C * cy ** 2 - 1
    return np.array([A, B, C, D, E, F])


def explicit_to_transparent(explicit) -> np.ndarray:
    cx, cy, a, b, phi = np.asarray(explicit, dtype=float)
    if b > a:
        a, b, phi = b, a, phi + np.pi / 2
    ecc = np.sqrt(1 - (b / a) ** 2)
    return np.array([cx, cy, np.pi * a * b, ecc, normalize_theta(phi)])


def transparent_to_explicit(transparent) -> np.ndarray:
    cx, cy, area, ecc, theta = np.asarray(transparent, dtype=float)
    ratio = np.sqrt(1 - ecc ** 2)
    a = np.sqrt(area / (np.pi * ratio))
    return np.array([cx, cy, a, a * ratio, theta])


def implicit_to_transparent(conic) -> np.ndarray:
    return explicit_to_transparent(implicit_to_explicit(conic))


def transparent_to_implicit(transparent) -> np.ndarray:
    return explicit_to_implicit(transparent_to_explicit(transparent))


def sample_boundary(transparent, n_points: int) -> np.ndarray:
    """n_points (x, y) evenly spaced in parametric angle on the ellipse boundary."""
    cx, cy, a, b, phi = transparent_to_explicit(transparent)
    t = np.linspace(0, 2 * np.pi, n_points, endpoint=False)
    c, s = np.cos(phi), np.sin(phi)
    x = a * np.cos(t)
    y = b * np.sin(t)
    return np.column_stack([cx + c * x - s * y, cy + s * x + c * y])
