"""
Generalized 2D ray tracing through centered spherical surfaces.

Implements the ray-transfer recurrence of Elagha, "Generalized formulas for
ray-tracing and longitudinal spherical aberration", JOSA A 34.3 (2017).

Conventions: the optical axis is z (positive to the right, the direction of
travel), the orthogonal axis is the height h. A ray is its position (z, h)
and its angle theta to the axis; positive theta diverges upwards. Each
surface has its center of curvature on the axis. A positive radius presents
a convex surface to the ray, a negative radius a concave one.

An optical system is a plain (m, 3) float array of rows
[center, radius, refractive_index]. Row 0 describes the medium in which the
ray starts; only its index is used, its center and radius are replaced by
the axis intersection of the initial ray and 0.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, NamedTuple

import numpy as np

from eyepose_system.errors import RefractionLimitExceeded, RayMissesSurface

# Slack on |a * n_rel| <= 1 so a ray set up exactly at the critical angle is not
# rejected by rounding.
CRITICAL_ANGLE_TOL = 1e-12

# Vectorized traces evaluate rays closer to the axis direction than this at
# +/- this angle, which is their paraxial limit (an on-axis point traced at
# exactly 0 would give 0/0 image points).
PARAXIAL_THETA = 1e-9


def build_optical_system(surfaces: Iterable[Iterable[float]], initial_index: float) -> np.ndarray:
    """
    Assemble the (m, 3) optical system array.

    Parameters:
        surfaces: sequence of (center, radius, refractive_index) for the
            surfaces met by the ray, in order.
        initial_index: index of the medium in which the ray originates.
    """
    rows = [(np.nan, np.nan, float(initial_index))]
    rows += [tuple(float(v) for v in s) for s in surfaces]
    system = np.asarray(rows, dtype=float)
    if system.ndim != 2 or system.shape[1] != 3 or system.shape[0] < 2:
        raise ValueError("optical system needs at least one surface given as (center, radius, index)")
    if np.any(system[1:, 1] == 0):
        raise ValueError("surface radius must be non-zero")
    return system


@dataclass(frozen=True)
class RayTraceResult:
    """
    Outcome of a strict single-ray trace.

    thetas: (k,) ray angle after each surface (entry 0 is the initial angle)
    image_coords: (k, 2) axis intersection of the ray (or its extension) after each surface
    intersection_coords: (k, 2) point where the ray meets each physical surface
    output_ray: (2, 2) axis point and the point one unit further along the outgoing ray
    """
    thetas: np.ndarray
    image_coords: np.ndarray
    intersection_coords: np.ndarray
    output_ray: np.ndarray

    @property
    def theta_out(self) -> float:
        return float(self.thetas[-1])


@dataclass(frozen=True)
class RayBatch:
    """
    Vectorized trace of N rays; rays that fail at any surface hold NaN.

    theta_out: (N,) final angle
    image_coords: (N, m) axial position of the axis intersection after each surface
    output_ray: (N, 2, 2) unit ray description per input ray
    """
    theta_out: np.ndarray
    image_coords: np.ndarray
    output_ray: np.ndarray

    @property
    def image_z(self) -> np.ndarray:
        return self.image_coords[:, -1]

    @property
    def failed(self) -> np.ndarray:
        return ~np.isfinite(self.theta_out) | ~np.isfinite(self.image_z)


class RayDerivative(NamedTuple):
    theta_out: np.ndarray
    image_z: np.ndarray
    dtheta_out: np.ndarray   # d theta_out / d theta_in
    dimage_z: np.ndarray     # d image_z / d theta_in


def _unit_ray(image_z, theta):
    slope = np.tan(theta)
    norm = np.sqrt(slope ** 2 + 1)
    return image_z, image_z + 1 / norm, slope / norm


def _as_batch(coords, thetas) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    coords = np.asarray(coords, dtype=float)
    if coords.shape[-1] != 2:
        raise ValueError("coords must have shape (2,) or (N, 2)")
    coords = coords.reshape(-1, 2)
    thetas = np.asarray(thetas, dtype=float).reshape(-1)
    z0, h0, thetas = np.broadcast_arrays(coords[:, 0], coords[:, 1], thetas)
    return z0.astype(float), h0.astype(float), thetas.astype(float)


def _trace(z0, h0, theta0, system, with_derivative: bool):
    n_surfaces = system.shape[0]
    theta0 = np.where(np.abs(theta0) < PARAXIAL_THETA, np.copysign(PARAXIAL_THETA, theta0), theta0)
    with np.errstate(all="ignore"):
        image = z0 - h0 / np.tan(theta0)
        images = np.empty((z0.size, n_surfaces))
        images[:, 0] = image

        a = np.ones_like(z0)
        theta = theta0.copy()
        rel_prev, r_prev, c_prev = 1.0, 0.0, image
        valid = np.isfinite(image)

        if with_derivative:
            dc1 = h0 / np.sin(theta0) ** 2
            da = np.zeros_like(z0)
            dtheta = np.ones_like(z0)
            dimage = dc1

        for i in range(1, n_surfaces):
            c, r, n = system[i]
            rel = system[i - 1, 2] / n
            d = c - c_prev
            sin_prev = np.sin(theta)
            a_new = (rel_prev * a * r_prev + d * sin_prev) / r
            arel = a_new * rel
            valid &= (np.abs(arel) <= 1 + CRITICAL_ANGLE_TOL) & (np.abs(a_new) <= 1)
            arel = np.clip(arel, -1.0, 1.0)
            asin_a = np.arcsin(np.clip(a_new, -1.0, 1.0))
            theta_new = theta - asin_a + np.arcsin(arel)
            sin_new = np.sin(theta_new)
            image = c - rel * a_new * r / sin_new

            if with_derivative:
                dd = -dc1 if i == 1 else 0.0
                da_new = (rel_prev * r_prev * da + dd * sin_prev + d * np.cos(theta) * dtheta) / r
                dtheta = (dtheta - da_new / np.sqrt(1 - a_new ** 2)
                          + rel * da_new / np.sqrt(1 - arel ** 2))
                dimage = -rel * r * (da_new * sin_new - a_new * np.cos(theta_new) * dtheta) / sin_new ** 2
                da = da_new

            images[:, i] = image
            a, theta = a_new, theta_new
            rel_prev, r_prev, c_prev = rel, r, c

        theta = np.where(valid, theta, np.nan)
        images[~valid] = np.nan
        if with_derivative:
            dtheta = np.where(valid, dtheta, np.nan)
            dimage = np.where(valid, dimage, np.nan)
            return theta, images, dtheta, dimage
    return theta, images


def trace_rays(coords, thetas, optical_system: np.ndarray) -> RayBatch:
    """
    Trace many rays through one optical system.

    Parameters:
        coords: (2,) or (N, 2) initial (z, h) positions.
        thetas: scalar or (N,) initial angles in radians.
        optical_system: (m, 3) array from build_optical_system.

    Rays that exceed the critical angle or miss a surface get NaN results
    instead of raising, so callers inside searches can score them as failures.
    """
    z0, h0, theta0 = _as_batch(coords, thetas)
    theta, images = _trace(z0, h0, theta0, optical_system, with_derivative=False)
    with np.errstate(all="ignore"):
        iz, uz, uh = _unit_ray(images[:, -1], theta)
    output_ray = np.stack([np.stack([iz, np.zeros_like(iz)], axis=-1),
                           np.stack([uz, uh], axis=-1)], axis=1)
    return RayBatch(theta_out=theta, image_coords=images, output_ray=output_ray)


def trace_rays_derivative(coords, thetas, optical_system: np.ndarray) -> RayDerivative:
    """
    Final angle and image point of each ray with their closed-form derivatives
    with respect to the initial angle (forward-mode differentiation of the
    transfer recurrence). Failed rays hold NaN.
    """
    z0, h0, theta0 = _as_batch(coords, thetas)
    theta, images, dtheta, dimage = _trace(z0, h0, theta0, optical_system, with_derivative=True)
    return RayDerivative(theta, images[:, -1], dtheta, dimage)


def ray_trace_centered_spherical_surfaces(coords, theta: float, optical_system: np.ndarray) -> RayTraceResult:
    """
    Strict trace of a single ray, also locating the point at which the ray
    meets each physical surface.

    Raises:
        RefractionLimitExceeded: incidence above the critical angle at a surface.
        RayMissesSurface: the ray is tangent to or misses a surface.
    Both carry the result up to the failing surface in `.partial`.
    """
    z0, h0 = (float(v) for v in np.asarray(coords, dtype=float).reshape(2))
    theta = float(theta)
    system = np.asarray(optical_system, dtype=float)
    n_surfaces = system.shape[0]

    image0 = z0 - h0 / math.tan(theta)
    thetas = [theta]
    images = [(image0, 0.0)]
    intersections = [(z0, h0)]

    a = 1.0
    rel_prev, r_prev, c_prev = 1.0, 0.0, image0

    def partial():
        return _result(thetas, images, intersections)

    for i in range(1, n_surfaces):
        c, r, n = (float(v) for v in system[i])
        rel = float(system[i - 1, 2]) / n
        d = c - c_prev
        a_new = (rel_prev * a * r_prev + d * math.sin(thetas[-1])) / r
        if abs(a_new * rel) > 1 + CRITICAL_ANGLE_TOL:
            raise RefractionLimitExceeded(
                f"Angle of incidence for surface {i} greater than critical angle", i, partial())
        if abs(a_new) > 1:
            raise RayMissesSurface(f"The ray misses surface {i}", i, partial())

        # Where the incoming ray meets this surface: the incoming ray passes
        # through the previous axis intersection at the previous angle.
        m = math.tan(thetas[-1])
        img_prev = images[-1][0]
        qa = 1 + m * m
        qb = c + m * m * img_prev
        qc = c * c + m * m * img_prev * img_prev - r * r
        disc = qb * qb - qa * qc
        if disc <= 0:
            raise RayMissesSurface(f"The ray is either tangential to or misses surface {i}", i, partial())
        root = math.sqrt(disc)
        z_hit = (qb + root) / qa if r < 0 else (qb - root) / qa
        intersections.append((z_hit, m * (z_hit - img_prev)))

        theta_new = thetas[-1] - math.asin(a_new) + math.asin(max(-1.0, min(1.0, a_new * rel)))
        thetas.append(theta_new)
        images.append((c - rel * a_new * r / math.sin(theta_new), 0.0))

        a = a_new
        rel_prev, r_prev, c_prev = rel, r, c

    return partial()


def _result(thetas, images, intersections) -> RayTraceResult:
    thetas = np.asarray(thetas, dtype=float)
    images = np.asarray(images, dtype=float)
    iz, uz, uh = _unit_ray(images[-1, 0], thetas[-1])
    output_ray = np.array([[iz, 0.0], [uz, uh]], dtype=float)
    return RayTraceResult(
        thetas=thetas,
        image_coords=images,
        intersection_coords=np.asarray(intersections, dtype=float),
        output_ray=output_ray,
    )
