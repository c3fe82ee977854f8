"""
Virtual images of intraocular points seen through the cornea.

For each point the emission angle is searched for which the refracted ray
passes through the camera nodal point. The search is split in two 1D
problems: first the angle in the p1p2 plane (with the p1p3 angle held at its
geometric guess), then the angle in the p1p3 plane. Each is solved with
Newton's method on the analytic derivative of the ray trace, for all points
at once.

The virtual image is the point of the outgoing ray at the depth of the
source point; every point of that ray images to the same pixel.
"""
from __future__ import annotations

import warnings
from typing import NamedTuple, Optional

import numpy as np
from scipy.optimize import newton

from eyepose_system.config.eye_model_config import ProjectionOptions, projection_config
from eyepose_system.model_eye.rotations import RigidTransform
from eyepose_system.model_eye.scene_geometry import SceneGeometry
from eyepose_system.optics.ray_trace import trace_rays_derivative

# head (p1, p2, p3) -> scene (X, Y, Z) = (p2, p3, p1)
HEAD_TO_SCENE = np.array([[0.0, 1.0, 0.0],
                          [0.0, 0.0, 1.0],
                          [1.0, 0.0, 0.0]])

# A ray leaving exactly along the axis has no axis intersection
_MIN_THETA = 1e-6


class _PlaneTrace(NamedTuple):
    z: np.ndarray       # a point of the outgoing ray (eye coordinates)
    h: np.ndarray
    phi: np.ndarray     # angle of the outgoing ray
    dz: np.ndarray      # derivatives w.r.t. the emission angle
    dh: np.ndarray
    dphi: np.ndarray


def _trace_plane(z0, h0, theta, system: np.ndarray, axis_rot: float) -> _PlaneTrace:
    # into the frame of the (tilted) corneal axis, rotating about the apex
    c, s = np.cos(axis_rot), np.sin(axis_rot)
    zc = c * z0 + s * h0
    hc = -s * z0 + c * h0
    res = trace_rays_derivative(np.column_stack([zc, hc]), theta - axis_rot, system)
    return _PlaneTrace(
        z=c * res.image_z, h=s * res.image_z, phi=res.theta_out + axis_rot,
        dz=c * res.dimage_z, dh=s * res.dimage_z, dphi=res.dtheta_out,
    )


def _height_at(p1, tr: _PlaneTrace):
    tan = np.tan(tr.phi)
    sec2 = 1 + tan ** 2
    h = tr.h + (p1 - tr.z) * tan
    dh = tr.dh - tr.dz * tan + (p1 - tr.z) * sec2 * tr.dphi
    return h, dh, tan, sec2 * tr.dphi


def _camera_miss(p1, tr2: _PlaneTrace, tr3: _PlaneTrace, A: np.ndarray, k: np.ndarray, wrt: int):
    """
    Where the 3D ray meets the plane z_c = 0 through the nodal point (camera
    coordinates). Returns the ray origin (eye coordinates), the (x, y) miss
    and its derivative w.r.t. the emission angle of plane `wrt` (1: p1p2, 2: p1p3).
    """
    h2, dh2, t2, dt2 = _height_at(p1, tr2)
    h3, dh3, t3, dt3 = _height_at(p1, tr3)
    O = np.column_stack([p1, h2, h3])
    D = np.column_stack([np.ones_like(p1), t2, t3])
    dO = np.zeros_like(O)
    dD = np.zeros_like(D)
    dO[:, wrt] = dh2 if wrt == 1 else dh3
    dD[:, wrt] = dt2 if wrt == 1 else dt3

    Oc = O @ A.T + k
    Dc = D @ A.T
    dOc = dO @ A.T
    dDc = dD @ A.T
    s = -Oc[:, 2] / Dc[:, 2]
    ds = -(dOc[:, 2] + s * dDc[:, 2]) / Dc[:, 2]
    hit = Oc + s[:, None] * Dc
    dhit = dOc + s[:, None] * dDc + ds[:, None] * Dc
    return O, hit[:, :2], dhit[:, :2]


def _newton(miss, u: np.ndarray, x0: np.ndarray, options: ProjectionOptions) -> np.ndarray:
    """
    Roots of the camera miss along `u`. newton asks for the value and the
    derivative at the same iterate; both come from one trace.
    """
    last = {}

    def traced(theta):
        key = theta.tobytes()
        if last.get("key") != key:
            _, m, dm = miss(theta)
            last.update(key=key, f=m @ u, df=dm @ u)
        return last

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        try:
            res = newton(lambda t: traced(t)["f"], x0, fprime=lambda t: traced(t)["df"],
                         tol=options.refraction_tol_rad,
                         maxiter=options.refraction_max_iter, full_output=True)
        except RuntimeError:
            return np.full_like(x0, np.nan)
    root = np.asarray(res.root, dtype=float)
    return np.where(np.asarray(res.converged) & np.isfinite(root), root, np.nan)


def _unit(v: np.ndarray) -> np.ndarray:
    return v / np.linalg.norm(v)


def virtual_image_points(points: np.ndarray, scene: SceneGeometry, transform: RigidTransform,
                         options: Optional[ProjectionOptions] = None) -> tuple[np.ndarray, np.ndarray]:
    """
    Replace each (N, 3) eye-coordinate point by its virtual image through the
    corneal optics of `scene`, for the eye pose given by `transform` (eye -> head).

    Returns:
        virtual: (N, 3) eye coordinates, NaN rows where the search failed
        nodal_error: (N,) distance (mm) by which the refracted ray misses the
            nodal point; NaN unless options.calc_nodal_intersect_error
    """
    options = options or projection_config.get()
    optics = scene.corneal_optics
    if optics is None:
        raise ValueError("Scene geometry carries no corneal optics")

    pts = np.asarray(points, dtype=float).reshape(-1, 3)
    n_in = pts.shape[0]
    if n_in == 0:
        return pts.copy(), np.empty(0)
    if n_in == 1:
        # newton switches to its scalar solver for a single start value
        pts = np.vstack([pts, pts])
    p1, p2, p3 = pts[:, 0], pts[:, 1], pts[:, 2]

    A = scene.R @ HEAD_TO_SCENE @ transform.M
    k = scene.R @ HEAD_TO_SCENE @ transform.b + scene.t

    # start from the straight line to the nodal point
    nodal_eye = transform.M.T @ (HEAD_TO_SCENE.T @ scene.C - transform.b)
    v = nodal_eye - pts
    with np.errstate(divide="ignore", invalid="ignore"):
        theta2_0 = np.arctan(v[:, 1] / v[:, 0])
        theta3_0 = np.arctan(v[:, 2] / v[:, 0])
    theta2_0 = np.where(np.abs(theta2_0) < _MIN_THETA, _MIN_THETA, theta2_0)
    theta3_0 = np.where(np.abs(theta3_0) < _MIN_THETA, _MIN_THETA, theta3_0)

    sys2, rot2 = optics.plane("p1p2")
    sys3, rot3 = optics.plane("p1p3")
    u2 = _unit(A[:2, 1])
    u3 = _unit(A[:2, 2])

    with np.errstate(all="ignore"):
        # Stage 1: p1p2 angle
        tr3 = _trace_plane(p1, p3, theta3_0, sys3, rot3)

        def miss_p1p2(theta):
            return _camera_miss(p1, _trace_plane(p1, p2, theta, sys2, rot2), tr3, A, k, wrt=1)

        theta2 = _newton(miss_p1p2, u2, theta2_0, options)

        # Stage 2: p1p3 angle with the p1p2 angle fixed
        tr2 = _trace_plane(p1, p2, theta2, sys2, rot2)

        def miss_p1p3(theta):
            return _camera_miss(p1, tr2, _trace_plane(p1, p3, theta, sys3, rot3), A, k, wrt=2)

        theta3 = _newton(miss_p1p3, u3, theta3_0, options)

        virtual, miss, _ = miss_p1p3(theta3)

    bad = ~np.all(np.isfinite(virtual), axis=1)
    virtual[bad] = np.nan
    if options.calc_nodal_intersect_error:
        nodal_error = np.linalg.norm(miss, axis=1)
    else:
        nodal_error = np.full(pts.shape[0], np.nan)
    return virtual[:n_in], nodal_error[:n_in]
