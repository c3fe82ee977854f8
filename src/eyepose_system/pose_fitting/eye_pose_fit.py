from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
from scipy.optimize import least_squares

from eyepose_system.config.eye_model_config import PoseFitConfig, ProjectionOptions, pose_fit_config
from eyepose_system.logging_utils.logging_setup import get_logger
from eyepose_system.model_eye.scene_geometry import SceneGeometry
from eyepose_system.projection.ellipse_fit import ellipse_distance
from eyepose_system.projection.pupil_projection import project
from eyepose_system.projection.transparent_ellipse import is_nan_ellipse, sample_boundary

log = get_logger(__name__)


@dataclass
class EyePoseFit:
    is_success: bool
    eye_pose: np.ndarray            # [azimuth deg, elevation deg, torsion deg, pupil radius mm]
    rmse: float                     # px, signed distance of the observed points to the model ellipse
    ellipse: Optional[np.ndarray] = None
    nfev: int = 0
    message: str = ""


def boundary_points(observed, n_boundary_points: int) -> np.ndarray:
    """
    Observed pupil boundary as (N,2) points. A length-5 vector is read as a
    transparent ellipse and sampled.
    """
    arr = np.asarray(observed, dtype=float)
    if arr.ndim == 1 and arr.size == 5:
        return sample_boundary(arr, n_boundary_points)
    if arr.ndim != 2 or arr.shape[1] != 2:
        raise ValueError("observed boundary must be (N,2) points or a 5-element transparent ellipse")
    return arr


def fit_eye_pose(observed, scene: SceneGeometry,
                 config: Optional[PoseFitConfig] = None,
                 x0: Optional[Sequence[float]] = None,
                 lower_bounds: Optional[Sequence[float]] = None,
                 upper_bounds: Optional[Sequence[float]] = None,
                 torsion: float = 0.0,
                 projection_options: Optional[ProjectionOptions] = None) -> EyePoseFit:
    """
    Search azimuth, elevation and pupil radius so that the projected pupil
    ellipse matches the observed boundary, minimizing the signed point to
    ellipse distances in the least-squares sense. Torsion is held fixed.

    The search is bound-constrained; x0 and bounds default to the config
    ([0, 0, 2] within [-35, -25, 0.5] .. [35, 25, 4]).
    """
    cfg = config or pose_fit_config.get()
    pts = boundary_points(observed, cfg.n_boundary_points)
    if not np.all(np.isfinite(pts)):
        return EyePoseFit(False, np.full(4, np.nan), np.nan, message="non-finite observed boundary")

    lb = np.asarray(cfg.lower_bounds if lower_bounds is None else lower_bounds, dtype=float)
    ub = np.asarray(cfg.upper_bounds if upper_bounds is None else upper_bounds, dtype=float)
    if np.any(lb > ub):
        raise ValueError("lower bounds exceed upper bounds")
    start = np.clip(np.asarray(cfg.x0 if x0 is None else x0, dtype=float), lb, ub)

    def residuals(x):
        ell = project([x[0], x[1], torsion, x[2]], scene, projection_options).ellipse
        if is_nan_ellipse(ell):
            return np.full(len(pts), cfg.nan_residual_px)
        d = ellipse_distance(pts, ell)
        return np.where(np.isfinite(d), d, cfg.nan_residual_px)

    res = least_squares(residuals, start, bounds=(lb, ub), method="trf",
                        xtol=cfg.xtol, ftol=cfg.ftol, gtol=cfg.gtol, max_nfev=cfg.max_nfev)

    eye_pose = np.array([res.x[0], res.x[1], torsion, res.x[2]])
    ellipse = project(eye_pose, scene, projection_options).ellipse
    rmse = float(np.sqrt(np.mean(res.fun ** 2)))
    ok = bool(res.success) and not is_nan_ellipse(ellipse)
    if not ok:
        log.debug(f"Pose fit did not converge: {res.message} (rmse {rmse:.3g} px)")
    return EyePoseFit(ok, eye_pose, rmse, ellipse=ellipse, nfev=int(res.nfev), message=str(res.message))
