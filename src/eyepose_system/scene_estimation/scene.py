"""
One calibration scene and its evaluation at a parameter vector.

A scene is a set of frames from one video during which the eye fixated
known targets. Evaluating the scene at a parameter vector builds the scene
geometry, predicts the pupil ellipse of every frame and scores the
prediction against the observed boundary. Evaluation has no side effects;
it returns an immutable SceneEvaluation.
"""
from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Optional, Sequence

import numpy as np

from eyepose_system.config.eye_model_config import ProjectionOptions, SceneSearchConfig, scene_search_config
from eyepose_system.errors import DegenerateEllipseFit
from eyepose_system.model_eye.model_eye import EyeBiometry, build_model_eye
from eyepose_system.model_eye.rotations import eye_rotation_matrices, listing_torsion
from eyepose_system.model_eye.scene_geometry import SceneGeometry, create_scene_geometry
from eyepose_system.pose_fitting.eye_pose_fit import boundary_points
from eyepose_system.projection.ellipse_fit import ellipse_distance, fit_ellipse_direct
from eyepose_system.projection.pupil_projection import project
from eyepose_system.projection.transparent_ellipse import implicit_to_transparent, is_nan_ellipse
from eyepose_system.scene_estimation.model_params import ModelParams


@dataclass(frozen=True)
class SceneData:
    """
    Fixed inputs of one scene.

    perimeters: per frame, (N,2) observed pupil boundary points
    observed_ellipses: (F,5) transparent ellipses of the observations (NaN where no fit)
    gaze_targets: (F,2) fixation target [azimuth, elevation] in deg
    frame_indices: (F,) video frame of each observation
    head_motion: optional (T,3) camera position relative to the head per video frame (mm)
    """
    perimeters: tuple[np.ndarray, ...]
    observed_ellipses: np.ndarray
    gaze_targets: np.ndarray
    frame_indices: np.ndarray
    head_motion: Optional[np.ndarray] = None
    biometry: EyeBiometry = EyeBiometry()
    intrinsic_matrix: Optional[np.ndarray] = None
    radial_distortion: Optional[tuple[float, float]] = None
    refraction: bool = True
    camera_torsion: float = 0.0
    camera_depth: float = 120.0
    label: str = ""

    @property
    def n_frames(self) -> int:
        return len(self.perimeters)

    @classmethod
    def from_observations(cls, observed: Sequence, gaze_targets, frame_indices=None,
                          n_boundary_points: Optional[int] = None, **kwargs) -> "SceneData":
        """
        observed: per frame, (N,2) boundary points or a transparent ellipse.
        """
        n_boundary_points = n_boundary_points or scene_search_config.get().n_boundary_points
        gaze_targets = np.asarray(gaze_targets, dtype=float).reshape(-1, 2)
        if len(observed) != len(gaze_targets):
            raise ValueError(f"{len(observed)} observations but {len(gaze_targets)} gaze targets")
        frame_indices = np.arange(len(observed)) if frame_indices is None else np.asarray(frame_indices, dtype=int)
        if len(frame_indices) != len(observed):
            raise ValueError("frame_indices must have one entry per observation")

        perimeters, ellipses = [], []
        for obs in observed:
            arr = np.asarray(obs, dtype=float)
            perimeters.append(boundary_points(arr, n_boundary_points))
            ellipses.append(arr if arr.ndim == 1 else _fit_observed(arr))

        head_motion = kwargs.pop("head_motion", None)
        if head_motion is not None:
            head_motion = np.asarray(head_motion, dtype=float).reshape(-1, 3)
            if frame_indices.max() >= len(head_motion):
                raise ValueError("head_motion does not cover all frames")
        return cls(perimeters=tuple(perimeters), observed_ellipses=np.asarray(ellipses), gaze_targets=gaze_targets,
                   frame_indices=frame_indices, head_motion=head_motion, **kwargs)


def _fit_observed(points: np.ndarray) -> np.ndarray:
    try:
        return implicit_to_transparent(fit_ellipse_direct(points))
    except DegenerateEllipseFit:
        return np.full(5, np.nan)


@dataclass(frozen=True)
class SceneEvaluation:
    x: np.ndarray                   # head | eye | this scene's block
    scene_geometry: SceneGeometry
    eye_poses: np.ndarray           # (F,4)
    model_ellipses: np.ndarray      # (F,5)
    perimeter_rmse: np.ndarray      # (F,) px
    center_error: np.ndarray        # (F,) px
    frame_errors: np.ndarray        # (F,)
    fval: float
    n_undefined: int
    residuals: np.ndarray           # (n_residuals(data),) signed per-point terms, finite


def n_residuals(data: SceneData) -> int:
    """Length of the residual vector of a scene: every boundary point plus the center offset, per frame."""
    return sum(len(p) + 2 for p in data.perimeters)


def scene_geometry_at(model: ModelParams, data: SceneData, x_sub: np.ndarray) -> SceneGeometry:
    """Scene geometry (without head motion) described by a head | eye | scene vector."""
    p = model.named(x_sub)
    eye_p, sc = p["eye"], p["scene"]
    biometry = replace(
        data.biometry,
        cornea_axial_radius=eye_p["corneaAxialRadius"],
        k1=eye_p["K1"], k2=eye_p["K2"],
        cornea_torsion=eye_p["torsion"],
        cornea_tilt=eye_p["tilt"], cornea_tip=eye_p["tip"],
        rotation_center_joint=eye_p["joint"], rotation_center_diff=eye_p["diff"],
    )
    return create_scene_geometry(
        build_model_eye(biometry),
        intrinsic_matrix=data.intrinsic_matrix,
        radial_distortion=data.radial_distortion,
        camera_torsion=sc["torsion"],
        camera_translation=(sc["horiz"], sc["vert"], sc["depth"] + eye_p["commonDepth"]),
        refraction=data.refraction,
    )


def camera_translations(model: ModelParams, data: SceneData, x_sub: np.ndarray, base: np.ndarray) -> np.ndarray:
    """
    (F,3) camera translation per frame: the base translation plus the head
    motion trace, shifted in time and rotated by the head parameters.
    """
    if data.head_motion is None:
        return np.tile(base, (data.n_frames, 1))
    head = model.named(x_sub)["head"]
    t = np.arange(len(data.head_motion), dtype=float)
    query = data.frame_indices - head["timeShift"]
    shifted = np.column_stack([np.interp(query, t, data.head_motion[:, i]) for i in range(3)])
    R = eye_rotation_matrices(head["azi"], head["ele"], head["torsion"])
    R_head = R["azi"] @ R["ele"] @ R["tor"]
    return base + shifted @ R_head.T


def evaluate_scene(model: ModelParams, data: SceneData, x_sub: np.ndarray,
                   error_weights: tuple[float, float] = (1.0, 1.0),
                   config: Optional[SceneSearchConfig] = None,
                   projection_options: Optional[ProjectionOptions] = None) -> SceneEvaluation:
    """
    Predict and score every frame of the scene at x_sub (head | eye | scene).

    Each frame's pose is the gaze target plus the primary position, with
    Listing's law torsion. The pupil radius is taken from the observed area:
    project at the nominal radius, rescale by sqrt(observed / predicted area),
    project again. A frame's error is the weighted sum of the perimeter RMSE
    and the center distance (px); undefined frames are charged
    config.nan_frame_error_px.

    The residual vector holds, per frame, the weighted signed point distances
    scaled by 1/sqrt(N) (their sum of squares is the weighted MSE) followed by
    the weighted center offset.
    """
    cfg = config or scene_search_config.get()
    x_sub = np.asarray(x_sub, dtype=float)
    geometry = scene_geometry_at(model, data, x_sub)
    sc = model.named(x_sub)["scene"]

    azi = data.gaze_targets[:, 0] + sc["pp_azi"]
    ele = data.gaze_targets[:, 1] + sc["pp_ele"]
    tor = np.atleast_1d(listing_torsion(azi, ele, primary_position=(sc["pp_azi"], sc["pp_ele"])))
    translations = camera_translations(model, data, x_sub, geometry.t)

    n = data.n_frames
    poses = np.full((n, 4), np.nan)
    ellipses = np.full((n, 5), np.nan)
    rmse = np.full(n, np.nan)
    center_err = np.full(n, np.nan)
    r0 = cfg.nominal_pupil_radius_mm
    w_perimeter, w_center = error_weights
    residuals = []

    for i in range(n):
        frame_geometry = geometry if data.head_motion is None else geometry.with_camera(translation=translations[i])
        pts = data.perimeters[i]
        undefined_res = np.full(len(pts) + 2, cfg.nan_frame_error_px / np.sqrt(len(pts) + 2))
        pose = np.array([azi[i], ele[i], tor[i], r0])
        ell = project(pose, frame_geometry, projection_options).ellipse
        if is_nan_ellipse(ell):
            residuals.append(undefined_res)
            continue
        observed_area = data.observed_ellipses[i, 2]
        if np.isfinite(observed_area) and observed_area > 0:
            pose[3] = r0 * np.sqrt(observed_area / ell[2])
            ell = project(pose, frame_geometry, projection_options).ellipse
        if is_nan_ellipse(ell):
            residuals.append(undefined_res)
            continue
        poses[i], ellipses[i] = pose, ell
        d = ellipse_distance(pts, ell)
        offset = ell[:2] - data.observed_ellipses[i, :2]
        offset = np.where(np.isfinite(offset), offset, 0.0)
        rmse[i] = np.sqrt(np.mean(d ** 2))
        center_err[i] = np.hypot(*offset) if np.all(np.isfinite(data.observed_ellipses[i, :2])) else np.nan
        res = np.concatenate([w_perimeter * d / np.sqrt(len(d)), w_center * offset])
        residuals.append(np.where(np.isfinite(res), res, cfg.nan_frame_error_px))

    frame_errors = w_perimeter * rmse + w_center * np.where(np.isfinite(center_err), center_err, 0.0)
    undefined = ~np.isfinite(frame_errors)
    frame_errors[undefined] = cfg.nan_frame_error_px

    return SceneEvaluation(
        x=x_sub,
        scene_geometry=geometry,
        eye_poses=poses,
        model_ellipses=ellipses,
        perimeter_rmse=rmse,
        center_error=center_err,
        frame_errors=frame_errors,
        fval=float(np.mean(frame_errors)),
        n_undefined=int(undefined.sum()),
        residuals=np.concatenate(residuals) if residuals else np.empty(0),
    )
