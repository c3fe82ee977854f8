"""
Forward model: eye pose -> image of the pupil.

    1. points on the pupil circle (and, for a full model, the rest of the eye)
    2. virtual images of the pupil/iris points through the cornea
    3. rotation about the torsion, elevation and azimuth centers, in that order
    4. (full model) removal of points rotated behind the rotation center
    5. eye -> scene axes
    6. pinhole projection K [R | t]
    7. radial lens distortion
    8. ellipse fit to the pupil perimeter

Undefined results (zero radius, too few visible perimeter points, failed
refraction or ellipse fit) come back as the NaN ellipse, never as exceptions.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from eyepose_system.config.eye_model_config import ProjectionOptions, projection_config
from eyepose_system.errors import DegenerateEllipseFit, DegenerateEyeGeometry
from eyepose_system.model_eye.model_eye import ModelEye, sample_ellipsoid
from eyepose_system.model_eye.rotations import eye_pose_transform
from eyepose_system.model_eye.scene_geometry import SceneGeometry
from eyepose_system.projection.ellipse_fit import fit_ellipse_direct
from eyepose_system.projection.lens_distortion import apply_radial_distortion
from eyepose_system.projection.refraction import HEAD_TO_SCENE, virtual_image_points
from eyepose_system.projection.transparent_ellipse import implicit_to_transparent, nan_ellipse

PUPIL_PERIMETER = "pupilPerimeter"
PUPIL_CENTER = "pupilCenter"
IRIS_CENTER = "irisCenter"
IRIS_PERIMETER = "irisPerimeter"
AZI_ROTATION_CENTER = "aziRotationCenter"
ELE_ROTATION_CENTER = "eleRotationCenter"
ANTERIOR_CHAMBER = "anteriorChamber"
POSTERIOR_CHAMBER = "posteriorChamber"
CORNEAL_APEX = "cornealApex"

REFRACTED_LABELS = (PUPIL_PERIMETER, PUPIL_CENTER, IRIS_CENTER)
MIN_PERIMETER_POINTS = 5


@dataclass(frozen=True)
class PupilProjection:
    """
    ellipse : (5,) transparent ellipse of the pupil, NaN when undefined
    image_points : (N,2) pixel coordinates
    world_points : (N,3) scene coordinates (mm)
    eye_points : (N,3) eye coordinates before rotation, after refraction
    labels : (N,) point labels
    nodal_error : (N,) refracted-ray miss of the nodal point (mm), NaN if not computed
    """
    ellipse: np.ndarray
    image_points: np.ndarray
    world_points: np.ndarray
    eye_points: np.ndarray
    labels: np.ndarray
    nodal_error: np.ndarray

    def select(self, label: str) -> np.ndarray:
        return self.image_points[self.labels == label]

    @property
    def is_valid(self) -> bool:
        return bool(np.all(np.isfinite(self.ellipse)))


def _circle(center: np.ndarray, radius: float, n: int) -> np.ndarray:
    angles = np.arange(n) * 2 * np.pi / n
    pts = np.empty((n, 3))
    pts[:, 0] = center[0]
    pts[:, 1] = np.cos(angles) * radius + center[1]
    pts[:, 2] = np.sin(angles) * radius + center[2]
    return pts


def _full_eye_points(eye: ModelEye, options: ProjectionOptions) -> tuple[list[np.ndarray], list[str]]:
    blocks = [eye.pupil_center[None], eye.iris_center[None],
              eye.rotation_centers["azi"][None], eye.rotation_centers["ele"][None]]
    labels = [PUPIL_CENTER, IRIS_CENTER, AZI_ROTATION_CENTER, ELE_ROTATION_CENTER]

    iris = _circle(eye.iris_center, eye.iris_radius, options.n_iris_perim_points)
    blocks.append(iris)
    labels += [IRIS_PERIMETER] * len(iris)

    # Cornea: the part in front of the iris plane and within the iris radius
    anterior = sample_ellipsoid(eye.cornea_front_center, eye.cornea_front_radii,
                                options.anterior_chamber_ellipsoid_points, pole_axis=2)
    keep = (anterior[:, 0] > eye.iris_center[0]) & (np.hypot(anterior[:, 1], anterior[:, 2]) < eye.iris_radius)
    if not np.any(keep):
        raise DegenerateEyeGeometry("The pupil plane is set in front of the corneal apex")
    anterior = anterior[keep]
    blocks.append(anterior)
    labels += [ANTERIOR_CHAMBER] * len(anterior)

    blocks.append(np.zeros((1, 3)))
    labels.append(CORNEAL_APEX)

    # Posterior chamber: behind the iris plane and outside the anterior chamber radius
    posterior = sample_ellipsoid(eye.posterior_chamber_center, eye.posterior_chamber_radii,
                                 options.posterior_chamber_ellipsoid_points, pole_axis=0)
    anterior_radius = (anterior[:, 1].max() - anterior[:, 1].min()) / 2
    keep = (posterior[:, 0] < eye.iris_center[0]) & (np.hypot(posterior[:, 1], posterior[:, 2]) > anterior_radius)
    if not np.any(keep):
        raise DegenerateEyeGeometry("The iris center is behind the center of the posterior chamber")
    posterior = posterior[keep]
    blocks.append(posterior)
    labels += [POSTERIOR_CHAMBER] * len(posterior)
    return blocks, labels


def project_points(world_points: np.ndarray, scene: SceneGeometry) -> np.ndarray:
    """Pinhole projection of (N,3) scene points followed by lens distortion; (N,2) pixels."""
    X = np.asarray(world_points, dtype=float).reshape(-1, 3)
    homog = np.hstack([X, np.ones((len(X), 1))]) @ scene.P.T
    with np.errstate(divide="ignore", invalid="ignore"):
        px = homog[:, :2] / homog[:, 2:3]
    return apply_radial_distortion(px, scene.K, scene.radial_distortion)


def project(eye_pose: Sequence[float], scene: SceneGeometry,
            options: Optional[ProjectionOptions] = None) -> PupilProjection:
    """
    Project the pupil of the eye in `scene` at
    eye_pose = [azimuth deg, elevation deg, torsion deg, pupil radius mm].
    """
    options = options or projection_config.get()
    if options.n_pupil_perim_points < MIN_PERIMETER_POINTS:
        raise ValueError(f"n_pupil_perim_points must be >= {MIN_PERIMETER_POINTS}")
    azimuth, elevation, torsion, radius = (float(v) for v in eye_pose)
    eye = scene.eye

    pupil = _circle(eye.pupil_center, radius, options.n_pupil_perim_points)
    blocks, labels = [pupil], [PUPIL_PERIMETER] * len(pupil)
    if options.full_eye_model:
        more_blocks, more_labels = _full_eye_points(eye, options)
        blocks += more_blocks
        labels += more_labels
    eye_points = np.vstack(blocks)
    labels = np.asarray(labels)

    transform = eye_pose_transform(eye.rotation_centers, azimuth, elevation, torsion)

    nodal_error = np.full(len(eye_points), np.nan)
    if scene.corneal_optics is not None:
        idx = np.flatnonzero(np.isin(labels, REFRACTED_LABELS))
        eye_points[idx], nodal_error[idx] = virtual_image_points(eye_points[idx], scene, transform, options)

    head_points = transform.apply_points(eye_points)

    if options.full_eye_model and options.remove_obscured_points:
        keep = head_points[:, 0] > eye.rotation_center[0]
        eye_points, head_points = eye_points[keep], head_points[keep]
        labels, nodal_error = labels[keep], nodal_error[keep]

    world_points = head_points @ HEAD_TO_SCENE.T
    image_points = project_points(world_points, scene)

    return PupilProjection(
        ellipse=_fit_pupil(image_points[labels == PUPIL_PERIMETER], radius),
        image_points=image_points,
        world_points=world_points,
        eye_points=eye_points,
        labels=labels,
        nodal_error=nodal_error,
    )


def _fit_pupil(perimeter: np.ndarray, radius: float) -> np.ndarray:
    if not radius > 0 or len(perimeter) < MIN_PERIMETER_POINTS:
        return nan_ellipse()
    if not np.all(np.isfinite(perimeter)):
        return nan_ellipse()
    try:
        return implicit_to_transparent(fit_ellipse_direct(perimeter))
    except DegenerateEllipseFit:
        return nan_ellipse()
