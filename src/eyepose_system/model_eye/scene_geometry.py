# scene_geometry.py
from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Optional, Iterable, Union

import numpy as np

from eyepose_system.model_eye.model_eye import EyeBiometry, ModelEye, build_model_eye
from eyepose_system.optics.corneal_optics import CornealOptics, assemble_corneal_optics

# Default IR camera (pixels) and its radial distortion (k1, k2)
DEFAULT_INTRINSIC_MATRIX = np.array([[2627.0, 0.0, 338.1],
                                     [0.0, 2628.1, 246.2],
                                     [0.0, 0.0, 1.0]])
DEFAULT_RADIAL_DISTORTION = (-0.3517, 3.5353)
DEFAULT_CAMERA_TRANSLATION = (0.0, 0.0, 120.0)


def camera_rotation(torsion_deg: float) -> np.ndarray:
    """
    Scene -> camera rotation. Scene coordinates are (p2, p3, p1): X right,
    Y down the head, Z towards the camera. The camera looks back along -Z;
    torsion rolls it about its optical axis.
    """
    t = np.deg2rad(torsion_deg)
    c, s = np.cos(t), np.sin(t)
    Rz = np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])
    return Rz @ np.diag([1.0, -1.0, -1.0])


@dataclass(frozen=True)
class SceneGeometry:
    """
    Everything the forward projector needs: camera intrinsics, distortion,
    camera pose relative to the eye, the eye and (optionally) its optics.

    K : (3,3) intrinsics
    radial_distortion : (2,) k1, k2 on normalized coordinates
    R : (3,3) rotation (scene->camera)
    t : (3,)  translation (scene->camera), [horizontal, vertical, depth] in mm
    """
    K: np.ndarray
    radial_distortion: np.ndarray
    R: np.ndarray
    t: np.ndarray
    eye: ModelEye
    corneal_optics: Optional[CornealOptics] = None
    camera_torsion: float = 0.0

    def __post_init__(self):
        object.__setattr__(self, "K", np.asarray(self.K, dtype=np.float64).reshape(3, 3))
        object.__setattr__(self, "radial_distortion", np.asarray(self.radial_distortion, dtype=np.float64).reshape(2))
        object.__setattr__(self, "R", np.asarray(self.R, dtype=np.float64).reshape(3, 3))
        object.__setattr__(self, "t", np.asarray(self.t, dtype=np.float64).reshape(3))

    @property
    def P(self) -> np.ndarray:
        """3x4 projection matrix K [R | t]."""
        return self.K @ np.hstack([self.R, self.t.reshape(3, 1)])

    @property
    def C(self) -> np.ndarray:
        """Camera nodal point in scene coordinates."""
        return -self.R.T @ self.t

    @property
    def refraction(self) -> bool:
        return self.corneal_optics is not None

    def with_camera(self, torsion: Optional[float] = None,
                    translation: Optional[Iterable[float]] = None) -> "SceneGeometry":
        torsion = self.camera_torsion if torsion is None else float(torsion)
        t = self.t if translation is None else np.asarray(translation, dtype=float)
        return replace(self, R=camera_rotation(torsion), t=t, camera_torsion=torsion)

    def without_refraction(self) -> "SceneGeometry":
        return replace(self, corneal_optics=None)


def create_scene_geometry(eye: Union[ModelEye, EyeBiometry, None] = None,
                          intrinsic_matrix: Optional[np.ndarray] = None,
                          radial_distortion: Optional[Iterable[float]] = None,
                          camera_torsion: float = 0.0,
                          camera_translation: Iterable[float] = DEFAULT_CAMERA_TRANSLATION,
                          refraction: bool = True) -> SceneGeometry:
    """
    Assemble a scene geometry; any missing piece takes its default. With
    refraction=False the projector skips the cornea (plain perspective).
    """
    if eye is None or isinstance(eye, EyeBiometry):
        eye = build_model_eye(eye)
    K = DEFAULT_INTRINSIC_MATRIX if intrinsic_matrix is None else intrinsic_matrix
    dist = DEFAULT_RADIAL_DISTORTION if radial_distortion is None else tuple(radial_distortion)
    return SceneGeometry(
        K=K,
        radial_distortion=dist,
        R=camera_rotation(camera_torsion),
        t=np.asarray(tuple(camera_translation), dtype=float),
        eye=eye,
        corneal_optics=assemble_corneal_optics(eye) if refraction else None,
        camera_torsion=float(camera_torsion),
    )
