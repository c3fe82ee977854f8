"""
Biometric model of a single eye.

Eye coordinates (mm) have the origin at the corneal apex:
    p1: depth, positive towards the camera (the back of the eye is negative)
    p2: horizontal, for the right eye negative is temporal
    p3: vertical, positive is downward

All values are for the un-rotated eye looking along p1.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from eyepose_system.errors import DegenerateEyeGeometry

# Keratometric index 1.3375 -> R[mm] = 337.5 / K[D]
KERATOMETRIC_CONSTANT = 337.5

EMMETROPIC_AXIAL_LENGTH = 23.58
# Atchison (2006), change per diopter of spherical refraction
AXIAL_LENGTH_PER_DIOPTER = -0.299
POSTERIOR_RADII_EMMETROPIC = (10.148, 11.455, 11.365)
POSTERIOR_RADII_PER_DIOPTER = (-0.004, -0.030, -0.026)


@dataclass(frozen=True)
class EyeBiometry:
    """
    Measurable and searchable parameters of an eye. Angles in degrees,
    lengths in mm, curvature in diopters.
    """
    laterality: str = "right"
    spherical_ametropia: float = 0.0
    axial_length: Optional[float] = None        # None: derived from the ametropia
    spectral_domain: str = "nir"

    # Cornea
    cornea_axial_radius: float = 14.104
    k1: float = 44.2410                         # flattest meridian
    k2: float = 45.6302                         # steepest meridian
    cornea_torsion: float = 0.0                 # axis of the flattest meridian
    cornea_tilt: float = 2.5                    # corneal axis rotation in the p1p2 plane
    cornea_tip: float = 0.0                     # corneal axis rotation in the p1p3 plane
    cornea_thickness: float = 0.55
    cornea_back_radius: float = 6.5

    # Pupil and iris
    pupil_center_depth: float = 3.7
    pupil_center_offset: tuple[float, float] = (0.0, 0.0)   # (p2, p3), given for the right eye
    iris_center_depth: float = 3.9
    iris_radius: float = 5.57

    # Rotation
    azi_rotation_depth: float = 14.7
    ele_rotation_depth: float = 12.0
    rotation_center_joint: float = 1.0          # scales both rotation centers
    rotation_center_diff: float = 1.0           # moves azi and ele centers apart

    # Corrective lenses (diopters); None means no lens
    contact_lens_power: Optional[float] = None
    spectacle_lens_power: Optional[float] = None
    spectacle_vertex_distance: float = 12.0


@dataclass(frozen=True)
class ModelEye:
    biometry: EyeBiometry
    axial_length: float
    cornea_front_center: np.ndarray
    cornea_front_radii: np.ndarray           # (p1, p2, p3) semi-axes of the front ellipsoid
    cornea_apex_radii: tuple[float, float]   # apical radius in the (p1p2, p1p3) planes
    cornea_back_center: np.ndarray
    pupil_center: np.ndarray
    iris_center: np.ndarray
    iris_radius: float
    posterior_chamber_center: np.ndarray
    posterior_chamber_radii: np.ndarray      # (p1, p2, p3)
    rotation_centers: dict[str, np.ndarray] = field(default_factory=dict)

    @property
    def rotation_center(self) -> np.ndarray:
        """Main rotation center, behind which points are hidden from the camera."""
        return self.rotation_centers["azi"]


def keratometry_to_radius(k: float) -> float:
    return KERATOMETRIC_CONSTANT / k


def meridional_radius(k1: float, k2: float, torsion: float, meridian: float) -> float:
    """
    Apical radius of curvature (mm) of an astigmatic cornea along a meridian
    (deg), from Euler's formula for the normal curvature of a surface.
    """
    phi = np.deg2rad(meridian - torsion)
    curvature = (np.cos(phi) ** 2 / keratometry_to_radius(k1)
                 + np.sin(phi) ** 2 / keratometry_to_radius(k2))
    return float(1.0 / curvature)


def sample_ellipsoid(center, radii, n: int, pole_axis: int = 2) -> np.ndarray:
    """
    Unique vertices of an (n+1) x (n+1) latitude/longitude mesh on an
    axis-aligned ellipsoid; the poles lie on `pole_axis`.
    """
    center = np.asarray(center, dtype=float)
    radii = np.asarray(radii, dtype=float)
    theta = np.linspace(-np.pi, np.pi, n + 1)
    phi = np.linspace(-np.pi / 2, np.pi / 2, n + 1)[:, None]
    ring_a = np.cos(phi) * np.cos(theta)
    ring_b = np.cos(phi) * np.sin(theta)
    pole = np.sin(phi) * np.ones_like(theta)
    others = [ax for ax in range(3) if ax != pole_axis]

    pts = np.empty((ring_a.size, 3))
    pts[:, others[0]] = ring_a.ravel()
    pts[:, others[1]] = ring_b.ravel()
    pts[:, pole_axis] = pole.ravel()
    pts = pts * radii + center
    return np.unique(np.round(pts, 12), axis=0)


def build_model_eye(biometry: Optional[EyeBiometry] = None) -> ModelEye:
    """
    Assemble the eye geometry from biometry.

    Raises:
        DegenerateEyeGeometry: when the structures are ordered impossibly along
            the depth axis or a radius/curvature is not positive.
    """
    b = biometry or EyeBiometry()
    _check_positive(b)

    if b.laterality.lower() not in ("right", "left"):
        raise DegenerateEyeGeometry(f"Laterality must be 'right' or 'left', got '{b.laterality}'")
    mirror = 1.0 if b.laterality.lower() == "right" else -1.0

    sr = b.spherical_ametropia
    axial_length = b.axial_length if b.axial_length is not None \
        else EMMETROPIC_AXIAL_LENGTH + AXIAL_LENGTH_PER_DIOPTER * sr
    posterior_radii = np.array([r + dr * sr for r, dr in zip(POSTERIOR_RADII_EMMETROPIC, POSTERIOR_RADII_PER_DIOPTER)])
    if axial_length <= 0 or np.any(posterior_radii <= 0):
        raise DegenerateEyeGeometry(f"Non-physical eye length for ametropia {sr} D")
    posterior_center = np.array([-(axial_length - posterior_radii[0]), 0.0, 0.0])

    # Front surface: prolate ellipsoid sharing the apex, one apical radius per plane
    r_p1p2 = meridional_radius(b.k1, b.k2, b.cornea_torsion, 0.0)
    r_p1p3 = meridional_radius(b.k1, b.k2, b.cornea_torsion, 90.0)
    a = b.cornea_axial_radius
    front_radii = np.array([a, np.sqrt(r_p1p2 * a), np.sqrt(r_p1p3 * a)])
    front_center = np.array([-a, 0.0, 0.0])
    back_center = np.array([-b.cornea_thickness - b.cornea_back_radius, 0.0, 0.0])

    off_p2, off_p3 = b.pupil_center_offset
    pupil_center = np.array([-b.pupil_center_depth, mirror * off_p2, off_p3])
    iris_center = np.array([-b.iris_center_depth, 0.0, 0.0])

    scale = axial_length / EMMETROPIC_AXIAL_LENGTH
    joint, diff = b.rotation_center_joint, b.rotation_center_diff
    rotation_centers = {
        "azi": np.array([-b.azi_rotation_depth * scale * joint * diff, 0.0, 0.0]),
        "ele": np.array([-b.ele_rotation_depth * scale * joint / diff, 0.0, 0.0]),
        "tor": np.zeros(3),
    }

    if pupil_center[0] >= 0:
        raise DegenerateEyeGeometry("The pupil plane is set in front of the corneal apex")
    if iris_center[0] <= posterior_center[0]:
        raise DegenerateEyeGeometry("The iris center is behind the center of the posterior chamber")
    if -b.cornea_thickness <= iris_center[0]:
        raise DegenerateEyeGeometry("The back of the cornea is behind the iris plane")
    if rotation_centers["azi"][0] <= -axial_length:
        raise DegenerateEyeGeometry("The rotation center lies behind the back of the eye")

    return ModelEye(
        biometry=b,
        axial_length=float(axial_length),
        cornea_front_center=front_center,
        cornea_front_radii=front_radii,
        cornea_apex_radii=(r_p1p2, r_p1p3),
        cornea_back_center=back_center,
        pupil_center=pupil_center,
        iris_center=iris_center,
        iris_radius=float(b.iris_radius),
        posterior_chamber_center=posterior_center,
        posterior_chamber_radii=posterior_radii,
        rotation_centers=rotation_centers,
    )


def _check_positive(b: EyeBiometry) -> None:
    for name in ("cornea_axial_radius", "k1", "k2", "cornea_thickness", "cornea_back_radius",
                 "iris_radius", "rotation_center_joint", "rotation_center_diff"):
        if not getattr(b, name) > 0:
            raise DegenerateEyeGeometry(f"{name} must be positive, got {getattr(b, name)}")
