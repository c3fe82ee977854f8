"""
Refractive surface stack between the inside of the eye and the camera.

A ray leaving a point in the anterior chamber passes the back and front
surfaces of the cornea and, when worn, a contact lens and/or a spectacle lens.
The astigmatic cornea is traced in two planes (p1p2 and p1p3), each with the
apical radius of its own meridian, so there is one optical system per plane.

Surfaces are placed on the p1 axis of eye coordinates (apex at 0, positive
towards the camera). A surface with apex z_a whose center of curvature lies
toward the eye at distance R has center z_a - R and signed radius -R.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Optional

import numpy as np

from eyepose_system.model_eye.model_eye import ModelEye
from eyepose_system.optics.ray_trace import build_optical_system
from eyepose_system.optics.refractive_index import refractive_index

CONTACT_LENS_MATERIAL = "hydrogel"
SPECTACLE_LENS_MATERIAL = "polycarbonate"
CONTACT_LENS_CENTER_THICKNESS = 0.10       # mm, minus lenses
SPECTACLE_LENS_CENTER_THICKNESS = 2.0      # mm
# Surfaces flatter than this are traced as this radius
PLANO_RADIUS = 1e9


@dataclass(frozen=True)
class CornealOptics:
    p1p2: np.ndarray        # (m, 3) optical system traced in the horizontal plane
    p1p3: np.ndarray        # (m, 3) optical system traced in the vertical plane
    tilt_deg: float         # corneal axis rotation about the apex in p1p2
    tip_deg: float          # corneal axis rotation about the apex in p1p3
    spectral_domain: str

    def plane(self, name: str) -> tuple[np.ndarray, float]:
        """(optical system, axis rotation in radians) of plane 'p1p2' or 'p1p3'."""
        if name == "p1p2":
            return self.p1p2, float(np.deg2rad(self.tilt_deg))
        if name == "p1p3":
            return self.p1p3, float(np.deg2rad(self.tip_deg))
        raise ValueError(f"Unknown tracing plane '{name}'")


def _surface(apex: float, radius_toward_eye: float, index_after: float) -> tuple[float, float, float]:
    return apex - radius_toward_eye, -radius_toward_eye, index_after


def _front_radius_for_power(power_d: float, back_radius: float, n: float, thickness: float) -> float:
    """Front radius (mm) of a meniscus lens with given back radius and power (thick-lens formula)."""
    r2 = back_radius / 1000.0
    d = thickness / 1000.0
    denom = power_d / (n - 1) + 1 / r2
    if abs(denom) < 1e-12:
        return PLANO_RADIUS
    return 1000.0 * (1 + (n - 1) * d / (n * r2)) / denom


def _back_radius_for_power(power_d: float, front_radius: float, n: float, thickness: float) -> float:
    """Back radius (mm) of a meniscus lens with given front radius and power (thick-lens formula)."""
    r1 = front_radius / 1000.0
    d = thickness / 1000.0
    denom = 1 / r1 - power_d / (n - 1)
    if abs(denom) < 1e-12:
        return PLANO_RADIUS
    return 1000.0 * (1 - (n - 1) * d / (n * r1)) / denom


def vogel_base_curve(power_d: float) -> float:
    """Front surface power (D) of a spectacle lens chosen by Vogel's rule."""
    return power_d + 6.0 if power_d >= 0 else power_d / 2 + 6.0


def _lens_surfaces(cornea_radius: float, domain: str,
                   contact_lens_power: Optional[float],
                   spectacle_lens_power: Optional[float],
                   vertex_distance: float) -> list[tuple[float, float, float]]:
    n_air = refractive_index("air", domain)
    surfaces = []
    if contact_lens_power is not None:
        n_cl = refractive_index(CONTACT_LENS_MATERIAL, domain)
        t_cl = CONTACT_LENS_CENTER_THICKNESS + 0.02 * max(contact_lens_power, 0.0)
        r_front = _front_radius_for_power(contact_lens_power, cornea_radius, n_cl, t_cl)
        # back surface of the lens lies on the cornea, so the cornea front refracts into the lens
        surfaces.append(_surface(0.0, cornea_radius, n_cl))
        surfaces.append(_surface(t_cl, r_front, n_air))
    else:
        surfaces.append(_surface(0.0, cornea_radius, n_air))

    if spectacle_lens_power is not None:
        n_sp = refractive_index(SPECTACLE_LENS_MATERIAL, domain)
        t_sp = SPECTACLE_LENS_CENTER_THICKNESS
        r_front = (n_sp - 1) * 1000.0 / vogel_base_curve(spectacle_lens_power)
        r_back = _back_radius_for_power(spectacle_lens_power, r_front, n_sp, t_sp)
        surfaces.append(_surface(vertex_distance, r_back, n_sp))
        surfaces.append(_surface(vertex_distance + t_sp, r_front, n_air))
    return surfaces


def assemble_corneal_optics(eye: ModelEye) -> CornealOptics:
    """
    Build the per-plane optical systems for rays leaving the aqueous humor.
    """
    b = eye.biometry
    domain = b.spectral_domain
    n_aqueous = refractive_index("aqueous", domain)
    n_cornea = refractive_index("cornea", domain)

    systems = []
    for apex_radius in eye.cornea_apex_radii:
        surfaces = [_surface(-b.cornea_thickness, b.cornea_back_radius, n_cornea)]
        surfaces += _lens_surfaces(apex_radius, domain, b.contact_lens_power,
                                   b.spectacle_lens_power, b.spectacle_vertex_distance)
        systems.append(build_optical_system(surfaces, n_aqueous))

    return CornealOptics(
        p1p2=systems[0],
        p1p3=systems[1],
        tilt_deg=float(b.cornea_tilt),
        tip_deg=float(b.cornea_tip),
        spectral_domain=domain,
    )
