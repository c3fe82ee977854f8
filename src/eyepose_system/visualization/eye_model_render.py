"""Diagnostic plots of the ray trace and of the projected eye model."""
from __future__ import annotations
from typing import Optional

import numpy as np
import matplotlib.pyplot as plt

from eyepose_system.errors import RayTraceError
from eyepose_system.optics.ray_trace import RayTraceResult, ray_trace_centered_spherical_surfaces
from eyepose_system.projection.pupil_projection import (
    PupilProjection, PUPIL_PERIMETER, PUPIL_CENTER, IRIS_PERIMETER, IRIS_CENTER, ANTERIOR_CHAMBER,
    POSTERIOR_CHAMBER, CORNEAL_APEX, AZI_ROTATION_CENTER, ELE_ROTATION_CENTER,
)
from eyepose_system.projection.transparent_ellipse import is_nan_ellipse, sample_boundary

# label -> (marker, color)
_STYLE = {
    POSTERIOR_CHAMBER: (".", "0.75"),
    ANTERIOR_CHAMBER: (".", "tab:cyan"),
    IRIS_PERIMETER: ("o", "tab:green"),
    IRIS_CENTER: ("+", "tab:green"),
    PUPIL_PERIMETER: ("o", "k"),
    PUPIL_CENTER: ("+", "k"),
    CORNEAL_APEX: ("x", "tab:blue"),
    AZI_ROTATION_CENTER: ("^", "tab:red"),
    ELE_ROTATION_CENTER: ("v", "tab:red"),
}


def plot_ray_trace(optical_system: np.ndarray, coords, theta: float,
                   ax: Optional[plt.Axes] = None, surface_labels: Optional[list[str]] = None):
    """
    Draw the surfaces (arcs near the axis), the ray segments between them and
    the dashed virtual image lines back to the axis. A ray that fails is
    drawn up to the failing surface.

    Returns (fig, ax, result).
    """
    if ax is None:
        fig, ax = plt.subplots(figsize=(8, 4))
    else:
        fig = ax.figure

    try:
        result: RayTraceResult = ray_trace_centered_spherical_surfaces(coords, theta, optical_system)
        title = f"theta out = {np.rad2deg(result.theta_out):.3f} deg"
    except RayTraceError as e:
        result = e.partial
        title = str(e)

    hits = result.intersection_coords
    h_max = max(np.nanmax(np.abs(hits[:, 1])) * 1.5, 1.0)

    for i in range(1, optical_system.shape[0]):
        c, r = optical_system[i, 0], optical_system[i, 1]
        h = np.linspace(-min(h_max, abs(r)), min(h_max, abs(r)), 100)
        z = c - np.sign(r) * np.sqrt(r ** 2 - h ** 2)
        ax.plot(z, h, color="tab:blue", lw=1)
        if surface_labels and i - 1 < len(surface_labels):
            ax.text(z[50], h_max, surface_labels[i - 1], ha="center", va="bottom", fontsize=8)

    ax.plot(hits[:, 0], hits[:, 1], "-o", color="tab:red", ms=3, lw=1.2)
    # virtual image lines: from each hit back to the axis intersection of the refracted ray
    for (zi, hi), (iz, _) in zip(hits[1:], result.image_coords[1:]):
        ax.plot([zi, iz], [hi, 0.0], "--", color="tab:red", lw=0.6, alpha=0.6)
    if len(hits) == optical_system.shape[0]:
        out = result.output_ray
        direction = out[1] - out[0]
        end = hits[-1] + direction * (hits[-1, 0] - hits[0, 0] + 5) / max(direction[0], 1e-9)
        ax.plot([hits[-1, 0], end[0]], [hits[-1, 1], end[1]], color="tab:red", lw=1.2)

    ax.axhline(0, color="0.5", lw=0.5)
    ax.set_xlabel("optical axis (mm)")
    ax.set_ylabel("height (mm)")
    ax.set_title(title)
    ax.set_aspect("equal", adjustable="datalim")
    return fig, ax, result


def render_eye_model(projection: PupilProjection, ax: Optional[plt.Axes] = None,
                     image_size: Optional[tuple[int, int]] = None):
    """
    Scatter of the projected model points per label, with the fitted pupil
    ellipse; image y axis points down. Returns (fig, ax).
    """
    if ax is None:
        fig, ax = plt.subplots(figsize=(6, 5))
    else:
        fig = ax.figure

    for label, (marker, color) in _STYLE.items():
        pts = projection.select(label)
        if len(pts):
            ax.scatter(pts[:, 0], pts[:, 1], marker=marker, color=color, s=8, label=label)

    if not is_nan_ellipse(projection.ellipse):
        outline = sample_boundary(projection.ellipse, 100)
        outline = np.vstack([outline, outline[:1]])
        ax.plot(outline[:, 0], outline[:, 1], "-", color="tab:orange", lw=1)

    if image_size is not None:
        ax.set_xlim(0, image_size[0])
        ax.set_ylim(image_size[1], 0)
    else:
        ax.invert_yaxis()
    ax.set_aspect("equal")
    ax.set_xlabel("x (px)")
    ax.set_ylabel("y (px)")
    ax.legend(fontsize=7, loc="upper right")
    return fig, ax
