"""
Exception taxonomy of the eye model.

Numeric failures (RefractionLimitExceeded, RayMissesSurface,
DegenerateEllipseFit) are raised only by the strict scalar routines; the
batched routines used inside searches turn them into NaN values instead.
Configuration failures (DegenerateEyeGeometry) are always raised.
"""
from __future__ import annotations

from typing import Any


class EyeModelError(Exception):
    """Base class for all eye model errors."""


class RayTraceError(EyeModelError):
    """
    A ray could not be followed through the optical system.

    Attributes:
        surface_index: Row of the optical system at which the trace stopped.
        partial: The trace result up to (and excluding) that surface.
    """
    def __init__(self, message: str, surface_index: int, partial: Any = None):
        super().__init__(message)
        self.surface_index = surface_index
        self.partial = partial


class RefractionLimitExceeded(RayTraceError):
    """Angle of incidence above the critical angle at a surface."""


class RayMissesSurface(RayTraceError):
    """Ray is tangent to, or misses, a spherical surface."""


class DegenerateEllipseFit(EyeModelError):
    """Point set does not determine an ellipse (near-linear or non-elliptical conic)."""


class DegenerateEyeGeometry(EyeModelError, ValueError):
    """Biometric configuration is physically inconsistent."""
