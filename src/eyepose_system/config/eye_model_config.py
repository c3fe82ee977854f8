# config/eye_model_config.py
from __future__ import annotations
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from typing import Any
import tomli
import tomli_w
from eyepose_system.helpers.thread_safe_config import ThreadSafeConfig


@dataclass
class ProjectionOptions:
    """
    Knobs of the forward projector.

    The refraction_* fields control the per-point emission-angle search
    through the cornea; they only matter when corneal optics are supplied.
    """
    full_eye_model: bool = False
    n_pupil_perim_points: int = 5           # >= 5 to determine the image ellipse
    n_iris_perim_points: int = 5
    posterior_chamber_ellipsoid_points: int = 30
    anterior_chamber_ellipsoid_points: int = 30
    remove_obscured_points: bool = True
    calc_nodal_intersect_error: bool = False
    # Emission-angle search
    refraction_max_iter: int = 25
    refraction_tol_rad: float = 1e-10       # emission angle step at convergence


@dataclass
class PoseFitConfig:
    """Bounds, start point and stopping rules of the inverse pose fitter."""
    # [azimuth deg, elevation deg, pupil radius mm]
    x0: tuple[float, float, float] = (0.0, 0.0, 2.0)
    lower_bounds: tuple[float, float, float] = (-35.0, -25.0, 0.5)
    upper_bounds: tuple[float, float, float] = (35.0, 25.0, 4.0)
    # Points sampled from an observed ellipse when no perimeter is given
    n_boundary_points: int = 12
    # Residual (px) assigned to every point when the model ellipse is undefined
    nan_residual_px: float = 100.0
    xtol: float = 1e-12
    ftol: float = 1e-12
    gtol: float = 1e-12
    max_nfev: int = 400
    n_workers: int = 1


@dataclass
class SceneSearchConfig:
    """Outer scene geometry search."""
    method: str = "Powell"                  # any bounded derivative-free scipy method
    max_fev_per_stage: int = 3000
    ftol: float = 1e-8
    nominal_pupil_radius_mm: float = 2.0
    # Error (px) charged to a frame whose model ellipse is undefined
    nan_frame_error_px: float = 1000.0
    # Objective value for parameter vectors that violate K1 < K2
    infeasible_fval: float = 1e6
    n_boundary_points: int = 12
    # Extra optimizer runs per stage, each restarted from the best point so far
    n_restarts: int = 2
    # Least-squares refinement of every stage on the per-point residuals
    polish: bool = True
    polish_max_nfev: int = 200
    polish_tol: float = 1e-12
    polish_diff_step: float = 1e-6


EYE_MODEL_TOML_PATH = Path(__file__).parent / "eye_model_config.toml"

_SECTIONS = {
    "projection": ProjectionOptions,
    "pose_fit": PoseFitConfig,
    "scene_search": SceneSearchConfig,
}


def _toml_to_kwargs(cls, raw: dict[str, Any]) -> dict[str, Any]:
    """Convert TOML values into constructor kwargs (arrays -> tuples, unknown keys rejected)."""
    known = {f.name for f in fields(cls)}
    unknown = set(raw) - known
    if unknown:
        raise KeyError(f"Unknown keys for {cls.__name__}: {sorted(unknown)}")
    out = dict(raw)
    for k, v in out.items():
        if isinstance(v, list):
            out[k] = tuple(float(x) for x in v)
    return out


def _dataclass_to_toml_dict(cfg) -> dict[str, Any]:
    """Convert dataclass to TOML-friendly dict (tuples -> lists)."""
    d = asdict(cfg)
    for k, v in d.items():
        if isinstance(v, tuple):
            d[k] = list(v)
    return d


def load_config_section(path: Path, section: str):
    cls = _SECTIONS[section]
    try:
        with path.open("rb") as f:
            data = tomli.load(f)
    except FileNotFoundError:
        data = {}
    raw = data.get(section, {})
    return cls(**_toml_to_kwargs(cls, raw))


def save_config_section(path: Path, section: str, config: ThreadSafeConfig):
    """Persist one ThreadSafeConfig section back to TOML, keeping the other sections."""
    try:
        with path.open("rb") as f:
            data = tomli.load(f)
    except FileNotFoundError:
        data = {}

    data[section] = _dataclass_to_toml_dict(config.get_raw())

    with path.open("wb") as f:
        tomli_w.dump(data, f)


# Global configuration instances
projection_config = ThreadSafeConfig(load_config_section(EYE_MODEL_TOML_PATH, "projection"))
pose_fit_config = ThreadSafeConfig(load_config_section(EYE_MODEL_TOML_PATH, "pose_fit"))
scene_search_config = ThreadSafeConfig(load_config_section(EYE_MODEL_TOML_PATH, "scene_search"))
