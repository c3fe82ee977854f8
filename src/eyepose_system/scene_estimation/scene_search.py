"""
Staged search for the scene geometry across one or more scenes.

Each stage searches a subset of the parameter vector (the union of its named
sets) with a bound-constrained derivative-free optimizer, starting from the
best vector found so far. The objective is the p-norm mean of the scene
errors times the regularization penalty; vectors that violate K1 <= K2 are
rejected with a large value. The best vector seen is tracked here, outside
the optimizer, so it survives an optimizer that stops on a worse point.

The optimizer is restarted from the best point while that keeps improving,
and each stage ends with a least-squares refinement on the per-point frame
residuals. The refinement only ever replaces the stage result when it scores
better on the objective.

Parameters whose bounds have zero width are locked at their start value.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional, Sequence, Union

import numpy as np
from scipy.optimize import least_squares, minimize

from eyepose_system.config.eye_model_config import ProjectionOptions, SceneSearchConfig, scene_search_config
from eyepose_system.logging_utils.logging_setup import get_logger
from eyepose_system.model_eye.scene_geometry import SceneGeometry
from eyepose_system.scene_estimation.model_params import STRATEGIES, ModelParams, SearchStrategy
from eyepose_system.scene_estimation.scene import SceneData, SceneEvaluation, evaluate_scene, n_residuals

log = get_logger(__name__)


def combine_scene_errors(fvals: Sequence[float], p: float) -> float:
    """p-norm mean of per-scene errors; p = 1 is the mean absolute error."""
    f = np.abs(np.asarray(fvals, dtype=float))
    return float(np.mean(f ** p) ** (1.0 / p))


@dataclass
class _BestTracker:
    x: Optional[np.ndarray] = None
    fval: float = np.inf
    n_evals: int = 0

    def offer(self, x: np.ndarray, fval: float) -> None:
        self.n_evals += 1
        if np.isnan(fval):
            fval = np.inf
        if self.x is None or fval < self.fval:
            self.x, self.fval = x.copy(), fval


@dataclass
class SceneSearchResult:
    x: np.ndarray
    fval: float
    model: ModelParams
    strategy: SearchStrategy
    evaluations: list[SceneEvaluation]
    stage_fvals: list[float] = field(default_factory=list)
    n_evals: int = 0

    @property
    def scene_geometries(self) -> list[SceneGeometry]:
        return [ev.scene_geometry for ev in self.evaluations]


def _evaluate(x: np.ndarray, model: ModelParams, scenes: Sequence[SceneData], strategy: SearchStrategy,
              config: SceneSearchConfig,
              projection_options: Optional[ProjectionOptions]) -> tuple[float, Optional[np.ndarray]]:
    """Objective value and penalty-scaled residual vector (None when infeasible)."""
    violation = model.constraint_violation(x)
    if violation > 0:
        return config.infeasible_fval + violation, None
    evaluations = [evaluate_scene(model, data, model.sub_x(x, k), config=config,
                                  projection_options=projection_options)
                   for k, data in enumerate(scenes)]
    penalty = model.penalty(x, strategy.penalty_weight)
    fval = combine_scene_errors([ev.fval for ev in evaluations], strategy.multi_scene_norm) * penalty
    residuals = np.sqrt(penalty) * np.concatenate([ev.residuals for ev in evaluations])
    return fval, residuals


def objective(x: np.ndarray, model: ModelParams, scenes: Sequence[SceneData], strategy: SearchStrategy,
              config: SceneSearchConfig,
              projection_options: Optional[ProjectionOptions] = None) -> float:
    return _evaluate(x, model, scenes, strategy, config, projection_options)[0]


def estimate_scene_geometry(scenes: Sequence[SceneData],
                            strategy: Union[str, SearchStrategy] = "gazeCal",
                            model: Optional[ModelParams] = None,
                            x0: Optional[np.ndarray] = None,
                            config: Optional[SceneSearchConfig] = None,
                            projection_options: Optional[ProjectionOptions] = None) -> SceneSearchResult:
    """
    Search camera position, eye biometry and head alignment for the scenes.

    strategy: a name from STRATEGIES or a SearchStrategy
    model: parameter table; by default built from the scenes' initial camera
        torsion and depth and the cornea torsion of the first scene
    x0: start vector (default model.x0)
    """
    if not scenes:
        raise ValueError("need at least one scene")
    cfg = config or scene_search_config.get()
    if isinstance(strategy, str):
        try:
            strategy = STRATEGIES[strategy]
        except KeyError:
            raise ValueError(f"Unknown search strategy '{strategy}'") from None
    if model is None:
        model = ModelParams.build(
            len(scenes),
            camera_torsion=[s.camera_torsion for s in scenes],
            camera_depth=[s.camera_depth for s in scenes],
            cornea_torsion=scenes[0].biometry.cornea_torsion,
        )
    if model.n_scenes != len(scenes):
        raise ValueError(f"parameter table is for {model.n_scenes} scenes, got {len(scenes)}")

    x = np.array(model.x0 if x0 is None else x0, dtype=float)
    if x.shape != model.x0.shape:
        raise ValueError(f"x0 must have {model.n_params} entries")
    lower, upper = model.lower, model.upper
    best = _BestTracker()
    stage_fvals = []
    n_res = sum(n_residuals(data) for data in scenes)

    def f_full(x_full):
        fval, residuals = _evaluate(x_full, model, scenes, strategy, cfg, projection_options)
        best.offer(x_full, fval)
        return fval, residuals

    for stage, sets in enumerate(strategy.stages):
        idx = model.stage_idx(sets)
        idx = idx[upper[idx] > lower[idx]]
        log.info(f"Stage {stage + 1}/{len(strategy.stages)}: searching {len(idx)} parameters {list(sets)}")

        if idx.size == 0:
            f_full(x)
        else:
            lb, span = lower[idx], upper[idx] - lower[idx]

            def to_full(u, base, idx=idx, lb=lb, span=span):
                x_full = base.copy()
                x_full[idx] = lb + np.clip(u, 0.0, 1.0) * span
                return x_full

            def to_unit(x_full, idx=idx, lb=lb, span=span):
                return np.clip((x_full[idx] - lb) / span, 0.0, 1.0)

            start = x.copy()
            for attempt in range(cfg.n_restarts + 1):
                f_before = best.fval
                base = start if best.x is None else best.x.copy()
                res = minimize(lambda u, base=base: f_full(to_full(u, base))[0], to_unit(base),
                               method=cfg.method, bounds=[(0.0, 1.0)] * idx.size,
                               options={"xtol": strategy.tol_mesh, "ftol": cfg.ftol,
                                        "maxfev": cfg.max_fev_per_stage})
                log.debug(f"Stage {stage + 1} run {attempt + 1}: {res.message} after {res.nfev} evaluations, "
                          f"best fval {best.fval:.6g}")
                if not best.fval < f_before - cfg.ftol * (1.0 + abs(best.fval)):
                    break

            if cfg.polish:
                _polish(f_full, to_full, to_unit, best, n_res, cfg, stage)

        # next stage starts from the best point seen so far
        x = best.x.copy()
        stage_fvals.append(best.fval)
        log.info(f"Stage {stage + 1} done: best fval {best.fval:.6g} after {best.n_evals} evaluations")

    evaluations = [evaluate_scene(model, data, model.sub_x(x, k), config=cfg, projection_options=projection_options)
                   for k, data in enumerate(scenes)]
    n_undefined = sum(ev.n_undefined for ev in evaluations)
    if n_undefined:
        log.warning(f"{n_undefined} frames have no model ellipse at the solution")
    return SceneSearchResult(x=x, fval=best.fval, model=model, strategy=strategy, evaluations=evaluations,
                             stage_fvals=stage_fvals, n_evals=best.n_evals)


def _polish(f_full, to_full, to_unit, best: _BestTracker, n_res: int, cfg: SceneSearchConfig, stage: int) -> None:
    """Trust-region least squares on the residuals of the current stage, from the best point."""
    base = best.x.copy()
    infeasible = np.full(n_res, np.sqrt(cfg.infeasible_fval))

    def residuals(u):
        res = f_full(to_full(u, base))[1]
        return infeasible if res is None else res

    f_before = best.fval
    fit = least_squares(residuals, to_unit(base), bounds=(0.0, 1.0), method="trf",
                        diff_step=cfg.polish_diff_step, max_nfev=cfg.polish_max_nfev,
                        xtol=cfg.polish_tol, ftol=cfg.polish_tol, gtol=cfg.polish_tol)
    # the tracker has seen every residual evaluation; make sure the end point is scored too
    f_full(to_full(fit.x, base))
    log.debug(f"Stage {stage + 1} refinement: {fit.message} after {fit.nfev} evaluations, "
              f"fval {f_before:.6g} -> {best.fval:.6g}")
