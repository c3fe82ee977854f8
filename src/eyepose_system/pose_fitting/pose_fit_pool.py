"""
Per-frame pose fitting on a process pool.

Frames are independent; each worker gets the (immutable) scene geometry and
config once per task and logs into the shared writer queue.
"""
from __future__ import annotations

import multiprocessing as mp
from functools import partial
from typing import Optional, Sequence

from eyepose_system.config.eye_model_config import PoseFitConfig, ProjectionOptions, pose_fit_config, projection_config
from eyepose_system.logging_utils.logging_setup import get_logger, get_log_queue, worker_logging_init
from eyepose_system.model_eye.scene_geometry import SceneGeometry
from eyepose_system.pose_fitting.eye_pose_fit import EyePoseFit, fit_eye_pose

log = get_logger(__name__)


def _fit_frame(observed, scene: SceneGeometry, config: PoseFitConfig,
               projection_options: ProjectionOptions) -> EyePoseFit:
    return fit_eye_pose(observed, scene, config=config, projection_options=projection_options)


def fit_eye_poses(observations: Sequence, scene: SceneGeometry,
                  config: Optional[PoseFitConfig] = None,
                  projection_options: Optional[ProjectionOptions] = None,
                  n_workers: Optional[int] = None) -> list[EyePoseFit]:
    """
    Fit one eye pose per observed boundary (points or transparent ellipse).
    Runs serially when n_workers (default: config.n_workers) is 1 or less.
    """
    cfg = config or pose_fit_config.get()
    opts = projection_options or projection_config.get()
    n_workers = cfg.n_workers if n_workers is None else n_workers
    work = partial(_fit_frame, scene=scene, config=cfg, projection_options=opts)

    log.info(f"Fitting {len(observations)} frames with {max(n_workers, 1)} worker(s)")
    if n_workers <= 1 or len(observations) < 2:
        results = [work(obs) for obs in observations]
    else:
        ctx = mp.get_context("spawn")
        with ctx.Pool(processes=n_workers, initializer=worker_logging_init,
                      initargs=(get_log_queue(),)) as pool:
            results = pool.map(work, observations, chunksize=max(1, len(observations) // (4 * n_workers)))

    n_failed = sum(not r.is_success for r in results)
    if n_failed:
        log.warning(f"{n_failed} of {len(results)} frames did not fit")
    return results


if __name__ == "__main__":
    import numpy as np

    from eyepose_system.logging_utils.logging_setup import install_crash_hooks, log_to_console, start_logging
    from eyepose_system.model_eye.scene_geometry import create_scene_geometry
    from eyepose_system.projection.pupil_projection import project

    log_path = start_logging()
    install_crash_hooks()
    log_to_console()
    print(f"Logging to {log_path}")

    demo_scene = create_scene_geometry(refraction=False)
    poses = [[azi, ele, 0.0, 2.5] for azi in (-15.0, 0.0, 15.0) for ele in (-10.0, 10.0)]
    ellipses = [project(p, demo_scene).ellipse for p in poses]
    fits = fit_eye_poses(ellipses, demo_scene, n_workers=2)
    for true_pose, fit in zip(poses, fits):
        print(np.round(true_pose, 2), "->", np.round(fit.eye_pose, 3), f"rmse {fit.rmse:.2e}")
