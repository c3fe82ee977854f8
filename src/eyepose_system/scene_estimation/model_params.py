"""
Flat parameter vector of the scene search and its named sub-blocks.

    x = [ head (4) | eye (9) | scene_1 (6) | ... | scene_n (6) ]

Offsets are computed once in ModelParams.build; accessors return integer
index arrays into x. Named sets select parameters of one block (for the
scene block: the same parameters of every scene), and a search stage is a
list of "block.set" names.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence, Union

import numpy as np


@dataclass(frozen=True)
class BlockSpec:
    labels: tuple[str, ...]
    units: tuple[str, ...]
    x0: tuple[float, ...]
    bounds: tuple[float, ...]           # half-width of the search interval around x0
    sets: Mapping[str, tuple[int, ...]]

    @property
    def n_params(self) -> int:
        return len(self.labels)


HEAD_BLOCK = BlockSpec(
    labels=("timeShift", "azi", "ele", "torsion"),
    units=("frames", "deg", "deg", "deg"),
    x0=(0.0, 0.0, 0.0, 0.0),
    bounds=(30.0, 30.0, 30.0, 30.0),
    sets={"phaseAndRotation": (0, 1, 2, 3), "all": (0, 1, 2, 3)},
)

EYE_BLOCK = BlockSpec(
    labels=("corneaAxialRadius", "K1", "K2", "torsion", "tilt", "tip", "joint", "diff", "commonDepth"),
    units=("mm", "diopters", "diopters", "deg", "deg", "deg", "proportion", "proportion", "mm"),
    x0=(14.104, 44.2410, 45.6302, 0.0, 2.5, 0.0, 1.0, 1.0, 0.0),
    bounds=(5.0, 5.0, 5.0, 180.0, 5.0, 2.5, 0.25, 0.25, 30.0),
    sets={
        "corneaAxialRadius": (0,),
        "k1k2": (1, 2),
        "kvals": (1, 2, 3, 4, 5),
        "rotationCenterScalers": (6, 7),
        "commonDepth": (8,),
        "all": tuple(range(9)),
    },
)

SCENE_BLOCK = BlockSpec(
    labels=("pp_azi", "pp_ele", "torsion", "horiz", "vert", "depth"),
    units=("deg", "deg", "deg", "mm", "mm", "mm"),
    x0=(0.0, 0.0, 0.0, 0.0, 0.0, 120.0),
    bounds=(10.0, 10.0, 10.0, 20.0, 20.0, 20.0),
    sets={
        "primaryPosition": (0, 1),
        "cameraPosition": (2, 3, 4, 5),
        "translation": (3, 4, 5),
        "moveInPlane": (2, 3, 4),
        "depth": (5,),
        "all": tuple(range(6)),
    },
)

FIELDS = ("head", "eye", "scene")


@dataclass(frozen=True)
class SearchStrategy:
    """
    stages: per stage, the "block.set" names searched in that stage
    penalty_weight: (common depth, camera torsion) regularization weights
    multi_scene_norm: p of the p-norm mean combining scene errors
    tol_mesh: termination tolerance on the normalized parameters
    """
    stages: tuple[tuple[str, ...], ...]
    penalty_weight: tuple[float, float] = (1.0, 1.0)
    multi_scene_norm: float = 1.0
    tol_mesh: float = 1e-2


_CALIBRATION_STAGES = (
    ("eye.rotationCenterScalers", "eye.corneaAxialRadius", "eye.commonDepth", "scene.cameraPosition"),
    ("eye.corneaAxialRadius", "eye.kvals", "eye.commonDepth", "scene.cameraPosition"),
)

STRATEGIES: dict[str, SearchStrategy] = {
    "gazeCal": SearchStrategy(
        stages=_CALIBRATION_STAGES + (("scene.primaryPosition", "scene.cameraPosition"),),
        penalty_weight=(1.0, 1.0),
    ),
    "sceneSync": SearchStrategy(
        stages=(("scene.cameraPosition", "head.phaseAndRotation"),),
        penalty_weight=(100.0, 1.0),
    ),
    # evaluates x0 only
    "default": SearchStrategy(
        stages=((),),
        penalty_weight=(100.0, 1.0),
    ),
    "synthFix": SearchStrategy(
        stages=_CALIBRATION_STAGES + (("scene.primaryPosition", "scene.cameraPosition", "head.phaseAndRotation"),),
        penalty_weight=(1.0, 1.0),
    ),
    "validate": SearchStrategy(
        stages=(("scene.moveInPlane",),),
        penalty_weight=(100.0, 0.0),
    ),
    "simulateBio": SearchStrategy(
        stages=(("scene.moveInPlane", "eye.k1k2", "eye.rotationCenterScalers"),),
        penalty_weight=(1.0, 1.0),
    ),
}


def _per_scene(value: Union[float, Sequence[float]], n_scenes: int, name: str) -> list[float]:
    if np.ndim(value) == 0:
        return [float(value)] * n_scenes
    values = [float(v) for v in value]
    if len(values) != n_scenes:
        raise ValueError(f"{name} must be a scalar or have one entry per scene ({n_scenes})")
    return values


@dataclass(frozen=True)
class ModelParams:
    n_scenes: int
    blocks: dict[str, BlockSpec]
    x0: np.ndarray
    bounds: np.ndarray
    offsets: dict[str, int] = field(default_factory=dict)

    @classmethod
    def build(cls, n_scenes: int,
              camera_torsion: Union[float, Sequence[float]] = 0.0,
              camera_depth: Union[float, Sequence[float]] = 120.0,
              cornea_torsion: float = 0.0,
              overrides: Optional[Mapping[str, Mapping[str, Sequence]]] = None) -> "ModelParams":
        """
        Parameter table for n_scenes scenes. camera_torsion and camera_depth
        seed the scene blocks (scalars, or one value per scene).

        overrides: {"head" | "eye" | "scene": {"x0": ..., "bounds": ...}}
            replaces the defaults of a block. A scene "x0" may be one vector
            for all scenes or a list of per-scene vectors.
        """
        if n_scenes < 1:
            raise ValueError("need at least one scene")
        if np.ndim(camera_torsion) != np.ndim(camera_depth) or \
                (np.ndim(camera_torsion) and len(camera_torsion) != len(camera_depth)):
            raise ValueError("camera_depth and camera_torsion must be the same size")
        torsions = _per_scene(camera_torsion, n_scenes, "camera_torsion")
        depths = _per_scene(camera_depth, n_scenes, "camera_depth")

        eye_x0 = list(EYE_BLOCK.x0)
        eye_x0[EYE_BLOCK.labels.index("torsion")] = float(cornea_torsion)
        blocks = {
            "head": HEAD_BLOCK,
            "eye": BlockSpec(EYE_BLOCK.labels, EYE_BLOCK.units, tuple(eye_x0), EYE_BLOCK.bounds, EYE_BLOCK.sets),
            "scene": SCENE_BLOCK,
        }
        scene_x0 = []
        for t, d in zip(torsions, depths):
            x = list(SCENE_BLOCK.x0)
            x[2], x[5] = t, d
            scene_x0.append(x)

        for name, ov in (overrides or {}).items():
            if name not in blocks:
                raise ValueError(f"Unknown parameter block '{name}'")
            spec = blocks[name]
            if "bounds" in ov:
                bounds = tuple(float(v) for v in ov["bounds"])
                if len(bounds) != spec.n_params:
                    raise ValueError(f"{name} bounds need {spec.n_params} values")
                spec = BlockSpec(spec.labels, spec.units, spec.x0, bounds, spec.sets)
            if "x0" in ov:
                if name == "scene":
                    rows = np.atleast_2d(np.asarray(ov["x0"], dtype=float))
                    if rows.shape[1] != spec.n_params or rows.shape[0] not in (1, n_scenes):
                        raise ValueError(f"scene x0 needs {spec.n_params} values per scene")
                    scene_x0 = [list(rows[min(i, rows.shape[0] - 1)]) for i in range(n_scenes)]
                else:
                    x0 = tuple(float(v) for v in ov["x0"])
                    if len(x0) != spec.n_params:
                        raise ValueError(f"{name} x0 needs {spec.n_params} values")
                    spec = BlockSpec(spec.labels, spec.units, x0, spec.bounds, spec.sets)
            blocks[name] = spec

        x0 = np.concatenate([blocks["head"].x0, blocks["eye"].x0, np.ravel(scene_x0)])
        bounds = np.concatenate([blocks["head"].bounds, blocks["eye"].bounds,
                                 np.tile(blocks["scene"].bounds, n_scenes)])
        offsets = {"head": 0, "eye": blocks["head"].n_params,
                   "scene": blocks["head"].n_params + blocks["eye"].n_params}
        return cls(n_scenes=n_scenes, blocks=blocks, x0=x0.astype(float), bounds=bounds.astype(float), offsets=offsets)

    # ---- sizes and bounds ----
    @property
    def n_params(self) -> int:
        return len(self.x0)

    @property
    def n_sub_params(self) -> int:
        """Length of the vector one scene sees (head + eye + its own scene block)."""
        return self.offsets["scene"] + self.blocks["scene"].n_params

    @property
    def lower(self) -> np.ndarray:
        return self.x0 - self.bounds

    @property
    def upper(self) -> np.ndarray:
        return self.x0 + self.bounds

    # ---- index lookups ----
    def _block(self, field_name: str) -> BlockSpec:
        try:
            return self.blocks[field_name]
        except KeyError:
            raise ValueError(f"Unknown parameter block '{field_name}'") from None

    def _flat(self, field_name: str, local: Sequence[int]) -> np.ndarray:
        local = np.asarray(local, dtype=int)
        base = self.offsets[field_name]
        if field_name != "scene":
            return base + local
        step = self.blocks["scene"].n_params
        return np.sort(np.concatenate([base + k * step + local for k in range(self.n_scenes)]))

    def field_param_idx(self, field_name: str, label: str) -> np.ndarray:
        """Flat index (one per scene for the scene block) of a named parameter."""
        spec = self._block(field_name)
        if label not in spec.labels:
            raise ValueError(f"Unknown {field_name} parameter '{label}'")
        return self._flat(field_name, [spec.labels.index(label)])

    def field_set_idx(self, field_name: str, set_label: str) -> np.ndarray:
        spec = self._block(field_name)
        if set_label not in spec.sets:
            raise ValueError(f"Unknown {field_name} parameter set '{set_label}'")
        return self._flat(field_name, spec.sets[set_label])

    def stage_idx(self, stage: Sequence[str]) -> np.ndarray:
        """Sorted, unique flat indices searched by a stage of "block.set" names."""
        idx = [np.empty(0, dtype=int)]
        for name in stage:
            field_name, _, set_label = name.partition(".")
            idx.append(self.field_set_idx(field_name, set_label))
        return np.unique(np.concatenate(idx))

    def scene_slice(self, scene_idx: int) -> slice:
        if not 0 <= scene_idx < self.n_scenes:
            raise IndexError(f"scene index {scene_idx} out of range")
        start = self.offsets["scene"] + scene_idx * self.blocks["scene"].n_params
        return slice(start, start + self.blocks["scene"].n_params)

    def sub_x(self, x: np.ndarray, scene_idx: int) -> np.ndarray:
        """Head and eye blocks followed by the block of one scene."""
        x = np.asarray(x, dtype=float)
        return np.concatenate([x[:self.offsets["scene"]], x[self.scene_slice(scene_idx)]])

    def named(self, x_sub: np.ndarray) -> dict[str, dict[str, float]]:
        """Values of a sub vector by block and label."""
        out = {}
        for field_name in FIELDS:
            spec = self.blocks[field_name]
            start = self.offsets[field_name]
            out[field_name] = {lab: float(x_sub[start + i]) for i, lab in enumerate(spec.labels)}
        return out

    # ---- regularization and constraint ----
    def penalty(self, x: np.ndarray, weights: Sequence[float]) -> float:
        """
        (1 + w_depth * |common depth + mean depth change| / mean initial depth
           + w_torsion * ||camera torsion change||)^2
        """
        x = np.asarray(x, dtype=float)
        depth_idx = self.field_param_idx("scene", "depth")
        torsion_idx = self.field_param_idx("scene", "torsion")
        common = x[self.field_param_idx("eye", "commonDepth")[0]]
        depth_term = abs(common + np.mean(x[depth_idx] - self.x0[depth_idx])) / np.mean(self.x0[depth_idx])
        torsion_term = np.linalg.norm(x[torsion_idx] - self.x0[torsion_idx])
        return float((1 + weights[0] * depth_term + weights[1] * torsion_term) ** 2)

    def constraint_violation(self, x: np.ndarray) -> float:
        """Amount by which K1 exceeds K2 (0 when K1 <= K2)."""
        x = np.asarray(x, dtype=float)
        k1 = x[self.field_param_idx("eye", "K1")[0]]
        k2 = x[self.field_param_idx("eye", "K2")[0]]
        return float(max(k1 - k2, 0.0))
