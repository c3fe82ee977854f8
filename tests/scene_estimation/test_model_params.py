import numpy as np
import pytest

from eyepose_system.scene_estimation.model_params import STRATEGIES, ModelParams


def test_layout_two_scenes():
    model = ModelParams.build(2, camera_torsion=[0.0, 5.0], camera_depth=[120.0, 110.0])
    assert model.n_params == 4 + 9 + 2 * 6
    assert model.n_sub_params == 4 + 9 + 6
    assert list(model.field_param_idx("scene", "depth")) == [18, 24]
    assert list(model.field_param_idx("eye", "K1")) == [5]
    assert model.x0[24] == 110.0
    assert model.x0[21] == 5.0
    assert np.allclose(model.upper - model.lower, 2 * model.bounds)


def test_stage_indices_are_sorted_and_unique():
    model = ModelParams.build(2)
    idx = model.stage_idx(("scene.depth", "eye.k1k2", "scene.translation"))
    assert list(idx) == [5, 6, 16, 17, 18, 22, 23, 24]
    assert model.stage_idx(()).size == 0
    with pytest.raises(ValueError):
        model.stage_idx(("scene.nothing",))
    with pytest.raises(ValueError):
        model.field_param_idx("lens", "power")


def test_sub_vector_and_names():
    model = ModelParams.build(3, camera_depth=[100.0, 110.0, 120.0])
    x = model.x0.copy()
    sub = model.sub_x(x, 1)
    assert sub.size == model.n_sub_params
    named = model.named(sub)
    assert named["scene"]["depth"] == 110.0
    assert named["eye"]["K2"] == pytest.approx(45.6302)
    assert named["head"]["timeShift"] == 0.0
    with pytest.raises(IndexError):
        model.scene_slice(3)


def test_penalty():
    model = ModelParams.build(2)
    assert model.penalty(model.x0, (1.0, 1.0)) == 1.0

    x = model.x0.copy()
    x[model.field_param_idx("scene", "depth")] += 12.0
    assert model.penalty(x, (1.0, 0.0)) == pytest.approx(1.1 ** 2)
    # the common depth offset cancels a shared change of camera depth
    x[model.field_param_idx("eye", "commonDepth")] = -12.0
    assert model.penalty(x, (1.0, 0.0)) == pytest.approx(1.0)

    x = model.x0.copy()
    x[model.field_param_idx("scene", "torsion")] = [3.0, 4.0]
    assert model.penalty(x, (0.0, 1.0)) == pytest.approx(36.0)


def test_keratometry_constraint():
    model = ModelParams.build(1)
    assert model.constraint_violation(model.x0) == 0.0
    x = model.x0.copy()
    x[model.field_param_idx("eye", "K1")] = 46.0
    assert model.constraint_violation(x) == pytest.approx(46.0 - 45.6302)
    x[model.field_param_idx("eye", "K2")] = 46.0
    assert model.constraint_violation(x) == 0.0


def test_overrides():
    model = ModelParams.build(2, overrides={
        "scene": {"x0": [[1.0, 0.0, 0.0, 0.0, 0.0, 100.0], [2.0, 0.0, 0.0, 0.0, 0.0, 90.0]]},
        "eye": {"bounds": [1.0] * 9},
    })
    assert list(model.x0[model.field_param_idx("scene", "pp_azi")]) == [1.0, 2.0]
    assert np.all(model.bounds[4:13] == 1.0)
    with pytest.raises(ValueError):
        ModelParams.build(1, overrides={"lens": {"x0": [0.0]}})
    with pytest.raises(ValueError):
        ModelParams.build(1, overrides={"eye": {"x0": [0.0, 1.0]}})
    with pytest.raises(ValueError):
        ModelParams.build(2, camera_torsion=[0.0, 1.0], camera_depth=120.0)
    with pytest.raises(ValueError):
        ModelParams.build(0)


def test_strategies_name_known_sets():
    model = ModelParams.build(2)
    for name, strategy in STRATEGIES.items():
        for stage in strategy.stages:
            model.stage_idx(stage)
        assert len(strategy.penalty_weight) == 2, name
    assert STRATEGIES["default"].stages == ((),)
    assert all(s.tol_mesh == 1e-2 and s.multi_scene_norm == 1.0 for s in STRATEGIES.values())


if __name__ == "__main__":
    test_layout_two_scenes()
    test_stage_indices_are_sorted_and_unique()
    test_sub_vector_and_names()
    test_penalty()
    test_keratometry_constraint()
    test_overrides()
    test_strategies_name_known_sets()
