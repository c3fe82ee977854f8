import numpy as np
import pytest

from eyepose_system.config.eye_model_config import ProjectionOptions
from eyepose_system.model_eye.model_eye import EyeBiometry
from eyepose_system.model_eye.scene_geometry import create_scene_geometry
from eyepose_system.projection.pupil_projection import (
    ANTERIOR_CHAMBER, CORNEAL_APEX, IRIS_PERIMETER, POSTERIOR_CHAMBER, PUPIL_CENTER, PUPIL_PERIMETER,
    project, project_points,
)
from eyepose_system.projection.refraction import _newton
from eyepose_system.projection.transparent_ellipse import is_nan_ellipse


@pytest.fixture(scope="module")
def plain_scene():
    return create_scene_geometry(refraction=False)


@pytest.fixture(scope="module")
def refracting_scene():
    return create_scene_geometry(refraction=True)


def test_scene_geometry_camera(plain_scene):
    assert np.allclose(plain_scene.C, [0.0, 0.0, 120.0])
    assert plain_scene.P.shape == (3, 4)
    assert not plain_scene.refraction
    rolled = plain_scene.with_camera(torsion=5.0)
    assert rolled.camera_torsion == 5.0
    assert np.allclose(rolled.C, plain_scene.C)
    assert rolled.eye is plain_scene.eye


def test_pupil_facing_the_camera(plain_scene):
    result = project([0.0, 0.0, 0.0, 2.0], plain_scene)
    assert result.is_valid
    # pupil center is on the optical axis: the image is centered on the principal point
    assert np.allclose(result.ellipse[:2], plain_scene.K[[0, 1], [2, 2]], atol=1e-6)
    fx, fy = plain_scene.K[0, 0], plain_scene.K[1, 1]
    depth = 120.0 + 3.7
    assert result.ellipse[2] == pytest.approx(np.pi * (2 * fx / depth) * (2 * fy / depth), rel=1e-3)
    assert result.ellipse[3] < 0.05


def test_nan_ellipse_for_zero_radius(plain_scene):
    result = project([5.0, 0.0, 0.0, 0.0], plain_scene)
    assert is_nan_ellipse(result.ellipse)
    assert not result.is_valid


def test_too_few_perimeter_points(plain_scene):
    with pytest.raises(ValueError):
        project([0.0, 0.0, 0.0, 2.0], plain_scene, ProjectionOptions(n_pupil_perim_points=4))


def test_eccentricity_grows_with_azimuth(plain_scene):
    ecc = [project([azi, 0.0, 0.0, 2.0], plain_scene).ellipse[3] for azi in (0.0, 10.0, 20.0, 30.0)]
    assert np.all(np.diff(ecc) > 0)
    # horizontal rotation foreshortens the horizontal axis
    theta = project([20.0, 0.0, 0.0, 2.0], plain_scene).ellipse[4]
    assert theta == pytest.approx(np.pi / 2, abs=0.05)


def test_eccentricity_is_mirror_symmetric_in_azimuth(plain_scene):
    azimuths = (0.0, 10.0, 20.0, 30.0)
    left = [project([-azi, 0.0, 0.0, 2.0], plain_scene).ellipse[3] for azi in azimuths]
    right = [project([azi, 0.0, 0.0, 2.0], plain_scene).ellipse[3] for azi in azimuths]
    assert np.all(np.diff(left) > 0)
    assert np.allclose(left, right, atol=1e-6)


def test_full_eye_model_hides_a_pupil_turned_away(plain_scene):
    result = project([100.0, 0.0, 0.0, 2.0], plain_scene, ProjectionOptions(full_eye_model=True))
    assert len(result.select(PUPIL_PERIMETER)) < 5
    assert is_nan_ellipse(result.ellipse)
    assert not result.is_valid


def test_pupil_moves_with_gaze(plain_scene):
    center = project([0.0, 0.0, 0.0, 2.0], plain_scene).ellipse[:2]
    right = project([10.0, 0.0, 0.0, 2.0], plain_scene).ellipse[:2]
    down = project([0.0, 10.0, 0.0, 2.0], plain_scene).ellipse[:2]
    assert right[0] > center[0] + 20
    assert right[1] == pytest.approx(center[1], abs=1e-6)
    assert down[1] > center[1] + 20


def test_full_eye_model_labels(plain_scene):
    options = ProjectionOptions(full_eye_model=True)
    result = project([10.0, -5.0, 0.0, 2.0], plain_scene, options)
    for label in (PUPIL_PERIMETER, PUPIL_CENTER, IRIS_PERIMETER, ANTERIOR_CHAMBER, CORNEAL_APEX):
        assert len(result.select(label)) > 0
    # points rotated behind the rotation center are dropped
    kept = result.labels == POSTERIOR_CHAMBER
    assert 0 < kept.sum()
    hidden = project([10.0, -5.0, 0.0, 2.0], plain_scene,
                     ProjectionOptions(full_eye_model=True, remove_obscured_points=False))
    assert (hidden.labels == POSTERIOR_CHAMBER).sum() > kept.sum()
    # projected pupil center lies close to the center of the fitted ellipse
    assert np.linalg.norm(result.select(PUPIL_CENTER)[0] - result.ellipse[:2]) < 1.0


def test_project_points_principal_axis(plain_scene):
    px = project_points(np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0]]), plain_scene)
    assert np.allclose(px[0], plain_scene.K[[0, 1], [2, 2]])
    assert px[1, 0] > px[0, 0]


def test_refraction_changes_the_image(plain_scene, refracting_scene):
    pose = [10.0, 5.0, 0.0, 2.0]
    plain = project(pose, plain_scene).ellipse
    refracted = project(pose, refracting_scene, ProjectionOptions(calc_nodal_intersect_error=True))
    assert refracted.is_valid
    assert abs(refracted.ellipse[2] / plain[2] - 1) > 0.05
    # refracted perimeter rays pass close to the nodal point
    miss = refracted.nodal_error[refracted.labels == PUPIL_PERIMETER]
    assert np.all(np.isfinite(miss))
    assert np.all(miss < 1.0)


@pytest.mark.parametrize("azi", [-15.0, -10.0, -5.0, 0.0, 5.0, 10.0, 15.0])
def test_refraction_on_the_horizontal_meridian(refracting_scene, azi):
    result = project([azi, 0.0, 0.0, 2.0], refracting_scene)
    assert result.is_valid
    assert np.all(np.isfinite(result.ellipse))
    assert np.all(np.isfinite(result.select(PUPIL_PERIMETER)))


def test_refraction_search_traces_once_per_iterate():
    seen = []

    def miss(theta):
        seen.append(theta.tobytes())
        m = np.column_stack([theta ** 2 - 0.25, np.zeros_like(theta)])
        dm = np.column_stack([2 * theta, np.zeros_like(theta)])
        return None, m, dm

    root = _newton(miss, np.array([1.0, 0.0]), np.array([0.1, 0.5]), ProjectionOptions())
    assert np.allclose(root, 0.5)
    assert len(seen) == len(set(seen))


def test_refraction_with_corrective_lens():
    scene = create_scene_geometry(EyeBiometry(spherical_ametropia=-3.0, spectacle_lens_power=-3.0))
    result = project([5.0, 0.0, 0.0, 2.0], scene)
    assert result.is_valid


if __name__ == "__main__":
    plain = create_scene_geometry(refraction=False)
    refracting = create_scene_geometry(refraction=True)
    test_scene_geometry_camera(plain)
    test_pupil_facing_the_camera(plain)
    test_nan_ellipse_for_zero_radius(plain)
    test_too_few_perimeter_points(plain)
    test_eccentricity_grows_with_azimuth(plain)
    test_eccentricity_is_mirror_symmetric_in_azimuth(plain)
    test_full_eye_model_hides_a_pupil_turned_away(plain)
    test_pupil_moves_with_gaze(plain)
    test_full_eye_model_labels(plain)
    test_project_points_principal_axis(plain)
    test_refraction_changes_the_image(plain, refracting)
    for a in (-15.0, -10.0, -5.0, 0.0, 5.0, 10.0, 15.0):
        test_refraction_on_the_horizontal_meridian(refracting, a)
    test_refraction_search_traces_once_per_iterate()
    test_refraction_with_corrective_lens()
