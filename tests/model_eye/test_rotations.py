import numpy as np
import pytest
from scipy.spatial.transform import Rotation

from eyepose_system.model_eye.model_eye import build_model_eye
from eyepose_system.model_eye.rotations import (
    eye_pose_transform, eye_rotation_matrices, listing_torsion, rotate_eye_points,
)


def test_zero_pose_is_identity():
    eye = build_model_eye()
    T = eye_pose_transform(eye.rotation_centers, 0.0, 0.0, 0.0)
    assert np.allclose(T.M, np.eye(3))
    assert np.allclose(T.b, 0.0)


def test_composite_rotation_order():
    eye = build_model_eye()
    azi, ele, tor = 12.0, -7.0, 3.0
    R = eye_rotation_matrices(azi, ele, tor)
    T = eye_pose_transform(eye.rotation_centers, azi, ele, tor)
    assert np.allclose(T.M, R["azi"] @ R["ele"] @ R["tor"])
    assert np.isclose(np.linalg.det(T.M), 1.0)


def test_rotation_keeps_its_center_fixed():
    eye = build_model_eye()
    center = eye.rotation_centers["azi"]
    moved = rotate_eye_points(center[None, :], eye.rotation_centers, 20.0, 0.0, 0.0)
    assert np.allclose(moved[0], center)

    # the pupil center moves sideways by the lever arm to the rotation center
    pupil = rotate_eye_points(eye.pupil_center, eye.rotation_centers, 20.0, 0.0, 0.0)
    arm = eye.pupil_center[0] - center[0]
    assert pupil[1] == pytest.approx(arm * np.sin(np.deg2rad(20.0)))


def test_apply_dirs_ignores_translation():
    eye = build_model_eye()
    T = eye_pose_transform(eye.rotation_centers, 10.0, 5.0, 0.0)
    d = np.array([1.0, 0.0, 0.0])
    assert np.allclose(T.apply_dirs(d), T.M @ d)
    assert np.allclose(T.apply_dirs(np.vstack([d, d])), np.vstack([T.M @ d] * 2))
    with pytest.raises(ValueError):
        T.apply_points(np.zeros((4, 2)))


def test_listing_torsion_zero_on_cardinal_axes():
    assert listing_torsion(0.0, 0.0) == pytest.approx(0.0, abs=1e-10)
    assert listing_torsion(15.0, 0.0) == pytest.approx(0.0, abs=1e-10)
    assert listing_torsion(0.0, -15.0) == pytest.approx(0.0, abs=1e-10)


def test_listing_torsion_oblique_gaze():
    t = float(listing_torsion(15.0, 15.0))
    assert 0.5 < abs(t) < 5.0
    assert listing_torsion(15.0, -15.0) == pytest.approx(-t)
    assert listing_torsion(-15.0, 15.0) == pytest.approx(-t)

    # the resulting orientation is one rotation about an axis in Listing's plane
    R = eye_rotation_matrices(15.0, 15.0, t)
    rotvec = Rotation.from_matrix(R["azi"] @ R["ele"] @ R["tor"]).as_rotvec()
    assert rotvec[0] == pytest.approx(0.0, abs=1e-10)


def test_listing_torsion_is_vectorized():
    azi = np.array([[0.0, 10.0, -10.0], [5.0, 20.0, -20.0]])
    ele = np.array([0.0, 10.0, 10.0])
    t = listing_torsion(azi, ele)
    assert t.shape == (2, 3)
    assert t[0, 1] == pytest.approx(float(listing_torsion(10.0, 10.0)))


def test_listing_torsion_relative_to_primary_position():
    # gaze at the primary position itself has no torsion
    assert listing_torsion(5.0, -3.0, primary_position=(5.0, -3.0)) == pytest.approx(0.0, abs=1e-10)


if __name__ == "__main__":
    test_zero_pose_is_identity()
    test_composite_rotation_order()
    test_rotation_keeps_its_center_fixed()
    test_apply_dirs_ignores_translation()
    test_listing_torsion_zero_on_cardinal_axes()
    test_listing_torsion_oblique_gaze()
    test_listing_torsion_is_vectorized()
    test_listing_torsion_relative_to_primary_position()
