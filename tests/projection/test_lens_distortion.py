import numpy as np

from eyepose_system.model_eye.scene_geometry import DEFAULT_INTRINSIC_MATRIX, DEFAULT_RADIAL_DISTORTION
from eyepose_system.projection.lens_distortion import (
    apply_radial_distortion, distort_normalized, remove_radial_distortion,
)

K = DEFAULT_INTRINSIC_MATRIX


def _grid(r_max: float, n: int = 9) -> np.ndarray:
    """Pixel points whose normalized radius is at most r_max."""
    u = np.linspace(-r_max, r_max, n) / np.sqrt(2)
    xn, yn = np.meshgrid(u, u)
    pts_n = np.column_stack([xn.ravel(), yn.ravel()])
    return pts_n * K[[0, 1], [0, 1]] + K[[0, 1], [2, 2]]


def test_distortion_is_invertible_near_the_axis():
    pts = _grid(0.12)
    distorted = apply_radial_distortion(pts, K, DEFAULT_RADIAL_DISTORTION)
    recovered = remove_radial_distortion(distorted, K, DEFAULT_RADIAL_DISTORTION)
    assert np.max(np.abs(recovered - pts)) < 1e-6


def test_principal_point_is_fixed():
    pp = K[[0, 1], [2, 2]][None, :]
    assert np.allclose(apply_radial_distortion(pp, K, DEFAULT_RADIAL_DISTORTION), pp)


def test_zero_distortion_is_identity():
    pts = _grid(0.1)
    assert np.allclose(apply_radial_distortion(pts, K, (0.0, 0.0)), pts)
    assert np.allclose(remove_radial_distortion(pts, K, (0.0, 0.0)), pts)


def test_barrel_distortion_pulls_points_in():
    pts_n = np.array([[0.05, 0.0], [0.0, -0.08]])
    out = distort_normalized(pts_n, (-0.3, 0.0))
    assert np.all(np.linalg.norm(out, axis=1) < np.linalg.norm(pts_n, axis=1))
    # purely radial: direction is unchanged
    assert np.allclose(out[:, 1] * pts_n[:, 0], out[:, 0] * pts_n[:, 1])


if __name__ == "__main__":
    test_distortion_is_invertible_near_the_axis()
    test_principal_point_is_fixed()
    test_zero_distortion_is_identity()
    test_barrel_distortion_pulls_points_in()
