import numpy as np
import pytest

from eyepose_system.errors import RayMissesSurface, RefractionLimitExceeded
from eyepose_system.optics.ray_trace import (
    build_optical_system, ray_trace_centered_spherical_surfaces, trace_rays, trace_rays_derivative,
)

# Numerical example of Elagha 2017, section C
ELAGHA_SYSTEM = np.array([
    [np.nan, np.nan, 1.0],
    [22.0, 10.0, 1.2],
    [9.0, -8.0, 1.0],
    [34.0, 12.0, 1.5],
    [20.0, -10.0, 1.0],
])
ELAGHA_THETA = np.deg2rad(17.309724)

# Glass to air through one surface: incidence reaches 90 deg at theta = 30 deg
CRITICAL_SYSTEM = np.array([[np.nan, np.nan, 1.5], [10.0, 7.5, 1.0]])


def test_elagha_example():
    result = ray_trace_centered_spherical_surfaces([0.0, 0.0], ELAGHA_THETA, ELAGHA_SYSTEM)
    print("thetas (deg):", np.rad2deg(result.thetas))

    assert result.image_coords[-1, 0] - ELAGHA_SYSTEM[4, 0] == pytest.approx(17.768432, abs=1e-4)
    assert np.allclose(np.rad2deg(result.thetas[1:]), [9.479590, 4.143785, -5.926743, -26.583635], atol=1e-4)
    assert result.image_coords[0, 0] == 0.0
    assert result.intersection_coords.shape == (5, 2)
    assert result.theta_out == result.thetas[-1]


def test_intersections_lie_on_surfaces():
    result = ray_trace_centered_spherical_surfaces([0.0, 0.0], ELAGHA_THETA, ELAGHA_SYSTEM)
    for (z, h), (c, r, _) in zip(result.intersection_coords[1:], ELAGHA_SYSTEM[1:]):
        assert np.hypot(z - c, h) == pytest.approx(abs(r), abs=1e-9)
    # the ray moves forward along the axis between the first two surfaces
    assert result.intersection_coords[1, 0] > result.intersection_coords[0, 0]


def test_output_ray_is_unit_length():
    result = ray_trace_centered_spherical_surfaces([0.0, 0.0], ELAGHA_THETA, ELAGHA_SYSTEM)
    start, end = result.output_ray
    assert start[1] == 0.0
    assert np.linalg.norm(end - start) == pytest.approx(1.0)
    assert np.arctan2(end[1] - start[1], end[0] - start[0]) == pytest.approx(result.theta_out)


def test_critical_angle_boundary():
    theta_c = np.arcsin(0.5)
    result = ray_trace_centered_spherical_surfaces([0.0, 0.0], theta_c, CRITICAL_SYSTEM)
    assert np.isfinite(result.theta_out)

    with pytest.raises(RefractionLimitExceeded) as excinfo:
        ray_trace_centered_spherical_surfaces([0.0, 0.0], theta_c + 1e-6, CRITICAL_SYSTEM)
    assert excinfo.value.surface_index == 1
    # the partial trace stops before the failing surface
    assert len(excinfo.value.partial.thetas) == 1


def test_ray_misses_surface():
    # axis distance of the ray at the center is 5 mm, the surface radius 4 mm
    system = build_optical_system([(10.0, 4.0, 1.5)], initial_index=1.0)
    with pytest.raises(RayMissesSurface):
        ray_trace_centered_spherical_surfaces([0.0, 0.0], np.deg2rad(30), system)


def test_build_optical_system_rejects_zero_radius():
    with pytest.raises(ValueError):
        build_optical_system([(1.0, 0.0, 1.3)], initial_index=1.0)
    with pytest.raises(ValueError):
        build_optical_system([], initial_index=1.0)


def test_vectorized_matches_strict_and_marks_failures():
    thetas = np.array([np.deg2rad(10.0), ELAGHA_THETA])
    batch = trace_rays([0.0, 0.0], thetas, ELAGHA_SYSTEM)
    for k, theta in enumerate(thetas):
        strict = ray_trace_centered_spherical_surfaces([0.0, 0.0], theta, ELAGHA_SYSTEM)
        assert batch.theta_out[k] == pytest.approx(strict.theta_out, abs=1e-12)
        assert batch.image_z[k] == pytest.approx(strict.image_coords[-1, 0], abs=1e-9)

    batch = trace_rays([0.0, 0.0], [0.2, np.arcsin(0.5) + 0.01], CRITICAL_SYSTEM)
    assert np.isfinite(batch.theta_out[0])
    assert np.isnan(batch.theta_out[1])
    assert list(batch.failed) == [False, True]


def test_derivative_matches_finite_difference():
    coords = np.array([[-5.0, 0.5], [-5.0, -0.3], [0.0, 0.2]])
    thetas = np.array([0.15, 0.25, 0.3])
    eps = 1e-6

    d = trace_rays_derivative(coords, thetas, ELAGHA_SYSTEM)
    hi = trace_rays(coords, thetas + eps, ELAGHA_SYSTEM)
    lo = trace_rays(coords, thetas - eps, ELAGHA_SYSTEM)
    fd_theta = (hi.theta_out - lo.theta_out) / (2 * eps)
    fd_image = (hi.image_z - lo.image_z) / (2 * eps)

    assert np.all(np.isfinite(d.dtheta_out))
    assert np.allclose(d.dtheta_out, fd_theta, rtol=1e-5, atol=1e-6)
    assert np.allclose(d.dimage_z, fd_image, rtol=1e-4, atol=1e-4)


def test_on_axis_ray_has_paraxial_image():
    coords = np.array([[-5.0, 0.0], [-5.0, 0.0]])
    batch = trace_rays(coords, [0.0, 1e-7], ELAGHA_SYSTEM)
    assert np.all(np.isfinite(batch.image_z))
    assert batch.image_z[0] == pytest.approx(batch.image_z[1], rel=1e-6)
    assert batch.theta_out[0] == pytest.approx(0.0, abs=1e-8)

    d = trace_rays_derivative(coords, [0.0, -0.0], ELAGHA_SYSTEM)
    assert np.all(np.isfinite(d.image_z)) and np.all(np.isfinite(d.dtheta_out))


if __name__ == "__main__":
    test_elagha_example()
    test_intersections_lie_on_surfaces()
    test_output_ray_is_unit_length()
    test_critical_angle_boundary()
    test_ray_misses_surface()
    test_build_optical_system_rejects_zero_radius()
    test_vectorized_matches_strict_and_marks_failures()
    test_derivative_matches_finite_difference()
    test_on_axis_ray_has_paraxial_image()
