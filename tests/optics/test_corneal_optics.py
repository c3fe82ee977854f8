import numpy as np
import pytest

from eyepose_system.model_eye.model_eye import EyeBiometry, build_model_eye
from eyepose_system.optics.corneal_optics import assemble_corneal_optics, vogel_base_curve
from eyepose_system.optics.ray_trace import trace_rays
from eyepose_system.optics.refractive_index import known_materials, refractive_index


def test_refractive_index_lookup():
    assert refractive_index("cornea", "VIS") == 1.376
    assert refractive_index("Aqueous", "nir") == 1.337
    assert refractive_index("air") == 1.0
    assert "polycarbonate" in known_materials()
    with pytest.raises(ValueError):
        refractive_index("unobtainium")
    with pytest.raises(ValueError):
        refractive_index("cornea", "uv")


def test_bare_cornea_system():
    eye = build_model_eye()
    optics = assemble_corneal_optics(eye)
    system, rot = optics.plane("p1p2")

    assert system.shape == (3, 3)
    assert system[0, 2] == refractive_index("aqueous", "nir")
    assert system[-1, 2] == 1.0
    # front surface: apex at 0, center of curvature toward the eye
    r = eye.cornea_apex_radii[0]
    assert system[-1, 0] == pytest.approx(-r)
    assert system[-1, 1] == pytest.approx(-r)
    # back surface apex at -thickness
    assert system[1, 0] - system[1, 1] == pytest.approx(-0.55)
    assert rot == pytest.approx(np.deg2rad(2.5))
    assert optics.plane("p1p3")[1] == 0.0
    with pytest.raises(ValueError):
        optics.plane("p2p3")


def test_astigmatic_planes_differ():
    optics = assemble_corneal_optics(build_model_eye(EyeBiometry(k1=42.0, k2=45.0)))
    assert optics.p1p2[-1, 1] != pytest.approx(optics.p1p3[-1, 1])


def test_corrective_lenses_add_surfaces():
    contact = assemble_corneal_optics(build_model_eye(EyeBiometry(contact_lens_power=-4.0)))
    spectacle = assemble_corneal_optics(build_model_eye(EyeBiometry(spectacle_lens_power=-4.0)))
    both = assemble_corneal_optics(build_model_eye(EyeBiometry(contact_lens_power=-2.0,
                                                               spectacle_lens_power=-2.0)))
    assert contact.p1p2.shape[0] == 4
    assert spectacle.p1p2.shape[0] == 5
    assert both.p1p2.shape[0] == 6
    # the spectacle lens sits at the vertex distance in front of the apex
    assert spectacle.p1p2[3, 0] - spectacle.p1p2[3, 1] == pytest.approx(12.0)
    assert spectacle.p1p2[3, 2] == refractive_index("polycarbonate", "nir")


def test_vogel_rule():
    assert vogel_base_curve(2.0) == 8.0
    assert vogel_base_curve(-4.0) == 4.0


def test_pupil_rays_leave_the_cornea():
    eye = build_model_eye()
    system, _ = assemble_corneal_optics(eye).plane("p1p2")
    thetas = np.deg2rad([-20.0, -5.0, 5.0, 20.0])
    batch = trace_rays([eye.pupil_center[0], 2.0], thetas, system)
    assert not batch.failed.any()
    # rays from above the axis are bent towards it
    assert np.all(batch.theta_out < thetas)
    assert np.allclose(np.rad2deg(batch.theta_out), [-29.2949, -11.2293, 0.7808, 18.7306], atol=1e-3)


if __name__ == "__main__":
    test_refractive_index_lookup()
    test_bare_cornea_system()
    test_astigmatic_planes_differ()
    test_corrective_lenses_add_surfaces()
    test_vogel_rule()
    test_pupil_rays_leave_the_cornea()
