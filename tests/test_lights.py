"""Tests for the light table and direct light sampling."""

import numpy as np
import pytest
import taichi as ti


def _sample_many(n, origin, seed=0):
    """Draw n light samples from one shading point."""
    from pathtracer.core.sampler import seed_sampler
    from pathtracer.lights.lights import sample_direct

    ox, oy, oz = (float(c) for c in origin)
    radiance = ti.Vector.field(3, dtype=ti.f32, shape=n)
    direction = ti.Vector.field(3, dtype=ti.f32, shape=n)
    pdf = ti.field(dtype=ti.f32, shape=n)
    distance = ti.field(dtype=ti.f32, shape=n)
    delta = ti.field(dtype=ti.i32, shape=n)

    @ti.kernel
    def test_kernel():
        for i in range(n):
            ls, _s = sample_direct(ti.math.vec3(ox, oy, oz), 0.0, seed_sampler(i, 0, seed))
            radiance[i] = ls.radiance
            direction[i] = ls.direction
            pdf[i] = ls.pdf
            distance[i] = ls.distance
            delta[i] = ls.is_delta

    test_kernel()
    return (
        radiance.to_numpy(),
        direction.to_numpy().astype(np.float64),
        pdf.to_numpy().astype(np.float64),
        distance.to_numpy().astype(np.float64),
        delta.to_numpy(),
    )


def _ceiling_light_scene(camera, emission=(2.0, 2.0, 2.0)):
    """A 2x2 emitter at y = 1 facing down, centered above the origin."""
    from pathtracer.scene.manager import SceneManager

    scene = SceneManager()
    scene.add_emissive_material(emission, name="light")
    scene.add_quad((-1.0, 1.0, -1.0), (2.0, 0.0, 0.0), (0.0, 0.0, 2.0), "light")
    scene.set_camera(camera)
    return scene


class TestLightTable:
    """Tests for host-side setup."""

    def test_powers(self):
        """Test power of one-sided emitters and point lights."""
        from pathtracer.lights.lights import area_light_power, point_light_power

        assert area_light_power((1.0, 1.0, 1.0), 2.0) == pytest.approx(2.0 * np.pi)
        assert point_light_power((1.0, 1.0, 1.0)) == pytest.approx(4.0 * np.pi)
        assert area_light_power((0.0, 1.0, 0.0), 1.0) == pytest.approx(0.7152 * np.pi)

    def test_argument_errors(self):
        """Test mismatched and negative inputs."""
        from pathtracer.lights.lights import build_lights

        with pytest.raises(ValueError):
            build_lights([0, 1], [1.0])
        with pytest.raises(ValueError):
            build_lights([0], [-1.0])
        with pytest.raises(ValueError):
            build_lights(point_positions=[[0.0, 0.0, 0.0]], point_intensities=np.zeros((2, 3)))

    def test_capacity(self, monkeypatch):
        """Test that too many lights raise before anything is uploaded."""
        from pathtracer.errors import ResourceExhaustedError
        from pathtracer.lights import lights

        monkeypatch.setattr(lights, "MAX_LIGHTS", 2)
        with pytest.raises(ResourceExhaustedError):
            lights.build_lights([0, 1, 2], [1.0, 1.0, 1.0])

    def test_counts_and_clear(self, simple_camera):
        """Test light counts from a built scene and clearing them."""
        from pathtracer.lights.lights import clear_lights, get_light_count

        scene = _ceiling_light_scene(simple_camera)
        scene.add_point_light((0.0, 3.0, 0.0), (1.0, 1.0, 1.0))
        counts = scene.build()
        assert counts.lights == 2
        assert get_light_count() == 2
        clear_lights()
        assert get_light_count() == 0

    def test_environment_selection_probability(self, simple_camera):
        """Test 0 without environment, 1 with only the environment, 0.5 with both."""
        from pathtracer.lights.lights import get_environment_selection_probability
        from pathtracer.scene.manager import SceneManager

        scene = _ceiling_light_scene(simple_camera)
        scene.build()
        assert get_environment_selection_probability() == 0.0

        scene.set_environment_color((0.2, 0.2, 0.2))
        scene.build()
        assert get_environment_selection_probability() == 0.5

        dark = SceneManager()
        dark.add_sphere((0.0, 0.0, 0.0), 1.0, dark.add_lambertian_material((0.5, 0.5, 0.5)))
        dark.set_environment_color((0.2, 0.2, 0.2))
        dark.set_camera(simple_camera)
        dark.build()
        assert get_environment_selection_probability() == 1.0

        # A black environment emits nothing and is never selected
        dark.set_environment_color((0.0, 0.0, 0.0))
        dark.build()
        assert get_environment_selection_probability() == 0.0


class TestDirectSampling:
    """Tests for sample_direct and the matching pdfs."""

    def test_point_light(self, simple_camera):
        """Test radiance I / d^2, direction and the delta flag."""
        from pathtracer.scene.manager import SceneManager

        scene = SceneManager()
        scene.add_quad((-1.0, 0.0, -1.0), (2.0, 0.0, 0.0), (0.0, 0.0, 2.0), scene.add_lambertian_material((0.5,) * 3))
        scene.add_point_light((0.0, 2.0, 0.0), (4.0, 4.0, 4.0))
        scene.set_camera(simple_camera)
        scene.build()

        radiance, direction, pdf, distance, delta = _sample_many(16, (0.0, 0.0, 0.0))
        np.testing.assert_allclose(radiance, 1.0, rtol=1e-5)
        np.testing.assert_allclose(direction, np.tile([0.0, 1.0, 0.0], (16, 1)), atol=1e-6)
        np.testing.assert_allclose(pdf, 1.0)
        np.testing.assert_allclose(distance, 2.0, rtol=1e-6)
        assert np.all(delta == 1)

    def test_quad_solid_angle(self, simple_camera):
        """Test that E[1 / pdf] equals the solid angle of the quad."""
        _ceiling_light_scene(simple_camera).build()

        radiance, direction, pdf, distance, delta = _sample_many(100000, (0.0, 0.0, 0.0))
        assert np.all(pdf > 0.0)
        assert np.all(delta == 0)
        np.testing.assert_allclose(radiance[0], [2.0, 2.0, 2.0])
        # Points land on the emitter plane
        np.testing.assert_allclose(direction[:, 1] * distance, 1.0, atol=1e-4)
        # Solid angle of a 2x2 square at distance 1: 4 asin(1/2)
        assert np.mean(1.0 / pdf) == pytest.approx(2.0 * np.pi / 3.0, rel=0.01)

    def test_quad_back_side_is_dark(self, simple_camera):
        """Test that points behind a one-sided emitter get no samples."""
        _ceiling_light_scene(simple_camera).build()

        _radiance, _direction, pdf, _distance, _delta = _sample_many(1000, (0.0, 2.0, 0.0))
        assert np.all(pdf == 0.0)

    def test_sample_pdf_matches_hit_pdf(self, simple_camera):
        """Test that light_pdf_for_hit reproduces the sampling density."""
        from pathtracer.core.sampler import seed_sampler
        from pathtracer.lights.lights import light_pdf_for_hit, sample_direct

        scene = _ceiling_light_scene(simple_camera)
        scene.add_point_light((3.0, 3.0, 3.0), (1.0, 1.0, 1.0))
        scene.build()

        n = 4096
        sampled = ti.field(dtype=ti.f32, shape=n)
        evaluated = ti.field(dtype=ti.f32, shape=n)

        @ti.kernel
        def test_kernel():
            for i in range(n):
                origin = ti.math.vec3(0.2, -0.5, 0.1)
                ls, _s = sample_direct(origin, 0.0, seed_sampler(i, 0, 1))
                sampled[i] = -1.0
                if ls.is_delta == 0 and ls.pdf > 0.0:
                    point = origin + ls.distance * ls.direction
                    sampled[i] = ls.pdf
                    evaluated[i] = light_pdf_for_hit(0, origin, point, ti.math.vec3(0.0, 1.0, 0.0), 0.0)

        test_kernel()
        s = sampled.to_numpy()
        area = s > 0.0
        assert 0.2 < area.mean() < 1.0
        np.testing.assert_allclose(evaluated.to_numpy()[area], s[area], rtol=1e-3)

    def test_sphere_cone_sampling(self, simple_camera):
        """Test cone sampling of a sphere seen from outside."""
        from pathtracer.scene.manager import SceneManager

        scene = SceneManager()
        scene.add_emissive_material((1.0, 1.0, 1.0), name="glow")
        scene.add_sphere((0.0, 0.0, -5.0), 1.0, "glow")
        scene.set_camera(simple_camera)
        scene.build()

        _radiance, direction, pdf, distance, _delta = _sample_many(20000, (0.0, 0.0, 0.0))
        cos_max = np.sqrt(1.0 - 1.0 / 25.0)
        np.testing.assert_allclose(pdf, 1.0 / (2.0 * np.pi * (1.0 - cos_max)), rtol=1e-4)
        points = direction * distance[:, None]
        np.testing.assert_allclose(np.linalg.norm(points - [0.0, 0.0, -5.0], axis=1), 1.0, atol=1e-3)
        assert np.all(-direction[:, 2] >= cos_max - 1e-5)

    def test_power_proportional_selection(self, simple_camera):
        """Test that a four times brighter light is chosen four times as often."""
        from pathtracer.scene.manager import SceneManager

        scene = SceneManager()
        scene.add_quad((-1.0, 0.0, -1.0), (2.0, 0.0, 0.0), (0.0, 0.0, 2.0), scene.add_lambertian_material((0.5,) * 3))
        scene.add_point_light((-2.0, 2.0, 0.0), (1.0, 1.0, 1.0))
        scene.add_point_light((2.0, 2.0, 0.0), (4.0, 4.0, 4.0))
        scene.set_camera(simple_camera)
        scene.build()

        _radiance, direction, pdf, _distance, _delta = _sample_many(20000, (0.0, 0.0, 0.0))
        right = direction[:, 0] > 0.0
        assert right.mean() == pytest.approx(0.8, abs=0.01)
        np.testing.assert_allclose(pdf[right], 0.8, rtol=1e-5)
        np.testing.assert_allclose(pdf[~right], 0.2, rtol=1e-5)

    def test_constant_environment(self, simple_camera):
        """Test environment samples when it is the only light."""
        from pathtracer.scene.manager import SceneManager

        scene = SceneManager()
        scene.add_sphere((0.0, -10.0, 0.0), 1.0, scene.add_lambertian_material((0.5,) * 3))
        scene.set_environment_color((0.3, 0.6, 0.9), intensity=2.0)
        scene.set_camera(simple_camera)
        scene.build()

        radiance, direction, pdf, _distance, _delta = _sample_many(20000, (0.0, 0.0, 0.0))
        np.testing.assert_allclose(pdf, 1.0 / (4.0 * np.pi), rtol=1e-4)
        np.testing.assert_allclose(radiance[0], [0.6, 1.2, 1.8], rtol=1e-5)
        np.testing.assert_allclose(direction.mean(axis=0), 0.0, atol=0.03)

    def test_emitted_radiance_front_face_only(self):
        """Test one-sided emission."""
        from pathtracer.lights.lights import emitted_radiance
        from pathtracer.materials.principled import MaterialParams, add_material

        mid = add_material(MaterialParams.emissive((3.0, 2.0, 1.0)))
        result = ti.Vector.field(3, dtype=ti.f32, shape=2)

        @ti.kernel
        def test_kernel(m: ti.i32):
            result[0] = emitted_radiance(m, 1)
            result[1] = emitted_radiance(m, 0)

        test_kernel(mid)
        np.testing.assert_allclose(result[0].to_numpy(), [3.0, 2.0, 1.0])
        np.testing.assert_allclose(result[1].to_numpy(), [0.0, 0.0, 0.0])
