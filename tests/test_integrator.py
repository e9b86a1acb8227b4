"""Tests for the path tracing integrator.

Tests cover:
- Direct lighting from a spherical emitter against its closed-form value,
  for every sampling strategy
- Furnace scenes with known analytic radiance (convex object under a
  constant sky, closed emitting enclosure) with and without Russian roulette
- Determinism and independence from the batch size
- Path termination statistics and sample sanitizing
- Render target errors
"""

import math

import numpy as np
import pytest
import taichi as ti


def _spherical_light_scene(albedo=0.5, emission=2.5, radius=1.0, height=3.0):
    """Lambertian floor lit by a sphere centered ``height`` above the origin."""
    from pathtracer.camera.thin_lens import ThinLensCamera
    from pathtracer.scene.manager import SceneManager

    scene = SceneManager()
    floor = scene.add_lambertian_material((albedo, albedo, albedo))
    light = scene.add_emissive_material((emission, emission, emission))
    scene.add_quad((-50.0, 0.0, -50.0), (0.0, 0.0, 100.0), (100.0, 0.0, 0.0), floor)
    scene.add_sphere((0.0, height, 0.0), radius, light)
    # Narrow view so the single pixel covers only the floor around the origin
    scene.set_camera(ThinLensCamera(lookfrom=(0.0, 1.0, 4.0), lookat=(0.0, 0.0, 0.0), vfov=0.5, aspect_ratio=1.0))
    return scene


def _closed_box_scene(albedo=0.5, emission=0.5):
    """Camera inside a cube whose walls all scatter and emit inward."""
    from pathtracer.camera.thin_lens import ThinLensCamera
    from pathtracer.materials.principled import MaterialParams, MaterialType
    from pathtracer.scene.manager import SceneManager

    scene = SceneManager()
    wall = scene.add_material(
        MaterialParams(
            kind=MaterialType.LAMBERTIAN,
            base_color=(albedo, albedo, albedo),
            emission=(emission, emission, emission),
        )
    )
    # Each face's u x v points into the cube
    faces = [
        ((-1.0, -1.0, -1.0), (0.0, 0.0, 2.0), (2.0, 0.0, 0.0)),
        ((-1.0, 1.0, -1.0), (2.0, 0.0, 0.0), (0.0, 0.0, 2.0)),
        ((-1.0, -1.0, -1.0), (0.0, 2.0, 0.0), (0.0, 0.0, 2.0)),
        ((1.0, -1.0, -1.0), (0.0, 0.0, 2.0), (0.0, 2.0, 0.0)),
        ((-1.0, -1.0, -1.0), (2.0, 0.0, 0.0), (0.0, 2.0, 0.0)),
        ((-1.0, -1.0, 1.0), (0.0, 2.0, 0.0), (2.0, 0.0, 0.0)),
    ]
    for corner, u, v in faces:
        scene.add_quad(corner, u, v, wall)
    scene.set_camera(ThinLensCamera(lookfrom=(0.0, 0.0, 0.0), lookat=(0.0, 0.0, -1.0), vfov=40.0, aspect_ratio=1.0))
    return scene


def _convex_furnace_scene(albedo=0.6):
    """Lambertian sphere under a uniform white sky."""
    from pathtracer.camera.thin_lens import ThinLensCamera
    from pathtracer.scene.manager import SceneManager

    scene = SceneManager()
    mat = scene.add_lambertian_material((albedo, albedo, albedo))
    scene.add_sphere((0.0, 0.0, 0.0), 1.0, mat)
    scene.set_environment_color((1.0, 1.0, 1.0))
    scene.set_camera(ThinLensCamera(lookfrom=(0.0, 0.0, 5.0), lookat=(0.0, 0.0, 0.0), vfov=1.0, aspect_ratio=1.0))
    return scene


class TestPowerHeuristic:
    """Tests for the MIS weight."""

    def test_power_heuristic_values(self):
        """Test equal, dominant and zero pdfs."""
        from pathtracer.core.integrator import power_heuristic

        result = ti.field(dtype=ti.f32, shape=3)

        @ti.kernel
        def test_kernel():
            result[0] = power_heuristic(1.0, 1.0)
            result[1] = power_heuristic(3.0, 1.0)
            result[2] = power_heuristic(0.0, 0.0)

        test_kernel()
        assert result[0] == pytest.approx(0.5)
        assert result[1] == pytest.approx(0.9)
        assert result[2] == 0.0

    def test_weights_sum_to_one(self):
        """Test that the weights of two strategies sum to one."""
        from pathtracer.core.integrator import power_heuristic

        result = ti.field(dtype=ti.f32, shape=())

        @ti.kernel
        def test_kernel():
            result[None] = power_heuristic(0.37, 2.1) + power_heuristic(2.1, 0.37)

        test_kernel()
        assert result[None] == pytest.approx(1.0, abs=1e-6)


class TestSanitize:
    """Tests for discarding invalid sample radiance."""

    def test_sanitize_rejects_invalid_samples(self):
        """Test that NaN, infinite and negative samples are rejected."""
        from pathtracer.core.integrator import _sanitize

        values = ti.Vector.field(3, dtype=ti.f32, shape=5)
        result = ti.field(dtype=ti.i32, shape=5)
        values.from_numpy(
            np.array(
                [
                    [0.5, 1.0, 2.0],
                    [0.0, 0.0, 0.0],
                    [np.nan, 0.0, 0.0],
                    [0.0, np.inf, 0.0],
                    [0.0, 0.0, -0.1],
                ],
                dtype=np.float32,
            )
        )

        @ti.kernel
        def test_kernel():
            for i in range(5):
                result[i] = _sanitize(values[i])

        test_kernel()
        assert result.to_numpy().tolist() == [1, 1, 0, 0, 0]


class TestRenderTarget:
    """Tests for render target setup and errors."""

    def test_invalid_dimensions(self):
        """Test that non-positive sizes are rejected."""
        from pathtracer.core.integrator import setup_render_target

        with pytest.raises(ValueError):
            setup_render_target(0, 10)
        with pytest.raises(ValueError):
            setup_render_target(10, -1)

    def test_oversized_target(self):
        """Test that images beyond the preallocated buffer are rejected."""
        from pathtracer.core.integrator import MAX_IMAGE_WIDTH, setup_render_target
        from pathtracer.errors import ResourceExhaustedError

        with pytest.raises(ResourceExhaustedError):
            setup_render_target(MAX_IMAGE_WIDTH + 1, 10)

    def test_render_without_target(self):
        """Test that rendering before setup raises RuntimeError."""
        from pathtracer.core import integrator

        integrator._render_target_initialized[None] = 0
        with pytest.raises(RuntimeError):
            integrator.render_batch(0, 1)
        with pytest.raises(RuntimeError):
            integrator.get_radiance_numpy()

    def test_setup_clears_buffer(self):
        """Test that a fresh target holds zero samples and a black image."""
        from pathtracer.core.integrator import (
            get_image_dimensions,
            get_radiance_numpy,
            get_total_samples,
            setup_render_target,
        )

        setup_render_target(7, 3)
        assert get_image_dimensions() == (7, 3)
        assert get_total_samples() == 0
        image = get_radiance_numpy()
        assert image.shape == (3, 7, 3)
        assert np.all(image == 0.0)


class TestSphericalLight:
    """Direct lighting of a Lambertian floor by a spherical emitter.

    The irradiance below a sphere of radiance L, radius r and center height
    d is pi * L * (r / d)^2, so the floor radiance is albedo * L * (r / d)^2.
    """

    EXPECTED = 0.5 * 2.5 * (1.0 / 3.0) ** 2

    def _render(self, strategy, num_samples, seed=0):
        from pathtracer.core.integrator import render_pixel, setup_render_target

        scene = _spherical_light_scene()
        scene.build(aspect_ratio=1.0)
        setup_render_target(1, 1)
        return render_pixel(0, 0, num_samples, seed=seed, strategy=strategy)

    def test_mis(self):
        """Test MIS against the closed-form floor radiance."""
        from pathtracer.config import SamplingStrategy

        color = self._render(SamplingStrategy.MIS, 4096)
        for c in color:
            assert c == pytest.approx(self.EXPECTED, rel=0.03)

    def test_light_sampling_only(self):
        """Test light sampling alone against the closed-form value."""
        from pathtracer.config import SamplingStrategy

        color = self._render(SamplingStrategy.LIGHT, 4096)
        for c in color:
            assert c == pytest.approx(self.EXPECTED, rel=0.03)

    def test_bsdf_sampling_only(self):
        """Test BSDF sampling alone; noisier, so more samples and a wider band."""
        from pathtracer.config import SamplingStrategy

        color = self._render(SamplingStrategy.BSDF, 16384)
        for c in color:
            assert c == pytest.approx(self.EXPECTED, rel=0.08)

    def test_strategies_agree(self):
        """Test that MIS and light sampling converge to the same value."""
        from pathtracer.config import SamplingStrategy

        mis = self._render(SamplingStrategy.MIS, 4096, seed=5)
        light = self._render(SamplingStrategy.LIGHT, 4096, seed=6)
        assert mis[1] == pytest.approx(light[1], rel=0.04)


class TestFurnace:
    """Scenes whose radiance is known exactly."""

    def test_convex_furnace(self):
        """Test a Lambertian sphere under a white sky reflecting its albedo."""
        from pathtracer.core.integrator import render_pixel, setup_render_target

        scene = _convex_furnace_scene(albedo=0.6)
        scene.build(aspect_ratio=1.0)
        setup_render_target(1, 1)
        color = render_pixel(0, 0, 2048, seed=1)
        for c in color:
            assert c == pytest.approx(0.6, rel=0.02)

    def test_closed_box_without_roulette(self):
        """Test an emitting enclosure converging to E / (1 - albedo)."""
        from pathtracer.core.integrator import render_pixel, setup_render_target

        scene = _closed_box_scene(albedo=0.5, emission=0.5)
        scene.build(aspect_ratio=1.0)
        setup_render_target(1, 1)
        color = render_pixel(0, 0, 2048, seed=2, max_depth=50, rr_start_depth=1000)
        assert color[0] == pytest.approx(1.0, rel=0.03)

    @pytest.mark.parametrize("seed", [0, 1, 2, 3])
    def test_closed_box_with_roulette(self, seed):
        """Test that Russian roulette leaves the expected radiance unchanged."""
        from pathtracer.core.integrator import render_pixel, setup_render_target

        scene = _closed_box_scene(albedo=0.5, emission=0.5)
        scene.build(aspect_ratio=1.0)
        setup_render_target(1, 1)
        color = render_pixel(0, 0, 4096, seed=seed, max_depth=64, rr_start_depth=1)
        assert color[0] == pytest.approx(1.0, rel=0.05)

    def test_roulette_mean_over_seeds(self):
        """Test the seed-averaged roulette estimate against the no-roulette one."""
        from pathtracer.core.integrator import render_pixel, setup_render_target

        scene = _closed_box_scene(albedo=0.5, emission=0.5)
        scene.build(aspect_ratio=1.0)
        setup_render_target(1, 1)
        with_rr = np.mean([render_pixel(0, 0, 2048, seed=s, rr_start_depth=1)[0] for s in range(4)])
        without_rr = np.mean([render_pixel(0, 0, 2048, seed=s, rr_start_depth=1000)[0] for s in range(4, 8)])
        assert with_rr == pytest.approx(without_rr, rel=0.03)


class TestDeterminism:
    """Tests for reproducible rendering."""

    def test_same_seed_same_image(self):
        """Test that two renders with the same seed are bit-identical."""
        from pathtracer.core.progressive import render
        from pathtracer.scene.scenes import create_cornell_box_scene

        a = render(create_cornell_box_scene(), 12, 12, 4, max_depth=8, seed=3)
        b = render(create_cornell_box_scene(), 12, 12, 4, max_depth=8, seed=3)
        assert np.array_equal(a, b)

    def test_batch_size_does_not_change_image(self):
        """Test that batching the same samples differently gives the same image."""
        from pathtracer.core.progressive import render
        from pathtracer.scene.scenes import create_cornell_box_scene

        a = render(create_cornell_box_scene(), 12, 12, 6, max_depth=8, seed=3, batch_size=1)
        b = render(create_cornell_box_scene(), 12, 12, 6, max_depth=8, seed=3, batch_size=4)
        assert np.array_equal(a, b)

    def test_different_seeds_differ(self):
        """Test that the seed changes the noise."""
        from pathtracer.core.progressive import render
        from pathtracer.scene.scenes import create_cornell_box_scene

        a = render(create_cornell_box_scene(), 12, 12, 2, max_depth=8, seed=0)
        b = render(create_cornell_box_scene(), 12, 12, 2, max_depth=8, seed=1)
        assert not np.array_equal(a, b)

    def test_render_pixel_matches_full_render(self):
        """Test that render_pixel reproduces the accumulated pixel value."""
        from pathtracer.core.integrator import render_pixel
        from pathtracer.core.progressive import render
        from pathtracer.scene.scenes import create_cornell_box_scene

        width, height = 8, 6
        image = render(create_cornell_box_scene(), width, height, 4, seed=9)
        for i, j in [(0, 0), (3, 2), (7, 5)]:
            color = render_pixel(i, j, 4, seed=9)
            # j = 0 is the bottom row, image row 0 is the top
            np.testing.assert_allclose(color, image[height - 1 - j, i], rtol=1e-5, atol=1e-6)


class TestTerminationStats:
    """Tests for path termination bookkeeping."""

    def test_emissive_sphere_paths(self):
        """Test that paths toward an emitter on black either escape or are absorbed."""
        from pathtracer.core.progressive import render_with_stats
        from pathtracer.scene.scenes import create_emissive_sphere_scene

        _image, stats = render_with_stats(create_emissive_sphere_scene(), 16, 16, 4)
        t = stats.terminations
        assert t["escaped"] > 0
        assert t["absorbed"] > 0
        assert t["roulette_killed"] == 0
        assert t["depth_exceeded"] == 0
        assert t["escaped"] + t["absorbed"] == 16 * 16 * 4
        assert stats.discarded_samples == 0

    def test_depth_ceiling(self):
        """Test that a closed scene with max_depth 1 stops paths at the ceiling."""
        from pathtracer.core.progressive import render_with_stats

        image, stats = render_with_stats(_closed_box_scene(), 8, 8, 2, max_depth=1)
        t = stats.terminations
        assert t["depth_exceeded"] > 0
        assert t["roulette_killed"] == 0
        assert sum(t.values()) == 8 * 8 * 2
        assert np.all(np.isfinite(image))

    def test_roulette_kills_paths(self):
        """Test that roulette terminates some paths in a closed scene."""
        from pathtracer.core.progressive import render_with_stats

        _image, stats = render_with_stats(_closed_box_scene(), 8, 8, 4, rr_start_depth=1)
        assert stats.terminations["roulette_killed"] > 0
        assert sum(stats.terminations.values()) == 8 * 8 * 4

    def test_image_is_finite_and_non_negative(self):
        """Test the accumulated buffer of a scene with every material type."""
        from pathtracer.core.progressive import render
        from pathtracer.scene.scenes import create_bsdf_scene

        image = render(create_bsdf_scene(), 16, 9, 4, max_depth=12)
        assert np.all(np.isfinite(image))
        assert np.all(image >= 0.0)
        assert image.max() > 0.0


class TestEmissiveSphereImage:
    """Tests for the image of a lone emitter."""

    def test_coverage_matches_solid_angle(self):
        """Test that the mean pixel value equals the sphere's image-plane coverage."""
        from pathtracer.core.progressive import render
        from pathtracer.scene.scenes import create_emissive_sphere_scene

        image = render(create_emissive_sphere_scene(), 64, 64, 16)
        # Silhouette radius tan(asin(r / d)) over the half-height tan(vfov / 2)
        disk = math.tan(math.asin(1.0 / 5.0)) / math.tan(math.radians(20.0))
        expected = math.pi * disk**2 / 4.0
        assert image[..., 0].mean() == pytest.approx(expected, rel=0.03)
