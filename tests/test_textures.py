"""Tests for texture registration, lookup and normal mapping."""

import numpy as np
import pytest
import taichi as ti


def _lookup(tex_id, uvs, points=None):
    from pathtracer.materials.textures import sample_texture

    n = len(uvs)
    if points is None:
        points = [(0.0, 0.0, 0.0)] * n
    uv_field = ti.Vector.field(2, dtype=ti.f32, shape=n)
    p_field = ti.Vector.field(3, dtype=ti.f32, shape=n)
    out = ti.Vector.field(3, dtype=ti.f32, shape=n)
    uv_field.from_numpy(np.asarray(uvs, dtype=np.float32))
    p_field.from_numpy(np.asarray(points, dtype=np.float32))

    @ti.kernel
    def test_kernel(tid: ti.i32):
        for i in range(n):
            out[i] = sample_texture(tid, uv_field[i], p_field[i])

    test_kernel(tex_id)
    return out.to_numpy()


class TestProceduralTextures:
    """Tests for constant and checker textures."""

    def test_constant(self):
        """Test that a constant texture ignores uv and position."""
        from pathtracer.materials.textures import add_constant_texture, get_texture_count

        tex = add_constant_texture((0.1, 0.2, 0.3))
        assert get_texture_count() == 1
        colors = _lookup(tex, [(0.0, 0.0), (0.7, 0.2)], [(5.0, 1.0, 2.0), (-3.0, 0.0, 9.0)])
        np.testing.assert_allclose(colors, [[0.1, 0.2, 0.3]] * 2, atol=1e-6)

    def test_checker_parity(self):
        """Test that neighbouring cells alternate, including negative coordinates."""
        from pathtracer.materials.textures import add_checker_texture

        tex = add_checker_texture((1.0, 0.0, 0.0), (0.0, 0.0, 1.0), scale=0.5)
        points = [
            (0.1, 0.1, 0.1),
            (0.6, 0.1, 0.1),
            (0.6, 0.6, 0.1),
            (-0.1, 0.1, 0.1),
            (-0.1, -0.1, 0.1),
        ]
        colors = _lookup(tex, [(0.0, 0.0)] * len(points), points)
        red = [1.0, 0.0, 0.0]
        blue = [0.0, 0.0, 1.0]
        np.testing.assert_allclose(colors, [red, blue, red, blue, red], atol=1e-6)

    def test_invalid_arguments(self):
        """Test rejection of bad scales and colors."""
        from pathtracer.materials.textures import add_checker_texture, add_constant_texture

        with pytest.raises(ValueError):
            add_checker_texture((1.0, 1.0, 1.0), (0.0, 0.0, 0.0), scale=0.0)
        with pytest.raises(ValueError):
            add_constant_texture((1.0, -1.0, 0.0))
        with pytest.raises(ValueError):
            add_constant_texture((1.0, np.nan, 0.0))
        with pytest.raises(ValueError):
            add_constant_texture((1.0, 1.0))

    def test_capacity(self, monkeypatch):
        """Test that registering past the texture table raises."""
        from pathtracer.errors import ResourceExhaustedError
        from pathtracer.materials import textures

        monkeypatch.setattr(textures, "MAX_TEXTURES", 2)
        textures.add_constant_texture((1.0, 1.0, 1.0))
        textures.add_constant_texture((1.0, 1.0, 1.0))
        with pytest.raises(ResourceExhaustedError):
            textures.add_constant_texture((1.0, 1.0, 1.0))

    def test_clear(self):
        """Test that clearing resets the texture count."""
        from pathtracer.materials.textures import add_constant_texture, clear_textures, get_texture_count

        add_constant_texture((1.0, 1.0, 1.0))
        clear_textures()
        assert get_texture_count() == 0


class TestImageTextures:
    """Tests for raster textures in the texel atlas."""

    def _quadrants(self):
        # Row 0 is the top of the image
        img = np.zeros((2, 2, 3), dtype=np.float32)
        img[0, 0] = (1.0, 0.0, 0.0)
        img[0, 1] = (0.0, 1.0, 0.0)
        img[1, 0] = (0.0, 0.0, 1.0)
        img[1, 1] = (1.0, 1.0, 1.0)
        return img

    def test_orientation(self):
        """Test that v = 0 addresses the bottom row and u = 0 the left column."""
        from pathtracer.materials.textures import add_image_texture

        tex = add_image_texture(self._quadrants())
        colors = _lookup(tex, [(0.25, 0.75), (0.75, 0.75), (0.25, 0.25), (0.75, 0.25)])
        np.testing.assert_allclose(colors, [[1, 0, 0], [0, 1, 0], [0, 0, 1], [1, 1, 1]], atol=1e-6)

    def test_wrap(self):
        """Test that uv coordinates outside [0, 1) wrap around."""
        from pathtracer.materials.textures import add_image_texture

        tex = add_image_texture(self._quadrants())
        colors = _lookup(tex, [(1.25, 0.75), (-0.75, -0.25), (0.75, 2.25)])
        np.testing.assert_allclose(colors, [[1, 0, 0], [1, 0, 0], [1, 1, 1]], atol=1e-6)

    def test_two_images_share_atlas(self):
        """Test that the second image does not overwrite the first."""
        from pathtracer.materials.textures import add_image_texture

        first = add_image_texture(self._quadrants())
        second = add_image_texture(np.full((3, 5, 3), 0.5, dtype=np.float32))
        np.testing.assert_allclose(_lookup(first, [(0.25, 0.75)]), [[1, 0, 0]], atol=1e-6)
        np.testing.assert_allclose(_lookup(second, [(0.9, 0.1)]), [[0.5, 0.5, 0.5]], atol=1e-6)

    def test_bad_shape(self):
        """Test that non-RGB arrays are rejected."""
        from pathtracer.materials.textures import add_image_texture

        with pytest.raises(ValueError):
            add_image_texture(np.zeros((4, 4), dtype=np.float32))
        with pytest.raises(ValueError):
            add_image_texture(np.zeros((0, 4, 3), dtype=np.float32))

    def test_atlas_exhausted(self, monkeypatch):
        """Test that an image larger than the free atlas space raises."""
        from pathtracer.errors import ResourceExhaustedError
        from pathtracer.materials import textures

        monkeypatch.setattr(textures, "MAX_TEXELS", 8)
        with pytest.raises(ResourceExhaustedError):
            textures.add_image_texture(np.zeros((3, 3, 3), dtype=np.float32))

    def test_load_png(self, tmp_path):
        """Test sRGB decoding of an 8-bit PNG and raw loading for data maps."""
        from PIL import Image

        from pathtracer.materials.textures import load_image_texture

        path = tmp_path / "gray.png"
        Image.fromarray(np.full((2, 3, 3), 255, dtype=np.uint8)).save(path)
        rgb = load_image_texture(path)
        assert rgb.shape == (2, 3, 3)
        assert rgb.dtype == np.float32
        np.testing.assert_allclose(rgb, 1.0, atol=1e-5)

        Image.fromarray(np.full((1, 1, 3), 128, dtype=np.uint8)).save(path)
        linear = load_image_texture(path)
        raw = load_image_texture(path, srgb=False)
        assert raw[0, 0, 0] == pytest.approx(128.0 / 255.0)
        assert linear[0, 0, 0] == pytest.approx(0.2158, abs=1e-3)

    def test_load_missing(self, tmp_path):
        """Test that an unreadable file is a scene error."""
        from pathtracer.errors import MalformedSceneError
        from pathtracer.materials.textures import load_image_texture

        with pytest.raises(MalformedSceneError):
            load_image_texture(tmp_path / "missing.png")


class TestNormalMap:
    """Tests for tangent-space normal perturbation."""

    def _perturb(self, tex_id):
        from pathtracer.materials.textures import perturb_normal

        out = ti.Vector.field(3, dtype=ti.f32, shape=())

        @ti.kernel
        def test_kernel(tid: ti.i32):
            out[None] = perturb_normal(
                tid,
                ti.math.vec2(0.5, 0.5),
                ti.math.vec3(0.0, 0.0, 0.0),
                ti.math.vec3(0.0, 1.0, 0.0),
                ti.math.vec3(1.0, 0.0, 0.0),
            )

        test_kernel(tex_id)
        return out[None].to_numpy()

    def test_flat_map_keeps_normal(self):
        """Test that (0.5, 0.5, 1) leaves the normal unchanged."""
        from pathtracer.materials.textures import add_constant_texture

        tex = add_constant_texture((0.5, 0.5, 1.0))
        np.testing.assert_allclose(self._perturb(tex), [0.0, 1.0, 0.0], atol=1e-6)

    def test_tilted_map(self):
        """Test that a map leaning along +x tilts the normal toward the tangent."""
        from pathtracer.materials.textures import add_constant_texture

        tex = add_constant_texture((1.0, 0.5, 0.5))
        np.testing.assert_allclose(self._perturb(tex), [1.0, 0.0, 0.0], atol=1e-6)
