"""Tests for tone mapping and image export."""

import numpy as np
import pytest


class TestToneMap:
    """Tests for the display transform."""

    def test_srgb_round_trip(self):
        """Test that sRGB decode inverts encode."""
        from pathtracer.output.tonemap import linear_to_srgb, srgb_to_linear

        x = np.linspace(0.0, 1.0, 101, dtype=np.float32)
        np.testing.assert_allclose(srgb_to_linear(linear_to_srgb(x)), x, atol=1e-5)
        assert linear_to_srgb(np.float32(0.5)) == pytest.approx(0.7354, abs=1e-3)

    def test_reinhard(self):
        """Test x / (1 + x) with negatives clamped."""
        from pathtracer.output.tonemap import reinhard

        np.testing.assert_allclose(reinhard([-1.0, 0.0, 1.0, 3.0]), [0.0, 0.0, 0.5, 0.75])

    def test_process_modes(self):
        """Test each mode keeps values in [0, 1] and handles NaN."""
        from pathtracer.output.tonemap import process_image_for_display

        image = np.array([[[0.0, 0.5, 100.0], [np.nan, np.inf, -1.0]]], dtype=np.float32)
        for mode in ("none", "reinhard", "exposure"):
            out = process_image_for_display(image, tone_map=mode)
            assert out.shape == image.shape
            assert np.all((out >= 0.0) & (out <= 1.0))
            assert out[0, 1, 0] == 0.0

        raw = process_image_for_display(image, tone_map="none", srgb=False)
        np.testing.assert_allclose(raw[0, 0], [0.0, 0.5, 1.0])

    def test_exposure_stops(self):
        """Test that one stop doubles the input before clipping."""
        from pathtracer.output.tonemap import process_image_for_display

        image = np.full((1, 1, 3), 0.25, dtype=np.float32)
        out = process_image_for_display(image, tone_map="none", exposure_stops=1.0, srgb=False)
        np.testing.assert_allclose(out, 0.5)

    def test_unknown_mode(self):
        """Test that unknown tone maps raise ValueError."""
        from pathtracer.output.tonemap import process_image_for_display

        with pytest.raises(ValueError):
            process_image_for_display(np.zeros((1, 1, 3)), tone_map="filmic")


class TestExport:
    """Tests for writing images."""

    def test_save_png(self, tmp_path):
        """Test an 8-bit RGB PNG with row 0 at the top."""
        from PIL import Image

        from pathtracer.output.export import save_png

        image = np.zeros((4, 6, 3), dtype=np.float32)
        image[0, :] = 100.0
        path = save_png(tmp_path / "out" / "render.png", image, tone_map="none")
        with Image.open(path) as png:
            assert png.size == (6, 4)
            assert png.mode == "RGB"
            pixels = np.asarray(png)
        assert np.all(pixels[0] == 255)
        assert np.all(pixels[1:] == 0)

    def test_save_npy(self, tmp_path):
        """Test that the linear buffer is stored unchanged as float32."""
        from pathtracer.output.export import save_npy

        image = np.random.default_rng(0).uniform(0.0, 20.0, size=(3, 5, 3))
        path = save_npy(tmp_path / "render.npy", image)
        loaded = np.load(path)
        assert loaded.dtype == np.float32
        np.testing.assert_allclose(loaded, image, rtol=1e-6)

    def test_rmse(self):
        """Test the error metric and its shape check."""
        from pathtracer.output.export import compute_rmse

        a = np.zeros((2, 2, 3))
        assert compute_rmse(a, a + 0.5) == pytest.approx(0.5)
        with pytest.raises(ValueError):
            compute_rmse(a, np.zeros((2, 3, 3)))
