"""Tests for the command-line interface."""

import logging

import numpy as np
import pytest


class TestArguments:
    """Tests for argument parsing and settings."""

    def test_defaults(self):
        """Test the default arguments."""
        from pathtracer.cli import parse_args

        args = parse_args([])
        assert args.quality == "low"
        assert args.scene == "cornell"
        assert args.scene_file is None
        assert args.seed == 0
        assert args.arch == "cpu"
        assert args.verbose == 0

    def test_scene_choices_match_scenes(self):
        """Test that every demo scene is selectable."""
        from pathtracer.cli import SCENE_CHOICES
        from pathtracer.scene.scenes import SCENE_NAMES

        assert tuple(SCENE_CHOICES) == SCENE_NAMES

    def test_rejected_arguments(self):
        """Test unknown scenes and non-positive time limits."""
        from pathtracer.cli import parse_args

        with pytest.raises(SystemExit):
            parse_args(["--scene", "teapot"])
        with pytest.raises(SystemExit):
            parse_args(["--time-limit", "0"])

    def test_make_settings(self):
        """Test that overrides replace preset values."""
        from pathtracer.cli import make_settings, parse_args

        args = parse_args(["--samples", "16", "--width", "200", "--max-depth", "4", "--seed", "3", "-vv"])
        settings = make_settings(args, aspect_ratio=2.0)
        assert (settings.width, settings.height) == (200, 100)
        assert settings.samples_per_pixel == 16
        assert settings.max_depth == 4
        assert settings.seed == 3
        assert args.verbose == 2

    def test_make_settings_invalid(self):
        """Test that a bad width is reported as ValueError."""
        from pathtracer.cli import make_settings, parse_args

        with pytest.raises(ValueError):
            make_settings(parse_args(["--width", "0"]), aspect_ratio=1.0)


class TestRun:
    """Tests for rendering from the command line."""

    def test_run_npy(self, tmp_path):
        """Test rendering a tiny emissive sphere to a linear buffer."""
        from pathtracer.cli import parse_args, run

        output = tmp_path / "sphere.npy"
        args = parse_args(
            ["--scene", "emissive-sphere", "--width", "16", "--samples", "4", "--output", str(output)]
        )
        assert run(args) == 0
        image = np.load(output)
        assert image.shape == (16, 16, 3)
        assert image[8, 8].mean() == pytest.approx(1.0, rel=0.05)
        assert image[0, 0].max() == 0.0

    def test_run_png(self, tmp_path):
        """Test that PNG output is tone mapped to 8 bits."""
        from PIL import Image

        from pathtracer.cli import parse_args, run

        output = tmp_path / "sphere.png"
        args = parse_args(["--scene", "emissive-sphere", "--width", "8", "--samples", "2", "--output", str(output)])
        assert run(args) == 0
        with Image.open(output) as png:
            assert png.size == (8, 8)

    def test_main_reports_scene_errors(self, tmp_path, monkeypatch, caplog):
        """Test that a missing scene file exits with status 1."""
        import taichi as ti

        from pathtracer import cli

        # Taichi is already initialized for the session
        monkeypatch.setattr(ti, "init", lambda **kwargs: None)
        monkeypatch.setattr(cli, "configure_logging", lambda verbosity: None)
        monkeypatch.setattr(logging.getLogger("pathtracer"), "propagate", True)
        caplog.set_level(logging.ERROR, logger="pathtracer")

        status = cli.main(["--scene-file", str(tmp_path / "missing.json"), "--output", str(tmp_path / "x.png")])
        assert status == 1
        assert "missing.json" in caplog.text
        assert not (tmp_path / "x.png").exists()

    def test_unwritable_output(self, tmp_path, monkeypatch, caplog):
        """Test that an output path below a regular file exits with status 1."""
        from pathtracer import cli

        monkeypatch.setattr(logging.getLogger("pathtracer"), "propagate", True)
        caplog.set_level(logging.ERROR, logger="pathtracer")

        blocker = tmp_path / "blocker"
        blocker.write_text("", encoding="utf-8")
        output = blocker / "sphere.png"
        args = cli.parse_args(["--scene", "emissive-sphere", "--width", "8", "--samples", "1", "--output", str(output)])
        assert cli.run(args) == 1
        assert "Cannot write" in caplog.text
        assert not output.exists()
