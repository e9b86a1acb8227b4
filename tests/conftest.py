"""Pytest configuration for path tracer tests.

This module provides shared fixtures for all test modules, including
Taichi initialization which must happen once per session.
"""

import pytest
import taichi as ti


@pytest.fixture(scope="session", autouse=True)
def init_taichi_session():
    """Initialize Taichi once for the entire test session.

    Using session scope prevents multiple ti.init() calls, which would
    invalidate every field allocated by the modules under test.
    """
    ti.init(arch=ti.cpu, random_seed=42)
    yield


@pytest.fixture(autouse=True)
def clear_all_scene_data():
    """Reset every global table before and after each test."""
    # Imported here so the fields are allocated after ti.init()
    from pathtracer.core.integrator import clear_render_target
    from pathtracer.lights.environment import clear_environment
    from pathtracer.lights.lights import clear_lights
    from pathtracer.materials.principled import clear_materials
    from pathtracer.materials.textures import clear_textures
    from pathtracer.scene.intersection import clear_scene

    def _clear_all():
        clear_scene()
        clear_materials()
        clear_textures()
        clear_environment()
        clear_lights()
        clear_render_target()

    _clear_all()
    yield
    _clear_all()


@pytest.fixture
def simple_camera():
    """A pinhole camera at z = 5 looking at the origin with a square image."""
    from pathtracer.camera.thin_lens import ThinLensCamera

    return ThinLensCamera(lookfrom=(0.0, 0.0, 5.0), lookat=(0.0, 0.0, 0.0), vfov=40.0, aspect_ratio=1.0)
