"""Tests for loading scenes from description mappings and JSON files."""

import json

import numpy as np
import pytest


def _minimal(**extra):
    description = {
        "camera": {"look_from": [0, 0, 5], "look_at": [0, 0, 0], "aspect_ratio": 1.0},
        "materials": {"white": {"type": "lambertian", "albedo": [0.8, 0.8, 0.8]}},
        "primitives": [{"type": "sphere", "center": [0, 0, 0], "radius": 1, "material": "white"}],
    }
    description.update(extra)
    return description


class TestDescription:
    """Tests for load_scene_description."""

    def test_minimal_scene(self):
        """Test a camera, one material and one sphere."""
        from pathtracer.scene.description import load_scene_description

        scene = load_scene_description(_minimal())
        assert scene.get_sphere_count() == 1
        assert scene.material_id("white") == 0
        assert scene.camera.lookfrom == (0.0, 0.0, 5.0)
        assert scene.aspect_ratio() == 1.0

    def test_all_sections(self, simple_camera):
        """Test textures, every material kind, every primitive kind, lights and environment."""
        from pathtracer.materials.principled import MaterialType
        from pathtracer.scene.description import load_scene_description

        description = _minimal(
            textures=[
                {"name": "checks", "type": "checker", "even": [0, 0, 0], "odd": [1, 1, 1], "scale": 4},
                {"name": "flat", "color": [0.5, 0.5, 0.5]},
            ],
            materials={
                "white": {"type": "lambertian", "texture": "checks"},
                "gold": {"type": "metal", "albedo": [1.0, 0.8, 0.3], "roughness": 0.2},
                "glass": {"type": "dielectric", "ior": 1.5},
                "lamp": {"type": "emissive", "emission": [1, 1, 1], "intensity": 4},
                "plastic": {"base_color": [0.2, 0.3, 0.8], "roughness": 0.4, "clearcoat": 1.0},
            },
            primitives=[
                {"type": "sphere", "center": [0, 0, 0], "radius": 1, "material": "glass"},
                {"type": "quad", "corner": [-1, 2, -1], "u": [2, 0, 0], "v": [0, 0, 2], "material": "lamp"},
                {"type": "triangle", "vertices": [[0, 0, -2], [1, 0, -2], [0, 1, -2]], "material": "gold"},
                {
                    "type": "mesh",
                    "vertices": [[0, 0, -3], [1, 0, -3], [1, 1, -3], [0, 1, -3]],
                    "faces": [[0, 1, 2], [0, 2, 3]],
                    "material": "plastic",
                },
                {
                    "type": "box",
                    "min": [-1, -3, -1],
                    "max": [1, -2, 1],
                    "material": "white",
                    "transform": {"rotate": [0, 45, 0]},
                    "motion": {"translate": [0, 0.5, 0]},
                },
            ],
            lights=[{"type": "point", "position": [0, 5, 0], "intensity": [10, 10, 10]}],
            environment={"color": [0.1, 0.1, 0.2], "intensity": 0.5},
        )
        scene = load_scene_description(description)
        assert (scene.get_sphere_count(), scene.get_quad_count(), scene.get_triangle_count()) == (1, 7, 3)
        assert scene.get_point_light_count() == 1
        assert scene.get_material_info("white").params.base_color_texture == scene.texture_id("checks")
        assert scene.get_material_info("plastic").params.kind == MaterialType.PRINCIPLED
        np.testing.assert_allclose(scene.get_material_info("lamp").params.emission, [4.0, 4.0, 4.0])

        counts = scene.build()
        assert counts.lights == 2

    def test_sphere_transform(self):
        """Test that uniform scale and translation move and grow spheres."""
        from pathtracer.scene.description import load_scene_description

        description = _minimal()
        description["primitives"][0]["transform"] = {"scale": 2, "translate": [1, 0, 0]}
        scene = load_scene_description(description)
        np.testing.assert_allclose(scene._geometry.sphere_centers[0], [1.0, 0.0, 0.0])
        assert scene._geometry.sphere_radii[0] == pytest.approx(2.0)

    @pytest.mark.parametrize(
        "change",
        [
            {"lights": [{"type": "spot", "position": [0, 0, 0], "intensity": [1, 1, 1]}]},
            {"shapes": []},
            {"primitives": [{"type": "cone", "material": "white"}]},
            {"primitives": [{"type": "sphere", "center": [0, 0, 0], "material": "white"}]},
            {"primitives": [{"type": "sphere", "center": [0, 0, 0], "radius": 1, "material": "missing"}]},
            {"materials": {"white": {"type": "velvet"}}},
            {"materials": {"white": {"type": "metal", "fuzz": 0.5}}},
            {"materials": {"white": {"type": "principled", "roughness": 3.0}}},
            {"materials": {"white": {"type": "lambertian", "texture": "missing"}}},
            {"textures": {"t": {"type": "noise"}}},
            {"environment": {"intensity": 1.0}},
            {"camera": {"look_at": [0, 0, 0]}},
            {"camera": {"look_from": [0, 0, 0], "look_at": [0, 0, 0]}},
        ],
    )
    def test_malformed(self, change):
        """Test that invalid descriptions raise MalformedSceneError."""
        from pathtracer.errors import MalformedSceneError
        from pathtracer.scene.description import load_scene_description

        with pytest.raises(MalformedSceneError):
            load_scene_description(_minimal(**change))

    def test_non_uniform_sphere_scale(self):
        """Test that spheres reject stretching transforms."""
        from pathtracer.errors import MalformedSceneError
        from pathtracer.scene.description import load_scene_description

        description = _minimal()
        description["primitives"][0]["transform"] = {"scale": [1, 2, 1]}
        with pytest.raises(MalformedSceneError):
            load_scene_description(description)

    def test_missing_camera(self):
        """Test that a scene without a camera is rejected."""
        from pathtracer.errors import MalformedSceneError
        from pathtracer.scene.description import load_scene_description

        description = _minimal()
        del description["camera"]
        with pytest.raises(MalformedSceneError):
            load_scene_description(description)
        with pytest.raises(MalformedSceneError):
            load_scene_description([description])


class TestSceneFile:
    """Tests for load_scene_file and relative asset paths."""

    def test_relative_assets(self, tmp_path):
        """Test that meshes and environment maps resolve next to the file."""
        from pathtracer.scene.description import load_scene_file

        (tmp_path / "assets").mkdir()
        (tmp_path / "assets" / "tri.obj").write_text("v 0 0 0\nv 1 0 0\nv 0 1 0\nf 1 2 3\n", encoding="utf-8")
        np.save(tmp_path / "assets" / "sky.npy", np.full((4, 8, 3), 0.5, dtype=np.float32))
        description = _minimal(environment={"map": "assets/sky.npy", "rotation": 90})
        description["primitives"].append({"type": "mesh", "path": "assets/tri.obj", "material": "white"})
        path = tmp_path / "scene.json"
        path.write_text(json.dumps(description), encoding="utf-8")

        scene = load_scene_file(path)
        assert scene.get_triangle_count() == 1
        scene.build()

        from pathtracer.lights.environment import EnvironmentMode, get_environment_mode

        assert get_environment_mode() == EnvironmentMode.MAP

    def test_file_errors(self, tmp_path):
        """Test missing files and invalid JSON."""
        from pathtracer.errors import MalformedSceneError
        from pathtracer.scene.description import load_scene_file

        with pytest.raises(MalformedSceneError):
            load_scene_file(tmp_path / "missing.json")
        bad = tmp_path / "bad.json"
        bad.write_text("{not json", encoding="utf-8")
        with pytest.raises(MalformedSceneError):
            load_scene_file(bad)
