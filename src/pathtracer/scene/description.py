"""Scene description loader.

A scene description is a mapping (usually read from JSON) with these keys:

- ``camera``: ``look_from``, ``look_at`` and optionally ``vup``, ``vfov``,
  ``aperture``, ``focus_distance``, ``aspect_ratio`` and ``shutter``
  (``[open, close]`` in normalized time).
- ``textures``: name -> ``{"type": "constant" | "checker" | "image", ...}``.
- ``materials``: name -> ``{"type": "lambertian" | "metal" | "dielectric" |
  "principled" | "emissive", ...}``. Texture fields (``base_color_texture``,
  ``roughness_texture``, ``metallic_texture``, ``normal_texture``) name
  textures.
- ``primitives``: list of ``sphere``, ``quad``, ``triangle``, ``mesh`` and
  ``box`` entries, each with a ``material``, an optional ``transform``
  (``scale``/``rotate``/``translate`` or a 4x4 ``matrix``) and optional
  ``motion`` (``{"translate": [dx, dy, dz]}`` over the shutter).
- ``lights``: list of ``{"type": "point", "position", "intensity"}``.
- ``environment``: ``{"color": [r, g, b]}`` or ``{"map": path}``, with
  ``intensity`` and ``rotation`` (degrees about +y).

Textures and materials may also be given as lists of entries with a
``name`` key. Relative file paths resolve against the description's
directory.

Example:
    >>> scene = load_scene_description({
    ...     "camera": {"look_from": [0, 1, 5], "look_at": [0, 0, 0]},
    ...     "materials": {"white": {"type": "lambertian", "albedo": [0.8, 0.8, 0.8]}},
    ...     "primitives": [{"type": "sphere", "center": [0, 0, 0], "radius": 1, "material": "white"}],
    ...     "environment": {"color": [1, 1, 1]},
    ... })
"""

import json
import logging
from collections.abc import Mapping
from dataclasses import replace
from pathlib import Path
from typing import Any

import numpy as np

from pathtracer.camera.thin_lens import ThinLensCamera
from pathtracer.errors import MalformedSceneError
from pathtracer.materials.principled import MaterialParams, MaterialType
from pathtracer.scene.manager import SceneManager
from pathtracer.scene.obj import load_obj
from pathtracer.scene.transform import (
    Matrix4,
    as_matrix,
    compose,
    flips_orientation,
    transform_normals,
    transform_points,
    transform_vectors,
    uniform_scale,
)

logger = logging.getLogger(__name__)

_TOP_LEVEL_KEYS = {"camera", "textures", "materials", "primitives", "lights", "environment"}
_TEXTURE_FIELDS = ("base_color_texture", "roughness_texture", "metallic_texture", "normal_texture")


def _require(entry: Mapping[str, Any], key: str, where: str) -> Any:
    try:
        return entry[key]
    except KeyError:
        raise MalformedSceneError(f"{where}: missing '{key}'") from None


def _named_entries(section: Any, what: str) -> list[tuple[str, dict[str, Any]]]:
    """Normalize a name -> spec mapping or a list of specs with ``name``."""
    if section is None:
        return []
    if isinstance(section, Mapping):
        return [(str(name), dict(spec)) for name, spec in section.items()]
    if isinstance(section, list):
        entries = []
        for k, spec in enumerate(section):
            spec = dict(spec)
            name = _require(spec, "name", f"{what} #{k}")
            del spec["name"]
            entries.append((str(name), spec))
        return entries
    raise MalformedSceneError(f"'{what}' must be a mapping or a list, got {type(section).__name__}")


class _Loader:
    def __init__(self, base_dir: Path | None) -> None:
        self.base_dir = base_dir
        self.scene = SceneManager()

    def path(self, value: str) -> Path:
        p = Path(value)
        if not p.is_absolute() and self.base_dir is not None:
            p = self.base_dir / p
        return p

    # -------------------------------------------------------------------------
    # Textures and materials
    # -------------------------------------------------------------------------

    def add_texture(self, name: str, spec: dict[str, Any]) -> None:
        kind = spec.get("type", "constant")
        where = f"Texture '{name}'"
        if kind == "constant":
            self.scene.add_constant_texture(_require(spec, "color", where), name=name)
        elif kind == "checker":
            self.scene.add_checker_texture(
                _require(spec, "even", where),
                _require(spec, "odd", where),
                float(spec.get("scale", 1.0)),
                name=name,
            )
        elif kind == "image":
            self.scene.add_image_texture(
                self.path(_require(spec, "path", where)),
                srgb=bool(spec.get("srgb", True)),
                name=name,
            )
        else:
            raise MalformedSceneError(f"{where}: unsupported texture type '{kind}'")

    def material_params(self, name: str, spec: dict[str, Any]) -> MaterialParams:
        spec = dict(spec)
        kind = spec.pop("type", "principled")
        textures = {key: self.scene.texture_id(spec.pop(key)) for key in _TEXTURE_FIELDS if key in spec}
        if "texture" in spec:
            textures["base_color_texture"] = self.scene.texture_id(spec.pop("texture"))

        try:
            if kind == "lambertian":
                params = MaterialParams.lambertian(tuple(spec.pop("albedo", spec.pop("base_color", (0.8, 0.8, 0.8)))))
            elif kind == "metal":
                params = MaterialParams.metal(
                    tuple(spec.pop("albedo", spec.pop("base_color", (0.9, 0.9, 0.9)))),
                    float(spec.pop("roughness", 0.0)),
                )
            elif kind == "dielectric":
                params = MaterialParams.dielectric(
                    float(spec.pop("ior", 1.5)),
                    float(spec.pop("roughness", 0.0)),
                    tuple(spec.pop("tint", (1.0, 1.0, 1.0))),
                )
            elif kind == "emissive":
                emission = np.asarray(_require(spec, "emission", f"Material '{name}'"), dtype=np.float64)
                spec.pop("emission")
                params = MaterialParams.emissive(tuple(emission * float(spec.pop("intensity", 1.0))))
            elif kind == "principled":
                for key in ("base_color", "emission"):
                    if key in spec:
                        spec[key] = tuple(spec[key])
                params = MaterialParams(kind=MaterialType.PRINCIPLED, **spec)
                spec = {}
            else:
                raise MalformedSceneError(f"Material '{name}': unsupported material type '{kind}'")
        except TypeError as exc:
            raise MalformedSceneError(f"Material '{name}': {exc}") from exc

        if spec:
            raise MalformedSceneError(f"Material '{name}': unknown parameters {sorted(spec)}")
        return replace(params, **textures)

    # -------------------------------------------------------------------------
    # Primitives
    # -------------------------------------------------------------------------

    def transform(self, spec: dict[str, Any], where: str) -> Matrix4 | None:
        t = spec.get("transform")
        if t is None:
            return None
        try:
            if "matrix" in t:
                if any(key in t for key in ("scale", "rotate", "translate")):
                    raise ValueError("give either 'matrix' or scale/rotate/translate, not both")
                return as_matrix(t["matrix"])
            unknown = set(t) - {"scale", "rotate", "translate"}
            if unknown:
                raise ValueError(f"unknown transform keys {sorted(unknown)}")
            return as_matrix(
                compose(
                    scale=t.get("scale", 1.0),
                    rotate=t.get("rotate", (0.0, 0.0, 0.0)),
                    translate=t.get("translate", (0.0, 0.0, 0.0)),
                )
            )
        except ValueError as exc:
            raise MalformedSceneError(f"{where}: invalid transform: {exc}") from exc

    @staticmethod
    def motion(spec: dict[str, Any], where: str):
        m = spec.get("motion")
        if m is None:
            return None
        return _require(m, "translate", f"{where} motion")

    def add_primitive(self, index: int, spec: dict[str, Any]) -> None:
        kind = spec.get("type")
        where = f"Primitive #{index} ({kind})"
        material = _require(spec, "material", where)
        m = self.transform(spec, where)
        motion = self.motion(spec, where)
        scene = self.scene

        if kind == "sphere":
            center = np.asarray(_require(spec, "center", where), dtype=np.float64)
            radius = float(_require(spec, "radius", where))
            if m is not None:
                s = uniform_scale(m)
                if s is None:
                    raise MalformedSceneError(f"{where}: spheres only support uniform scaling")
                center = transform_points(m, center)
                radius *= s
            scene.add_sphere(tuple(center), radius, material, motion=motion)
        elif kind == "quad":
            q = np.asarray(_require(spec, "corner", where), dtype=np.float64)
            u = np.asarray(_require(spec, "u", where), dtype=np.float64)
            v = np.asarray(_require(spec, "v", where), dtype=np.float64)
            if m is not None:
                q, u, v = transform_points(m, q), transform_vectors(m, u), transform_vectors(m, v)
                if flips_orientation(m):
                    u, v = v, u
            scene.add_quad(tuple(q), tuple(u), tuple(v), material, motion=motion)
        elif kind == "triangle":
            vertices = np.asarray(_require(spec, "vertices", where), dtype=np.float64)
            if vertices.shape != (3, 3):
                raise MalformedSceneError(f"{where}: 'vertices' must be 3 points")
            normals = spec.get("normals")
            if m is not None:
                vertices = transform_points(m, vertices)
                if normals is not None:
                    normals = transform_normals(m, normals)
                if flips_orientation(m):
                    vertices = vertices[::-1]
                    normals = None if normals is None else np.asarray(normals)[::-1]
            scene.add_triangle(*vertices, material, normals=normals, uvs=spec.get("uvs"), motion=motion)
        elif kind == "mesh":
            if "path" in spec:
                mesh = load_obj(self.path(spec["path"]))
                vertices, faces, normals, uvs = mesh.vertices, mesh.faces, mesh.normals, mesh.uvs
            else:
                vertices = _require(spec, "vertices", where)
                faces = np.asarray(_require(spec, "faces", where), dtype=np.int64)
                normals, uvs = spec.get("normals"), spec.get("uvs")
            scene.add_mesh(vertices, faces, material, normals=normals, uvs=uvs, transform=m, motion=motion)
        elif kind == "box":
            scene.add_box(_require(spec, "min", where), _require(spec, "max", where), material, m, motion)
        else:
            raise MalformedSceneError(f"{where}: unsupported primitive type '{kind}'")

    # -------------------------------------------------------------------------
    # Camera, lights and environment
    # -------------------------------------------------------------------------

    def set_camera(self, spec: dict[str, Any]) -> None:
        shutter = spec.get("shutter", (0.0, 1.0))
        try:
            camera = ThinLensCamera(
                lookfrom=tuple(float(x) for x in _require(spec, "look_from", "Camera")),
                lookat=tuple(float(x) for x in _require(spec, "look_at", "Camera")),
                vup=tuple(float(x) for x in spec.get("vup", (0.0, 1.0, 0.0))),
                vfov=float(spec.get("vfov", 40.0)),
                aspect_ratio=float(spec.get("aspect_ratio", 16.0 / 9.0)),
                aperture=float(spec.get("aperture", 0.0)),
                focus_distance=None if spec.get("focus_distance") is None else float(spec["focus_distance"]),
                shutter_open=float(shutter[0]),
                shutter_close=float(shutter[1]),
            )
        except (TypeError, IndexError, ValueError) as exc:
            if isinstance(exc, MalformedSceneError):
                raise
            raise MalformedSceneError(f"Camera: {exc}") from exc
        self.scene.set_camera(camera)

    def add_light(self, index: int, spec: dict[str, Any]) -> None:
        kind = spec.get("type", "point")
        where = f"Light #{index}"
        if kind != "point":
            raise MalformedSceneError(f"{where}: unsupported light type '{kind}'")
        self.scene.add_point_light(_require(spec, "position", where), _require(spec, "intensity", where))

    def set_environment(self, spec: dict[str, Any]) -> None:
        intensity = float(spec.get("intensity", 1.0))
        if "map" in spec:
            self.scene.set_environment_map(
                self.path(spec["map"]),
                intensity=intensity,
                rotation_degrees=float(spec.get("rotation", 0.0)),
            )
        elif "color" in spec:
            self.scene.set_environment_color(spec["color"], intensity=intensity)
        else:
            raise MalformedSceneError("Environment needs either 'color' or 'map'")

    def load(self, description: Mapping[str, Any]) -> SceneManager:
        unknown = set(description) - _TOP_LEVEL_KEYS
        if unknown:
            raise MalformedSceneError(f"Unknown scene keys {sorted(unknown)}")

        for name, spec in _named_entries(description.get("textures"), "textures"):
            self.add_texture(name, spec)
        for name, spec in _named_entries(description.get("materials"), "materials"):
            self.scene.add_material(self.material_params(name, spec), name=name)
        for k, spec in enumerate(description.get("primitives", [])):
            self.add_primitive(k, dict(spec))
        for k, spec in enumerate(description.get("lights", [])):
            self.add_light(k, dict(spec))
        if description.get("environment") is not None:
            self.set_environment(dict(description["environment"]))
        if "camera" not in description:
            raise MalformedSceneError("Scene has no camera")
        self.set_camera(dict(description["camera"]))
        return self.scene


def load_scene_description(description: Mapping[str, Any], base_dir: str | Path | None = None) -> SceneManager:
    """Build a SceneManager from a scene description mapping.

    Args:
        description: The scene, as described in the module docstring.
        base_dir: Directory that relative texture, mesh and environment
            paths resolve against.

    Returns:
        A SceneManager ready for ``build()``.

    Raises:
        MalformedSceneError: If anything in the description is missing,
            unknown or out of range.
    """
    if not isinstance(description, Mapping):
        raise MalformedSceneError(f"Scene description must be a mapping, got {type(description).__name__}")
    try:
        return _Loader(None if base_dir is None else Path(base_dir)).load(description)
    except (TypeError, ValueError) as exc:
        if isinstance(exc, MalformedSceneError):
            raise
        raise MalformedSceneError(f"Invalid scene description: {exc}") from exc


def load_scene_file(path: str | Path) -> SceneManager:
    """Read a JSON scene description.

    Raises:
        MalformedSceneError: If the file cannot be read or is not valid
            JSON, or the description is invalid.
    """
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            description = json.load(f)
    except OSError as exc:
        raise MalformedSceneError(f"Cannot read scene file '{path}': {exc}") from exc
    except json.JSONDecodeError as exc:
        raise MalformedSceneError(f"Scene file '{path}' is not valid JSON: {exc}") from exc
    logger.info("Loading scene %s", path)
    return load_scene_description(description, base_dir=path.parent)
