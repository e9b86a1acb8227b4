"""Scene manager for building and uploading scenes.

The SceneManager is the host-side description of a scene: named textures
and materials, primitives (spheres, quads, triangles, meshes and boxes),
point lights, the environment and the camera. Nothing reaches the Taichi
fields until ``build()`` is called, which validates everything, builds the
BVH and uploads geometry, materials, lights and camera in one step.

Material and texture ids are assigned in insertion order, so an id returned
by ``add_*`` stays valid across rebuilds. Both can also be referred to by
name.

Example:
    >>> scene = SceneManager()
    >>> red = scene.add_lambertian_material((0.8, 0.1, 0.1), name="red")
    >>> light = scene.add_emissive_material((10.0, 10.0, 10.0))
    >>> scene.add_sphere((0.0, 0.0, -1.0), 0.5, "red")
    >>> scene.add_quad((-1.0, 2.0, -2.0), (0.0, 0.0, 1.0), (1.0, 0.0, 0.0), light)
    >>> scene.set_camera(ThinLensCamera(lookfrom=(0.0, 1.0, 3.0), lookat=(0.0, 0.0, -1.0)))
    >>> scene.build(aspect_ratio=16.0 / 9.0)
"""

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import numpy as np
import numpy.typing as npt

from pathtracer.camera.thin_lens import ThinLensCamera, setup_camera
from pathtracer.errors import MalformedSceneError, ResourceExhaustedError
from pathtracer.geometry.aabb import AABB_PADDING
from pathtracer.geometry.bvh import build_bvh
from pathtracer.geometry.quad import quad_area_numpy
from pathtracer.geometry.triangle import triangle_areas_numpy
from pathtracer.lights.environment import (
    clear_environment,
    load_environment_map,
    set_environment_color,
    set_environment_map,
)
from pathtracer.lights.lights import area_light_power, build_lights, clear_lights
from pathtracer.materials.principled import (
    MAX_MATERIALS,
    MaterialParams,
    MaterialType,
    add_material,
    clear_materials,
)
from pathtracer.materials.textures import (
    MAX_TEXTURES,
    TextureType,
    add_checker_texture,
    add_constant_texture,
    add_image_texture,
    clear_textures,
    load_image_texture,
)
from pathtracer.scene.intersection import (
    MAX_PRIMITIVES,
    MAX_QUADS,
    MAX_SPHERES,
    PrimitiveType,
    clear_scene,
    upload_bvh,
    upload_primitives,
    upload_quads,
    upload_spheres,
    upload_triangles,
)
from pathtracer.scene.transform import (
    Matrix4,
    as_matrix,
    flips_orientation,
    transform_normals,
    transform_points,
    transform_vectors,
)

logger = logging.getLogger(__name__)

Color = tuple[float, float, float]
Vec3 = tuple[float, float, float]
MaterialRef = int | str


@dataclass
class TextureInfo:
    """A registered texture.

    Attributes:
        texture_id: Id used by materials.
        name: Unique name.
        kind: Texture type.
        params: Colors and scale for procedural textures, or the linear
            pixels of an image texture.
    """

    texture_id: int
    name: str
    kind: TextureType
    params: dict[str, Any]


@dataclass
class MaterialInfo:
    """A registered material.

    Attributes:
        material_id: Id stored in the primitive table.
        name: Unique name.
        params: Full parameter set.
    """

    material_id: int
    name: str
    params: MaterialParams


@dataclass
class SceneCounts:
    """Sizes of the uploaded scene, returned by ``SceneManager.build()``."""

    spheres: int = 0
    quads: int = 0
    triangles: int = 0
    materials: int = 0
    textures: int = 0
    lights: int = 0
    bvh_nodes: int = 0

    @property
    def primitives(self) -> int:
        return self.spheres + self.quads + self.triangles


@dataclass
class _Environment:
    color: Color | None = None
    pixels: np.ndarray | None = None
    intensity: float = 1.0
    rotation: float = 0.0


@dataclass
class _Geometry:
    """Host-side primitive storage, in primitive id order per type."""

    sphere_centers: list[Vec3] = field(default_factory=list)
    sphere_radii: list[float] = field(default_factory=list)
    quad_corners: list[Vec3] = field(default_factory=list)
    quad_u: list[Vec3] = field(default_factory=list)
    quad_v: list[Vec3] = field(default_factory=list)
    tri_vertices: list[np.ndarray] = field(default_factory=list)
    tri_normals: list[np.ndarray] = field(default_factory=list)
    tri_uvs: list[np.ndarray] = field(default_factory=list)
    tri_has_normals: list[int] = field(default_factory=list)
    # Unified table: (type, index into the per-type lists)
    types: list[int] = field(default_factory=list)
    indices: list[int] = field(default_factory=list)
    materials: list[int] = field(default_factory=list)
    motions: list[Vec3] = field(default_factory=list)


_DEFAULT_TRIANGLE_UVS = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]], dtype=np.float64)


def _vec3(name: str, value) -> Vec3:
    v = np.asarray(value, dtype=np.float64).reshape(-1)
    if v.shape != (3,) or not np.all(np.isfinite(v)):
        raise MalformedSceneError(f"{name} must be 3 finite numbers, got {value}")
    return (float(v[0]), float(v[1]), float(v[2]))


def _color(name: str, value) -> Color:
    c = _vec3(name, value)
    if min(c) < 0.0:
        raise MalformedSceneError(f"{name} must be non-negative, got {value}")
    return c


class SceneManager:
    """Host-side scene description with deferred upload.

    Attributes:
        textures: Registered textures in id order.
        materials: Registered materials in id order.
        camera: The camera, or None until ``set_camera`` is called.
    """

    def __init__(self) -> None:
        self.textures: list[TextureInfo] = []
        self.materials: list[MaterialInfo] = []
        self.camera: ThinLensCamera | None = None
        self._texture_names: dict[str, int] = {}
        self._material_names: dict[str, int] = {}
        self._geometry = _Geometry()
        self._point_positions: list[Vec3] = []
        self._point_intensities: list[Color] = []
        self._environment = _Environment()

    def clear(self) -> None:
        """Forget everything added so far."""
        self.__init__()

    # =========================================================================
    # Textures
    # =========================================================================

    def _register_texture(self, name: str | None, kind: TextureType, params: dict[str, Any]) -> int:
        texture_id = len(self.textures)
        if texture_id >= MAX_TEXTURES:
            raise ResourceExhaustedError(f"Maximum number of textures ({MAX_TEXTURES}) exceeded")
        name = f"texture_{texture_id}" if name is None else name
        if name in self._texture_names:
            raise MalformedSceneError(f"Duplicate texture name '{name}'")
        self._texture_names[name] = texture_id
        self.textures.append(TextureInfo(texture_id, name, kind, params))
        return texture_id

    def add_constant_texture(self, color: Color, name: str | None = None) -> int:
        return self._register_texture(name, TextureType.CONSTANT, {"color": _color("Texture color", color)})

    def add_checker_texture(self, even: Color, odd: Color, scale: float = 1.0, name: str | None = None) -> int:
        """Add a 3D checker texture with cells of edge length ``scale``.

        Raises:
            MalformedSceneError: If scale is not positive.
        """
        if not (np.isfinite(scale) and scale > 0.0):
            raise MalformedSceneError(f"Checker texture scale must be positive, got {scale}")
        params = {
            "even": _color("Checker color", even),
            "odd": _color("Checker color", odd),
            "scale": float(scale),
        }
        return self._register_texture(name, TextureType.CHECKER, params)

    def add_image_texture(
        self,
        image: npt.ArrayLike | str | Path,
        srgb: bool = True,
        name: str | None = None,
    ) -> int:
        """Add an image texture from linear pixels or an image file.

        Args:
            image: (H, W, 3) linear RGB array, or a path Pillow can read.
            srgb: Decode the file from sRGB. Ignored for arrays.
            name: Unique texture name.

        Raises:
            MalformedSceneError: If the file cannot be read or the array has
                the wrong shape.
        """
        if isinstance(image, (str, Path)):
            pixels = load_image_texture(image, srgb=srgb)
        else:
            pixels = np.asarray(image, dtype=np.float32)
        if pixels.ndim != 3 or pixels.shape[2] != 3 or pixels.shape[0] == 0 or pixels.shape[1] == 0:
            raise MalformedSceneError(f"Image texture must have shape (H, W, 3), got {pixels.shape}")
        if not np.all(np.isfinite(pixels)):
            raise MalformedSceneError("Image texture contains non-finite values")
        return self._register_texture(name, TextureType.IMAGE, {"pixels": pixels})

    def texture_id(self, name: str) -> int:
        """Look up a texture id by name.

        Raises:
            MalformedSceneError: If no texture has that name.
        """
        try:
            return self._texture_names[name]
        except KeyError:
            raise MalformedSceneError(f"Unknown texture '{name}'") from None

    # =========================================================================
    # Materials
    # =========================================================================

    def add_material(self, params: MaterialParams, name: str | None = None) -> int:
        """Register a material.

        Args:
            params: Material parameters. Texture fields must refer to
                textures already added.
            name: Unique material name. Defaults to ``material_<id>``.

        Returns:
            The material id.

        Raises:
            MalformedSceneError: If a parameter is out of range, a texture id
                is unknown or the name is taken.
            ResourceExhaustedError: If MAX_MATERIALS materials already exist.
        """
        material_id = len(self.materials)
        if material_id >= MAX_MATERIALS:
            raise ResourceExhaustedError(f"Maximum number of materials ({MAX_MATERIALS}) exceeded")
        name = f"material_{material_id}" if name is None else name
        if name in self._material_names:
            raise MalformedSceneError(f"Duplicate material name '{name}'")
        try:
            params.validate()
        except ValueError as exc:
            raise MalformedSceneError(f"Material '{name}': {exc}") from exc
        for attr in ("base_color_texture", "roughness_texture", "metallic_texture", "normal_texture"):
            tex = getattr(params, attr)
            if tex != -1 and not 0 <= tex < len(self.textures):
                raise MalformedSceneError(f"Material '{name}' references unknown texture id {tex} ({attr})")

        self._material_names[name] = material_id
        self.materials.append(MaterialInfo(material_id, name, params.normalized()))
        return material_id

    def add_lambertian_material(self, albedo: Color, name: str | None = None) -> int:
        return self.add_material(MaterialParams.lambertian(albedo), name)

    def add_metal_material(self, albedo: Color, roughness: float = 0.0, name: str | None = None) -> int:
        return self.add_material(MaterialParams.metal(albedo, roughness), name)

    def add_dielectric_material(
        self,
        ior: float = 1.5,
        roughness: float = 0.0,
        tint: Color = (1.0, 1.0, 1.0),
        name: str | None = None,
    ) -> int:
        return self.add_material(MaterialParams.dielectric(ior, roughness, tint), name)

    def add_emissive_material(self, emission: Color, name: str | None = None) -> int:
        """Add a pure emitter. Surfaces using it do not scatter light."""
        return self.add_material(MaterialParams.emissive(emission), name)

    def add_principled_material(self, name: str | None = None, **params: Any) -> int:
        """Add a principled material from keyword parameters.

        Raises:
            MalformedSceneError: If a keyword is not a material parameter.
        """
        try:
            material = MaterialParams(kind=MaterialType.PRINCIPLED, **params)
        except TypeError as exc:
            raise MalformedSceneError(f"Invalid principled material parameters: {exc}") from exc
        return self.add_material(material, name)

    def material_id(self, material: MaterialRef) -> int:
        """Resolve a material name or id.

        Raises:
            MalformedSceneError: If the material does not exist.
        """
        if isinstance(material, str):
            try:
                return self._material_names[material]
            except KeyError:
                raise MalformedSceneError(f"Unknown material '{material}'") from None
        idx = int(material)
        if not 0 <= idx < len(self.materials):
            raise MalformedSceneError(f"Invalid material id {material}")
        return idx

    def get_material_info(self, material: MaterialRef) -> MaterialInfo:
        return self.materials[self.material_id(material)]

    # =========================================================================
    # Primitives
    # =========================================================================

    def _add_primitive(self, kind: PrimitiveType, index: int, material_id: int, motion) -> int:
        g = self._geometry
        prim_id = len(g.types)
        if prim_id >= MAX_PRIMITIVES:
            raise ResourceExhaustedError(f"Maximum number of primitives ({MAX_PRIMITIVES}) exceeded")
        g.types.append(int(kind))
        g.indices.append(index)
        g.materials.append(material_id)
        g.motions.append((0.0, 0.0, 0.0) if motion is None else _vec3("Motion", motion))
        return prim_id

    def add_sphere(self, center: Vec3, radius: float, material: MaterialRef, motion: Vec3 | None = None) -> int:
        """Add a sphere.

        Args:
            center: Center at shutter time 0.
            radius: Radius, must be positive.
            material: Material name or id.
            motion: Translation over the full shutter interval.

        Returns:
            The primitive id.

        Raises:
            MalformedSceneError: On an unknown material or invalid geometry.
            ResourceExhaustedError: If the sphere table is full.
        """
        material_id = self.material_id(material)
        c = _vec3("Sphere center", center)
        if not (np.isfinite(radius) and radius > 0.0):
            raise MalformedSceneError(f"Sphere radius must be positive, got {radius}")
        g = self._geometry
        if len(g.sphere_centers) >= MAX_SPHERES:
            raise ResourceExhaustedError(f"Maximum number of spheres ({MAX_SPHERES}) exceeded")
        prim_id = self._add_primitive(PrimitiveType.SPHERE, len(g.sphere_centers), material_id, motion)
        g.sphere_centers.append(c)
        g.sphere_radii.append(float(radius))
        return prim_id

    def add_quad(
        self,
        corner: Vec3,
        edge_u: Vec3,
        edge_v: Vec3,
        material: MaterialRef,
        motion: Vec3 | None = None,
    ) -> int:
        """Add a parallelogram spanned by two edges from a corner.

        The front face (the emitting side for lights) is the side
        ``edge_u x edge_v`` points to.

        Raises:
            MalformedSceneError: On an unknown material or zero area.
            ResourceExhaustedError: If the quad table is full.
        """
        material_id = self.material_id(material)
        q = _vec3("Quad corner", corner)
        u = _vec3("Quad edge", edge_u)
        v = _vec3("Quad edge", edge_v)
        if quad_area_numpy(u, v) <= 0.0:
            raise MalformedSceneError(f"Quad at {q} has zero area")
        g = self._geometry
        if len(g.quad_corners) >= MAX_QUADS:
            raise ResourceExhaustedError(f"Maximum number of quads ({MAX_QUADS}) exceeded")
        prim_id = self._add_primitive(PrimitiveType.QUAD, len(g.quad_corners), material_id, motion)
        g.quad_corners.append(q)
        g.quad_u.append(u)
        g.quad_v.append(v)
        return prim_id

    def add_triangle(
        self,
        p0: Vec3,
        p1: Vec3,
        p2: Vec3,
        material: MaterialRef,
        normals: npt.ArrayLike | None = None,
        uvs: npt.ArrayLike | None = None,
        motion: Vec3 | None = None,
    ) -> int:
        """Add a triangle. Counter-clockwise vertices face the viewer.

        Args:
            p0: First vertex.
            p1: Second vertex.
            p2: Third vertex.
            material: Material name or id.
            normals: Optional (3, 3) per-vertex shading normals.
            uvs: Optional (3, 2) per-vertex texture coordinates.
            motion: Translation over the full shutter interval.

        Returns:
            The primitive id.
        """
        material_id = self.material_id(material)
        vertices = np.array([_vec3("Triangle vertex", p) for p in (p0, p1, p2)], dtype=np.float64)
        return self._append_triangles(vertices[None], normals, uvs, material_id, motion)[0]

    def _append_triangles(self, vertices, normals, uvs, material_id: int, motion) -> list[int]:
        vertices = np.asarray(vertices, dtype=np.float64).reshape(-1, 3, 3)
        n = len(vertices)
        if not np.all(np.isfinite(vertices)):
            raise MalformedSceneError("Triangle vertices must be finite")
        if normals is not None:
            normals = np.asarray(normals, dtype=np.float64).reshape(n, 3, 3)
            if not np.all(np.isfinite(normals)):
                raise MalformedSceneError("Triangle normals must be finite")
        if uvs is not None:
            uvs = np.asarray(uvs, dtype=np.float64).reshape(n, 3, 2)
            if not np.all(np.isfinite(uvs)):
                raise MalformedSceneError("Triangle uvs must be finite")

        g = self._geometry
        if len(g.types) + n > MAX_PRIMITIVES:
            raise ResourceExhaustedError(f"Maximum number of primitives ({MAX_PRIMITIVES}) exceeded")
        prim_ids = []
        for k in range(n):
            prim_ids.append(self._add_primitive(PrimitiveType.TRIANGLE, len(g.tri_vertices), material_id, motion))
            g.tri_vertices.append(vertices[k])
            g.tri_normals.append(np.zeros((3, 3)) if normals is None else normals[k])
            g.tri_uvs.append(_DEFAULT_TRIANGLE_UVS if uvs is None else uvs[k])
            g.tri_has_normals.append(0 if normals is None else 1)
        return prim_ids

    def add_mesh(
        self,
        vertices: npt.ArrayLike,
        faces: npt.ArrayLike,
        material: MaterialRef,
        normals: npt.ArrayLike | None = None,
        uvs: npt.ArrayLike | None = None,
        transform: npt.ArrayLike | None = None,
        motion: Vec3 | None = None,
    ) -> list[int]:
        """Add an indexed triangle mesh.

        Args:
            vertices: (V, 3) positions.
            faces: (F, 3) vertex indices per triangle.
            material: Material name or id.
            normals: Optional (V, 3) per-vertex normals.
            uvs: Optional (V, 2) per-vertex texture coordinates.
            transform: Optional 4x4 object-to-world matrix.
            motion: Translation over the full shutter interval.

        Returns:
            The primitive ids of the triangles, in face order.

        Raises:
            MalformedSceneError: On bad shapes, out-of-range indices, an
                unknown material or an invalid transform.
        """
        material_id = self.material_id(material)
        v = np.asarray(vertices, dtype=np.float64)
        f = np.asarray(faces)
        if v.ndim != 2 or v.shape[1] != 3 or len(v) == 0:
            raise MalformedSceneError(f"Mesh vertices must have shape (V, 3), got {v.shape}")
        if f.ndim != 2 or f.shape[1] != 3 or len(f) == 0:
            raise MalformedSceneError(f"Mesh faces must have shape (F, 3), got {f.shape}")
        if not np.issubdtype(f.dtype, np.integer):
            raise MalformedSceneError("Mesh face indices must be integers")
        if f.min() < 0 or f.max() >= len(v):
            raise MalformedSceneError(f"Mesh face index out of range [0, {len(v)})")

        n = None if normals is None else np.asarray(normals, dtype=np.float64)
        t = None if uvs is None else np.asarray(uvs, dtype=np.float64)
        if n is not None and n.shape != v.shape:
            raise MalformedSceneError(f"Mesh normals must have shape {v.shape}, got {n.shape}")
        if t is not None and t.shape != (len(v), 2):
            raise MalformedSceneError(f"Mesh uvs must have shape ({len(v)}, 2), got {t.shape}")

        if transform is not None:
            m = self._matrix(transform)
            v = transform_points(m, v)
            if n is not None:
                n = transform_normals(m, n)
            if flips_orientation(m):
                f = f[:, ::-1]

        return self._append_triangles(
            v[f],
            None if n is None else n[f],
            None if t is None else t[f],
            material_id,
            motion,
        )

    def add_box(
        self,
        a: Vec3,
        b: Vec3,
        material: MaterialRef,
        transform: npt.ArrayLike | None = None,
        motion: Vec3 | None = None,
    ) -> list[int]:
        """Add an axis-aligned box between two opposite corners as six quads.

        Every face's front side points out of the box. A transform is
        applied to the corners and edges, so boxes can be rotated and scaled.

        Returns:
            The primitive ids of the six faces.
        """
        lo = np.minimum(_vec3("Box corner", a), _vec3("Box corner", b))
        hi = np.maximum(_vec3("Box corner", a), _vec3("Box corner", b))
        if np.any(hi - lo <= 0.0):
            raise MalformedSceneError(f"Box {lo.tolist()} - {hi.tolist()} has zero volume")
        dx = np.array([hi[0] - lo[0], 0.0, 0.0])
        dy = np.array([0.0, hi[1] - lo[1], 0.0])
        dz = np.array([0.0, 0.0, hi[2] - lo[2]])

        faces = [
            (np.array([lo[0], lo[1], hi[2]]), dx, dy),  # front (+z)
            (np.array([hi[0], lo[1], hi[2]]), -dz, dy),  # right (+x)
            (np.array([hi[0], lo[1], lo[2]]), -dx, dy),  # back (-z)
            (np.array([lo[0], lo[1], lo[2]]), dz, dy),  # left (-x)
            (np.array([lo[0], hi[1], hi[2]]), dx, -dz),  # top (+y)
            (np.array([lo[0], lo[1], lo[2]]), dx, dz),  # bottom (-y)
        ]

        m = None if transform is None else self._matrix(transform)
        prim_ids = []
        for q, u, v in faces:
            if m is not None:
                q = transform_points(m, q)
                u = transform_vectors(m, u)
                v = transform_vectors(m, v)
                if flips_orientation(m):
                    u, v = v, u
            prim_ids.append(self.add_quad(tuple(q), tuple(u), tuple(v), material, motion=motion))
        return prim_ids

    @staticmethod
    def _matrix(transform: npt.ArrayLike) -> Matrix4:
        try:
            return as_matrix(transform)
        except ValueError as exc:
            raise MalformedSceneError(str(exc)) from exc

    # =========================================================================
    # Lights, Environment and Camera
    # =========================================================================

    def add_point_light(self, position: Vec3, intensity: Color) -> int:
        """Add a point light with radiant intensity ``intensity`` (W/sr per channel).

        Returns:
            The index of the point light.
        """
        p = _vec3("Point light position", position)
        i = _color("Point light intensity", intensity)
        self._point_positions.append(p)
        self._point_intensities.append(i)
        return len(self._point_positions) - 1

    def set_environment_color(self, color: Color, intensity: float = 1.0) -> None:
        c = _color("Environment color", color)
        if not (np.isfinite(intensity) and intensity >= 0.0):
            raise MalformedSceneError(f"Environment intensity must be non-negative, got {intensity}")
        self._environment = _Environment(color=c, intensity=float(intensity))

    def set_environment_map(
        self,
        image: npt.ArrayLike | str | Path,
        intensity: float = 1.0,
        rotation_degrees: float = 0.0,
    ) -> None:
        """Use an equirectangular map for escaping rays.

        Args:
            image: (H, W, 3) linear radiance, or a path to an ``.hdr``,
                ``.npy`` or LDR image file.
            intensity: Scale applied to the map.
            rotation_degrees: Rotation about +y.

        Raises:
            MalformedSceneError: If the file cannot be loaded or the data is
                invalid.
        """
        if isinstance(image, (str, Path)):
            pixels = load_environment_map(image)
        else:
            pixels = np.asarray(image, dtype=np.float32)
        if pixels.ndim != 3 or pixels.shape[2] != 3:
            raise MalformedSceneError(f"Environment map must have shape (H, W, 3), got {pixels.shape}")
        if not np.all(np.isfinite(pixels)) or np.any(pixels < 0.0):
            raise MalformedSceneError("Environment map contains negative or non-finite values")
        if not (np.isfinite(intensity) and intensity >= 0.0):
            raise MalformedSceneError(f"Environment intensity must be non-negative, got {intensity}")
        self._environment = _Environment(
            pixels=pixels,
            intensity=float(intensity),
            rotation=float(rotation_degrees),
        )

    def clear_environment(self) -> None:
        self._environment = _Environment()

    def set_camera(self, camera: ThinLensCamera) -> None:
        """Set the camera.

        Raises:
            MalformedSceneError: If the camera parameters are invalid.
        """
        try:
            camera.validate()
        except ValueError as exc:
            raise MalformedSceneError(f"Invalid camera: {exc}") from exc
        self.camera = camera

    @property
    def aspect_ratio(self) -> float:
        if self.camera is None:
            raise MalformedSceneError("Scene has no camera")
        return self.camera.aspect_ratio

    # =========================================================================
    # Scene Queries
    # =========================================================================

    def get_primitive_count(self) -> int:
        return len(self._geometry.types)

    def get_sphere_count(self) -> int:
        return len(self._geometry.sphere_centers)

    def get_quad_count(self) -> int:
        return len(self._geometry.quad_corners)

    def get_triangle_count(self) -> int:
        return len(self._geometry.tri_vertices)

    def get_point_light_count(self) -> int:
        return len(self._point_positions)

    def get_material_count(self) -> int:
        return len(self.materials)

    # =========================================================================
    # Build
    # =========================================================================

    def _primitive_bounds(self) -> tuple[np.ndarray, np.ndarray]:
        """Padded (P, 3) bounds covering each primitive over the whole shutter."""
        g = self._geometry
        p = len(g.types)
        lo = np.empty((p, 3), dtype=np.float64)
        hi = np.empty((p, 3), dtype=np.float64)
        types = np.asarray(g.types)
        indices = np.asarray(g.indices)

        sel = types == int(PrimitiveType.SPHERE)
        if np.any(sel):
            centers = np.asarray(g.sphere_centers)[indices[sel]]
            radii = np.asarray(g.sphere_radii)[indices[sel]][:, None]
            lo[sel] = centers - radii
            hi[sel] = centers + radii

        sel = types == int(PrimitiveType.QUAD)
        if np.any(sel):
            idx = indices[sel]
            q = np.asarray(g.quad_corners)[idx]
            u = np.asarray(g.quad_u)[idx]
            v = np.asarray(g.quad_v)[idx]
            corners = np.stack([q, q + u, q + v, q + u + v], axis=1)
            lo[sel] = corners.min(axis=1)
            hi[sel] = corners.max(axis=1)

        sel = types == int(PrimitiveType.TRIANGLE)
        if np.any(sel):
            verts = np.asarray(g.tri_vertices)[indices[sel]]
            lo[sel] = verts.min(axis=1)
            hi[sel] = verts.max(axis=1)

        motions = np.asarray(g.motions, dtype=np.float64).reshape(p, 3)
        lo = np.minimum(lo, lo + motions) - AABB_PADDING
        hi = np.maximum(hi, hi + motions) + AABB_PADDING
        return lo, hi

    def _primitive_areas(self) -> np.ndarray:
        g = self._geometry
        areas = np.zeros(len(g.types), dtype=np.float64)
        tri_areas = triangle_areas_numpy(np.asarray(g.tri_vertices)) if g.tri_vertices else np.zeros(0)
        for prim_id, (kind, idx) in enumerate(zip(g.types, g.indices)):
            if kind == PrimitiveType.SPHERE:
                areas[prim_id] = 4.0 * np.pi * g.sphere_radii[idx] ** 2
            elif kind == PrimitiveType.QUAD:
                areas[prim_id] = quad_area_numpy(g.quad_u[idx], g.quad_v[idx])
            else:
                areas[prim_id] = tri_areas[idx]
        return areas

    def _upload_textures(self) -> None:
        clear_textures()
        for tex in self.textures:
            if tex.kind == TextureType.CONSTANT:
                add_constant_texture(tex.params["color"])
            elif tex.kind == TextureType.CHECKER:
                add_checker_texture(tex.params["even"], tex.params["odd"], tex.params["scale"])
            else:
                add_image_texture(tex.params["pixels"])

    def _upload_geometry(self) -> int:
        g = self._geometry
        lo, hi = self._primitive_bounds()
        bvh = build_bvh(lo, hi, max_primitives=MAX_PRIMITIVES)

        clear_scene()
        upload_spheres(
            np.asarray(g.sphere_centers, dtype=np.float32).reshape(-1, 3),
            np.asarray(g.sphere_radii, dtype=np.float32),
        )
        upload_quads(
            np.asarray(g.quad_corners, dtype=np.float32).reshape(-1, 3),
            np.asarray(g.quad_u, dtype=np.float32).reshape(-1, 3),
            np.asarray(g.quad_v, dtype=np.float32).reshape(-1, 3),
        )
        if g.tri_vertices:
            upload_triangles(
                np.asarray(g.tri_vertices),
                np.asarray(g.tri_normals),
                np.asarray(g.tri_uvs),
                np.asarray(g.tri_has_normals),
            )
        else:
            upload_triangles(np.zeros((0, 3, 3)))
        upload_primitives(g.types, g.indices, g.materials, np.asarray(g.motions).reshape(-1, 3))
        upload_bvh(bvh)
        return bvh.node_count

    def _upload_environment(self) -> None:
        env = self._environment
        clear_environment()
        if env.pixels is not None:
            set_environment_map(env.pixels, intensity=env.intensity, rotation_degrees=env.rotation)
        elif env.color is not None:
            set_environment_color(env.color, intensity=env.intensity)

    def _upload_lights(self) -> int:
        g = self._geometry
        areas = self._primitive_areas()
        prim_ids = []
        powers = []
        for prim_id, material_id in enumerate(g.materials):
            params = self.materials[material_id].params
            if params.is_emissive and areas[prim_id] > 0.0:
                prim_ids.append(prim_id)
                powers.append(area_light_power(params.emission, areas[prim_id]))

        positions = np.asarray(self._point_positions, dtype=np.float32).reshape(-1, 3)
        intensities = np.asarray(self._point_intensities, dtype=np.float32).reshape(-1, 3)
        clear_lights()
        return build_lights(prim_ids, powers, positions, intensities)

    def build(self, aspect_ratio: float | None = None) -> SceneCounts:
        """Validate the scene and upload it to the Taichi fields.

        Args:
            aspect_ratio: Overrides the camera's aspect ratio, normally with
                the width / height of the image being rendered.

        Returns:
            Counts of what was uploaded.

        Raises:
            MalformedSceneError: If the camera is missing or invalid, or the
                scene has no primitives.
            ResourceExhaustedError: If a preallocated table overflows.
        """
        if self.camera is None:
            raise MalformedSceneError("Scene has no camera")
        if not self._geometry.types:
            raise MalformedSceneError("Scene has no primitives")
        camera = self.camera if aspect_ratio is None else replace(self.camera, aspect_ratio=float(aspect_ratio))

        clear_materials()
        self._upload_textures()
        for info in self.materials:
            add_material(info.params)
        node_count = self._upload_geometry()
        self._upload_environment()
        light_count = self._upload_lights()
        try:
            setup_camera(camera)
        except ValueError as exc:
            raise MalformedSceneError(f"Invalid camera: {exc}") from exc

        counts = SceneCounts(
            spheres=self.get_sphere_count(),
            quads=self.get_quad_count(),
            triangles=self.get_triangle_count(),
            materials=len(self.materials),
            textures=len(self.textures),
            lights=light_count,
            bvh_nodes=node_count,
        )
        logger.info(
            "Scene built: %d primitives (%d spheres, %d quads, %d triangles), %d materials, %d lights, %d BVH nodes",
            counts.primitives,
            counts.spheres,
            counts.quads,
            counts.triangles,
            counts.materials,
            counts.lights,
            counts.bvh_nodes,
        )
        return counts

    def __repr__(self) -> str:
        return (
            f"SceneManager(primitives={self.get_primitive_count()}, materials={len(self.materials)}, "
            f"textures={len(self.textures)}, point_lights={self.get_point_light_count()})"
        )
