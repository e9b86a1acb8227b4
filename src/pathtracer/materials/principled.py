"""Principled material parameters and the material table.

Every material, whatever its kind, is stored with the same set of
principled (Disney-style) parameters. The kind tag selects which lobes the
BSDF evaluates:

- LAMBERTIAN: Lambertian diffuse only.
- METAL: specular GGX lobe with the base color as F0.
- DIELECTRIC: rough or smooth dielectric (reflection and refraction).
- PRINCIPLED: diffuse, sheen, specular, clearcoat and transmission lobes
  weighted by metallic and spec_trans.
- EMISSIVE: emits light and absorbs everything it receives.

Any kind may carry an emission color; emission is one-sided (front face).

Example:
    >>> from pathtracer.materials.principled import MaterialParams, add_material
    >>> gold = MaterialParams.metal(albedo=(1.0, 0.78, 0.34), roughness=0.2)
    >>> mat_id = add_material(gold)
"""

from dataclasses import dataclass, field, replace
from enum import IntEnum

import numpy as np
import taichi as ti
import taichi.math as tm

from pathtracer.errors import ResourceExhaustedError
from pathtracer.materials.textures import sample_texture

vec2 = tm.vec2
vec3 = tm.vec3


class MaterialType(IntEnum):
    LAMBERTIAN = 0
    METAL = 1
    DIELECTRIC = 2
    PRINCIPLED = 3
    EMISSIVE = 4


Color = tuple[float, float, float]

# Parameters restricted to [0, 1]
_UNIT_PARAMETERS = (
    "metallic",
    "roughness",
    "anisotropic",
    "subsurface",
    "specular",
    "specular_tint",
    "sheen",
    "sheen_tint",
    "clearcoat",
    "clearcoat_gloss",
    "spec_trans",
)


@dataclass
class MaterialParams:
    """Host-side description of one material.

    Attributes:
        kind: Lobe set used by the BSDF.
        base_color: Linear RGB albedo / tint.
        metallic: Blend between dielectric and conductor response.
        roughness: Perceptual roughness; alpha = roughness^2.
        anisotropic: Stretch of the specular highlight along the tangent.
        subsurface: Blend from Burley diffuse toward a flattened response.
        specular: Dielectric specular amount (F0 = 0.08 * specular).
        specular_tint: Tints dielectric specular toward the base color.
        sheen: Grazing retro-reflective sheen amount.
        sheen_tint: Tints sheen toward the base color.
        clearcoat: Strength of the second, fixed-IOR specular layer.
        clearcoat_gloss: Glossiness of the clearcoat (1 = sharp).
        spec_trans: Fraction of the dielectric response that is transmissive.
        ior: Index of refraction of the interior.
        emission: Emitted radiance (linear RGB).
        base_color_texture: Texture id overriding base_color, -1 for none.
        roughness_texture: Texture id whose red channel overrides roughness.
        metallic_texture: Texture id whose red channel overrides metallic.
        normal_texture: Tangent-space normal map texture id, -1 for none.
    """

    kind: MaterialType = MaterialType.PRINCIPLED
    base_color: Color = (0.8, 0.8, 0.8)
    metallic: float = 0.0
    roughness: float = 0.5
    anisotropic: float = 0.0
    subsurface: float = 0.0
    specular: float = 0.5
    specular_tint: float = 0.0
    sheen: float = 0.0
    sheen_tint: float = 0.5
    clearcoat: float = 0.0
    clearcoat_gloss: float = 1.0
    spec_trans: float = 0.0
    ior: float = 1.5
    emission: Color = field(default=(0.0, 0.0, 0.0))
    base_color_texture: int = -1
    roughness_texture: int = -1
    metallic_texture: int = -1
    normal_texture: int = -1

    @classmethod
    def lambertian(cls, albedo: Color) -> "MaterialParams":
        return cls(kind=MaterialType.LAMBERTIAN, base_color=tuple(albedo))

    @classmethod
    def metal(cls, albedo: Color, roughness: float = 0.0) -> "MaterialParams":
        return cls(kind=MaterialType.METAL, base_color=tuple(albedo), metallic=1.0, roughness=roughness)

    @classmethod
    def dielectric(cls, ior: float = 1.5, roughness: float = 0.0, tint: Color = (1.0, 1.0, 1.0)) -> "MaterialParams":
        return cls(
            kind=MaterialType.DIELECTRIC,
            base_color=tuple(tint),
            roughness=roughness,
            spec_trans=1.0,
            ior=ior,
        )

    @classmethod
    def emissive(cls, emission: Color) -> "MaterialParams":
        return cls(kind=MaterialType.EMISSIVE, base_color=(0.0, 0.0, 0.0), emission=tuple(emission))

    def validate(self) -> None:
        """Check every parameter range.

        Raises:
            ValueError: Naming the first offending parameter.
        """
        MaterialType(self.kind)
        for name in ("base_color", "emission"):
            c = getattr(self, name)
            if len(c) != 3 or not all(np.isfinite(c)) or min(c) < 0.0:
                raise ValueError(f"{name} must be 3 finite non-negative values, got {c}")
        for name in _UNIT_PARAMETERS:
            value = getattr(self, name)
            if not (np.isfinite(value) and 0.0 <= value <= 1.0):
                raise ValueError(f"{name} must be in [0, 1], got {value}")
        if not (np.isfinite(self.ior) and self.ior > 1.0):
            raise ValueError(f"ior must be greater than 1, got {self.ior}")

    def normalized(self) -> "MaterialParams":
        """Force the parameters implied by the kind (e.g. metallic = 1 for METAL)."""
        if self.kind == MaterialType.METAL:
            return replace(self, metallic=1.0, spec_trans=0.0)
        if self.kind == MaterialType.DIELECTRIC:
            return replace(self, metallic=0.0, spec_trans=1.0)
        return self

    @property
    def is_emissive(self) -> bool:
        return max(self.emission) > 0.0


@ti.dataclass
class SurfaceMaterial:
    """Material parameters resolved at one shading point (textures applied)."""

    kind: ti.i32
    base_color: vec3
    metallic: ti.f32
    roughness: ti.f32
    anisotropic: ti.f32
    subsurface: ti.f32
    specular: ti.f32
    specular_tint: ti.f32
    sheen: ti.f32
    sheen_tint: ti.f32
    clearcoat: ti.f32
    clearcoat_gloss: ti.f32
    spec_trans: ti.f32
    ior: ti.f32
    emission: vec3


# =============================================================================
# Material Table
# =============================================================================

MAX_MATERIALS = 1024

material_kinds = ti.field(dtype=ti.i32, shape=MAX_MATERIALS)
material_base_color = ti.Vector.field(3, dtype=ti.f32, shape=MAX_MATERIALS)
material_emission = ti.Vector.field(3, dtype=ti.f32, shape=MAX_MATERIALS)
# metallic, roughness, anisotropic, subsurface, specular, specular_tint,
# sheen, sheen_tint, clearcoat, clearcoat_gloss, spec_trans, ior
material_scalars = ti.field(dtype=ti.f32, shape=(MAX_MATERIALS, 12))
# base color, roughness, metallic, normal map
material_textures = ti.Vector.field(4, dtype=ti.i32, shape=MAX_MATERIALS)
num_materials = ti.field(dtype=ti.i32, shape=())


def clear_materials() -> None:
    num_materials[None] = 0


def get_material_count() -> int:
    return int(num_materials[None])


def add_material(params: MaterialParams) -> int:
    """Validate a material and append it to the table.

    Returns:
        The material id.

    Raises:
        ValueError: If a parameter is out of range.
        ResourceExhaustedError: If MAX_MATERIALS materials already exist.
    """
    params.validate()
    p = params.normalized()
    idx = num_materials[None]
    if idx >= MAX_MATERIALS:
        raise ResourceExhaustedError(f"Maximum number of materials ({MAX_MATERIALS}) exceeded")

    material_kinds[idx] = int(p.kind)
    material_base_color[idx] = [float(c) for c in p.base_color]
    material_emission[idx] = [float(c) for c in p.emission]
    scalars = (
        p.metallic,
        p.roughness,
        p.anisotropic,
        p.subsurface,
        p.specular,
        p.specular_tint,
        p.sheen,
        p.sheen_tint,
        p.clearcoat,
        p.clearcoat_gloss,
        p.spec_trans,
        p.ior,
    )
    for k, value in enumerate(scalars):
        material_scalars[idx, k] = float(value)
    material_textures[idx] = [
        p.base_color_texture,
        p.roughness_texture,
        p.metallic_texture,
        p.normal_texture,
    ]
    num_materials[None] = idx + 1
    return idx


@ti.func
def get_material_kind(material_id: ti.i32) -> ti.i32:
    return material_kinds[material_id]


@ti.func
def get_emission(material_id: ti.i32) -> vec3:
    return material_emission[material_id]


@ti.func
def get_normal_texture(material_id: ti.i32) -> ti.i32:
    return material_textures[material_id][3]


@ti.func
def fetch_material(material_id: ti.i32, uv: vec2, p: vec3) -> SurfaceMaterial:
    """Resolve a material at a shading point, sampling its textures."""
    tex = material_textures[material_id]
    base = material_base_color[material_id]
    if tex[0] >= 0:
        base = sample_texture(tex[0], uv, p)
    roughness = material_scalars[material_id, 1]
    if tex[1] >= 0:
        roughness = tm.clamp(sample_texture(tex[1], uv, p).x, 0.0, 1.0)
    metallic = material_scalars[material_id, 0]
    if tex[2] >= 0:
        metallic = tm.clamp(sample_texture(tex[2], uv, p).x, 0.0, 1.0)

    return SurfaceMaterial(
        kind=material_kinds[material_id],
        base_color=base,
        metallic=metallic,
        roughness=roughness,
        anisotropic=material_scalars[material_id, 2],
        subsurface=material_scalars[material_id, 3],
        specular=material_scalars[material_id, 4],
        specular_tint=material_scalars[material_id, 5],
        sheen=material_scalars[material_id, 6],
        sheen_tint=material_scalars[material_id, 7],
        clearcoat=material_scalars[material_id, 8],
        clearcoat_gloss=material_scalars[material_id, 9],
        spec_trans=material_scalars[material_id, 10],
        ior=material_scalars[material_id, 11],
        emission=material_emission[material_id],
    )
