"""Texture storage and lookup.

Three texture kinds are supported:

- CONSTANT: a single color.
- CHECKER: a solid 3D checkerboard alternating two colors in world space.
- IMAGE: an RGB raster stored in a shared texel atlas, looked up with
  nearest-neighbour filtering and wrapped uv coordinates.

Image textures used as normal maps must be loaded without sRGB decoding.

Example:
    >>> from pathtracer.materials.textures import add_checker_texture
    >>> tex_id = add_checker_texture((0.2, 0.3, 0.1), (0.9, 0.9, 0.9), scale=0.32)
"""

from enum import IntEnum
from pathlib import Path

import numpy as np
import numpy.typing as npt
import taichi as ti
import taichi.math as tm
from PIL import Image as PILImage

from pathtracer.errors import MalformedSceneError, ResourceExhaustedError
from pathtracer.output.tonemap import srgb_to_linear

vec2 = tm.vec2
vec3 = tm.vec3


class TextureType(IntEnum):
    CONSTANT = 0
    CHECKER = 1
    IMAGE = 2


MAX_TEXTURES = 256
MAX_TEXELS = 1 << 21

texture_types = ti.field(dtype=ti.i32, shape=MAX_TEXTURES)
texture_color_a = ti.Vector.field(3, dtype=ti.f32, shape=MAX_TEXTURES)
texture_color_b = ti.Vector.field(3, dtype=ti.f32, shape=MAX_TEXTURES)
texture_inv_scale = ti.field(dtype=ti.f32, shape=MAX_TEXTURES)
texture_offsets = ti.field(dtype=ti.i32, shape=MAX_TEXTURES)
texture_widths = ti.field(dtype=ti.i32, shape=MAX_TEXTURES)
texture_heights = ti.field(dtype=ti.i32, shape=MAX_TEXTURES)
num_textures = ti.field(dtype=ti.i32, shape=())

# Texel atlas shared by all image textures, rows stored top to bottom
texels = ti.Vector.field(3, dtype=ti.f32, shape=MAX_TEXELS)
num_texels = ti.field(dtype=ti.i32, shape=())


def clear_textures() -> None:
    """Remove all textures and release the texel atlas."""
    num_textures[None] = 0
    num_texels[None] = 0


def get_texture_count() -> int:
    return int(num_textures[None])


def _allocate_texture(kind: TextureType) -> int:
    idx = num_textures[None]
    if idx >= MAX_TEXTURES:
        raise ResourceExhaustedError(f"Maximum number of textures ({MAX_TEXTURES}) exceeded")
    texture_types[idx] = int(kind)
    texture_color_a[idx] = [0.0, 0.0, 0.0]
    texture_color_b[idx] = [0.0, 0.0, 0.0]
    texture_inv_scale[idx] = 1.0
    texture_offsets[idx] = 0
    texture_widths[idx] = 0
    texture_heights[idx] = 0
    num_textures[None] = idx + 1
    return idx


def _validate_color(name: str, color) -> tuple[float, float, float]:
    c = tuple(float(x) for x in color)
    if len(c) != 3 or not all(np.isfinite(c)) or min(c) < 0.0:
        raise ValueError(f"{name} must be 3 finite non-negative values, got {color}")
    return c


def add_constant_texture(color: tuple[float, float, float]) -> int:
    """Register a constant color texture and return its id."""
    c = _validate_color("color", color)
    idx = _allocate_texture(TextureType.CONSTANT)
    texture_color_a[idx] = list(c)
    return idx


def add_checker_texture(
    even: tuple[float, float, float],
    odd: tuple[float, float, float],
    scale: float = 1.0,
) -> int:
    """Register a 3D checker texture.

    Args:
        even: Color of cells whose integer coordinates sum to an even number.
        odd: Color of the other cells.
        scale: Edge length of one cell in world units.

    Raises:
        ValueError: If scale is not positive or a color is invalid.
    """
    if not scale > 0.0:
        raise ValueError(f"Checker scale must be positive, got {scale}")
    a = _validate_color("even", even)
    b = _validate_color("odd", odd)
    idx = _allocate_texture(TextureType.CHECKER)
    texture_color_a[idx] = list(a)
    texture_color_b[idx] = list(b)
    texture_inv_scale[idx] = 1.0 / float(scale)
    return idx


@ti.kernel
def _write_texels(offset: ti.i32, count: ti.i32, data: ti.types.ndarray()):
    for i in range(count):
        texels[offset + i] = vec3(data[i, 0], data[i, 1], data[i, 2])


def add_image_texture(pixels: npt.ArrayLike) -> int:
    """Register an image texture from linear RGB pixels.

    Args:
        pixels: (H, W, 3) array, row 0 at the top of the image.

    Raises:
        ValueError: If the array does not have shape (H, W, 3).
        ResourceExhaustedError: If the texel atlas is full.
    """
    data = np.asarray(pixels, dtype=np.float32)
    if data.ndim != 3 or data.shape[2] != 3 or data.shape[0] == 0 or data.shape[1] == 0:
        raise ValueError(f"Image texture must have shape (H, W, 3), got {data.shape}")
    height, width = data.shape[:2]
    offset = num_texels[None]
    if offset + width * height > MAX_TEXELS:
        raise ResourceExhaustedError(
            f"Texel atlas full: {width}x{height} image needs {width * height} texels, "
            f"{MAX_TEXELS - offset} remaining"
        )
    idx = _allocate_texture(TextureType.IMAGE)
    flat = np.ascontiguousarray(data.reshape(-1, 3))
    _write_texels(offset, width * height, flat)
    texture_offsets[idx] = offset
    texture_widths[idx] = width
    texture_heights[idx] = height
    num_texels[None] = offset + width * height
    return idx


def load_image_texture(path: str | Path, srgb: bool = True) -> npt.NDArray[np.float32]:
    """Read an image file into a linear (H, W, 3) float32 array.

    Args:
        path: Any format Pillow can open.
        srgb: Decode sRGB to linear. Disable for normal maps and other data.

    Raises:
        MalformedSceneError: If the file cannot be read.
    """
    try:
        with PILImage.open(path) as img:
            rgb = np.asarray(img.convert("RGB"), dtype=np.float32) / 255.0
    except OSError as exc:
        raise MalformedSceneError(f"Cannot read texture image '{path}': {exc}") from exc
    if srgb:
        rgb = srgb_to_linear(rgb)
    return rgb.astype(np.float32)


# =============================================================================
# Lookup (Taichi functions)
# =============================================================================


@ti.func
def _image_lookup(tex_id: ti.i32, uv: vec2) -> vec3:
    w = texture_widths[tex_id]
    h = texture_heights[tex_id]
    u = uv.x - ti.floor(uv.x)
    v = uv.y - ti.floor(uv.y)
    i = ti.min(ti.cast(u * w, ti.i32), w - 1)
    # v = 0 is the bottom row of the image
    j = ti.min(ti.cast((1.0 - v) * h, ti.i32), h - 1)
    return texels[texture_offsets[tex_id] + j * w + i]


@ti.func
def sample_texture(tex_id: ti.i32, uv: vec2, p: vec3) -> vec3:
    """Evaluate a texture at surface coordinates uv and world point p."""
    kind = texture_types[tex_id]
    result = texture_color_a[tex_id]
    if kind == int(TextureType.CHECKER):
        q = p * texture_inv_scale[tex_id]
        parity = (
            ti.cast(ti.floor(q.x), ti.i32) + ti.cast(ti.floor(q.y), ti.i32) + ti.cast(ti.floor(q.z), ti.i32)
        ) & 1
        if parity == 1:
            result = texture_color_b[tex_id]
    elif kind == int(TextureType.IMAGE):
        result = _image_lookup(tex_id, uv)
    return result


@ti.func
def perturb_normal(tex_id: ti.i32, uv: vec2, p: vec3, normal: vec3, tangent: vec3) -> vec3:
    """Apply a tangent-space normal map to a shading normal.

    The texture stores (x, y, z) remapped from [-1, 1] to [0, 1]; z points
    along the unperturbed normal.
    """
    m = 2.0 * sample_texture(tex_id, uv, p) - vec3(1.0, 1.0, 1.0)
    t = tangent - tm.dot(tangent, normal) * normal
    result = normal
    if tm.dot(t, t) > 1e-12:
        t = tm.normalize(t)
        b = tm.cross(normal, t)
        perturbed = m.x * t + m.y * b + m.z * normal
        if tm.dot(perturbed, perturbed) > 1e-12:
            result = tm.normalize(perturbed)
    return result
