"""Environment lighting: a constant color or an importance-sampled lat-long map.

Directions map onto the equirectangular image as

    phi   = 2 pi u - pi + rotation
    theta = pi v
    d     = (sin(theta) cos(phi), cos(theta), sin(theta) sin(phi))

so +y is up, row 0 of the image is the zenith and the last row the nadir.

A map is sampled with a piecewise-constant 2D distribution proportional to
``luminance * sin(theta)``: a marginal CDF picks the row and a per-row
conditional CDF picks the column. The solid-angle density of a direction is

    pdf(d) = p(u, v) / (2 pi^2 sin(theta))

A constant environment is sampled uniformly over the sphere.

Example:
    >>> from pathtracer.lights.environment import load_environment_map, set_environment_map
    >>> pixels = load_environment_map("studio.hdr")
    >>> set_environment_map(pixels, intensity=1.5, rotation_degrees=90.0)
"""

import logging
import math
from enum import IntEnum
from pathlib import Path

import numpy as np
import numpy.typing as npt
import taichi as ti
import taichi.math as tm
from PIL import Image as PILImage

from pathtracer.core.sampler import INV_FOUR_PI, next_2d, sample_uniform_sphere
from pathtracer.errors import MalformedSceneError
from pathtracer.lights.hdr import read_hdr
from pathtracer.output.tonemap import srgb_to_linear

logger = logging.getLogger(__name__)

vec2 = tm.vec2
vec3 = tm.vec3


class EnvironmentMode(IntEnum):
    NONE = 0
    CONSTANT = 1
    MAP = 2


MAX_ENV_WIDTH = 1024
MAX_ENV_HEIGHT = 512

env_mode = ti.field(dtype=ti.i32, shape=())
env_color = ti.Vector.field(3, dtype=ti.f32, shape=())
env_intensity = ti.field(dtype=ti.f32, shape=())
env_rotation = ti.field(dtype=ti.f32, shape=())
env_width = ti.field(dtype=ti.i32, shape=())
env_height = ti.field(dtype=ti.i32, shape=())

# Map texels, [row, column], row 0 at the zenith
env_texels = ti.Vector.field(3, dtype=ti.f32, shape=(MAX_ENV_HEIGHT, MAX_ENV_WIDTH))
# p(u, v) of each texel over the unit square
env_texel_pdf = ti.field(dtype=ti.f32, shape=(MAX_ENV_HEIGHT, MAX_ENV_WIDTH))
env_marginal_cdf = ti.field(dtype=ti.f32, shape=MAX_ENV_HEIGHT + 1)
env_conditional_cdf = ti.field(dtype=ti.f32, shape=(MAX_ENV_HEIGHT, MAX_ENV_WIDTH + 1))

# Host-side flag: the environment contributes light and should be sampled
_emits = False


# =============================================================================
# Host-side Setup
# =============================================================================


def clear_environment() -> None:
    """Remove the environment; rays that escape then return black."""
    global _emits
    env_mode[None] = int(EnvironmentMode.NONE)
    env_color[None] = [0.0, 0.0, 0.0]
    env_intensity[None] = 1.0
    env_rotation[None] = 0.0
    env_width[None] = 0
    env_height[None] = 0
    _emits = False


def has_environment() -> bool:
    """True if escaping rays receive non-zero radiance."""
    return _emits


def get_environment_mode() -> EnvironmentMode:
    return EnvironmentMode(int(env_mode[None]))


def set_environment_color(color: tuple[float, float, float], intensity: float = 1.0) -> None:
    """Use a constant radiance for every direction.

    Raises:
        ValueError: If the color or intensity is negative or not finite.
    """
    global _emits
    c = np.asarray(color, dtype=np.float64).reshape(-1)
    if c.shape != (3,) or not np.all(np.isfinite(c)) or np.any(c < 0.0):
        raise ValueError(f"Environment color must be 3 finite non-negative values, got {color}")
    if not (math.isfinite(intensity) and intensity >= 0.0):
        raise ValueError(f"Environment intensity must be non-negative, got {intensity}")
    clear_environment()
    env_mode[None] = int(EnvironmentMode.CONSTANT)
    env_color[None] = [float(x) for x in c]
    env_intensity[None] = float(intensity)
    _emits = bool(c.max() * intensity > 0.0)


def _downsample(pixels: np.ndarray) -> np.ndarray:
    h, w = pixels.shape[:2]
    factor = max(math.ceil(w / MAX_ENV_WIDTH), math.ceil(h / MAX_ENV_HEIGHT))
    if factor <= 1:
        return pixels
    nh, nw = h // factor, w // factor
    logger.warning(
        "Environment map %dx%d exceeds %dx%d, downsampling by %d to %dx%d",
        w,
        h,
        MAX_ENV_WIDTH,
        MAX_ENV_HEIGHT,
        factor,
        nw,
        nh,
    )
    cropped = pixels[: nh * factor, : nw * factor]
    return cropped.reshape(nh, factor, nw, factor, 3).mean(axis=(1, 3)).astype(np.float32)


def build_environment_distribution(pixels: np.ndarray):
    """Piecewise-constant sampling distribution of a lat-long map.

    Args:
        pixels: (H, W, 3) linear radiance.

    Returns:
        A tuple (texel_pdf (H, W), marginal_cdf (H + 1,), conditional_cdf
        (H, W + 1)). A black map gets a uniform distribution.
    """
    h, w = pixels.shape[:2]
    lum = 0.2126 * pixels[..., 0] + 0.7152 * pixels[..., 1] + 0.0722 * pixels[..., 2]
    sin_theta = np.sin(np.pi * (np.arange(h) + 0.5) / h)
    f = np.maximum(lum, 0.0).astype(np.float64) * sin_theta[:, None]

    if not f.sum() > 0.0:
        f = np.ones((h, w), dtype=np.float64)

    row_sums = f.sum(axis=1)
    conditional = np.zeros((h, w + 1), dtype=np.float64)
    conditional[:, 1:] = np.cumsum(f, axis=1)
    for row in range(h):
        if row_sums[row] > 0.0:
            conditional[row] /= row_sums[row]
        else:
            conditional[row] = np.linspace(0.0, 1.0, w + 1)
    conditional[:, -1] = 1.0

    marginal = np.zeros(h + 1, dtype=np.float64)
    marginal[1:] = np.cumsum(row_sums) / row_sums.sum()
    marginal[-1] = 1.0

    texel_pdf = f / f.mean()
    return texel_pdf.astype(np.float32), marginal.astype(np.float32), conditional.astype(np.float32)


def set_environment_map(pixels: npt.ArrayLike, intensity: float = 1.0, rotation_degrees: float = 0.0) -> None:
    """Use an equirectangular radiance map.

    Args:
        pixels: (H, W, 3) linear RGB, row 0 at the zenith.
        intensity: Scale applied to every texel.
        rotation_degrees: Rotation about +y.

    Raises:
        ValueError: If the map has the wrong shape or contains negative or
            non-finite values.
    """
    global _emits
    data = np.asarray(pixels, dtype=np.float32)
    if data.ndim != 3 or data.shape[2] != 3 or data.shape[0] < 1 or data.shape[1] < 1:
        raise ValueError(f"Environment map must have shape (H, W, 3), got {data.shape}")
    if not np.all(np.isfinite(data)) or np.any(data < 0.0):
        raise ValueError("Environment map contains negative or non-finite values")
    if not (math.isfinite(intensity) and intensity >= 0.0):
        raise ValueError(f"Environment intensity must be non-negative, got {intensity}")

    data = _downsample(data)
    h, w = data.shape[:2]
    texel_pdf, marginal, conditional = build_environment_distribution(data)

    padded = np.zeros((MAX_ENV_HEIGHT, MAX_ENV_WIDTH, 3), dtype=np.float32)
    padded[:h, :w] = data
    env_texels.from_numpy(padded)
    padded_pdf = np.zeros((MAX_ENV_HEIGHT, MAX_ENV_WIDTH), dtype=np.float32)
    padded_pdf[:h, :w] = texel_pdf
    env_texel_pdf.from_numpy(padded_pdf)
    padded_marginal = np.ones(MAX_ENV_HEIGHT + 1, dtype=np.float32)
    padded_marginal[: h + 1] = marginal
    env_marginal_cdf.from_numpy(padded_marginal)
    padded_conditional = np.ones((MAX_ENV_HEIGHT, MAX_ENV_WIDTH + 1), dtype=np.float32)
    padded_conditional[:h, : w + 1] = conditional
    env_conditional_cdf.from_numpy(padded_conditional)

    env_mode[None] = int(EnvironmentMode.MAP)
    env_color[None] = [0.0, 0.0, 0.0]
    env_intensity[None] = float(intensity)
    env_rotation[None] = math.radians(rotation_degrees)
    env_width[None] = w
    env_height[None] = h
    _emits = bool(data.max() * intensity > 0.0)
    logger.debug("Environment map %dx%d uploaded (intensity %.3g)", w, h, intensity)


def load_environment_map(path: str | Path) -> npt.NDArray[np.float32]:
    """Read an environment image as linear RGB.

    ``.hdr``/``.pic`` files are decoded as Radiance RGBE, ``.npy`` files are
    loaded as (H, W, 3) arrays, anything else goes through Pillow and is
    treated as sRGB.

    Raises:
        MalformedSceneError: If the file is missing or cannot be decoded.
    """
    path = Path(path)
    suffix = path.suffix.lower()
    try:
        if suffix in (".hdr", ".pic"):
            pixels = read_hdr(path)
        elif suffix == ".npy":
            pixels = np.load(path, allow_pickle=False).astype(np.float32)
        else:
            with PILImage.open(path) as img:
                rgb = np.asarray(img.convert("RGB"), dtype=np.float32) / 255.0
            pixels = srgb_to_linear(rgb)
    except (OSError, ValueError) as exc:
        raise MalformedSceneError(f"Cannot load environment map {path}: {exc}") from exc
    if pixels.ndim != 3 or pixels.shape[2] != 3:
        raise MalformedSceneError(f"Environment map {path} must be an RGB image, got shape {pixels.shape}")
    logger.info("Loaded environment map %s (%dx%d)", path, pixels.shape[1], pixels.shape[0])
    return pixels


# =============================================================================
# Direction Mapping
# =============================================================================


@ti.func
def direction_to_uv(direction: vec3) -> vec2:
    d = tm.normalize(direction)
    theta = ti.acos(tm.clamp(d.y, -1.0, 1.0))
    phi = ti.atan2(d.z, d.x)
    u = (phi - env_rotation[None] + tm.pi) / (2.0 * tm.pi)
    u = u - ti.floor(u)
    return vec2(u, theta / tm.pi)


@ti.func
def uv_to_direction(uv: vec2) -> vec3:
    phi = 2.0 * tm.pi * uv.x - tm.pi + env_rotation[None]
    theta = tm.pi * uv.y
    sin_theta = ti.sin(theta)
    return vec3(sin_theta * ti.cos(phi), ti.cos(theta), sin_theta * ti.sin(phi))


@ti.func
def _texel_index(uv: vec2):
    w = env_width[None]
    h = env_height[None]
    col = ti.min(ti.cast(uv.x * w, ti.i32), w - 1)
    row = ti.min(ti.cast(uv.y * h, ti.i32), h - 1)
    return ti.max(row, 0), ti.max(col, 0)


@ti.func
def _search_marginal(u: ti.f32) -> ti.i32:
    """Largest row with marginal_cdf[row] <= u."""
    lo = 0
    hi = env_height[None] - 1
    while lo < hi:
        mid = (lo + hi + 1) // 2
        if env_marginal_cdf[mid] <= u:
            lo = mid
        else:
            hi = mid - 1
    return lo


@ti.func
def _search_conditional(row: ti.i32, u: ti.f32) -> ti.i32:
    """Largest column with conditional_cdf[row, col] <= u."""
    lo = 0
    hi = env_width[None] - 1
    while lo < hi:
        mid = (lo + hi + 1) // 2
        if env_conditional_cdf[row, mid] <= u:
            lo = mid
        else:
            hi = mid - 1
    return lo


# =============================================================================
# Radiance, Sampling and PDF
# =============================================================================


@ti.func
def environment_radiance(direction: vec3) -> vec3:
    """Radiance arriving along -direction from infinitely far away."""
    mode = env_mode[None]
    result = vec3(0.0, 0.0, 0.0)
    if mode == int(EnvironmentMode.CONSTANT):
        result = env_intensity[None] * env_color[None]
    elif mode == int(EnvironmentMode.MAP):
        row, col = _texel_index(direction_to_uv(direction))
        result = env_intensity[None] * env_texels[row, col]
    return result


@ti.func
def environment_pdf(direction: vec3) -> ti.f32:
    """Solid-angle density with which sample_environment picks ``direction``."""
    mode = env_mode[None]
    pdf = 0.0
    if mode == int(EnvironmentMode.CONSTANT):
        pdf = INV_FOUR_PI
    elif mode == int(EnvironmentMode.MAP):
        uv = direction_to_uv(direction)
        sin_theta = ti.sin(tm.pi * uv.y)
        if sin_theta > 1e-6:
            row, col = _texel_index(uv)
            pdf = env_texel_pdf[row, col] / (2.0 * tm.pi * tm.pi * sin_theta)
    return pdf


@ti.func
def sample_environment(rng: ti.u32):
    """Sample a direction toward the environment.

    Returns:
        A tuple (direction, radiance, pdf, rng). pdf is 0 when there is no
        environment or the sample fell on a pole.
    """
    u, s = next_2d(rng)
    mode = env_mode[None]
    direction = vec3(0.0, 1.0, 0.0)
    radiance = vec3(0.0, 0.0, 0.0)
    pdf = 0.0
    if mode == int(EnvironmentMode.CONSTANT):
        direction = sample_uniform_sphere(u)
        radiance = env_intensity[None] * env_color[None]
        pdf = INV_FOUR_PI
    elif mode == int(EnvironmentMode.MAP):
        h = env_height[None]
        w = env_width[None]
        row = _search_marginal(u.y)
        r0 = env_marginal_cdf[row]
        r1 = env_marginal_cdf[row + 1]
        dv = 0.5
        if r1 > r0:
            dv = tm.clamp((u.y - r0) / (r1 - r0), 0.0, 0.999999)
        col = _search_conditional(row, u.x)
        c0 = env_conditional_cdf[row, col]
        c1 = env_conditional_cdf[row, col + 1]
        du = 0.5
        if c1 > c0:
            du = tm.clamp((u.x - c0) / (c1 - c0), 0.0, 0.999999)
        uv = vec2((col + du) / w, (row + dv) / h)
        direction = uv_to_direction(uv)
        sin_theta = ti.sin(tm.pi * uv.y)
        if sin_theta > 1e-6:
            pdf = env_texel_pdf[row, col] / (2.0 * tm.pi * tm.pi * sin_theta)
            radiance = env_intensity[None] * env_texels[row, col]
    return direction, radiance, pdf, s
