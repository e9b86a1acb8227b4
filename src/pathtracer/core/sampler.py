"""Per-path random number generation and sample warping.

The render path never touches Taichi's global RNG. Each (pixel, sample)
pair seeds its own 32-bit xorshift state from a Wang hash of the pixel
index, the global sample index and the render seed, and that state is
threaded through every sampling call. This makes a render a pure function
of its inputs: identical seeds give bit-identical images regardless of how
pixels are scheduled across threads.

All warps take uniform numbers in [0, 1) and return local-frame directions
(z up) or points, together with the matching pdf helpers.
"""

import taichi as ti
import taichi.math as tm

vec2 = tm.vec2
vec3 = tm.vec3

# 2^-24: maps the top 24 bits of a u32 onto [0, 1)
_INV_2_24 = 1.0 / 16777216.0

INV_FOUR_PI = 1.0 / (4.0 * tm.pi)


# =============================================================================
# Hashing and RNG State
# =============================================================================


@ti.func
def wang_hash(seed: ti.u32) -> ti.u32:
    """Thomas Wang's 32-bit integer hash."""
    s = seed
    s = (s ^ ti.u32(61)) ^ (s >> ti.u32(16))
    s = s * ti.u32(9)
    s = s ^ (s >> ti.u32(4))
    s = s * ti.u32(668265261)
    s = s ^ (s >> ti.u32(15))
    return s


@ti.func
def seed_sampler(pixel_index: ti.i32, sample_index: ti.i32, seed: ti.i32) -> ti.u32:
    """Derive the initial RNG state of one path.

    Args:
        pixel_index: Linear pixel index (row * width + column).
        sample_index: Global index of the sample within the pixel.
        seed: Render seed.

    Returns:
        A non-zero xorshift32 state.
    """
    s = wang_hash(ti.cast(seed, ti.u32) + ti.u32(1))
    s = wang_hash(s ^ ti.cast(pixel_index, ti.u32))
    s = wang_hash(s ^ ti.cast(sample_index, ti.u32))
    # xorshift32 is stuck at zero
    if s == ti.u32(0):
        s = ti.u32(0x6D2B79F5)
    return s


@ti.func
def xorshift32(state: ti.u32) -> ti.u32:
    s = state
    s = s ^ (s << ti.u32(13))
    s = s ^ (s >> ti.u32(17))
    s = s ^ (s << ti.u32(5))
    return s


@ti.func
def next_float(state: ti.u32):
    """Advance the state and return a uniform float in [0, 1).

    Returns:
        A tuple (value, new_state).
    """
    s = xorshift32(state)
    value = ti.cast(s >> ti.u32(8), ti.f32) * _INV_2_24
    return value, s


@ti.func
def next_2d(state: ti.u32):
    """Two consecutive uniform floats.

    Returns:
        A tuple (vec2, new_state).
    """
    u0, s1 = next_float(state)
    u1, s2 = next_float(s1)
    return vec2(u0, u1), s2


# =============================================================================
# Warps
# =============================================================================


@ti.func
def sample_uniform_disk_concentric(u: vec2) -> vec2:
    """Shirley-Chiu concentric mapping from the unit square to the unit disk."""
    offset = 2.0 * u - vec2(1.0, 1.0)
    result = vec2(0.0, 0.0)
    if offset.x != 0.0 or offset.y != 0.0:
        r = 0.0
        theta = 0.0
        if ti.abs(offset.x) > ti.abs(offset.y):
            r = offset.x
            theta = (tm.pi / 4.0) * (offset.y / offset.x)
        else:
            r = offset.y
            theta = tm.pi / 2.0 - (tm.pi / 4.0) * (offset.x / offset.y)
        result = r * vec2(ti.cos(theta), ti.sin(theta))
    return result


@ti.func
def sample_cosine_hemisphere(u: vec2) -> vec3:
    """Cosine-weighted direction around +z (Malley's method)."""
    d = sample_uniform_disk_concentric(u)
    z = ti.sqrt(ti.max(0.0, 1.0 - d.x * d.x - d.y * d.y))
    return vec3(d.x, d.y, z)


@ti.func
def cosine_hemisphere_pdf(cos_theta: ti.f32) -> ti.f32:
    return ti.max(cos_theta, 0.0) / tm.pi


@ti.func
def sample_uniform_sphere(u: vec2) -> vec3:
    z = 1.0 - 2.0 * u.x
    r = ti.sqrt(ti.max(0.0, 1.0 - z * z))
    phi = 2.0 * tm.pi * u.y
    return vec3(r * ti.cos(phi), r * ti.sin(phi), z)


@ti.func
def sample_uniform_cone(u: vec2, cos_theta_max: ti.f32) -> vec3:
    """Uniform direction inside a cone around +z.

    Args:
        u: Uniform sample.
        cos_theta_max: Cosine of the cone half-angle.
    """
    cos_theta = (1.0 - u.x) + u.x * cos_theta_max
    sin_theta = ti.sqrt(ti.max(0.0, 1.0 - cos_theta * cos_theta))
    phi = 2.0 * tm.pi * u.y
    return vec3(sin_theta * ti.cos(phi), sin_theta * ti.sin(phi), cos_theta)


@ti.func
def uniform_cone_pdf(cos_theta_max: ti.f32) -> ti.f32:
    return 1.0 / (2.0 * tm.pi * ti.max(1.0 - cos_theta_max, 1e-12))


@ti.func
def sample_uniform_triangle(u: vec2) -> vec3:
    """Uniform barycentric coordinates (b0, b1, b2) on a triangle."""
    su = ti.sqrt(u.x)
    b0 = 1.0 - su
    b1 = u.y * su
    return vec3(b0, b1, 1.0 - b0 - b1)
