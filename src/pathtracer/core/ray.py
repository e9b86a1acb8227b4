"""Ray data structure, vector helpers and shading frames.

Every ray carries its own parametric interval and a shutter time in [0, 1]
so that moving primitives can be intersected at the right instant.

Example:
    >>> import taichi as ti
    >>> ti.init(arch=ti.cpu)
    >>> from pathtracer.core.ray import Ray, make_ray, ray_at
    >>> # Inside a Taichi kernel:
    >>> # ray = make_ray(vec3(0.0), vec3(0.0, 0.0, -1.0), 0.0)
    >>> # point = ray_at(ray, 5.0)
"""

import taichi as ti
import taichi.math as tm

vec3 = tm.vec3

# Smallest parametric distance accepted for a hit
T_MIN = 1e-4

# Parametric distance used for unbounded rays
T_MAX = 1e10

# Base offset applied to spawned ray origins, scaled by the hit point magnitude
RAY_EPSILON = 1e-4


@ti.dataclass
class Ray:
    """A ray segment with a shutter time.

    Attributes:
        origin: Starting point of the ray.
        direction: Unit direction vector.
        time: Shutter time in [0, 1] at which the ray is traced.
        t_min: Lower bound of the accepted parametric interval.
        t_max: Upper bound of the accepted parametric interval.
    """

    origin: vec3
    direction: vec3
    time: ti.f32
    t_min: ti.f32
    t_max: ti.f32


@ti.func
def ray_at(ray: Ray, t: ti.f32) -> vec3:
    """Point at parameter t along the ray."""
    return ray.origin + t * ray.direction


@ti.func
def make_ray(origin: vec3, direction: vec3, time: ti.f32) -> Ray:
    """Create an unbounded ray starting just past T_MIN."""
    return Ray(origin=origin, direction=direction, time=time, t_min=T_MIN, t_max=T_MAX)


@ti.func
def offset_ray_origin(point: vec3, normal: vec3, direction: vec3) -> vec3:
    """Push a surface point off the surface on the side the ray will leave.

    The offset grows with the magnitude of the point so that scenes far from
    the origin do not self-intersect because of float32 rounding.

    Args:
        point: Intersection point.
        normal: Geometric normal at the point (either orientation).
        direction: Direction of the new ray.

    Returns:
        The offset origin.
    """
    scale = 1.0 + ti.max(ti.abs(point.x), ti.abs(point.y), ti.abs(point.z))
    offset = RAY_EPSILON * scale * normal
    if tm.dot(direction, normal) < 0.0:
        offset = -offset
    return point + offset


@ti.func
def spawn_ray(point: vec3, normal: vec3, direction: vec3, time: ti.f32) -> Ray:
    """Continue a path from a surface point in a new direction."""
    return make_ray(offset_ray_origin(point, normal, direction), direction, time)


# =============================================================================
# Vector Helpers
# =============================================================================


@ti.func
def luminance(c: vec3) -> ti.f32:
    """Rec. 709 luminance of a linear RGB color."""
    return 0.2126 * c.x + 0.7152 * c.y + 0.0722 * c.z


@ti.func
def max_component(c: vec3) -> ti.f32:
    return ti.max(c.x, c.y, c.z)


@ti.func
def is_finite(c: vec3) -> ti.i32:
    """1 if no component of c is NaN or infinite."""
    ok = 1
    for k in ti.static(range(3)):
        if tm.isnan(c[k]) or tm.isinf(c[k]):
            ok = 0
    return ok


# =============================================================================
# Orthonormal Frames
# =============================================================================


@ti.func
def build_onb_from_normal(normal: vec3):
    """Build an orthonormal basis with the normal as z-axis.

    Args:
        normal: Unit normal.

    Returns:
        A tuple (tangent, bitangent, normal).
    """
    a = vec3(1.0, 0.0, 0.0)
    if ti.abs(normal.x) > 0.9:
        a = vec3(0.0, 1.0, 0.0)
    tangent = tm.normalize(tm.cross(a, normal))
    bitangent = tm.cross(normal, tangent)
    return tangent, bitangent, normal


@ti.func
def build_onb_from_tangent(normal: vec3, tangent_hint: vec3):
    """Orthonormal basis around a normal, aligned with a surface tangent.

    The tangent hint is Gram-Schmidt orthogonalized against the normal so
    anisotropic lobes follow the surface parameterization. A degenerate hint
    falls back to build_onb_from_normal.

    Returns:
        A tuple (tangent, bitangent, normal).
    """
    t = tangent_hint - tm.dot(tangent_hint, normal) * normal
    length2 = tm.dot(t, t)
    tangent = vec3(0.0, 0.0, 0.0)
    bitangent = vec3(0.0, 0.0, 0.0)
    if length2 > 1e-12:
        tangent = t / ti.sqrt(length2)
        bitangent = tm.cross(normal, tangent)
    else:
        t0, b0, _n = build_onb_from_normal(normal)
        tangent = t0
        bitangent = b0
    return tangent, bitangent, normal


@ti.func
def local_to_world(local_dir: vec3, tangent: vec3, bitangent: vec3, normal: vec3) -> vec3:
    """Transform a direction from the (tangent, bitangent, normal) frame to world space."""
    return local_dir.x * tangent + local_dir.y * bitangent + local_dir.z * normal


@ti.func
def world_to_local(world_dir: vec3, tangent: vec3, bitangent: vec3, normal: vec3) -> vec3:
    """Transform a world-space direction into the (tangent, bitangent, normal) frame."""
    return vec3(
        tm.dot(world_dir, tangent),
        tm.dot(world_dir, bitangent),
        tm.dot(world_dir, normal),
    )
