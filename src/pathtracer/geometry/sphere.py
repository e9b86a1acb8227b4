"""Sphere primitive with a numerically robust ray-sphere test.

The discriminant is computed as ``r^2 - |oc - (oc.d) d|^2`` (Ray Tracing
Gems, chapter 7) instead of ``b^2 - 4ac``, which keeps the test accurate for
small spheres far from the ray origin. The nearer root uses the
cancellation-free form ``q = -(b + sign(b) sqrt(disc))``.

This module also defines ``HitRecord``, the primitive-level hit record
shared by every geometry module. Primitive tests report outward geometric
normals; orienting them toward the ray is done at scene level.
"""

import taichi as ti
import taichi.math as tm

vec2 = tm.vec2
vec3 = tm.vec3


@ti.dataclass
class Sphere:
    """A sphere defined by center point and radius.

    Attributes:
        center: Center of the sphere at shutter time 0.
        radius: Radius (positive).
    """

    center: vec3
    radius: ti.f32


@ti.dataclass
class HitRecord:
    """Result of a ray-primitive test.

    Attributes:
        hit: 1 if the ray hit the primitive within the interval, else 0.
        t: Ray parameter of the hit.
        point: Hit point in world space.
        normal: Outward unit geometric normal.
        shading_normal: Outward unit shading normal (interpolated for
            triangle meshes, equal to ``normal`` otherwise).
        tangent: Unit surface tangent along increasing u.
        uv: Surface parameterization in [0, 1]^2.
    """

    hit: ti.i32
    t: ti.f32
    point: vec3
    normal: vec3
    shading_normal: vec3
    tangent: vec3
    uv: vec2


@ti.func
def make_miss() -> HitRecord:
    return HitRecord(
        hit=0,
        t=0.0,
        point=vec3(0.0, 0.0, 0.0),
        normal=vec3(0.0, 0.0, 1.0),
        shading_normal=vec3(0.0, 0.0, 1.0),
        tangent=vec3(1.0, 0.0, 0.0),
        uv=vec2(0.0, 0.0),
    )


@ti.func
def sphere_uv(outward_normal: vec3) -> vec2:
    """Spherical coordinates of a point on the unit sphere.

    u = phi / (2 pi) with phi measured around +y starting from -x,
    v = theta / pi with theta measured from -y.
    """
    theta = ti.acos(tm.clamp(-outward_normal.y, -1.0, 1.0))
    phi = ti.atan2(-outward_normal.z, outward_normal.x) + tm.pi
    return vec2(phi / (2.0 * tm.pi), theta / tm.pi)


@ti.func
def sphere_tangent(outward_normal: vec3) -> vec3:
    """Direction of increasing u on the sphere (around the y axis)."""
    t = vec3(outward_normal.z, 0.0, -outward_normal.x)
    length = tm.length(t)
    result = vec3(1.0, 0.0, 0.0)
    if length > 1e-6:
        result = t / length
    return result


@ti.func
def hit_sphere(
    ray_origin: vec3,
    ray_direction: vec3,
    sphere: Sphere,
    t_min: ti.f32,
    t_max: ti.f32,
) -> HitRecord:
    """Intersect a ray with a sphere.

    Args:
        ray_origin: Ray origin.
        ray_direction: Unit ray direction.
        sphere: Sphere to test.
        t_min: Smallest accepted ray parameter.
        t_max: Largest accepted ray parameter.

    Returns:
        The nearest hit in (t_min, t_max), or a miss record.
    """
    result = make_miss()

    oc = ray_origin - sphere.center
    a = tm.dot(ray_direction, ray_direction)
    b = tm.dot(oc, ray_direction)
    c = tm.dot(oc, oc) - sphere.radius * sphere.radius

    # Distance from the center to the ray line, squared, without cancellation
    f = oc - (b / a) * ray_direction
    discriminant = a * (sphere.radius * sphere.radius - tm.dot(f, f))

    if discriminant >= 0.0:
        sqrt_d = ti.sqrt(discriminant)
        sign_b = ti.select(b < 0.0, -1.0, 1.0)
        q = -(b + sign_b * sqrt_d)

        t0 = 0.0
        t1 = 0.0
        if ti.abs(q) < 1e-20:
            t0 = -b / a
            t1 = t0
        else:
            t0 = c / q
            t1 = q / a
        if t0 > t1:
            tmp = t0
            t0 = t1
            t1 = tmp

        t = t0
        valid = t > t_min and t < t_max
        if not valid:
            t = t1
            valid = t > t_min and t < t_max

        if valid:
            point = ray_origin + t * ray_direction
            outward = tm.normalize(point - sphere.center)
            result = HitRecord(
                hit=1,
                t=t,
                point=point,
                normal=outward,
                shading_normal=outward,
                tangent=sphere_tangent(outward),
                uv=sphere_uv(outward),
            )

    return result


def sphere_bounds(center, radius):
    """Host-side (min, max) corners of a sphere as tuples."""
    return (
        tuple(float(c) - float(radius) for c in center),
        tuple(float(c) + float(radius) for c in center),
    )
