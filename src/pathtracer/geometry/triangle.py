"""Triangle primitive (Moller-Trumbore) with per-vertex attributes.

Triangles come from meshes. Each triangle stores its three positions and,
optionally, per-vertex normals and texture coordinates. When normals are
missing the geometric normal is used for shading; when texture coordinates
are missing the canonical (0,0), (1,0), (0,1) layout is used.
"""

import numpy as np
import taichi as ti
import taichi.math as tm

from .sphere import HitRecord, make_miss

vec2 = tm.vec2
vec3 = tm.vec3

# Determinant threshold below which the ray is treated as parallel
_PARALLEL_EPSILON = 1e-12


@ti.dataclass
class Triangle:
    """A triangle with optional per-vertex shading attributes.

    Attributes:
        p0, p1, p2: Vertex positions (counter-clockwise seen from the front).
        n0, n1, n2: Per-vertex shading normals. Ignored unless has_normals.
        uv0, uv1, uv2: Per-vertex texture coordinates.
        has_normals: 1 if the shading normals are valid.
    """

    p0: vec3
    p1: vec3
    p2: vec3
    n0: vec3
    n1: vec3
    n2: vec3
    uv0: vec2
    uv1: vec2
    uv2: vec2
    has_normals: ti.i32


@ti.func
def _uv_tangent(tri: Triangle, normal: vec3) -> vec3:
    """Tangent along increasing u derived from the uv parameterization."""
    e1 = tri.p1 - tri.p0
    e2 = tri.p2 - tri.p0
    duv1 = tri.uv1 - tri.uv0
    duv2 = tri.uv2 - tri.uv0
    det = duv1.x * duv2.y - duv1.y * duv2.x
    tangent = vec3(0.0, 0.0, 0.0)
    if ti.abs(det) > 1e-12:
        tangent = (e1 * duv2.y - e2 * duv1.y) / det
    # Project into the tangent plane
    tangent = tangent - tm.dot(tangent, normal) * normal
    length = tm.length(tangent)
    result = tm.normalize(e1)
    if length > 1e-8:
        result = tangent / length
    return result


@ti.func
def hit_triangle(
    ray_origin: vec3,
    ray_direction: vec3,
    tri: Triangle,
    t_min: ti.f32,
    t_max: ti.f32,
) -> HitRecord:
    """Intersect a ray with a triangle.

    Args:
        ray_origin: Ray origin.
        ray_direction: Ray direction.
        tri: Triangle to test.
        t_min: Smallest accepted ray parameter.
        t_max: Largest accepted ray parameter.

    Returns:
        The hit with interpolated shading normal and uv, or a miss record.
        Both faces are hit.
    """
    result = make_miss()

    e1 = tri.p1 - tri.p0
    e2 = tri.p2 - tri.p0
    pvec = tm.cross(ray_direction, e2)
    det = tm.dot(e1, pvec)

    if ti.abs(det) > _PARALLEL_EPSILON:
        inv_det = 1.0 / det
        tvec = ray_origin - tri.p0
        b1 = tm.dot(tvec, pvec) * inv_det
        if b1 >= 0.0 and b1 <= 1.0:
            qvec = tm.cross(tvec, e1)
            b2 = tm.dot(ray_direction, qvec) * inv_det
            if b2 >= 0.0 and b1 + b2 <= 1.0:
                t = tm.dot(e2, qvec) * inv_det
                if t > t_min and t < t_max:
                    b0 = 1.0 - b1 - b2
                    normal = tm.normalize(tm.cross(e1, e2))
                    shading = normal
                    if tri.has_normals == 1:
                        interp = b0 * tri.n0 + b1 * tri.n1 + b2 * tri.n2
                        if tm.dot(interp, interp) > 1e-12:
                            shading = tm.normalize(interp)
                        # Keep the shading normal on the geometric side
                        if tm.dot(shading, normal) < 0.0:
                            shading = -shading
                    result = HitRecord(
                        hit=1,
                        t=t,
                        point=ray_origin + t * ray_direction,
                        normal=normal,
                        shading_normal=shading,
                        tangent=_uv_tangent(tri, shading),
                        uv=b0 * tri.uv0 + b1 * tri.uv1 + b2 * tri.uv2,
                    )

    return result


@ti.func
def triangle_area(tri: Triangle) -> ti.f32:
    return 0.5 * tm.length(tm.cross(tri.p1 - tri.p0, tri.p2 - tri.p0))


def triangle_areas_numpy(vertices: np.ndarray) -> np.ndarray:
    """Areas of an (N, 3, 3) array of triangles."""
    v = np.asarray(vertices, dtype=np.float64)
    return 0.5 * np.linalg.norm(np.cross(v[:, 1] - v[:, 0], v[:, 2] - v[:, 0]), axis=1)
