"""Quad (parallelogram) primitive.

A quad is the parallelogram spanned by a corner ``Q`` and two edges ``u``
and ``v``; its vertices are Q, Q+u, Q+v and Q+u+v and its outward normal is
``normalize(u x v)``. Boxes are built from six quads.

The hit test intersects the supporting plane and then expresses the hit
point in the (u, v) basis with the helper vector ``w = n / (n . n)``; the
resulting coordinates double as the texture parameterization.
"""

import numpy as np
import taichi as ti
import taichi.math as tm

from .sphere import HitRecord, make_miss

vec2 = tm.vec2
vec3 = tm.vec3


@ti.dataclass
class Quad:
    """A parallelogram defined by a corner point and two edge vectors.

    Attributes:
        Q: Corner point.
        u: First edge vector.
        v: Second edge vector.
    """

    Q: vec3
    u: vec3
    v: vec3


@ti.func
def hit_quad(
    ray_origin: vec3,
    ray_direction: vec3,
    quad: Quad,
    t_min: ti.f32,
    t_max: ti.f32,
) -> HitRecord:
    """Intersect a ray with a quad.

    Args:
        ray_origin: Ray origin.
        ray_direction: Ray direction.
        quad: Quad to test.
        t_min: Smallest accepted ray parameter.
        t_max: Largest accepted ray parameter.

    Returns:
        The hit with uv = (alpha, beta), or a miss record. Degenerate quads
        (parallel edges) never report a hit.
    """
    result = make_miss()

    n = tm.cross(quad.u, quad.v)
    n_dot_n = tm.dot(n, n)
    denom = tm.dot(n, ray_direction)

    if n_dot_n > 1e-20 and ti.abs(denom) > 1e-12 * ti.sqrt(n_dot_n):
        t = tm.dot(n, quad.Q - ray_origin) / denom
        if t > t_min and t < t_max:
            point = ray_origin + t * ray_direction
            w = n / n_dot_n
            p_rel = point - quad.Q
            alpha = tm.dot(w, tm.cross(p_rel, quad.v))
            beta = tm.dot(w, tm.cross(quad.u, p_rel))
            if alpha >= 0.0 and alpha <= 1.0 and beta >= 0.0 and beta <= 1.0:
                normal = n / ti.sqrt(n_dot_n)
                result = HitRecord(
                    hit=1,
                    t=t,
                    point=point,
                    normal=normal,
                    shading_normal=normal,
                    tangent=tm.normalize(quad.u),
                    uv=vec2(alpha, beta),
                )

    return result


@ti.func
def quad_point(quad: Quad, uv: vec2) -> vec3:
    """Point at parametric coordinates (alpha, beta) on the quad."""
    return quad.Q + uv.x * quad.u + uv.y * quad.v


@ti.func
def quad_normal(quad: Quad) -> vec3:
    return tm.normalize(tm.cross(quad.u, quad.v))


@ti.func
def quad_area(quad: Quad) -> ti.f32:
    return tm.length(tm.cross(quad.u, quad.v))


def quad_area_numpy(u, v) -> float:
    return float(np.linalg.norm(np.cross(np.asarray(u, dtype=np.float64), np.asarray(v, dtype=np.float64))))
