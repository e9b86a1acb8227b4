"""Scene geometry storage and BVH traversal.

Primitives live in preallocated Taichi fields in Structure-of-Arrays
layout. A unified primitive table maps every primitive id to its type, its
index in the per-type storage, its material and its linear motion over the
shutter interval. The BVH built by ``pathtracer.geometry.bvh`` indexes that
table.

Traversal is stackless: each node stores its parent, and the walk keeps
only the current node and the direction it arrived from. Children are
visited near-to-far along the node's split axis and a child whose box
entry lies beyond the closest hit so far is skipped.

The host fills these fields through the ``upload_*`` functions, normally
from ``SceneManager.build()``; they are read-only while a render runs.
"""

from enum import IntEnum

import numpy as np
import taichi as ti
import taichi.math as tm

from pathtracer.core.ray import Ray
from pathtracer.errors import ResourceExhaustedError
from pathtracer.geometry.aabb import hit_aabb, safe_inverse
from pathtracer.geometry.bvh import FlatBVH
from pathtracer.geometry.quad import Quad, hit_quad
from pathtracer.geometry.sphere import HitRecord, Sphere, hit_sphere, make_miss
from pathtracer.geometry.triangle import Triangle, hit_triangle

vec2 = tm.vec2
vec3 = tm.vec3


class PrimitiveType(IntEnum):
    """Tags stored in the primitive table."""

    SPHERE = 0
    QUAD = 1
    TRIANGLE = 2


@ti.dataclass
class SceneHitRecord:
    """Closest intersection of a ray with the scene.

    Attributes:
        hit: 1 if anything was hit.
        t: Ray parameter of the hit.
        point: Hit point in world space.
        normal: Unit geometric normal facing the incoming ray.
        shading_normal: Unit shading normal on the same side as ``normal``.
        tangent: Unit surface tangent.
        uv: Surface parameterization.
        front_face: 1 if the ray hit the outward-facing side.
        material_id: Material of the hit primitive, -1 on a miss.
        primitive_id: Index in the primitive table, -1 on a miss.
    """

    hit: ti.i32
    t: ti.f32
    point: vec3
    normal: vec3
    shading_normal: vec3
    tangent: vec3
    uv: vec2
    front_face: ti.i32
    material_id: ti.i32
    primitive_id: ti.i32


# =============================================================================
# Capacity
# =============================================================================

MAX_PRIMITIVES = 1 << 17
MAX_SPHERES = 4096
MAX_QUADS = 4096
MAX_TRIANGLES = MAX_PRIMITIVES
MAX_BVH_NODES = 2 * MAX_PRIMITIVES

# =============================================================================
# Storage
# =============================================================================

# Unified primitive table
prim_type = ti.field(dtype=ti.i32, shape=MAX_PRIMITIVES)
prim_index = ti.field(dtype=ti.i32, shape=MAX_PRIMITIVES)
prim_material = ti.field(dtype=ti.i32, shape=MAX_PRIMITIVES)
prim_motion = ti.Vector.field(3, dtype=ti.f32, shape=MAX_PRIMITIVES)
num_primitives = ti.field(dtype=ti.i32, shape=())

sphere_centers = ti.Vector.field(3, dtype=ti.f32, shape=MAX_SPHERES)
sphere_radii = ti.field(dtype=ti.f32, shape=MAX_SPHERES)
num_spheres = ti.field(dtype=ti.i32, shape=())

quad_corners = ti.Vector.field(3, dtype=ti.f32, shape=MAX_QUADS)
quad_edge_u = ti.Vector.field(3, dtype=ti.f32, shape=MAX_QUADS)
quad_edge_v = ti.Vector.field(3, dtype=ti.f32, shape=MAX_QUADS)
num_quads = ti.field(dtype=ti.i32, shape=())

tri_vertices = ti.Vector.field(3, dtype=ti.f32, shape=(MAX_TRIANGLES, 3))
tri_normals = ti.Vector.field(3, dtype=ti.f32, shape=(MAX_TRIANGLES, 3))
tri_uvs = ti.Vector.field(2, dtype=ti.f32, shape=(MAX_TRIANGLES, 3))
tri_has_normals = ti.field(dtype=ti.i32, shape=MAX_TRIANGLES)
num_triangles = ti.field(dtype=ti.i32, shape=())

# Flattened BVH
bvh_min = ti.Vector.field(3, dtype=ti.f32, shape=MAX_BVH_NODES)
bvh_max = ti.Vector.field(3, dtype=ti.f32, shape=MAX_BVH_NODES)
bvh_left = ti.field(dtype=ti.i32, shape=MAX_BVH_NODES)
bvh_right = ti.field(dtype=ti.i32, shape=MAX_BVH_NODES)
bvh_parent = ti.field(dtype=ti.i32, shape=MAX_BVH_NODES)
bvh_axis = ti.field(dtype=ti.i32, shape=MAX_BVH_NODES)
bvh_prim_start = ti.field(dtype=ti.i32, shape=MAX_BVH_NODES)
bvh_prim_count = ti.field(dtype=ti.i32, shape=MAX_BVH_NODES)
bvh_prim_order = ti.field(dtype=ti.i32, shape=MAX_PRIMITIVES)
bvh_node_count = ti.field(dtype=ti.i32, shape=())

# Direction the stackless walk arrived at the current node from
_FROM_PARENT = 0
_FROM_NEAR = 1
_FROM_FAR = 2


# =============================================================================
# Host-side Upload
# =============================================================================


def _padded(data: np.ndarray, capacity: int, dtype) -> np.ndarray:
    """Copy ``data`` into a zero array whose first axis is ``capacity``."""
    out = np.zeros((capacity,) + data.shape[1:], dtype=dtype)
    out[: len(data)] = data
    return out


def _check_capacity(kind: str, count: int, capacity: int) -> None:
    if count > capacity:
        raise ResourceExhaustedError(f"Maximum number of {kind} ({capacity}) exceeded: {count}")


def clear_scene() -> None:
    """Forget all primitives and the BVH.

    Field contents are not erased; counts are reset so later uploads
    overwrite them.
    """
    num_primitives[None] = 0
    num_spheres[None] = 0
    num_quads[None] = 0
    num_triangles[None] = 0
    bvh_node_count[None] = 0


def upload_spheres(centers: np.ndarray, radii: np.ndarray) -> None:
    """Replace sphere storage with (N, 3) centers and (N,) radii."""
    centers = np.asarray(centers, dtype=np.float32).reshape(-1, 3)
    radii = np.asarray(radii, dtype=np.float32).reshape(-1)
    _check_capacity("spheres", len(centers), MAX_SPHERES)
    sphere_centers.from_numpy(_padded(centers, MAX_SPHERES, np.float32))
    sphere_radii.from_numpy(_padded(radii, MAX_SPHERES, np.float32))
    num_spheres[None] = len(centers)


def upload_quads(corners: np.ndarray, edge_u: np.ndarray, edge_v: np.ndarray) -> None:
    """Replace quad storage with (N, 3) corners and edge vectors."""
    corners = np.asarray(corners, dtype=np.float32).reshape(-1, 3)
    _check_capacity("quads", len(corners), MAX_QUADS)
    quad_corners.from_numpy(_padded(corners, MAX_QUADS, np.float32))
    quad_edge_u.from_numpy(_padded(np.asarray(edge_u, dtype=np.float32).reshape(-1, 3), MAX_QUADS, np.float32))
    quad_edge_v.from_numpy(_padded(np.asarray(edge_v, dtype=np.float32).reshape(-1, 3), MAX_QUADS, np.float32))
    num_quads[None] = len(corners)


def upload_triangles(
    vertices: np.ndarray,
    normals: np.ndarray | None = None,
    uvs: np.ndarray | None = None,
    has_normals: np.ndarray | None = None,
) -> None:
    """Replace triangle storage.

    Args:
        vertices: (N, 3, 3) vertex positions.
        normals: Optional (N, 3, 3) per-vertex normals.
        uvs: Optional (N, 3, 2) per-vertex texture coordinates. Defaults to
            (0,0), (1,0), (0,1).
        has_normals: Optional (N,) flags selecting which triangles use their
            normals. Defaults to all when ``normals`` is given.
    """
    vertices = np.asarray(vertices, dtype=np.float32).reshape(-1, 3, 3)
    n = len(vertices)
    _check_capacity("triangles", n, MAX_TRIANGLES)

    if normals is None:
        normals = np.zeros((n, 3, 3), dtype=np.float32)
        flags = np.zeros(n, dtype=np.int32)
    else:
        normals = np.asarray(normals, dtype=np.float32).reshape(-1, 3, 3)
        flags = np.ones(n, dtype=np.int32) if has_normals is None else np.asarray(has_normals, dtype=np.int32)
    if uvs is None:
        uvs = np.broadcast_to(np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]], dtype=np.float32), (n, 3, 2))
    uvs = np.asarray(uvs, dtype=np.float32).reshape(-1, 3, 2)

    tri_vertices.from_numpy(_padded(vertices, MAX_TRIANGLES, np.float32))
    tri_normals.from_numpy(_padded(normals, MAX_TRIANGLES, np.float32))
    tri_uvs.from_numpy(_padded(uvs, MAX_TRIANGLES, np.float32))
    tri_has_normals.from_numpy(_padded(flags, MAX_TRIANGLES, np.int32))
    num_triangles[None] = n


def upload_primitives(
    types: np.ndarray,
    indices: np.ndarray,
    materials: np.ndarray,
    motions: np.ndarray | None = None,
) -> None:
    """Replace the unified primitive table.

    Args:
        types: (P,) PrimitiveType values.
        indices: (P,) index into the per-type storage.
        materials: (P,) material ids.
        motions: Optional (P, 3) translation over the shutter interval.
    """
    types = np.asarray(types, dtype=np.int32).reshape(-1)
    p = len(types)
    _check_capacity("primitives", p, MAX_PRIMITIVES)
    if motions is None:
        motions = np.zeros((p, 3), dtype=np.float32)
    prim_type.from_numpy(_padded(types, MAX_PRIMITIVES, np.int32))
    prim_index.from_numpy(_padded(np.asarray(indices, dtype=np.int32).reshape(-1), MAX_PRIMITIVES, np.int32))
    prim_material.from_numpy(_padded(np.asarray(materials, dtype=np.int32).reshape(-1), MAX_PRIMITIVES, np.int32))
    prim_motion.from_numpy(_padded(np.asarray(motions, dtype=np.float32).reshape(-1, 3), MAX_PRIMITIVES, np.float32))
    num_primitives[None] = p


def upload_bvh(bvh: FlatBVH) -> None:
    """Copy a flattened BVH into the traversal fields."""
    _check_capacity("BVH nodes", bvh.node_count, MAX_BVH_NODES)
    _check_capacity("BVH primitives", bvh.primitive_count, MAX_PRIMITIVES)
    bvh_min.from_numpy(_padded(bvh.bounds_min, MAX_BVH_NODES, np.float32))
    bvh_max.from_numpy(_padded(bvh.bounds_max, MAX_BVH_NODES, np.float32))
    bvh_left.from_numpy(_padded(bvh.left, MAX_BVH_NODES, np.int32))
    bvh_right.from_numpy(_padded(bvh.right, MAX_BVH_NODES, np.int32))
    bvh_parent.from_numpy(_padded(bvh.parent, MAX_BVH_NODES, np.int32))
    bvh_axis.from_numpy(_padded(bvh.axis, MAX_BVH_NODES, np.int32))
    bvh_prim_start.from_numpy(_padded(bvh.prim_start, MAX_BVH_NODES, np.int32))
    bvh_prim_count.from_numpy(_padded(bvh.prim_count, MAX_BVH_NODES, np.int32))
    bvh_prim_order.from_numpy(_padded(bvh.prim_order, MAX_PRIMITIVES, np.int32))
    bvh_node_count[None] = bvh.node_count


def get_primitive_count() -> int:
    return int(num_primitives[None])


def get_bvh_node_count() -> int:
    return int(bvh_node_count[None])


# =============================================================================
# Primitive Access
# =============================================================================


@ti.func
def get_sphere(index: ti.i32) -> Sphere:
    return Sphere(center=sphere_centers[index], radius=sphere_radii[index])


@ti.func
def get_quad(index: ti.i32) -> Quad:
    return Quad(Q=quad_corners[index], u=quad_edge_u[index], v=quad_edge_v[index])


@ti.func
def get_triangle(index: ti.i32) -> Triangle:
    return Triangle(
        p0=tri_vertices[index, 0],
        p1=tri_vertices[index, 1],
        p2=tri_vertices[index, 2],
        n0=tri_normals[index, 0],
        n1=tri_normals[index, 1],
        n2=tri_normals[index, 2],
        uv0=tri_uvs[index, 0],
        uv1=tri_uvs[index, 1],
        uv2=tri_uvs[index, 2],
        has_normals=tri_has_normals[index],
    )


@ti.func
def intersect_primitive(
    prim_id: ti.i32,
    origin: vec3,
    direction: vec3,
    time: ti.f32,
    t_min: ti.f32,
    t_max: ti.f32,
) -> HitRecord:
    """Intersect one primitive of the table at a shutter time.

    Moving primitives are handled by shifting the ray origin by the opposite
    of the primitive's displacement at ``time`` and shifting the hit point
    back.
    """
    shift = prim_motion[prim_id] * time
    local_origin = origin - shift
    ptype = prim_type[prim_id]
    index = prim_index[prim_id]

    rec = make_miss()
    if ptype == int(PrimitiveType.SPHERE):
        rec = hit_sphere(local_origin, direction, get_sphere(index), t_min, t_max)
    elif ptype == int(PrimitiveType.QUAD):
        rec = hit_quad(local_origin, direction, get_quad(index), t_min, t_max)
    else:
        rec = hit_triangle(local_origin, direction, get_triangle(index), t_min, t_max)

    if rec.hit == 1:
        rec.point = rec.point + shift
    return rec


@ti.func
def _make_miss_record() -> SceneHitRecord:
    return SceneHitRecord(
        hit=0,
        t=0.0,
        point=vec3(0.0, 0.0, 0.0),
        normal=vec3(0.0, 0.0, 1.0),
        shading_normal=vec3(0.0, 0.0, 1.0),
        tangent=vec3(1.0, 0.0, 0.0),
        uv=vec2(0.0, 0.0),
        front_face=0,
        material_id=-1,
        primitive_id=-1,
    )


@ti.func
def _to_scene_hit(rec: HitRecord, direction: vec3, prim_id: ti.i32) -> SceneHitRecord:
    """Orient normals toward the incoming ray and attach material data."""
    front_face = 1
    normal = rec.normal
    shading = rec.shading_normal
    if tm.dot(direction, rec.normal) > 0.0:
        front_face = 0
        normal = -normal
        shading = -shading
    return SceneHitRecord(
        hit=1,
        t=rec.t,
        point=rec.point,
        normal=normal,
        shading_normal=shading,
        tangent=rec.tangent,
        uv=rec.uv,
        front_face=front_face,
        material_id=prim_material[prim_id],
        primitive_id=prim_id,
    )


# =============================================================================
# Traversal
# =============================================================================


@ti.func
def _near_far(node: ti.i32, direction: vec3):
    """Children of an interior node ordered along the ray direction."""
    axis = bvh_axis[node]
    d = ti.select(axis == 0, direction.x, ti.select(axis == 1, direction.y, direction.z))
    near = bvh_left[node]
    far = bvh_right[node]
    if d < 0.0:
        near = bvh_right[node]
        far = bvh_left[node]
    return near, far


@ti.func
def _ascend(node: ti.i32, direction: vec3):
    """Step from a finished subtree to its parent.

    Returns:
        A tuple (parent, came_from, done). ``done`` is 1 once the root is
        finished.
    """
    parent = bvh_parent[node]
    came_from = _FROM_FAR
    done = 0
    if parent < 0:
        done = 1
        parent = node
    else:
        near, _far = _near_far(parent, direction)
        if node == near:
            came_from = _FROM_NEAR
    return parent, came_from, done


@ti.func
def intersect_scene(ray: Ray) -> SceneHitRecord:
    """Closest hit of a ray against the whole scene.

    Args:
        ray: Ray with its parametric interval and shutter time.

    Returns:
        The closest SceneHitRecord in (t_min, t_max), or a miss record.
    """
    closest = ray.t_max
    best_prim = -1
    best = make_miss()

    if bvh_node_count[None] > 0:
        inv_dir = safe_inverse(ray.direction)
        root_hit, _t = hit_aabb(bvh_min[0], bvh_max[0], ray.origin, inv_dir, ray.t_min, closest)
        node = 0
        came_from = _FROM_PARENT
        done = 1 - root_hit
        while done == 0:
            if came_from == _FROM_PARENT:
                count = bvh_prim_count[node]
                if count > 0:
                    start = bvh_prim_start[node]
                    for k in range(count):
                        prim_id = bvh_prim_order[start + k]
                        rec = intersect_primitive(
                            prim_id, ray.origin, ray.direction, ray.time, ray.t_min, closest
                        )
                        if rec.hit == 1:
                            closest = rec.t
                            best = rec
                            best_prim = prim_id
                    node, came_from, done = _ascend(node, ray.direction)
                else:
                    near, _far = _near_far(node, ray.direction)
                    h, _tn = hit_aabb(bvh_min[near], bvh_max[near], ray.origin, inv_dir, ray.t_min, closest)
                    if h == 1:
                        node = near
                    else:
                        came_from = _FROM_NEAR
            elif came_from == _FROM_NEAR:
                _near, far = _near_far(node, ray.direction)
                h, _tn = hit_aabb(bvh_min[far], bvh_max[far], ray.origin, inv_dir, ray.t_min, closest)
                if h == 1:
                    node = far
                    came_from = _FROM_PARENT
                else:
                    came_from = _FROM_FAR
            else:
                node, came_from, done = _ascend(node, ray.direction)

    result = _make_miss_record()
    if best_prim >= 0:
        result = _to_scene_hit(best, ray.direction, best_prim)
    return result


@ti.func
def intersect_scene_any(ray: Ray) -> ti.i32:
    """1 if anything blocks the ray within its interval (shadow query)."""
    found = 0

    if bvh_node_count[None] > 0:
        inv_dir = safe_inverse(ray.direction)
        root_hit, _t = hit_aabb(bvh_min[0], bvh_max[0], ray.origin, inv_dir, ray.t_min, ray.t_max)
        node = 0
        came_from = _FROM_PARENT
        done = 1 - root_hit
        while done == 0:
            if came_from == _FROM_PARENT:
                count = bvh_prim_count[node]
                if count > 0:
                    start = bvh_prim_start[node]
                    for k in range(count):
                        if found == 0:
                            prim_id = bvh_prim_order[start + k]
                            rec = intersect_primitive(
                                prim_id, ray.origin, ray.direction, ray.time, ray.t_min, ray.t_max
                            )
                            if rec.hit == 1:
                                found = 1
                    if found == 1:
                        done = 1
                    else:
                        node, came_from, done = _ascend(node, ray.direction)
                else:
                    near, _far = _near_far(node, ray.direction)
                    h, _tn = hit_aabb(bvh_min[near], bvh_max[near], ray.origin, inv_dir, ray.t_min, ray.t_max)
                    if h == 1:
                        node = near
                    else:
                        came_from = _FROM_NEAR
            elif came_from == _FROM_NEAR:
                _near, far = _near_far(node, ray.direction)
                h, _tn = hit_aabb(bvh_min[far], bvh_max[far], ray.origin, inv_dir, ray.t_min, ray.t_max)
                if h == 1:
                    node = far
                    came_from = _FROM_PARENT
                else:
                    came_from = _FROM_FAR
            else:
                node, came_from, done = _ascend(node, ray.direction)

    return found


@ti.func
def intersect_scene_brute_force(ray: Ray) -> SceneHitRecord:
    """Closest hit by testing every primitive; used to validate the BVH."""
    closest = ray.t_max
    best_prim = -1
    best = make_miss()
    for prim_id in range(num_primitives[None]):
        rec = intersect_primitive(prim_id, ray.origin, ray.direction, ray.time, ray.t_min, closest)
        if rec.hit == 1:
            closest = rec.t
            best = rec
            best_prim = prim_id

    result = _make_miss_record()
    if best_prim >= 0:
        result = _to_scene_hit(best, ray.direction, best_prim)
    return result
