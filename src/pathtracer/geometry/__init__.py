"""Geometry module for shape primitives and spatial acceleration.

Components:
    aabb: Axis-aligned bounding boxes and the robust slab test
    bvh: Host-side midpoint-split BVH builder producing a flat node array
    sphere: Sphere primitive with ray-sphere intersection
    quad: Parallelogram primitive
    triangle: Triangle primitive with per-vertex normals and uvs

Intersection routines are Taichi functions (@ti.func); bounds and the BVH
are computed on the host with numpy and uploaded by the scene manager.
"""

from .aabb import AABB
from .bvh import FlatBVH, build_bvh
from .quad import Quad, hit_quad
from .sphere import HitRecord, Sphere, hit_sphere
from .triangle import Triangle, hit_triangle

__all__ = [
    "AABB",
    "FlatBVH",
    "build_bvh",
    "HitRecord",
    "Sphere",
    "hit_sphere",
    "Quad",
    "hit_quad",
    "Triangle",
    "hit_triangle",
]
