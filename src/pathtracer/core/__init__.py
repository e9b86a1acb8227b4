"""Core rendering module.

Components:
    ray: Ray structure, offsetting and vector helpers
    sampler: Per-pixel random streams and warping functions
    integrator: Iterative path tracer with next-event estimation and MIS
    progressive: Batched accumulation, cancellation and the render() entry point

The integrator evaluates one independent path per (pixel, sample) pair in
a Taichi kernel; every random decision of that path is drawn from a stream
seeded by (pixel, sample index, seed), so the image does not depend on the
scheduling order or on the batch size.
"""

from .ray import (
    RAY_EPSILON,
    T_MAX,
    T_MIN,
    Ray,
    build_onb_from_normal,
    local_to_world,
    make_ray,
    ray_at,
    spawn_ray,
    world_to_local,
)
from .sampler import next_2d, next_float, seed_sampler

# Note: integrator and progressive allocate Taichi fields and are NOT
# imported here. Import them after ti.init(), e.g.
#   from pathtracer.core.progressive import render

__all__ = [
    "Ray",
    "ray_at",
    "make_ray",
    "spawn_ray",
    "build_onb_from_normal",
    "local_to_world",
    "world_to_local",
    "T_MIN",
    "T_MAX",
    "RAY_EPSILON",
    "seed_sampler",
    "next_float",
    "next_2d",
]
