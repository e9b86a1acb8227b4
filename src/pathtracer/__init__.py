"""Physically based offline path tracer built on Taichi.

The package renders scenes made of spheres, quads, boxes and triangle meshes
with a principled (Disney-style) BSDF, area/point lights and an optional
importance-sampled environment map. Rendering is a Monte Carlo path tracer
with next-event estimation, multiple importance sampling and Russian
roulette, executed per pixel in parallel on the Taichi CPU backend.

Subpackages:
    core: Rays, sampler, path integrator and progressive renderer
    geometry: Primitives, bounding boxes and BVH construction
    materials: Textures, microfacet helpers and the principled BSDF
    lights: Light set, environment lighting and HDR decoding
    camera: Thin-lens camera with shutter interval
    scene: Scene storage, scene manager, description loader, demo scenes
    output: Tone mapping and image export

Modules that declare Taichi fields must be imported after ``ti.init()``.
The top-level package only exposes the pure-Python helpers.
"""

from .config import QUALITY_PRESETS, QualityPreset, RenderSettings
from .errors import (
    BVHBuildError,
    MalformedSceneError,
    PathTracerError,
    ResourceExhaustedError,
)

__version__ = "0.1.0"

__all__ = [
    "QUALITY_PRESETS",
    "QualityPreset",
    "RenderSettings",
    "PathTracerError",
    "MalformedSceneError",
    "ResourceExhaustedError",
    "BVHBuildError",
    "__version__",
]
