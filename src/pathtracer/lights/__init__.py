"""Lighting module.

Components:
    hdr: Radiance (.hdr) image reading and writing
    environment: Constant or image environment with importance sampling
    lights: Light table, power-proportional selection and light sampling

Emissive primitives become area lights when the scene is built; point
lights are delta lights reachable only through next-event estimation.
"""
