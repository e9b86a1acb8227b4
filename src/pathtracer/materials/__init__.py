"""Materials module.

Components:
    textures: Constant, checker and image textures
    microfacet: GGX / GTR1 distributions, Smith masking and Fresnel terms
    principled: Material parameter records and the material table
    bsdf: Evaluation, sampling and pdf of the principled BSDF

Lambertian, metal, dielectric and emissive materials are presets of the
principled parameter set. Smooth surfaces (roughness below a small
threshold) produce delta lobes that are never evaluated for light samples.
"""
