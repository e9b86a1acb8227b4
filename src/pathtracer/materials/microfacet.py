"""Microfacet distributions and Fresnel terms.

All functions work in the local shading frame where the surface normal is
+z. Directions point away from the surface.

- Anisotropic GGX (Trowbridge-Reitz) with the height-correlated Smith
  masking-shadowing term and visible-normal sampling (Heitz 2018).
- GTR1 (Berry) for the clearcoat lobe, with separable Smith GGX G1 at a
  fixed alpha of 0.25.
- Schlick and exact dielectric Fresnel, and refraction through a microfacet.
"""

import taichi as ti
import taichi.math as tm

vec2 = tm.vec2
vec3 = tm.vec3

# Below this alpha a lobe is treated as a perfect mirror / refraction
DELTA_ALPHA = 1e-3

# Smallest alpha used for non-delta GGX lobes
MIN_ALPHA = 1e-4

CLEARCOAT_G_ALPHA = 0.25


# =============================================================================
# Parameter Mapping
# =============================================================================


@ti.func
def roughness_to_alpha(roughness: ti.f32, anisotropic: ti.f32):
    """Disney anisotropic roughness remapping.

    Returns:
        A tuple (alpha_x, alpha_y), each clamped below by MIN_ALPHA unless
        the lobe is effectively smooth.
    """
    aspect = ti.sqrt(1.0 - 0.9 * anisotropic)
    r2 = roughness * roughness
    ax = r2 / aspect
    ay = r2 * aspect
    if ti.max(ax, ay) >= DELTA_ALPHA:
        ax = ti.max(ax, MIN_ALPHA)
        ay = ti.max(ay, MIN_ALPHA)
    return ax, ay


@ti.func
def is_effectively_smooth(alpha_x: ti.f32, alpha_y: ti.f32) -> ti.i32:
    return ti.max(alpha_x, alpha_y) < DELTA_ALPHA


# =============================================================================
# GGX
# =============================================================================


@ti.func
def ggx_d(wm: vec3, alpha_x: ti.f32, alpha_y: ti.f32) -> ti.f32:
    """Anisotropic GGX normal distribution D(wm)."""
    x = wm.x / alpha_x
    y = wm.y / alpha_y
    e = x * x + y * y + wm.z * wm.z
    result = 0.0
    if wm.z > 0.0:
        result = 1.0 / (tm.pi * alpha_x * alpha_y * e * e)
    return result


@ti.func
def ggx_lambda(w: vec3, alpha_x: ti.f32, alpha_y: ti.f32) -> ti.f32:
    """Smith Lambda for anisotropic GGX."""
    cos2 = w.z * w.z
    result = 0.0
    if cos2 > 1e-12:
        a2_tan2 = (alpha_x * alpha_x * w.x * w.x + alpha_y * alpha_y * w.y * w.y) / cos2
        result = 0.5 * (ti.sqrt(1.0 + a2_tan2) - 1.0)
    else:
        result = 1e12
    return result


@ti.func
def ggx_g1(w: vec3, alpha_x: ti.f32, alpha_y: ti.f32) -> ti.f32:
    return 1.0 / (1.0 + ggx_lambda(w, alpha_x, alpha_y))


@ti.func
def ggx_g2(wo: vec3, wi: vec3, alpha_x: ti.f32, alpha_y: ti.f32) -> ti.f32:
    """Height-correlated masking-shadowing."""
    return 1.0 / (1.0 + ggx_lambda(wo, alpha_x, alpha_y) + ggx_lambda(wi, alpha_x, alpha_y))


@ti.func
def ggx_sample_visible_normal(wo: vec3, u: vec2, alpha_x: ti.f32, alpha_y: ti.f32) -> vec3:
    """Sample a microfacet normal from the distribution of normals visible from wo.

    Args:
        wo: Outgoing direction with wo.z > 0.
        u: Uniform sample.
        alpha_x: Roughness along the tangent.
        alpha_y: Roughness along the bitangent.
    """
    vh = tm.normalize(vec3(alpha_x * wo.x, alpha_y * wo.y, wo.z))
    lensq = vh.x * vh.x + vh.y * vh.y
    t1 = vec3(1.0, 0.0, 0.0)
    if lensq > 1e-12:
        t1 = vec3(-vh.y, vh.x, 0.0) / ti.sqrt(lensq)
    t2 = tm.cross(vh, t1)

    r = ti.sqrt(u.x)
    phi = 2.0 * tm.pi * u.y
    p1 = r * ti.cos(phi)
    p2 = r * ti.sin(phi)
    s = 0.5 * (1.0 + vh.z)
    p2 = (1.0 - s) * ti.sqrt(ti.max(0.0, 1.0 - p1 * p1)) + s * p2

    nh = p1 * t1 + p2 * t2 + ti.sqrt(ti.max(0.0, 1.0 - p1 * p1 - p2 * p2)) * vh
    return tm.normalize(vec3(alpha_x * nh.x, alpha_y * nh.y, ti.max(1e-6, nh.z)))


@ti.func
def ggx_visible_normal_pdf(wo: vec3, wm: vec3, alpha_x: ti.f32, alpha_y: ti.f32) -> ti.f32:
    """Density of ggx_sample_visible_normal over microfacet normals."""
    result = 0.0
    if wo.z > 0.0:
        result = ggx_g1(wo, alpha_x, alpha_y) * ti.max(0.0, tm.dot(wo, wm)) * ggx_d(wm, alpha_x, alpha_y) / wo.z
    return result


# =============================================================================
# GTR1 (clearcoat)
# =============================================================================


@ti.func
def gtr1_d(cos_h: ti.f32, alpha: ti.f32) -> ti.f32:
    a2 = alpha * alpha
    t = 1.0 + (a2 - 1.0) * cos_h * cos_h
    return (a2 - 1.0) / (tm.pi * ti.log(a2) * t)


@ti.func
def gtr1_sample_normal(u: vec2, alpha: ti.f32) -> vec3:
    """Sample a half vector proportional to D(h) cos(theta_h)."""
    a2 = alpha * alpha
    cos_theta = ti.sqrt(ti.max(0.0, (1.0 - ti.pow(a2, 1.0 - u.x)) / (1.0 - a2)))
    sin_theta = ti.sqrt(ti.max(0.0, 1.0 - cos_theta * cos_theta))
    phi = 2.0 * tm.pi * u.y
    return vec3(sin_theta * ti.cos(phi), sin_theta * ti.sin(phi), cos_theta)


@ti.func
def smith_g1_ggx(cos_theta: ti.f32, alpha: ti.f32) -> ti.f32:
    """Separable isotropic Smith G1 for GGX."""
    a2 = alpha * alpha
    c2 = cos_theta * cos_theta
    return 2.0 * cos_theta / (cos_theta + ti.sqrt(a2 + c2 - a2 * c2))


# =============================================================================
# Fresnel
# =============================================================================


@ti.func
def schlick_weight(cos_theta: ti.f32) -> ti.f32:
    m = tm.clamp(1.0 - cos_theta, 0.0, 1.0)
    m2 = m * m
    return m2 * m2 * m


@ti.func
def fresnel_schlick(f0: vec3, cos_theta: ti.f32) -> vec3:
    return f0 + (vec3(1.0, 1.0, 1.0) - f0) * schlick_weight(cos_theta)


@ti.func
def fresnel_dielectric(cos_theta_i: ti.f32, eta: ti.f32) -> ti.f32:
    """Unpolarized Fresnel reflectance of a dielectric interface.

    Args:
        cos_theta_i: Cosine of the incident angle with the normal. Negative
            values mean the light arrives from the inside.
        eta: Relative index of refraction (transmitted / incident side of
            the normal).

    Returns:
        Reflectance in [0, 1]; 1 under total internal reflection.
    """
    cos_i = tm.clamp(cos_theta_i, -1.0, 1.0)
    e = eta
    if cos_i < 0.0:
        e = 1.0 / e
        cos_i = -cos_i
    sin2_i = 1.0 - cos_i * cos_i
    sin2_t = sin2_i / (e * e)
    result = 1.0
    if sin2_t < 1.0:
        cos_t = ti.sqrt(ti.max(0.0, 1.0 - sin2_t))
        r_parl = (e * cos_i - cos_t) / (e * cos_i + cos_t)
        r_perp = (cos_i - e * cos_t) / (cos_i + e * cos_t)
        result = 0.5 * (r_parl * r_parl + r_perp * r_perp)
    return result


@ti.func
def refract_local(wi: vec3, n: vec3, eta: ti.f32):
    """Refract a direction through a (micro)surface.

    Args:
        wi: Direction pointing away from the surface on the incident side.
        n: Surface normal.
        eta: Relative index of refraction across the surface along n.

    Returns:
        A tuple (ok, wt, etap) where ok is 0 under total internal
        reflection, wt is the transmitted direction and etap the relative
        index actually used.
    """
    cos_i = tm.dot(n, wi)
    e = eta
    nn = n
    if cos_i < 0.0:
        e = 1.0 / e
        cos_i = -cos_i
        nn = -n
    sin2_i = ti.max(0.0, 1.0 - cos_i * cos_i)
    sin2_t = sin2_i / (e * e)
    ok = 0
    wt = vec3(0.0, 0.0, 0.0)
    if sin2_t < 1.0:
        cos_t = ti.sqrt(1.0 - sin2_t)
        wt = -wi / e + (cos_i / e - cos_t) * nn
        ok = 1
    return ok, wt, e
