"""Principled BSDF: evaluation, sampling and pdf.

The BSDF is a weighted sum of lobes evaluated in the local shading frame
(normal = +z). The frame is always oriented so that ``wo`` lies in the
upper hemisphere; ``eta`` is the relative index of refraction from the
``wo`` side to the other side.

Lobe weights (m = metallic, st = spec_trans):

    diffuse      (1 - m) (1 - st)      Burley + subsurface + sheen
    specular     1 - (1 - m) st        anisotropic GGX, Schlick(Cspec0)
    clearcoat    0.25 clearcoat        GTR1, Schlick(0.04)
    transmission (1 - m) st            rough dielectric, exact Fresnel

Sampling first picks a lobe with a probability proportional to an estimate
of its reflectance at ``wo``; the estimates have a floor so every lobe with
a non-zero weight can be sampled. The pdf of a non-delta direction is the
mixture of the lobe pdfs with those probabilities, so sampling and
evaluation agree.

When a GGX lobe is effectively smooth (alpha below DELTA_ALPHA) it becomes a
delta lobe: sampling it returns ``is_delta = 1`` and evaluation ignores it.
"""

import taichi as ti
import taichi.math as tm

from pathtracer.core.ray import (
    build_onb_from_tangent,
    local_to_world,
    luminance,
    world_to_local,
)
from pathtracer.core.sampler import next_2d, next_float, sample_cosine_hemisphere
from pathtracer.materials.microfacet import (
    CLEARCOAT_G_ALPHA,
    fresnel_dielectric,
    fresnel_schlick,
    ggx_d,
    ggx_g2,
    ggx_sample_visible_normal,
    ggx_visible_normal_pdf,
    gtr1_d,
    gtr1_sample_normal,
    is_effectively_smooth,
    refract_local,
    roughness_to_alpha,
    schlick_weight,
    smith_g1_ggx,
)
from pathtracer.materials.principled import MaterialType, SurfaceMaterial

vec3 = tm.vec3

# Lower bound of a lobe's reflectance estimate when choosing what to sample
LOBE_PROBABILITY_FLOOR = 0.1


@ti.dataclass
class BSDFSample:
    """Result of sampling the BSDF.

    Attributes:
        value: BSDF value for the sampled pair (not multiplied by cosine).
        direction: Sampled incident direction wi.
        pdf: Solid-angle density of wi. For delta samples this is the
            discrete probability of the chosen branch.
        is_delta: 1 if wi came from a delta lobe.
        valid: 0 if sampling failed (absorbed path).
    """

    value: vec3
    direction: vec3
    pdf: ti.f32
    is_delta: ti.i32
    valid: ti.i32


@ti.dataclass
class ShadingFrame:
    """Orthonormal shading frame plus the relative IOR on the wo side."""

    tangent: vec3
    bitangent: vec3
    normal: vec3
    eta: ti.f32


@ti.dataclass
class LobeSet:
    """Lobe weights, selection probabilities and shared terms at one wo."""

    w_diffuse: ti.f32
    w_specular: ti.f32
    w_clearcoat: ti.f32
    w_transmission: ti.f32
    p_diffuse: ti.f32
    p_specular: ti.f32
    p_clearcoat: ti.f32
    p_transmission: ti.f32
    cspec0: vec3
    alpha_x: ti.f32
    alpha_y: ti.f32
    clearcoat_alpha: ti.f32
    smooth: ti.i32


@ti.func
def _tint(base: vec3) -> vec3:
    lum = luminance(base)
    result = vec3(1.0, 1.0, 1.0)
    if lum > 0.0:
        result = base / lum
    return result


@ti.func
def make_lobe_set(mat: SurfaceMaterial, wo: vec3) -> LobeSet:
    wd = 0.0
    ws = 0.0
    wc = 0.0
    wt = 0.0
    if mat.kind == int(MaterialType.LAMBERTIAN):
        wd = 1.0
    elif mat.kind != int(MaterialType.EMISSIVE):
        m = mat.metallic
        st = mat.spec_trans
        wd = (1.0 - m) * (1.0 - st)
        ws = 1.0 - (1.0 - m) * st
        wt = (1.0 - m) * st
        wc = 0.25 * mat.clearcoat

    ax, ay = roughness_to_alpha(mat.roughness, mat.anisotropic)
    dielectric_f0 = mat.specular * 0.08 * tm.mix(vec3(1.0, 1.0, 1.0), _tint(mat.base_color), mat.specular_tint)
    cspec0 = tm.mix(dielectric_f0, mat.base_color, mat.metallic)

    fo = schlick_weight(wo.z)
    est_d = wd * ti.max(luminance(mat.base_color), LOBE_PROBABILITY_FLOOR)
    est_s = ws * ti.max(luminance(cspec0 + (vec3(1.0, 1.0, 1.0) - cspec0) * fo), LOBE_PROBABILITY_FLOOR)
    est_c = wc * ti.max(0.04 + 0.96 * fo, LOBE_PROBABILITY_FLOOR)
    est_t = wt
    total = est_d + est_s + est_c + est_t
    inv_total = 0.0
    if total > 0.0:
        inv_total = 1.0 / total

    return LobeSet(
        w_diffuse=wd,
        w_specular=ws,
        w_clearcoat=wc,
        w_transmission=wt,
        p_diffuse=est_d * inv_total,
        p_specular=est_s * inv_total,
        p_clearcoat=est_c * inv_total,
        p_transmission=est_t * inv_total,
        cspec0=cspec0,
        alpha_x=ax,
        alpha_y=ay,
        clearcoat_alpha=tm.mix(0.1, 0.001, mat.clearcoat_gloss),
        smooth=is_effectively_smooth(ax, ay),
    )


@ti.func
def _diffuse_term(mat: SurfaceMaterial, n_dot_l: ti.f32, n_dot_v: ti.f32, l_dot_h: ti.f32) -> vec3:
    """Burley diffuse with subsurface approximation and sheen (Lambert for LAMBERTIAN)."""
    result = mat.base_color / tm.pi
    if mat.kind != int(MaterialType.LAMBERTIAN):
        fl = schlick_weight(n_dot_l)
        fv = schlick_weight(n_dot_v)
        rr = l_dot_h * l_dot_h * mat.roughness
        fd90 = 0.5 + 2.0 * rr
        fd = (1.0 + (fd90 - 1.0) * fl) * (1.0 + (fd90 - 1.0) * fv)
        fss = (1.0 + (rr - 1.0) * fl) * (1.0 + (rr - 1.0) * fv)
        ss = 1.25 * (fss * (1.0 / (n_dot_l + n_dot_v) - 0.5) + 0.5)
        sheen_color = tm.mix(vec3(1.0, 1.0, 1.0), _tint(mat.base_color), mat.sheen_tint)
        sheen = schlick_weight(l_dot_h) * mat.sheen * sheen_color
        result = mat.base_color / tm.pi * tm.mix(fd, ss, mat.subsurface) + sheen
    return result


@ti.func
def evaluate_local(mat: SurfaceMaterial, wo: vec3, wi: vec3, eta: ti.f32):
    """Evaluate the non-delta lobes for a pair of local directions.

    Args:
        mat: Resolved material.
        wo: Outgoing direction, wo.z > 0.
        wi: Incident direction.
        eta: Relative IOR from the wo side to the other side.

    Returns:
        A tuple (value, pdf). Both are zero for pairs no lobe can produce.
    """
    value = vec3(0.0, 0.0, 0.0)
    pdf = 0.0
    lobes = make_lobe_set(mat, wo)

    if wo.z > 0.0 and wi.z > 0.0:
        h = tm.normalize(wo + wi)
        n_dot_l = wi.z
        n_dot_v = wo.z
        l_dot_h = tm.dot(wi, h)
        o_dot_h = tm.dot(wo, h)

        if lobes.w_diffuse > 0.0:
            value += lobes.w_diffuse * _diffuse_term(mat, n_dot_l, n_dot_v, l_dot_h)
            pdf += lobes.p_diffuse * n_dot_l / tm.pi

        if lobes.smooth == 0 and (lobes.w_specular > 0.0 or lobes.w_transmission > 0.0):
            d = ggx_d(h, lobes.alpha_x, lobes.alpha_y)
            g = ggx_g2(wo, wi, lobes.alpha_x, lobes.alpha_y)
            microfacet = d * g / (4.0 * n_dot_l * n_dot_v)
            reflect_pdf = ggx_visible_normal_pdf(wo, h, lobes.alpha_x, lobes.alpha_y) / (4.0 * o_dot_h)
            if lobes.w_specular > 0.0:
                value += lobes.w_specular * microfacet * fresnel_schlick(lobes.cspec0, l_dot_h)
                pdf += lobes.p_specular * reflect_pdf
            if lobes.w_transmission > 0.0:
                r = fresnel_dielectric(o_dot_h, eta)
                value += lobes.w_transmission * microfacet * r * vec3(1.0, 1.0, 1.0)
                pdf += lobes.p_transmission * reflect_pdf * r

        if lobes.w_clearcoat > 0.0:
            dr = gtr1_d(h.z, lobes.clearcoat_alpha)
            fr = tm.mix(0.04, 1.0, schlick_weight(l_dot_h))
            gr = smith_g1_ggx(n_dot_l, CLEARCOAT_G_ALPHA) * smith_g1_ggx(n_dot_v, CLEARCOAT_G_ALPHA)
            value += lobes.w_clearcoat * dr * fr * gr / (4.0 * n_dot_l * n_dot_v) * vec3(1.0, 1.0, 1.0)
            pdf += lobes.p_clearcoat * dr * h.z / (4.0 * o_dot_h)

    elif wo.z > 0.0 and wi.z < 0.0 and lobes.w_transmission > 0.0 and lobes.smooth == 0:
        wm = wi * eta + wo
        if tm.dot(wm, wm) > 1e-12:
            wm = tm.normalize(wm)
            if wm.z < 0.0:
                wm = -wm
            i_dot_m = tm.dot(wi, wm)
            o_dot_m = tm.dot(wo, wm)
            if i_dot_m < 0.0 and o_dot_m > 0.0:
                t = 1.0 - fresnel_dielectric(o_dot_m, eta)
                denom = (i_dot_m + o_dot_m / eta) ** 2
                d = ggx_d(wm, lobes.alpha_x, lobes.alpha_y)
                g = ggx_g2(wo, wi, lobes.alpha_x, lobes.alpha_y)
                ft = d * g * t * ti.abs(i_dot_m * o_dot_m / (wi.z * wo.z * denom)) / (eta * eta)
                value += lobes.w_transmission * ft * mat.base_color
                dwm_dwi = ti.abs(i_dot_m) / denom
                pdf += (
                    lobes.p_transmission
                    * ggx_visible_normal_pdf(wo, wm, lobes.alpha_x, lobes.alpha_y)
                    * dwm_dwi
                    * t
                )

    return value, pdf


@ti.func
def _mirror(wo: vec3, h: vec3) -> vec3:
    return 2.0 * tm.dot(wo, h) * h - wo


@ti.func
def sample_local(mat: SurfaceMaterial, wo: vec3, eta: ti.f32, rng: ti.u32):
    """Sample an incident direction in the local frame.

    Args:
        mat: Resolved material.
        wo: Outgoing direction, wo.z > 0.
        eta: Relative IOR from the wo side to the other side.
        rng: Sampler state.

    Returns:
        A tuple (BSDFSample, rng).
    """
    lobes = make_lobe_set(mat, wo)
    u_lobe, s1 = next_float(rng)
    u, s2 = next_2d(s1)
    u_branch, s3 = next_float(s2)

    wi = vec3(0.0, 0.0, 0.0)
    have_direction = 0
    is_delta = 0
    delta_value = vec3(0.0, 0.0, 0.0)
    delta_pdf = 0.0

    p_total = lobes.p_diffuse + lobes.p_specular + lobes.p_clearcoat + lobes.p_transmission
    if wo.z > 0.0 and p_total > 0.0:
        c_diffuse = lobes.p_diffuse
        c_specular = c_diffuse + lobes.p_specular
        c_clearcoat = c_specular + lobes.p_clearcoat

        if u_lobe < c_diffuse:
            wi = sample_cosine_hemisphere(u)
            have_direction = 1
        elif u_lobe < c_specular:
            if lobes.smooth == 1:
                wi = vec3(-wo.x, -wo.y, wo.z)
                is_delta = 1
                delta_value = lobes.w_specular * fresnel_schlick(lobes.cspec0, wo.z) / wo.z
                delta_pdf = lobes.p_specular
            else:
                h = ggx_sample_visible_normal(wo, u, lobes.alpha_x, lobes.alpha_y)
                wi = _mirror(wo, h)
                have_direction = 1
        elif u_lobe < c_clearcoat:
            h = gtr1_sample_normal(u, lobes.clearcoat_alpha)
            wi = _mirror(wo, h)
            have_direction = 1
        else:
            if lobes.smooth == 1:
                r = fresnel_dielectric(wo.z, eta)
                if u_branch < r:
                    wi = vec3(-wo.x, -wo.y, wo.z)
                    delta_value = lobes.w_transmission * r / wo.z * vec3(1.0, 1.0, 1.0)
                    delta_pdf = lobes.p_transmission * r
                    is_delta = 1
                else:
                    ok, wt, etap = refract_local(wo, vec3(0.0, 0.0, 1.0), eta)
                    if ok == 1:
                        wi = wt
                        delta_value = (
                            lobes.w_transmission * (1.0 - r) / ti.abs(wt.z) / (etap * etap) * mat.base_color
                        )
                        delta_pdf = lobes.p_transmission * (1.0 - r)
                        is_delta = 1
            else:
                h = ggx_sample_visible_normal(wo, u, lobes.alpha_x, lobes.alpha_y)
                r = fresnel_dielectric(tm.dot(wo, h), eta)
                if u_branch < r:
                    wi = _mirror(wo, h)
                    have_direction = 1
                else:
                    ok, wt, _etap = refract_local(wo, h, eta)
                    if ok == 1:
                        wi = wt
                        have_direction = 1

    result = BSDFSample(value=vec3(0.0, 0.0, 0.0), direction=wi, pdf=0.0, is_delta=0, valid=0)
    if is_delta == 1:
        if delta_pdf > 0.0:
            result = BSDFSample(value=delta_value, direction=wi, pdf=delta_pdf, is_delta=1, valid=1)
    elif have_direction == 1:
        value, pdf = evaluate_local(mat, wo, wi, eta)
        if pdf > 0.0:
            result = BSDFSample(value=value, direction=wi, pdf=pdf, is_delta=0, valid=1)

    return result, s3


# =============================================================================
# World-space Interface
# =============================================================================


@ti.func
def make_shading_frame(
    geometric_normal: vec3,
    shading_normal: vec3,
    tangent: vec3,
    wo: vec3,
    eta: ti.f32,
) -> ShadingFrame:
    """Shading frame on the wo side of the surface.

    Both normals must already face the incoming ray. If wo falls below the
    shading normal (possible with interpolated or mapped normals) the
    geometric normal is used instead.
    """
    n = shading_normal
    if tm.dot(n, wo) <= 1e-4:
        n = geometric_normal
    t, b, nn = build_onb_from_tangent(n, tangent)
    return ShadingFrame(tangent=t, bitangent=b, normal=nn, eta=eta)


@ti.func
def bsdf_evaluate(mat: SurfaceMaterial, frame: ShadingFrame, wo: vec3, wi: vec3):
    """World-space evaluation.

    Returns:
        A tuple (value, pdf).
    """
    wo_l = world_to_local(wo, frame.tangent, frame.bitangent, frame.normal)
    wi_l = world_to_local(wi, frame.tangent, frame.bitangent, frame.normal)
    return evaluate_local(mat, wo_l, wi_l, frame.eta)


@ti.func
def bsdf_sample(mat: SurfaceMaterial, frame: ShadingFrame, wo: vec3, rng: ti.u32):
    """World-space sampling.

    Returns:
        A tuple (BSDFSample with a world-space direction, rng).
    """
    wo_l = world_to_local(wo, frame.tangent, frame.bitangent, frame.normal)
    sample, s = sample_local(mat, wo_l, frame.eta, rng)
    if sample.valid == 1:
        sample.direction = tm.normalize(
            local_to_world(sample.direction, frame.tangent, frame.bitangent, frame.normal)
        )
    return sample, s
