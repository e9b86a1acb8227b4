"""Light set: emissive primitives, point lights and the environment.

Every primitive whose material emits is an area light; point lights carry
a radiant intensity and are delta lights. The environment is sampled by
``pathtracer.lights.environment``.

Direct lighting picks one light per shading point:

1. the environment with probability 0.5 when both the environment and
   geometric lights exist (1 or 0 otherwise);
2. a geometric light from a CDF proportional to emitted power.

Shapes are then sampled as follows:

- spheres seen from outside: uniform cone of directions subtended by the
  sphere, pdf = 1 / (2 pi (1 - cos_max));
- spheres seen from inside, quads and triangles: uniform area sampling
  converted to solid angle, pdf = d^2 / (|cos_l| area).

Emission is one-sided: only the side the outward normal points to emits.

Example:
    >>> from pathtracer.lights.lights import build_lights
    >>> build_lights(area_prim_ids=[3], area_powers=[12.5])
"""

import logging
from enum import IntEnum

import numpy as np
import numpy.typing as npt
import taichi as ti
import taichi.math as tm

from pathtracer.core.ray import T_MAX, build_onb_from_normal, local_to_world
from pathtracer.core.sampler import (
    next_2d,
    next_float,
    sample_uniform_cone,
    sample_uniform_sphere,
    sample_uniform_triangle,
    uniform_cone_pdf,
)
from pathtracer.errors import ResourceExhaustedError
from pathtracer.geometry.quad import quad_area, quad_normal, quad_point
from pathtracer.geometry.triangle import triangle_area
from pathtracer.lights.environment import environment_pdf, has_environment, sample_environment
from pathtracer.materials.principled import get_emission
from pathtracer.scene.intersection import (
    MAX_PRIMITIVES,
    PrimitiveType,
    get_quad,
    get_sphere,
    get_triangle,
    prim_index,
    prim_material,
    prim_motion,
    prim_type,
)

logger = logging.getLogger(__name__)

vec2 = tm.vec2
vec3 = tm.vec3


class LightType(IntEnum):
    AREA = 0
    POINT = 1


@ti.dataclass
class LightSample:
    """One sampled light direction as seen from a shading point.

    Attributes:
        radiance: Incident radiance along ``direction`` (for point lights,
            intensity / distance^2).
        direction: Unit direction from the shading point toward the light.
        pdf: Solid-angle density including the light selection probability;
            for delta lights the discrete selection probability. 0 if the
            sample is unusable.
        distance: Distance to the sampled point, T_MAX for the environment.
        is_delta: 1 for point lights.
    """

    radiance: vec3
    direction: vec3
    pdf: ti.f32
    distance: ti.f32
    is_delta: ti.i32


MAX_LIGHTS = 1 << 16

light_types = ti.field(dtype=ti.i32, shape=MAX_LIGHTS)
light_prims = ti.field(dtype=ti.i32, shape=MAX_LIGHTS)
light_positions = ti.Vector.field(3, dtype=ti.f32, shape=MAX_LIGHTS)
light_intensities = ti.Vector.field(3, dtype=ti.f32, shape=MAX_LIGHTS)
light_pmf = ti.field(dtype=ti.f32, shape=MAX_LIGHTS)
light_cdf = ti.field(dtype=ti.f32, shape=MAX_LIGHTS + 1)
num_lights = ti.field(dtype=ti.i32, shape=())

# Light index of each emissive primitive, -1 for the others
prim_light_index = ti.field(dtype=ti.i32, shape=MAX_PRIMITIVES)

# Probability of sampling the environment instead of a geometric light
env_select_prob = ti.field(dtype=ti.f32, shape=())


# =============================================================================
# Host-side Setup
# =============================================================================


def clear_lights() -> None:
    num_lights[None] = 0
    env_select_prob[None] = 0.0
    prim_light_index.fill(-1)


def get_light_count() -> int:
    return int(num_lights[None])


def get_environment_selection_probability() -> float:
    return float(env_select_prob[None])


def area_light_power(emission: tuple[float, float, float], area: float) -> float:
    """Emitted power of a one-sided Lambertian emitter, by luminance."""
    r, g, b = (float(c) for c in emission)
    return (0.2126 * r + 0.7152 * g + 0.0722 * b) * float(area) * np.pi


def point_light_power(intensity: tuple[float, float, float]) -> float:
    r, g, b = (float(c) for c in intensity)
    return (0.2126 * r + 0.7152 * g + 0.0722 * b) * 4.0 * np.pi


def build_lights(
    area_prim_ids: npt.ArrayLike = (),
    area_powers: npt.ArrayLike = (),
    point_positions: npt.ArrayLike | None = None,
    point_intensities: npt.ArrayLike | None = None,
) -> int:
    """Upload the light table and its power CDF.

    Must be called after the primitives and the environment are set, since
    the environment selection probability depends on both.

    Args:
        area_prim_ids: Primitive ids of emissive primitives.
        area_powers: Emitted power of each of those primitives.
        point_positions: (N, 3) point light positions.
        point_intensities: (N, 3) radiant intensities.

    Returns:
        The number of geometric lights.

    Raises:
        ValueError: If array lengths disagree or a power is negative.
        ResourceExhaustedError: If more than MAX_LIGHTS lights are given.
    """
    prims = np.asarray(area_prim_ids, dtype=np.int32).reshape(-1)
    powers = np.asarray(area_powers, dtype=np.float64).reshape(-1)
    if len(prims) != len(powers):
        raise ValueError(f"Got {len(prims)} emissive primitives but {len(powers)} powers")

    if point_positions is None:
        positions = np.zeros((0, 3), dtype=np.float32)
        intensities = np.zeros((0, 3), dtype=np.float32)
    else:
        positions = np.asarray(point_positions, dtype=np.float32).reshape(-1, 3)
        intensities = np.asarray(point_intensities, dtype=np.float32).reshape(-1, 3)
        if len(positions) != len(intensities):
            raise ValueError(f"Got {len(positions)} point light positions but {len(intensities)} intensities")
    point_powers = np.array([point_light_power(i) for i in intensities], dtype=np.float64)

    n_area = len(prims)
    n = n_area + len(positions)
    if n > MAX_LIGHTS:
        raise ResourceExhaustedError(f"Maximum number of lights ({MAX_LIGHTS}) exceeded: {n}")

    all_powers = np.concatenate([powers, point_powers])
    if np.any(~np.isfinite(all_powers)) or np.any(all_powers < 0.0):
        raise ValueError("Light powers must be finite and non-negative")

    clear_lights()
    types = np.zeros(MAX_LIGHTS, dtype=np.int32)
    types[n_area:n] = int(LightType.POINT)
    light_prim_ids = np.full(MAX_LIGHTS, -1, dtype=np.int32)
    light_prim_ids[:n_area] = prims
    pos = np.zeros((MAX_LIGHTS, 3), dtype=np.float32)
    pos[n_area:n] = positions
    inten = np.zeros((MAX_LIGHTS, 3), dtype=np.float32)
    inten[n_area:n] = intensities

    pmf = np.zeros(MAX_LIGHTS, dtype=np.float64)
    cdf = np.ones(MAX_LIGHTS + 1, dtype=np.float64)
    cdf[0] = 0.0
    total = all_powers.sum()
    if n > 0:
        weights = all_powers / total if total > 0.0 else np.full(n, 1.0 / n)
        pmf[:n] = weights
        cdf[1 : n + 1] = np.cumsum(weights)
        cdf[n] = 1.0

    mapping = np.full(MAX_PRIMITIVES, -1, dtype=np.int32)
    mapping[prims] = np.arange(n_area, dtype=np.int32)

    light_types.from_numpy(types)
    light_prims.from_numpy(light_prim_ids)
    light_positions.from_numpy(pos)
    light_intensities.from_numpy(inten)
    light_pmf.from_numpy(pmf.astype(np.float32))
    light_cdf.from_numpy(cdf.astype(np.float32))
    prim_light_index.from_numpy(mapping)
    num_lights[None] = n

    if has_environment():
        env_select_prob[None] = 0.5 if n > 0 else 1.0
    else:
        env_select_prob[None] = 0.0
    logger.debug(
        "Built %d area lights and %d point lights (environment probability %.2f)",
        n_area,
        len(positions),
        env_select_prob[None],
    )
    return n


# =============================================================================
# Light Selection
# =============================================================================


@ti.func
def _select_light(u: ti.f32) -> ti.i32:
    """Largest light index with cdf[index] <= u."""
    lo = 0
    hi = num_lights[None] - 1
    while lo < hi:
        mid = (lo + hi + 1) // 2
        if light_cdf[mid] <= u:
            lo = mid
        else:
            hi = mid - 1
    return lo


# =============================================================================
# Shape Sampling
# =============================================================================


@ti.func
def _solid_angle_pdf(point: vec3, light_point: vec3, light_normal: vec3, area: ti.f32) -> ti.f32:
    to_light = light_point - point
    dist2 = tm.dot(to_light, to_light)
    cos_l = ti.abs(tm.dot(light_normal, to_light)) / ti.sqrt(ti.max(dist2, 1e-20))
    pdf = 0.0
    if cos_l > 1e-6 and area > 0.0:
        pdf = dist2 / (cos_l * area)
    return pdf


@ti.func
def _sphere_cos_max(point: vec3, center: vec3, radius: ti.f32):
    """Cone subtended by a sphere.

    Returns:
        A tuple (outside, cos_max); cos_max is 1 when the point is inside.
    """
    dist2 = tm.dot(center - point, center - point)
    r2 = radius * radius
    outside = dist2 > r2 * 1.0001
    cos_max = 1.0
    if outside:
        cos_max = ti.sqrt(ti.max(0.0, 1.0 - r2 / dist2))
    return outside, cos_max


@ti.func
def _sample_area_light(prim_id: ti.i32, point: vec3, time: ti.f32, rng: ti.u32):
    """Sample a point on an emissive primitive.

    Returns:
        A tuple (direction, distance, pdf, emits, rng). pdf is the
        solid-angle density without the light selection probability, emits
        is 1 if the sampled point's emitting side faces ``point``.
    """
    u, s = next_2d(rng)
    shift = prim_motion[prim_id] * time
    ptype = prim_type[prim_id]
    index = prim_index[prim_id]

    light_point = vec3(0.0, 0.0, 0.0)
    light_normal = vec3(0.0, 0.0, 1.0)
    pdf = 0.0
    if ptype == int(PrimitiveType.SPHERE):
        sphere = get_sphere(index)
        center = sphere.center + shift
        outside, cos_max = _sphere_cos_max(point, center, sphere.radius)
        if outside:
            axis = tm.normalize(center - point)
            t, b, n = build_onb_from_normal(axis)
            d = local_to_world(sample_uniform_cone(u, cos_max), t, b, n)
            # Nearest intersection with the sphere along d
            oc = point - center
            bb = tm.dot(oc, d)
            f = oc - bb * d
            disc = ti.max(0.0, sphere.radius * sphere.radius - tm.dot(f, f))
            dist = -bb - ti.sqrt(disc)
            light_point = point + ti.max(dist, 0.0) * d
            light_normal = tm.normalize(light_point - center)
            pdf = uniform_cone_pdf(cos_max)
        else:
            light_normal = sample_uniform_sphere(u)
            light_point = center + sphere.radius * light_normal
            area = 4.0 * tm.pi * sphere.radius * sphere.radius
            pdf = _solid_angle_pdf(point, light_point, light_normal, area)
    elif ptype == int(PrimitiveType.QUAD):
        quad = get_quad(index)
        light_point = quad_point(quad, u) + shift
        light_normal = quad_normal(quad)
        pdf = _solid_angle_pdf(point, light_point, light_normal, quad_area(quad))
    else:
        tri = get_triangle(index)
        bary = sample_uniform_triangle(u)
        light_point = bary.x * tri.p0 + bary.y * tri.p1 + bary.z * tri.p2 + shift
        light_normal = tm.normalize(tm.cross(tri.p1 - tri.p0, tri.p2 - tri.p0))
        pdf = _solid_angle_pdf(point, light_point, light_normal, triangle_area(tri))

    to_light = light_point - point
    distance = tm.length(to_light)
    direction = to_light / ti.max(distance, 1e-20)
    emits = tm.dot(light_normal, direction) < 0.0
    return direction, distance, pdf, emits, s


@ti.func
def _area_light_pdf(prim_id: ti.i32, origin: vec3, point: vec3, normal: vec3, time: ti.f32) -> ti.f32:
    """Solid-angle density of _sample_area_light producing ``point``."""
    ptype = prim_type[prim_id]
    index = prim_index[prim_id]
    pdf = 0.0
    if ptype == int(PrimitiveType.SPHERE):
        sphere = get_sphere(index)
        center = sphere.center + prim_motion[prim_id] * time
        outside, cos_max = _sphere_cos_max(origin, center, sphere.radius)
        if outside:
            pdf = uniform_cone_pdf(cos_max)
        else:
            area = 4.0 * tm.pi * sphere.radius * sphere.radius
            pdf = _solid_angle_pdf(origin, point, normal, area)
    elif ptype == int(PrimitiveType.QUAD):
        pdf = _solid_angle_pdf(origin, point, normal, quad_area(get_quad(index)))
    else:
        pdf = _solid_angle_pdf(origin, point, normal, triangle_area(get_triangle(index)))
    return pdf


# =============================================================================
# Direct Lighting Interface
# =============================================================================


@ti.func
def sample_direct(point: vec3, time: ti.f32, rng: ti.u32):
    """Sample one light as seen from a shading point.

    Args:
        point: Shading point.
        time: Shutter time of the path.
        rng: Sampler state.

    Returns:
        A tuple (LightSample, rng). A LightSample with pdf 0 carries no
        contribution.
    """
    result = LightSample(
        radiance=vec3(0.0, 0.0, 0.0),
        direction=vec3(0.0, 0.0, 1.0),
        pdf=0.0,
        distance=0.0,
        is_delta=0,
    )
    env_prob = env_select_prob[None]
    n = num_lights[None]
    u, s = next_float(rng)

    if u < env_prob:
        direction, radiance, pdf, s2 = sample_environment(s)
        s = s2
        if pdf > 0.0:
            result.radiance = radiance
            result.direction = direction
            result.pdf = pdf * env_prob
            result.distance = T_MAX
    elif n > 0:
        # Reuse u, rescaled to [0, 1), for the light choice
        u_light = (u - env_prob) / (1.0 - env_prob)
        light = _select_light(tm.clamp(u_light, 0.0, 0.99999994))
        select_prob = (1.0 - env_prob) * light_pmf[light]
        if light_types[light] == int(LightType.POINT):
            to_light = light_positions[light] - point
            dist2 = tm.dot(to_light, to_light)
            if dist2 > 1e-12:
                distance = ti.sqrt(dist2)
                result.radiance = light_intensities[light] / dist2
                result.direction = to_light / distance
                result.pdf = select_prob
                result.distance = distance
                result.is_delta = 1
        else:
            prim_id = light_prims[light]
            direction, distance, pdf, emits, s2 = _sample_area_light(prim_id, point, time, s)
            s = s2
            if emits and pdf > 0.0:
                result.radiance = get_emission(prim_material[prim_id])
                result.direction = direction
                result.pdf = pdf * select_prob
                result.distance = distance
    return result, s


@ti.func
def light_pdf_for_hit(prim_id: ti.i32, origin: vec3, point: vec3, normal: vec3, time: ti.f32) -> ti.f32:
    """Density with which sample_direct would have produced a hit on an emitter.

    Args:
        prim_id: Primitive that was hit.
        origin: Shading point the ray left from.
        point: Hit point on the emitter.
        normal: Geometric normal at the hit (either orientation).
        time: Shutter time of the path.

    Returns:
        Solid-angle pdf including the selection probability; 0 if the
        primitive is not a light.
    """
    light = prim_light_index[prim_id]
    pdf = 0.0
    if light >= 0:
        select_prob = (1.0 - env_select_prob[None]) * light_pmf[light]
        pdf = select_prob * _area_light_pdf(prim_id, origin, point, normal, time)
    return pdf


@ti.func
def environment_light_pdf(direction: vec3) -> ti.f32:
    """Density with which sample_direct would have picked an escaping direction."""
    return env_select_prob[None] * environment_pdf(direction)


@ti.func
def emitted_radiance(material_id: ti.i32, front_face: ti.i32) -> vec3:
    """Radiance leaving an emissive surface toward the viewer (front face only)."""
    result = vec3(0.0, 0.0, 0.0)
    if front_face == 1:
        result = get_emission(material_id)
    return result

