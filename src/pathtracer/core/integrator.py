"""Path tracing integrator and per-pixel accumulator.

Each sample is an explicit loop over a PathState:

    Generate -> Intersect -> (Emit | Shade -> Sample & Continue) -> ... -> Terminate

- Generate: a thin-lens camera ray with sub-pixel, lens and shutter samples.
- Intersect: nearest hit through the BVH. An escaping ray picks up the
  environment radiance and ends as ESCAPED.
- Emit: front-face emission, weighted against the probability that direct
  lighting would have sampled the same point. Purely emissive materials end
  the path as ABSORBED.
- Depth ceiling: a vertex at ``max_depth`` contributes its emission and
  ends the path as DEPTH_EXCEEDED.
- Direct lighting: one light sample, an occlusion test through the BVH and
  the power heuristic against the BSDF pdf (weight 1 for delta lights).
- Continue: a BSDF sample updates the throughput by value * |cos| / pdf.
- Russian roulette from ``rr_start_depth`` on: survive with probability
  min(max throughput component, 0.95) and divide by it.

Direct lighting can be restricted to light sampling or BSDF sampling only,
which gives two independent estimators of the same image for validating
the combined one.

Samples are accumulated into a running mean per pixel. Each pixel traces
its samples serially in sample-index order with an RNG seeded from (pixel,
sample, seed), so the result does not depend on thread scheduling or on
how samples are split into batches.

Example:
    >>> import taichi as ti
    >>> ti.init(arch=ti.cpu)
    >>> from pathtracer.core.integrator import render_batch, setup_render_target
    >>> setup_render_target(320, 180)
    >>> render_batch(start_sample=0, num_samples=4, seed=0)
"""

from enum import IntEnum

import numpy as np
import numpy.typing as npt
import taichi as ti
import taichi.math as tm

from pathtracer.camera.thin_lens import generate_camera_ray
from pathtracer.config import DEFAULT_RR_START_DEPTH, SamplingStrategy
from pathtracer.core.ray import T_MAX, Ray, is_finite, max_component, spawn_ray
from pathtracer.core.sampler import next_float, seed_sampler
from pathtracer.errors import ResourceExhaustedError
from pathtracer.lights.environment import environment_radiance
from pathtracer.lights.lights import (
    emitted_radiance,
    environment_light_pdf,
    light_pdf_for_hit,
    sample_direct,
)
from pathtracer.materials.bsdf import bsdf_evaluate, bsdf_sample, make_shading_frame
from pathtracer.materials.principled import (
    MaterialType,
    fetch_material,
    get_material_kind,
    get_normal_texture,
)
from pathtracer.materials.textures import perturb_normal
from pathtracer.scene.intersection import intersect_scene, intersect_scene_any

vec3 = tm.vec3

# =============================================================================
# Rendering Constants
# =============================================================================

# Russian roulette survival probability cap
MAX_RR_PROBABILITY = 0.95

# Shadow rays stop this fraction short of the sampled light point
SHADOW_RAY_SHORTENING = 1e-3


class PathTermination(IntEnum):
    """Terminal states of a path."""

    ESCAPED = 0
    ABSORBED = 1
    ROULETTE_KILLED = 2
    DEPTH_EXCEEDED = 3


@ti.dataclass
class PathState:
    """Mutable state of one path.

    Attributes:
        throughput: Product of value * |cos| / pdf along the path.
        radiance: Radiance gathered so far.
        ray: Ray to trace next.
        depth: Index of the vertex the next hit will create (0 for the
            camera ray's hit).
        specular_bounce: 1 if the last scattering event was a delta lobe.
        prev_pdf: Solid-angle pdf of the last BSDF sample.
        active: 0 once the path has terminated.
        termination: PathTermination of a finished path.
    """

    throughput: vec3
    radiance: vec3
    ray: Ray
    depth: ti.i32
    specular_bounce: ti.i32
    prev_pdf: ti.f32
    active: ti.i32
    termination: ti.i32


# =============================================================================
# Render Target (Image Buffer)
# =============================================================================

# Preallocated so that kernels compile once for every image size
MAX_IMAGE_WIDTH = 2048
MAX_IMAGE_HEIGHT = 2048

_image_width = ti.field(dtype=ti.i32, shape=())
_image_height = ti.field(dtype=ti.i32, shape=())

# Running mean per pixel, indexed [x, y] with y = 0 at the bottom
_color_buffer = ti.Vector.field(3, dtype=ti.f32, shape=(MAX_IMAGE_WIDTH, MAX_IMAGE_HEIGHT))
_sample_count = ti.field(dtype=ti.i32, shape=(MAX_IMAGE_WIDTH, MAX_IMAGE_HEIGHT))

_render_target_initialized = ti.field(dtype=ti.i32, shape=())

# Per-termination path counts and the number of discarded (non-finite or
# negative) samples
_termination_counts = ti.field(dtype=ti.i64, shape=len(PathTermination))
_discarded_samples = ti.field(dtype=ti.i64, shape=())


def setup_render_target(width: int, height: int) -> None:
    """Set the active image size and clear the accumulator.

    Raises:
        ValueError: If a dimension is not positive.
        ResourceExhaustedError: If the image exceeds the preallocated
            MAX_IMAGE_WIDTH x MAX_IMAGE_HEIGHT buffer.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Image size must be positive, got {width}x{height}")
    if width > MAX_IMAGE_WIDTH or height > MAX_IMAGE_HEIGHT:
        raise ResourceExhaustedError(
            f"Image dimensions ({width}x{height}) exceed maximum supported "
            f"({MAX_IMAGE_WIDTH}x{MAX_IMAGE_HEIGHT})"
        )
    _image_width[None] = width
    _image_height[None] = height
    _render_target_initialized[None] = 1
    clear_render_target()


def clear_render_target() -> None:
    """Reset pixel means, sample counts and statistics."""
    _color_buffer.fill(0.0)
    _sample_count.fill(0)
    _termination_counts.fill(0)
    _discarded_samples[None] = 0


def get_image_dimensions() -> tuple[int, int]:
    return int(_image_width[None]), int(_image_height[None])


def _check_render_target_initialized() -> None:
    if _render_target_initialized[None] == 0:
        raise RuntimeError("Render target not set up. Call setup_render_target() first.")


# =============================================================================
# Path Tracing Core
# =============================================================================


@ti.func
def power_heuristic(pdf_a: ti.f32, pdf_b: ti.f32) -> ti.f32:
    """Power heuristic (beta = 2) weight of strategy a against strategy b."""
    a2 = pdf_a * pdf_a
    b2 = pdf_b * pdf_b
    result = 0.0
    if a2 + b2 > 0.0:
        result = a2 / (a2 + b2)
    return result


@ti.func
def _emission_weight(state: PathState, light_pdf: ti.f32, strategy: ti.i32) -> ti.f32:
    """MIS weight of radiance found by following a BSDF sample."""
    weight = 1.0
    if state.depth > 0 and state.specular_bounce == 0:
        if strategy == int(SamplingStrategy.LIGHT):
            # Light sampling alone accounts for this radiance
            weight = ti.select(light_pdf > 0.0, 0.0, 1.0)
        elif strategy == int(SamplingStrategy.MIS):
            weight = power_heuristic(state.prev_pdf, light_pdf)
    return weight


@ti.func
def trace_path(
    pixel_i: ti.i32,
    pixel_j: ti.i32,
    width: ti.i32,
    height: ti.i32,
    sample_index: ti.i32,
    seed: ti.i32,
    max_depth: ti.i32,
    rr_start_depth: ti.i32,
    strategy: ti.i32,
):
    """Trace one path through a pixel.

    Args:
        pixel_i: Pixel x-coordinate (0 = left).
        pixel_j: Pixel y-coordinate (0 = bottom).
        width: Image width in pixels.
        height: Image height in pixels.
        sample_index: Global index of this sample within the pixel.
        seed: Render seed.
        max_depth: Bounce ceiling.
        rr_start_depth: Depth from which Russian roulette applies.
        strategy: SamplingStrategy value.

    Returns:
        A tuple (radiance, termination).
    """
    pixel_index = (height - 1 - pixel_j) * width + pixel_i
    rng = seed_sampler(pixel_index, sample_index, seed)
    camera_ray, rng = generate_camera_ray(pixel_i, pixel_j, width, height, rng)

    state = PathState(
        throughput=vec3(1.0, 1.0, 1.0),
        radiance=vec3(0.0, 0.0, 0.0),
        ray=camera_ray,
        depth=0,
        specular_bounce=0,
        prev_pdf=0.0,
        active=1,
        termination=int(PathTermination.DEPTH_EXCEEDED),
    )

    while state.active == 1:
        ray = state.ray
        hit = intersect_scene(ray)

        if hit.hit == 0:
            env = environment_radiance(ray.direction)
            weight = _emission_weight(state, environment_light_pdf(ray.direction), strategy)
            state.radiance = state.radiance + weight * state.throughput * env
            state.termination = int(PathTermination.ESCAPED)
            state.active = 0
        else:
            material_id = hit.material_id
            emission = emitted_radiance(material_id, hit.front_face)
            if max_component(emission) > 0.0:
                light_pdf = light_pdf_for_hit(hit.primitive_id, ray.origin, hit.point, hit.normal, ray.time)
                weight = _emission_weight(state, light_pdf, strategy)
                state.radiance = state.radiance + weight * state.throughput * emission

            if get_material_kind(material_id) == int(MaterialType.EMISSIVE):
                state.termination = int(PathTermination.ABSORBED)
                state.active = 0
            elif state.depth >= max_depth:
                state.termination = int(PathTermination.DEPTH_EXCEEDED)
                state.active = 0
            else:
                mat = fetch_material(material_id, hit.uv, hit.point)
                shading_normal = hit.shading_normal
                normal_tex = get_normal_texture(material_id)
                if normal_tex >= 0:
                    shading_normal = perturb_normal(normal_tex, hit.uv, hit.point, shading_normal, hit.tangent)
                wo = -ray.direction
                eta = ti.select(hit.front_face == 1, mat.ior, 1.0 / mat.ior)
                frame = make_shading_frame(hit.normal, shading_normal, hit.tangent, wo, eta)

                # Direct lighting
                if strategy != int(SamplingStrategy.BSDF):
                    ls, rng2 = sample_direct(hit.point, ray.time, rng)
                    rng = rng2
                    if ls.pdf > 0.0 and max_component(ls.radiance) > 0.0:
                        f, bsdf_pdf = bsdf_evaluate(mat, frame, wo, ls.direction)
                        cos_l = ti.abs(tm.dot(ls.direction, frame.normal))
                        if max_component(f) > 0.0 and cos_l > 0.0:
                            shadow = spawn_ray(hit.point, hit.normal, ls.direction, ray.time)
                            shadow.t_max = ti.min(ls.distance * (1.0 - SHADOW_RAY_SHORTENING), T_MAX)
                            if intersect_scene_any(shadow) == 0:
                                weight = 1.0
                                if ls.is_delta == 0 and strategy == int(SamplingStrategy.MIS):
                                    weight = power_heuristic(ls.pdf, bsdf_pdf)
                                state.radiance = (
                                    state.radiance + weight * state.throughput * f * ls.radiance * cos_l / ls.pdf
                                )

                # Indirect continuation
                bs, rng3 = bsdf_sample(mat, frame, wo, rng)
                rng = rng3
                if bs.valid == 0 or bs.pdf <= 0.0:
                    state.termination = int(PathTermination.ABSORBED)
                    state.active = 0
                else:
                    cos_i = ti.abs(tm.dot(bs.direction, frame.normal))
                    state.throughput = state.throughput * bs.value * cos_i / bs.pdf
                    state.prev_pdf = bs.pdf
                    state.specular_bounce = bs.is_delta
                    state.ray = spawn_ray(hit.point, hit.normal, bs.direction, ray.time)
                    state.depth = state.depth + 1

                    if max_component(state.throughput) <= 0.0:
                        state.termination = int(PathTermination.ABSORBED)
                        state.active = 0
                    elif state.depth >= rr_start_depth:
                        p = ti.min(max_component(state.throughput), MAX_RR_PROBABILITY)
                        u, rng4 = next_float(rng)
                        rng = rng4
                        if u >= p:
                            state.termination = int(PathTermination.ROULETTE_KILLED)
                            state.active = 0
                        else:
                            state.throughput = state.throughput / p

    return state.radiance, state.termination


@ti.func
def _sanitize(color: vec3) -> ti.i32:
    """1 if a sample radiance can enter the accumulator unchanged."""
    ok = is_finite(color)
    if ok == 1:
        if color.x < 0.0 or color.y < 0.0 or color.z < 0.0:
            ok = 0
    return ok


# =============================================================================
# Rendering Kernels
# =============================================================================


@ti.kernel
def _render_batch(
    width: ti.i32,
    height: ti.i32,
    start_sample: ti.i32,
    num_samples: ti.i32,
    seed: ti.i32,
    max_depth: ti.i32,
    rr_start_depth: ti.i32,
    strategy: ti.i32,
):
    for i, j in ti.ndrange(width, height):
        escaped = 0
        absorbed = 0
        killed = 0
        exceeded = 0
        discarded = 0
        for k in range(num_samples):
            color, termination = trace_path(
                i, j, width, height, start_sample + k, seed, max_depth, rr_start_depth, strategy
            )
            if _sanitize(color) == 0:
                color = vec3(0.0, 0.0, 0.0)
                discarded += 1

            if termination == int(PathTermination.ESCAPED):
                escaped += 1
            elif termination == int(PathTermination.ABSORBED):
                absorbed += 1
            elif termination == int(PathTermination.ROULETTE_KILLED):
                killed += 1
            else:
                exceeded += 1

            # Running average: avg_n = avg_{n-1} + (x_n - avg_{n-1}) / n
            _sample_count[i, j] += 1
            n = _sample_count[i, j]
            _color_buffer[i, j] += (color - _color_buffer[i, j]) / ti.cast(n, ti.f32)

        ti.atomic_add(_termination_counts[int(PathTermination.ESCAPED)], escaped)
        ti.atomic_add(_termination_counts[int(PathTermination.ABSORBED)], absorbed)
        ti.atomic_add(_termination_counts[int(PathTermination.ROULETTE_KILLED)], killed)
        ti.atomic_add(_termination_counts[int(PathTermination.DEPTH_EXCEEDED)], exceeded)
        ti.atomic_add(_discarded_samples[None], discarded)


@ti.kernel
def _render_pixel(
    pixel_i: ti.i32,
    pixel_j: ti.i32,
    width: ti.i32,
    height: ti.i32,
    start_sample: ti.i32,
    num_samples: ti.i32,
    seed: ti.i32,
    max_depth: ti.i32,
    rr_start_depth: ti.i32,
    strategy: ti.i32,
) -> vec3:
    mean = vec3(0.0, 0.0, 0.0)
    ti.loop_config(serialize=True)
    for k in range(num_samples):
        color, _termination = trace_path(
            pixel_i, pixel_j, width, height, start_sample + k, seed, max_depth, rr_start_depth, strategy
        )
        if _sanitize(color) == 0:
            color = vec3(0.0, 0.0, 0.0)
        mean += (color - mean) / ti.cast(k + 1, ti.f32)
    return mean


# =============================================================================
# Public Rendering API
# =============================================================================


def render_batch(
    start_sample: int,
    num_samples: int,
    seed: int = 0,
    max_depth: int = 50,
    rr_start_depth: int = DEFAULT_RR_START_DEPTH,
    strategy: SamplingStrategy = SamplingStrategy.MIS,
) -> None:
    """Trace ``num_samples`` more samples for every pixel.

    Args:
        start_sample: Global index of the first sample of the batch. Use the
            number of samples already accumulated to continue a render.
        num_samples: Samples per pixel in this batch.
        seed: Render seed.
        max_depth: Bounce ceiling.
        rr_start_depth: Depth from which Russian roulette applies.
        strategy: Direct lighting estimator.

    Raises:
        RuntimeError: If the render target has not been set up.
    """
    _check_render_target_initialized()
    if num_samples <= 0:
        return
    width, height = get_image_dimensions()
    _render_batch(
        width,
        height,
        start_sample,
        num_samples,
        seed,
        max_depth,
        rr_start_depth,
        int(strategy),
    )


def render_pixel(
    pixel_i: int,
    pixel_j: int,
    num_samples: int,
    seed: int = 0,
    max_depth: int = 50,
    rr_start_depth: int = DEFAULT_RR_START_DEPTH,
    strategy: SamplingStrategy = SamplingStrategy.MIS,
    start_sample: int = 0,
) -> tuple[float, float, float]:
    """Mean radiance of one pixel without touching the accumulator.

    Uses the same per-sample seeding as render_batch, so the result equals
    the value that pixel would accumulate in a full render.

    Args:
        pixel_i: Pixel x-coordinate (0 = left).
        pixel_j: Pixel y-coordinate (0 = bottom).
        num_samples: Number of samples to average.

    Raises:
        RuntimeError: If the render target has not been set up.
    """
    _check_render_target_initialized()
    width, height = get_image_dimensions()
    color = _render_pixel(
        pixel_i,
        pixel_j,
        width,
        height,
        start_sample,
        num_samples,
        seed,
        max_depth,
        rr_start_depth,
        int(strategy),
    )
    return (float(color[0]), float(color[1]), float(color[2]))


def get_total_samples() -> int:
    """Samples accumulated per pixel (read from pixel (0, 0))."""
    _check_render_target_initialized()
    return int(_sample_count[0, 0])


def get_render_stats() -> dict[str, int]:
    """Path termination counts and discarded samples since the last clear."""
    counts = _termination_counts.to_numpy()
    stats = {t.name.lower(): int(counts[int(t)]) for t in PathTermination}
    stats["discarded"] = int(_discarded_samples[None])
    return stats


def get_radiance_numpy() -> npt.NDArray[np.float32]:
    """The accumulated linear radiance as an (height, width, 3) array.

    Values are not clamped. Row 0 is the top of the image.

    Raises:
        RuntimeError: If the render target has not been set up.
    """
    _check_render_target_initialized()
    width, height = get_image_dimensions()
    image = _color_buffer.to_numpy()[:width, :height, :]
    # (width, height, 3) with y up -> (height, width, 3) with row 0 on top
    image = np.flipud(np.transpose(image, (1, 0, 2)))
    return np.ascontiguousarray(image, dtype=np.float32)
