"""Thin-lens camera with a shutter interval.

The camera builds an orthonormal basis (u, v, w) from the view parameters:

- w: points from lookat toward lookfrom (opposite the view direction)
- u: points right in the image plane
- v: points up in the image plane

The image plane sits at the focus distance. Each primary ray starts at a
point sampled on the lens disk (concentric mapping) and passes through a
jittered point inside its pixel on that plane, so geometry at the focus
distance is sharp and everything else is blurred in proportion to the
aperture. With ``aperture = 0`` the camera is a pinhole.

Every ray also gets a time sampled uniformly in [shutter_open,
shutter_close], a sub-interval of the normalized shutter [0, 1] over which
moving primitives travel.

Example:
    >>> import taichi as ti
    >>> ti.init(arch=ti.cpu)
    >>> from pathtracer.camera.thin_lens import ThinLensCamera, setup_camera
    >>> camera = ThinLensCamera(
    ...     lookfrom=(13.0, 2.0, 3.0),
    ...     lookat=(0.0, 0.0, 0.0),
    ...     vup=(0.0, 1.0, 0.0),
    ...     vfov=20.0,
    ...     aspect_ratio=16.0 / 9.0,
    ...     aperture=0.1,
    ...     focus_distance=10.0,
    ... )
    >>> setup_camera(camera)
"""

import math
from dataclasses import dataclass

import numpy as np
import taichi as ti
import taichi.math as tm

from pathtracer.core.ray import Ray, make_ray
from pathtracer.core.sampler import next_2d, next_float, sample_uniform_disk_concentric

vec3 = tm.vec3

# =============================================================================
# Camera Data Structures
# =============================================================================


@dataclass
class ThinLensCamera:
    """Configuration for a thin-lens camera.

    Attributes:
        lookfrom: Camera position in world space (x, y, z).
        lookat: Point the camera is looking at in world space (x, y, z).
        vup: Up direction vector for camera orientation (typically (0, 1, 0)).
        vfov: Vertical field of view in degrees.
        aspect_ratio: Width divided by height of the output image.
        aperture: Lens diameter; 0 gives a pinhole camera.
        focus_distance: Distance to the plane in focus. Defaults to the
            distance between lookfrom and lookat.
        shutter_open: Start of the exposure in normalized time [0, 1].
        shutter_close: End of the exposure in normalized time [0, 1].
    """

    lookfrom: tuple[float, float, float]
    lookat: tuple[float, float, float]
    vup: tuple[float, float, float] = (0.0, 1.0, 0.0)
    vfov: float = 40.0
    aspect_ratio: float = 16.0 / 9.0
    aperture: float = 0.0
    focus_distance: float | None = None
    shutter_open: float = 0.0
    shutter_close: float = 1.0

    def validate(self) -> None:
        """Check the camera parameters.

        Raises:
            ValueError: If the view is degenerate or a parameter is out of
                range.
        """
        for name in ("lookfrom", "lookat", "vup"):
            value = np.asarray(getattr(self, name), dtype=np.float64)
            if value.shape != (3,) or not np.all(np.isfinite(value)):
                raise ValueError(f"Camera {name} must be 3 finite values, got {getattr(self, name)}")
        view = np.asarray(self.lookfrom, dtype=np.float64) - np.asarray(self.lookat, dtype=np.float64)
        if np.linalg.norm(view) < 1e-8:
            raise ValueError("Camera lookfrom and lookat coincide")
        if np.linalg.norm(np.cross(np.asarray(self.vup, dtype=np.float64), view)) < 1e-8:
            raise ValueError("Camera vup is parallel to the view direction")
        if not 0.0 < self.vfov < 180.0:
            raise ValueError(f"Camera vfov must be in (0, 180), got {self.vfov}")
        if not (math.isfinite(self.aspect_ratio) and self.aspect_ratio > 0.0):
            raise ValueError(f"Camera aspect_ratio must be positive, got {self.aspect_ratio}")
        if not (math.isfinite(self.aperture) and self.aperture >= 0.0):
            raise ValueError(f"Camera aperture must be non-negative, got {self.aperture}")
        if self.focus_distance is not None and not (
            math.isfinite(self.focus_distance) and self.focus_distance > 0.0
        ):
            raise ValueError(f"Camera focus_distance must be positive, got {self.focus_distance}")
        if not (0.0 <= self.shutter_open <= self.shutter_close <= 1.0):
            raise ValueError(
                f"Camera shutter must satisfy 0 <= open <= close <= 1, got "
                f"({self.shutter_open}, {self.shutter_close})"
            )

    def resolved_focus_distance(self) -> float:
        if self.focus_distance is not None:
            return float(self.focus_distance)
        view = np.asarray(self.lookfrom, dtype=np.float64) - np.asarray(self.lookat, dtype=np.float64)
        return float(np.linalg.norm(view))


# =============================================================================
# Taichi Fields for Camera State
# =============================================================================

_camera_origin = ti.Vector.field(3, dtype=ti.f32, shape=())
_camera_u = ti.Vector.field(3, dtype=ti.f32, shape=())
_camera_v = ti.Vector.field(3, dtype=ti.f32, shape=())
_camera_w = ti.Vector.field(3, dtype=ti.f32, shape=())

# Image plane at the focus distance
_viewport_horizontal = ti.Vector.field(3, dtype=ti.f32, shape=())
_viewport_vertical = ti.Vector.field(3, dtype=ti.f32, shape=())
_lower_left_corner = ti.Vector.field(3, dtype=ti.f32, shape=())

_lens_radius = ti.field(dtype=ti.f32, shape=())
_shutter_open = ti.field(dtype=ti.f32, shape=())
_shutter_close = ti.field(dtype=ti.f32, shape=())


# =============================================================================
# Camera Setup
# =============================================================================


def setup_camera(camera: ThinLensCamera) -> None:
    """Validate a camera and upload its derived state.

    Raises:
        ValueError: If the camera parameters are invalid.
    """
    camera.validate()
    theta = math.radians(camera.vfov)
    h = math.tan(theta / 2.0)
    focus = camera.resolved_focus_distance()

    viewport_height = 2.0 * h * focus
    viewport_width = camera.aspect_ratio * viewport_height

    lookfrom = np.array(camera.lookfrom, dtype=np.float64)
    lookat = np.array(camera.lookat, dtype=np.float64)
    vup = np.array(camera.vup, dtype=np.float64)

    w = lookfrom - lookat
    w = w / np.linalg.norm(w)
    u = np.cross(vup, w)
    u = u / np.linalg.norm(u)
    v = np.cross(w, u)

    horizontal = viewport_width * u
    vertical = viewport_height * v
    lower_left = lookfrom - focus * w - horizontal / 2.0 - vertical / 2.0

    _camera_origin[None] = lookfrom.tolist()
    _camera_u[None] = u.tolist()
    _camera_v[None] = v.tolist()
    _camera_w[None] = w.tolist()
    _viewport_horizontal[None] = horizontal.tolist()
    _viewport_vertical[None] = vertical.tolist()
    _lower_left_corner[None] = lower_left.tolist()
    _lens_radius[None] = 0.5 * float(camera.aperture)
    _shutter_open[None] = float(camera.shutter_open)
    _shutter_close[None] = float(camera.shutter_close)


# =============================================================================
# Ray Generation
# =============================================================================


@ti.func
def get_ray(s: ti.f32, t: ti.f32, lens: tm.vec2, time: ti.f32) -> Ray:
    """Ray through normalized image coordinates (s, t).

    Args:
        s: Horizontal coordinate, 0 at the left edge and 1 at the right.
        t: Vertical coordinate, 0 at the bottom edge and 1 at the top.
        lens: Point on the unit disk, scaled by the lens radius.
        time: Shutter time of the ray.
    """
    rd = _lens_radius[None] * lens
    offset = rd.x * _camera_u[None] + rd.y * _camera_v[None]
    origin = _camera_origin[None] + offset
    target = _lower_left_corner[None] + s * _viewport_horizontal[None] + t * _viewport_vertical[None]
    return make_ray(origin, tm.normalize(target - origin), time)


@ti.func
def generate_camera_ray(pixel_i: ti.i32, pixel_j: ti.i32, width: ti.i32, height: ti.i32, rng: ti.u32):
    """Jittered primary ray for one sample of a pixel.

    Args:
        pixel_i: Pixel x-coordinate (0 = left).
        pixel_j: Pixel y-coordinate (0 = bottom).
        width: Image width in pixels.
        height: Image height in pixels.
        rng: Sampler state.

    Returns:
        A tuple (Ray, rng).
    """
    jitter, s1 = next_2d(rng)
    lens_u, s2 = next_2d(s1)
    time_u, s3 = next_float(s2)

    s = (ti.cast(pixel_i, ti.f32) + jitter.x) / ti.cast(width, ti.f32)
    t = (ti.cast(pixel_j, ti.f32) + jitter.y) / ti.cast(height, ti.f32)
    lens = sample_uniform_disk_concentric(lens_u)
    time = _shutter_open[None] + time_u * (_shutter_close[None] - _shutter_open[None])
    return get_ray(s, t, lens, time), s3


# =============================================================================
# Utility Functions
# =============================================================================


def get_camera_info() -> dict[str, tuple | float]:
    """Current camera state, for debugging and tests."""

    def _vec(field) -> tuple[float, float, float]:
        value = field[None]
        return (float(value[0]), float(value[1]), float(value[2]))

    return {
        "origin": _vec(_camera_origin),
        "u": _vec(_camera_u),
        "v": _vec(_camera_v),
        "w": _vec(_camera_w),
        "horizontal": _vec(_viewport_horizontal),
        "vertical": _vec(_viewport_vertical),
        "lower_left": _vec(_lower_left_corner),
        "lens_radius": float(_lens_radius[None]),
        "shutter": (float(_shutter_open[None]), float(_shutter_close[None])),
    }
