"""Axis-aligned bounding boxes.

Host side, ``AABB`` is a small NumPy value type used while building the BVH.
Device side, ``hit_aabb`` is the slab test run during traversal on boxes
stored in Taichi fields.

Example:
    >>> from pathtracer.geometry.aabb import AABB
    >>> a = AABB((0, 0, 0), (1, 1, 1))
    >>> b = AABB((2, 0, 0), (3, 1, 1))
    >>> a.union(b).max
    array([3., 1., 1.])
"""

from collections.abc import Iterable, Sequence

import numpy as np
import numpy.typing as npt
import taichi as ti
import taichi.math as tm

vec3 = tm.vec3

# Minimum extent along each axis; flat primitives (quads, axis-aligned
# triangles) get a box of at least this thickness.
AABB_PADDING = 1e-3

# Directions whose component magnitude is below this are treated as
# +/- this value when computing reciprocals for the slab test.
INV_DIR_EPSILON = 1e-20

# 1 + 2 * gamma(3) for float32, widens the exit distance of the slab test
_SLAB_ROUNDING = 1.0 + 2.0 * 3.0 * 5.96e-8


class AABB:
    """An axis-aligned box with ``min <= max`` on every axis.

    Attributes:
        min: Lower corner, float64 array of shape (3,).
        max: Upper corner, float64 array of shape (3,).
    """

    __slots__ = ("min", "max")

    def __init__(self, minimum: Sequence[float], maximum: Sequence[float]) -> None:
        lo = np.asarray(minimum, dtype=np.float64).reshape(-1)
        hi = np.asarray(maximum, dtype=np.float64).reshape(-1)
        if lo.shape != (3,) or hi.shape != (3,):
            raise ValueError(f"AABB corners must have 3 components, got {lo.shape} and {hi.shape}")
        if not (np.all(np.isfinite(lo)) and np.all(np.isfinite(hi))):
            raise ValueError(f"AABB corners must be finite, got {lo} and {hi}")
        if np.any(lo > hi):
            raise ValueError(f"AABB min {lo} exceeds max {hi}")
        self.min = lo
        self.max = hi

    @classmethod
    def from_points(cls, points: npt.ArrayLike) -> "AABB":
        """Smallest box enclosing a set of points of shape (N, 3)."""
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        if len(pts) == 0:
            raise ValueError("Cannot bound an empty point set")
        return cls(pts.min(axis=0), pts.max(axis=0))

    @staticmethod
    def union_all(boxes: Iterable["AABB"]) -> "AABB":
        """Union of a non-empty collection of boxes."""
        boxes = list(boxes)
        if not boxes:
            raise ValueError("Cannot take the union of zero boxes")
        lo = np.min([b.min for b in boxes], axis=0)
        hi = np.max([b.max for b in boxes], axis=0)
        return AABB(lo, hi)

    def union(self, other: "AABB") -> "AABB":
        return AABB(np.minimum(self.min, other.min), np.maximum(self.max, other.max))

    def pad(self, delta: float = AABB_PADDING) -> "AABB":
        """Grow axes thinner than ``delta`` symmetrically to that thickness."""
        lo = self.min.copy()
        hi = self.max.copy()
        thin = (hi - lo) < delta
        center = 0.5 * (lo + hi)
        lo[thin] = center[thin] - 0.5 * delta
        hi[thin] = center[thin] + 0.5 * delta
        return AABB(lo, hi)

    def translated(self, offset: Sequence[float]) -> "AABB":
        off = np.asarray(offset, dtype=np.float64)
        return AABB(self.min + off, self.max + off)

    @property
    def centroid(self) -> npt.NDArray[np.float64]:
        return 0.5 * (self.min + self.max)

    @property
    def extent(self) -> npt.NDArray[np.float64]:
        return self.max - self.min

    def longest_axis(self) -> int:
        """Index (0, 1 or 2) of the axis with the greatest extent."""
        return int(np.argmax(self.extent))

    def surface_area(self) -> float:
        e = self.extent
        return float(2.0 * (e[0] * e[1] + e[1] * e[2] + e[2] * e[0]))

    def contains(self, other: "AABB | Sequence[float]") -> bool:
        """True if a point or a whole box lies inside (boundary included)."""
        if isinstance(other, AABB):
            return bool(np.all(other.min >= self.min) and np.all(other.max <= self.max))
        p = np.asarray(other, dtype=np.float64)
        return bool(np.all(p >= self.min) and np.all(p <= self.max))

    def hit(
        self,
        origin: Sequence[float],
        direction: Sequence[float],
        t_min: float = 0.0,
        t_max: float = np.inf,
    ) -> bool:
        """Slab test against a ray segment [t_min, t_max]."""
        o = np.asarray(origin, dtype=np.float64)
        inv = safe_inverse_numpy(direction)
        t0 = (self.min - o) * inv
        t1 = (self.max - o) * inv
        t_near = max(t_min, float(np.max(np.minimum(t0, t1))))
        t_far = min(t_max, float(np.min(np.maximum(t0, t1))))
        return t_near <= t_far

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AABB):
            return NotImplemented
        return bool(np.array_equal(self.min, other.min) and np.array_equal(self.max, other.max))

    def __repr__(self) -> str:
        return f"AABB(min={self.min.tolist()}, max={self.max.tolist()})"


def safe_inverse_numpy(direction: Sequence[float]) -> npt.NDArray[np.float64]:
    """Component-wise reciprocal with near-zero components clamped by sign."""
    d = np.asarray(direction, dtype=np.float64).copy()
    small = np.abs(d) < INV_DIR_EPSILON
    d[small] = np.where(np.signbit(d[small]), -INV_DIR_EPSILON, INV_DIR_EPSILON)
    return 1.0 / d


# =============================================================================
# Device-side Slab Test
# =============================================================================


@ti.func
def safe_inverse(direction: vec3) -> vec3:
    """Reciprocal of a direction that never divides by zero.

    Components below INV_DIR_EPSILON in magnitude are replaced by
    +/- INV_DIR_EPSILON before inversion, keeping the sign, so the slab test
    sees a huge but finite slope instead of inf * 0 = NaN.
    """
    inv = vec3(0.0, 0.0, 0.0)
    for k in ti.static(range(3)):
        d = direction[k]
        if ti.abs(d) < INV_DIR_EPSILON:
            d = ti.select(d < 0.0, -INV_DIR_EPSILON, INV_DIR_EPSILON)
        inv[k] = 1.0 / d
    return inv


@ti.func
def hit_aabb(
    box_min: vec3,
    box_max: vec3,
    origin: vec3,
    inv_dir: vec3,
    t_min: ti.f32,
    t_max: ti.f32,
):
    """Ray-box slab test.

    Args:
        box_min: Lower corner.
        box_max: Upper corner.
        origin: Ray origin.
        inv_dir: Result of safe_inverse(direction).
        t_min: Start of the accepted interval.
        t_max: End of the accepted interval.

    Returns:
        A tuple (hit, t_near) where hit is 1 if the interval overlaps the
        box and t_near is the entry distance clamped to t_min.
    """
    t0 = (box_min - origin) * inv_dir
    t1 = (box_max - origin) * inv_dir
    t_small = ti.min(t0, t1)
    t_big = ti.max(t0, t1)
    t_near = ti.max(t_small.x, t_small.y, t_small.z, t_min)
    t_far = ti.min(t_big.x, t_big.y, t_big.z, t_max) * _SLAB_ROUNDING
    hit = 0
    if t_near <= t_far:
        hit = 1
    return hit, t_near
