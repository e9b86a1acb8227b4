"""Bounding volume hierarchy construction.

The BVH is built on the host with NumPy and flattened into plain arrays that
the scene module uploads into Taichi fields. Construction is a recursive
median split:

1. Bound the primitives of the current range.
2. If the range holds at most MAX_LEAF_SIZE primitives, emit a leaf.
3. Otherwise stable-sort the range by centroid along the longest axis of the
   enclosing box and split it at the midpoint.

Nodes are laid out depth first: the left child of an interior node ``i`` is
always ``i + 1``. Every node records its parent so traversal can run without
a stack.

Example:
    >>> import numpy as np
    >>> from pathtracer.geometry.bvh import build_bvh
    >>> lo = np.array([[0, 0, 0], [2, 0, 0], [4, 0, 0]], dtype=np.float32)
    >>> bvh = build_bvh(lo, lo + 1.0)
    >>> bvh.node_count, bvh.depth
    (3, 2)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import numpy.typing as npt

from pathtracer.errors import BVHBuildError

logger = logging.getLogger(__name__)

# Ranges of at most this many primitives become leaves
MAX_LEAF_SIZE = 2

# Construction fails instead of recursing past this depth
MAX_BVH_DEPTH = 64


@dataclass
class FlatBVH:
    """A BVH flattened into parallel arrays.

    Attributes:
        bounds_min: (N, 3) float32 lower corners of the node boxes.
        bounds_max: (N, 3) float32 upper corners of the node boxes.
        left: (N,) int32 left child index, -1 for leaves.
        right: (N,) int32 right child index, -1 for leaves.
        parent: (N,) int32 parent index, -1 for the root.
        axis: (N,) int32 split axis of interior nodes (0 for leaves).
        prim_start: (N,) int32 offset into ``prim_order`` for leaves.
        prim_count: (N,) int32 number of primitives, 0 for interior nodes.
        prim_order: (P,) int32 primitive ids in leaf order.
        depth: Number of levels (1 for a single leaf).
    """

    bounds_min: npt.NDArray[np.float32]
    bounds_max: npt.NDArray[np.float32]
    left: npt.NDArray[np.int32]
    right: npt.NDArray[np.int32]
    parent: npt.NDArray[np.int32]
    axis: npt.NDArray[np.int32]
    prim_start: npt.NDArray[np.int32]
    prim_count: npt.NDArray[np.int32]
    prim_order: npt.NDArray[np.int32]
    depth: int

    @property
    def node_count(self) -> int:
        return int(len(self.left))

    @property
    def primitive_count(self) -> int:
        return int(len(self.prim_order))

    def is_leaf(self, node: int) -> bool:
        return bool(self.prim_count[node] > 0)

    def leaf_primitives(self, node: int) -> npt.NDArray[np.int32]:
        """Primitive ids stored in a leaf (empty for interior nodes)."""
        start = int(self.prim_start[node])
        return self.prim_order[start : start + int(self.prim_count[node])]


class _Builder:
    """Recursive median-split builder writing into Python lists."""

    def __init__(self, mins: np.ndarray, maxs: np.ndarray) -> None:
        self.mins = mins
        self.maxs = maxs
        self.centroids = 0.5 * (mins + maxs)
        self.order = np.arange(len(mins), dtype=np.int32)
        self.node_min: list[np.ndarray] = []
        self.node_max: list[np.ndarray] = []
        self.left: list[int] = []
        self.right: list[int] = []
        self.parent: list[int] = []
        self.axis: list[int] = []
        self.prim_start: list[int] = []
        self.prim_count: list[int] = []
        self.max_depth = 0

    def _new_node(self, parent: int) -> int:
        self.node_min.append(np.zeros(3))
        self.node_max.append(np.zeros(3))
        self.left.append(-1)
        self.right.append(-1)
        self.parent.append(parent)
        self.axis.append(0)
        self.prim_start.append(0)
        self.prim_count.append(0)
        return len(self.left) - 1

    def build(self, start: int, end: int, depth: int, parent: int) -> int:
        if depth > MAX_BVH_DEPTH:
            raise BVHBuildError(
                f"BVH depth exceeded {MAX_BVH_DEPTH} while splitting {end - start} primitives"
            )
        self.max_depth = max(self.max_depth, depth)

        node = self._new_node(parent)
        ids = self.order[start:end]
        lo = self.mins[ids].min(axis=0)
        hi = self.maxs[ids].max(axis=0)
        self.node_min[node] = lo
        self.node_max[node] = hi

        count = end - start
        if count <= MAX_LEAF_SIZE:
            self.prim_start[node] = start
            self.prim_count[node] = count
            return node

        axis = int(np.argmax(hi - lo))
        keys = self.centroids[ids, axis]
        self.order[start:end] = ids[np.argsort(keys, kind="stable")]
        mid = start + count // 2

        self.axis[node] = axis
        self.left[node] = self.build(start, mid, depth + 1, node)
        self.right[node] = self.build(mid, end, depth + 1, node)
        return node


def _round_down(a: np.ndarray) -> npt.NDArray[np.float32]:
    """float64 -> float32 never rounding up, so node boxes stay conservative."""
    return np.nextafter(a.astype(np.float32), np.float32(-np.inf))


def _round_up(a: np.ndarray) -> npt.NDArray[np.float32]:
    return np.nextafter(a.astype(np.float32), np.float32(np.inf))


def build_bvh(
    bounds_min: npt.ArrayLike,
    bounds_max: npt.ArrayLike,
    max_primitives: int | None = None,
) -> FlatBVH:
    """Build a BVH over primitive bounding boxes.

    Args:
        bounds_min: (P, 3) lower corners, one row per primitive.
        bounds_max: (P, 3) upper corners.
        max_primitives: Optional capacity limit checked before building.

    Returns:
        The flattened hierarchy.

    Raises:
        BVHBuildError: If there are no primitives, a box is not finite or
            inverted, the capacity is exceeded, or the depth limit is hit.
    """
    mins = np.asarray(bounds_min, dtype=np.float64).reshape(-1, 3)
    maxs = np.asarray(bounds_max, dtype=np.float64).reshape(-1, 3)

    if len(mins) == 0:
        raise BVHBuildError("Cannot build a BVH over an empty primitive list")
    if mins.shape != maxs.shape:
        raise BVHBuildError(f"Bounds shape mismatch: {mins.shape} vs {maxs.shape}")
    if max_primitives is not None and len(mins) > max_primitives:
        raise BVHBuildError(f"{len(mins)} primitives exceed the BVH capacity of {max_primitives}")
    if not (np.all(np.isfinite(mins)) and np.all(np.isfinite(maxs))):
        bad = int(np.flatnonzero(~(np.isfinite(mins).all(axis=1) & np.isfinite(maxs).all(axis=1)))[0])
        raise BVHBuildError(f"Primitive {bad} has non-finite bounds")
    if np.any(mins > maxs):
        bad = int(np.flatnonzero((mins > maxs).any(axis=1))[0])
        raise BVHBuildError(f"Primitive {bad} has inverted bounds {mins[bad]} > {maxs[bad]}")

    builder = _Builder(mins, maxs)
    builder.build(0, len(mins), 1, -1)

    bvh = FlatBVH(
        bounds_min=_round_down(np.asarray(builder.node_min)),
        bounds_max=_round_up(np.asarray(builder.node_max)),
        left=np.asarray(builder.left, dtype=np.int32),
        right=np.asarray(builder.right, dtype=np.int32),
        parent=np.asarray(builder.parent, dtype=np.int32),
        axis=np.asarray(builder.axis, dtype=np.int32),
        prim_start=np.asarray(builder.prim_start, dtype=np.int32),
        prim_count=np.asarray(builder.prim_count, dtype=np.int32),
        prim_order=builder.order.copy(),
        depth=builder.max_depth,
    )
    logger.debug(
        "Built BVH: %d primitives, %d nodes, depth %d",
        bvh.primitive_count,
        bvh.node_count,
        bvh.depth,
    )
    return bvh
