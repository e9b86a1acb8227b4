"""Affine transforms for placing meshes, boxes and spheres.

Transforms are 4x4 float64 matrices applied to column vectors. A transform
built from components applies scale first, then the rotation, then the
translation (M = T * R * S). Rotations are Euler angles in degrees applied
about x, then y, then z.
"""

from collections.abc import Sequence

import numpy as np
import numpy.typing as npt

Matrix4 = npt.NDArray[np.float64]


def identity() -> Matrix4:
    return np.eye(4, dtype=np.float64)


def translation_matrix(offset: Sequence[float]) -> Matrix4:
    m = identity()
    m[:3, 3] = np.asarray(offset, dtype=np.float64)
    return m


def scale_matrix(scale: float | Sequence[float]) -> Matrix4:
    s = np.broadcast_to(np.asarray(scale, dtype=np.float64), (3,))
    m = identity()
    m[0, 0], m[1, 1], m[2, 2] = s
    return m


def rotation_matrix(degrees: Sequence[float]) -> Matrix4:
    """Rotation about x, then y, then z by the given Euler angles."""
    rx, ry, rz = np.radians(np.asarray(degrees, dtype=np.float64))
    cx, sx = np.cos(rx), np.sin(rx)
    cy, sy = np.cos(ry), np.sin(ry)
    cz, sz = np.cos(rz), np.sin(rz)

    mx = np.array([[1.0, 0.0, 0.0], [0.0, cx, -sx], [0.0, sx, cx]])
    my = np.array([[cy, 0.0, sy], [0.0, 1.0, 0.0], [-sy, 0.0, cy]])
    mz = np.array([[cz, -sz, 0.0], [sz, cz, 0.0], [0.0, 0.0, 1.0]])

    m = identity()
    m[:3, :3] = mz @ my @ mx
    return m


def compose(
    scale: float | Sequence[float] = 1.0,
    rotate: Sequence[float] = (0.0, 0.0, 0.0),
    translate: Sequence[float] = (0.0, 0.0, 0.0),
) -> Matrix4:
    """Build T * R * S from components.

    Args:
        scale: Uniform factor or per-axis (sx, sy, sz).
        rotate: Euler angles in degrees.
        translate: Offset applied last.

    Returns:
        The 4x4 transform.
    """
    return translation_matrix(translate) @ rotation_matrix(rotate) @ scale_matrix(scale)


def as_matrix(matrix: npt.ArrayLike) -> Matrix4:
    """Validate and convert a 4x4 affine matrix.

    Raises:
        ValueError: If the matrix is not 4x4, not finite, not affine or
            singular.
    """
    m = np.asarray(matrix, dtype=np.float64)
    if m.shape != (4, 4):
        raise ValueError(f"Transform must be a 4x4 matrix, got shape {m.shape}")
    if not np.all(np.isfinite(m)):
        raise ValueError("Transform contains non-finite values")
    if not np.allclose(m[3], (0.0, 0.0, 0.0, 1.0)):
        raise ValueError(f"Transform must be affine (last row 0 0 0 1), got {m[3].tolist()}")
    if abs(np.linalg.det(m[:3, :3])) < 1e-12:
        raise ValueError("Transform is singular")
    return m


def transform_points(matrix: Matrix4, points: npt.ArrayLike) -> npt.NDArray[np.float64]:
    """Apply a transform to an (..., 3) array of points."""
    p = np.asarray(points, dtype=np.float64)
    return p @ matrix[:3, :3].T + matrix[:3, 3]


def transform_vectors(matrix: Matrix4, vectors: npt.ArrayLike) -> npt.NDArray[np.float64]:
    """Apply the linear part of a transform to (..., 3) direction vectors."""
    return np.asarray(vectors, dtype=np.float64) @ matrix[:3, :3].T


def transform_normals(matrix: Matrix4, normals: npt.ArrayLike) -> npt.NDArray[np.float64]:
    """Transform (..., 3) normals by the inverse transpose and renormalize."""
    normal_matrix = np.linalg.inv(matrix[:3, :3]).T
    n = np.asarray(normals, dtype=np.float64) @ normal_matrix.T
    length = np.linalg.norm(n, axis=-1, keepdims=True)
    return n / np.where(length > 0.0, length, 1.0)


def flips_orientation(matrix: Matrix4) -> bool:
    """True if the transform mirrors space (negative determinant)."""
    return bool(np.linalg.det(matrix[:3, :3]) < 0.0)


def uniform_scale(matrix: Matrix4) -> float | None:
    """The scale factor of a similarity transform, or None if it shears or stretches."""
    linear = matrix[:3, :3]
    gram = linear.T @ linear
    s2 = gram[0, 0]
    if not np.allclose(gram, s2 * np.eye(3), rtol=1e-6, atol=1e-9):
        return None
    return float(np.sqrt(s2))
