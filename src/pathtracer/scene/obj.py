"""Wavefront OBJ meshes loaded through trimesh.

Only geometry is kept: positions, faces, vertex normals and texture
coordinates. Polygons come back triangulated and each distinct
``v/vt/vn`` corner is its own vertex, so the result can be passed straight
to ``SceneManager.add_mesh``. Materials and groups are ignored; a file with
several ``usemtl`` sections is merged into one mesh.
"""

import io
import logging
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import numpy.typing as npt
import trimesh

from pathtracer.errors import MalformedSceneError

logger = logging.getLogger(__name__)


@dataclass
class MeshData:
    """Indexed triangle mesh.

    Attributes:
        vertices: (V, 3) positions.
        faces: (F, 3) vertex indices.
        normals: (V, 3) normals, or None if the file has none.
        uvs: (V, 2) texture coordinates, or None if the file has none.
    """

    vertices: npt.NDArray[np.float64]
    faces: npt.NDArray[np.int64]
    normals: npt.NDArray[np.float64] | None = None
    uvs: npt.NDArray[np.float64] | None = None


def _mesh_parts(loaded) -> list[trimesh.Trimesh]:
    if isinstance(loaded, trimesh.Scene):
        return [g for g in loaded.geometry.values() if isinstance(g, trimesh.Trimesh)]
    if isinstance(loaded, trimesh.Trimesh):
        return [loaded]
    return []


def _file_normals(part: trimesh.Trimesh) -> npt.NDArray[np.float64] | None:
    # trimesh computes smooth normals on demand; only the ones read from
    # the file live in the cache right after loading
    if "vertex_normals" not in part._cache:
        return None
    return np.array(part.vertex_normals, dtype=np.float64)


def _file_uvs(part: trimesh.Trimesh) -> npt.NDArray[np.float64] | None:
    uv = getattr(part.visual, "uv", None)
    if uv is None or len(uv) != len(part.vertices):
        return None
    return np.array(uv, dtype=np.float64)[:, :2]


def parse_obj(text: str) -> MeshData:
    """Parse OBJ source text.

    Raises:
        MalformedSceneError: If the text holds no faces or references
            vertices that do not exist.
    """
    try:
        loaded = trimesh.load(io.StringIO(text), file_type="obj", process=False, skip_materials=True)
    except (ValueError, IndexError) as exc:
        raise MalformedSceneError(f"Invalid OBJ data: {exc}") from exc

    parts = [p for p in _mesh_parts(loaded) if len(p.faces) > 0]
    if not parts:
        raise MalformedSceneError("OBJ data contains no faces")

    vertices, faces, normals, uvs = [], [], [], []
    offset = 0
    for part in parts:
        v = np.array(part.vertices, dtype=np.float64)
        f = np.array(part.faces, dtype=np.int64)
        if f.min() < 0 or f.max() >= len(v):
            raise MalformedSceneError("OBJ face references a missing vertex")
        vertices.append(v)
        faces.append(f + offset)
        normals.append(_file_normals(part))
        uvs.append(_file_uvs(part))
        offset += len(v)

    return MeshData(
        vertices=np.vstack(vertices),
        faces=np.vstack(faces),
        normals=None if any(n is None for n in normals) else np.vstack(normals),
        uvs=None if any(t is None for t in uvs) else np.vstack(uvs),
    )


def load_obj(path: str | Path) -> MeshData:
    """Read an OBJ file.

    Raises:
        MalformedSceneError: If the file cannot be read, is not UTF-8 text
            or cannot be parsed.
    """
    try:
        text = Path(path).read_bytes().decode("utf-8")
    except OSError as exc:
        raise MalformedSceneError(f"Cannot read mesh '{path}': {exc}") from exc
    except UnicodeDecodeError as exc:
        raise MalformedSceneError(f"Mesh '{path}' is not UTF-8 text: {exc}") from exc
    try:
        mesh = parse_obj(text)
    except MalformedSceneError as exc:
        raise MalformedSceneError(f"Mesh '{path}': {exc}") from exc
    logger.info("Loaded mesh %s (%d vertices, %d triangles)", path, len(mesh.vertices), len(mesh.faces))
    return mesh
