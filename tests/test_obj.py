"""Tests for the Wavefront OBJ reader."""

import numpy as np
import pytest

SQUARE = """
# unit square as one polygon
v 0 0 0
v 1 0 0
v 1 1 0
v 0 1 0
vt 0 0
vt 1 0
vt 1 1
vt 0 1
vn 0 0 1
f 1/1/1 2/2/1 3/3/1 4/4/1
"""


def _face_normals(mesh):
    v = mesh.vertices[mesh.faces]
    n = np.cross(v[:, 1] - v[:, 0], v[:, 2] - v[:, 0])
    return n / np.linalg.norm(n, axis=1, keepdims=True)


class TestParse:
    """Tests for parse_obj."""

    def test_polygon_is_triangulated(self):
        """Test that a quad becomes two triangles keeping its winding."""
        from pathtracer.scene.obj import parse_obj

        mesh = parse_obj(SQUARE)
        assert mesh.vertices.shape == (4, 3)
        assert mesh.faces.shape == (2, 3)
        np.testing.assert_allclose(_face_normals(mesh), np.tile([0.0, 0.0, 1.0], (2, 1)), atol=1e-12)
        np.testing.assert_allclose(mesh.normals, np.tile([0.0, 0.0, 1.0], (4, 1)))
        # Texture coordinates of the square match the xy positions
        np.testing.assert_allclose(mesh.uvs, mesh.vertices[:, :2])

    def test_positions_only(self):
        """Test that missing texcoords and normals give None."""
        from pathtracer.scene.obj import parse_obj

        mesh = parse_obj("v 0 0 0\nv 1 0 0\nv 0 1 0\nf 1 2 3\n")
        assert mesh.normals is None
        assert mesh.uvs is None
        np.testing.assert_allclose(mesh.vertices[mesh.faces[0]], [[0, 0, 0], [1, 0, 0], [0, 1, 0]])

    def test_negative_indices(self):
        """Test relative indices counted back from the latest vertex."""
        from pathtracer.scene.obj import parse_obj

        mesh = parse_obj("v 9 9 9\nv 0 0 0\nv 1 0 0\nv 0 1 0\nf -3 -2 -1\n")
        assert mesh.faces.shape == (1, 3)
        np.testing.assert_allclose(mesh.vertices[mesh.faces[0]], [[0, 0, 0], [1, 0, 0], [0, 1, 0]])

    def test_shared_corners_are_split(self):
        """Test that one position with two normals becomes two vertices."""
        from pathtracer.scene.obj import parse_obj

        text = "v 0 0 0\nv 1 0 0\nv 0 1 0\nv 0 0 1\nvn 0 0 1\nvn 1 0 0\n"
        text += "f 1//1 2//1 3//1\nf 1//2 3//2 4//2\n"
        mesh = parse_obj(text)
        assert len(mesh.vertices) == 6
        np.testing.assert_allclose(mesh.vertices[mesh.faces[1, 0]], [0.0, 0.0, 0.0])
        np.testing.assert_allclose(mesh.normals[mesh.faces[1, 0]], [1.0, 0.0, 0.0])
        np.testing.assert_allclose(mesh.normals[mesh.faces[0, 0]], [0.0, 0.0, 1.0])

    @pytest.mark.parametrize(
        "text",
        [
            "v 0 0 0\nv 1 0 0\nv 0 1 0\nf 1 2 4\n",
            "v 0 0 0\nv 1 0 0\n",
            "# nothing here\n",
        ],
    )
    def test_malformed(self, text):
        """Test missing vertices and files without faces."""
        from pathtracer.errors import MalformedSceneError
        from pathtracer.scene.obj import parse_obj

        with pytest.raises(MalformedSceneError):
            parse_obj(text)


class TestLoad:
    """Tests for load_obj."""

    def test_load_file(self, tmp_path):
        """Test reading a mesh from disk."""
        from pathtracer.scene.obj import load_obj

        path = tmp_path / "square.obj"
        path.write_text(SQUARE, encoding="utf-8")
        assert len(load_obj(path).faces) == 2

    def test_missing_file(self, tmp_path):
        """Test that unreadable files raise MalformedSceneError."""
        from pathtracer.errors import MalformedSceneError
        from pathtracer.scene.obj import load_obj

        with pytest.raises(MalformedSceneError):
            load_obj(tmp_path / "missing.obj")

    def test_binary_file(self, tmp_path):
        """Test that bytes that are not UTF-8 raise MalformedSceneError."""
        from pathtracer.errors import MalformedSceneError
        from pathtracer.scene.obj import load_obj

        path = tmp_path / "garbage.obj"
        path.write_bytes(b"# \xff\xfe\nv 0 0 0\n")
        with pytest.raises(MalformedSceneError, match="UTF-8") as info:
            load_obj(path)
        assert isinstance(info.value.__cause__, UnicodeDecodeError)

    def test_malformed_file_names_path(self, tmp_path):
        """Test that parse errors mention the offending file."""
        from pathtracer.errors import MalformedSceneError
        from pathtracer.scene.obj import load_obj

        path = tmp_path / "empty.obj"
        path.write_text("v 0 0 0\n", encoding="utf-8")
        with pytest.raises(MalformedSceneError, match="empty.obj"):
            load_obj(path)
