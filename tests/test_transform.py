"""Tests for affine transform helpers."""

import numpy as np
import pytest


class TestTransform:
    """Tests for building and applying 4x4 transforms."""

    def test_compose_order(self):
        """Test that scale applies first, then rotation, then translation."""
        from pathtracer.scene.transform import compose, transform_points

        m = compose(scale=2.0, rotate=(0.0, 0.0, 90.0), translate=(1.0, 0.0, 0.0))
        np.testing.assert_allclose(transform_points(m, [1.0, 0.0, 0.0]), [1.0, 2.0, 0.0], atol=1e-12)

    def test_rotation_order(self):
        """Test that x rotates before y."""
        from pathtracer.scene.transform import rotation_matrix, transform_vectors

        m = rotation_matrix((90.0, 90.0, 0.0))
        # x: +y -> +z, then y: +z -> +x
        np.testing.assert_allclose(transform_vectors(m, [0.0, 1.0, 0.0]), [1.0, 0.0, 0.0], atol=1e-12)

    def test_vectors_ignore_translation(self):
        """Test that directions are not translated."""
        from pathtracer.scene.transform import transform_vectors, translation_matrix

        m = translation_matrix((5.0, 6.0, 7.0))
        np.testing.assert_allclose(transform_vectors(m, [[1.0, 2.0, 3.0]]), [[1.0, 2.0, 3.0]])

    def test_normals_stay_perpendicular(self):
        """Test that normals follow the inverse transpose under non-uniform scale."""
        from pathtracer.scene.transform import compose, transform_normals, transform_vectors

        m = compose(scale=(1.0, 4.0, 1.0), rotate=(0.0, 0.0, 30.0))
        tangent = np.array([1.0, -1.0, 0.0])
        normal = np.array([1.0, 1.0, 0.0]) / np.sqrt(2.0)
        t = transform_vectors(m, tangent)
        n = transform_normals(m, normal)
        assert np.dot(t, n) == pytest.approx(0.0, abs=1e-12)
        assert np.linalg.norm(n) == pytest.approx(1.0)

    def test_orientation_and_uniform_scale(self):
        """Test mirror detection and the similarity scale factor."""
        from pathtracer.scene.transform import compose, flips_orientation, uniform_scale

        assert flips_orientation(compose(scale=(-1.0, 1.0, 1.0)))
        assert not flips_orientation(compose(scale=(-1.0, -1.0, 1.0)))
        assert uniform_scale(compose(scale=3.0, rotate=(10.0, 20.0, 30.0))) == pytest.approx(3.0)
        assert uniform_scale(compose(scale=(1.0, 2.0, 1.0))) is None

    @pytest.mark.parametrize(
        "matrix",
        [
            np.eye(3),
            np.diag([1.0, 1.0, 0.0, 1.0]),
            np.array([[1.0, 0, 0, 0], [0, 1.0, 0, 0], [0, 0, 1.0, 0], [0, 0, 1.0, 1.0]]),
            np.full((4, 4), np.nan),
        ],
    )
    def test_invalid_matrix(self, matrix):
        """Test shape, singular, projective and non-finite matrices."""
        from pathtracer.scene.transform import as_matrix

        with pytest.raises(ValueError):
            as_matrix(matrix)
