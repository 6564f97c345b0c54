"""Tests for reference-cell numbering.

Run with: uv run pytest tests/test_geometry.py -v
"""

import numpy as np
import pytest

from AMR import PreconditionError, RefinementCase, UnsupportedOperation, geometry_info
from AMR.geometry import d_linear_shape_grads, d_linear_shape_values, tensor_gauss_rule


class TestGeometryInfo:
    """Counts and lexicographic tables."""

    @pytest.mark.parametrize(
        "dim, vertices, faces, lines, quads",
        [(1, 2, 2, 1, 0), (2, 4, 4, 4, 1), (3, 8, 6, 12, 6)],
    )
    def test_counts(self, dim, vertices, faces, lines, quads):
        """Object counts of the unit cube in 1, 2 and 3 dimensions."""
        gi = geometry_info(dim)
        assert gi.vertices_per_cell == vertices
        assert gi.faces_per_cell == faces
        assert gi.children_per_cell == vertices
        assert gi.lines_per_cell == lines
        assert gi.quads_per_cell == quads

    def test_face_vertices_2d(self):
        """Face 2d+s holds the vertices with bit d equal to s, ascending."""
        gi = geometry_info(2)
        assert gi.face_vertices == ((0, 2), (1, 3), (0, 1), (2, 3))

    def test_face_vertices_3d(self):
        """Bottom and top faces of a hexahedron."""
        gi = geometry_info(3)
        assert gi.face_vertex(4, 3) == 3
        assert gi.face_vertices[5] == (4, 5, 6, 7)
        assert gi.face_vertices[0] == (0, 2, 4, 6)

    def test_lines_3d(self):
        """Bottom lines, top lines, then vertical lines."""
        gi = geometry_info(3)
        assert gi.object_vertices(1, 0) == (0, 2)
        assert gi.object_vertices(1, 2) == (0, 1)
        assert gi.object_vertices(1, 5) == (5, 7)
        assert gi.object_vertices(1, 11) == (3, 7)

    def test_objects_order(self):
        """DoF order: vertices, lines, then the interior."""
        objects = geometry_info(2).objects()
        assert len(objects) == 9
        assert objects[:4] == [(0, 0), (0, 1), (0, 2), (0, 3)]
        assert objects[-1] == (2, 0)

    def test_opposite_face(self):
        gi = geometry_info(3)
        assert [gi.opposite_face(f) for f in range(6)] == [1, 0, 3, 2, 5, 4]
        assert gi.face_normal_direction(5) == 2
        assert gi.face_side(5) == 1

    def test_out_of_range_face(self):
        """Invalid face numbers are precondition violations."""
        with pytest.raises(PreconditionError):
            geometry_info(2).opposite_face(4)


class TestChildCellOnFace:
    """Children touching a face, in the face's own lexicographic order."""

    def test_2d(self):
        gi = geometry_info(2)
        assert [gi.child_cell_on_face(0, s) for s in range(2)] == [0, 2]
        assert [gi.child_cell_on_face(3, s) for s in range(2)] == [2, 3]

    def test_3d(self):
        gi = geometry_info(3)
        assert [gi.child_cell_on_face(1, s) for s in range(4)] == [1, 3, 5, 7]

    def test_anisotropic_case_unsupported(self):
        """Only isotropic refinement cases are supported."""
        with pytest.raises(UnsupportedOperation):
            geometry_info(2).child_cell_on_face(0, 0, RefinementCase.CUT_X)

    def test_bad_subface(self):
        with pytest.raises(PreconditionError):
            geometry_info(2).child_cell_on_face(0, 2)


class TestShapeFunctions:
    """d-linear vertex functions and tensor Gauss rules."""

    def test_kronecker_at_vertices(self):
        """Vertex function v is 1 at vertex v and 0 at the others."""
        for dim in (1, 2, 3):
            vertices = geometry_info(dim).unit_cell_vertices()
            assert np.allclose(d_linear_shape_values(dim, vertices), np.eye(2**dim))

    def test_partition_of_unity(self):
        points = np.random.default_rng(0).random((10, 3))
        assert np.allclose(d_linear_shape_values(3, points).sum(axis=1), 1.0)
        assert np.allclose(d_linear_shape_grads(3, points).sum(axis=1), 0.0)

    def test_gauss_rule_exactness(self):
        """n Gauss points integrate degree 2n-1 exactly on [0, 1]^dim."""
        points, weights = tensor_gauss_rule(2, 2)
        assert np.isclose(weights.sum(), 1.0)
        assert np.isclose(np.sum(weights * points[:, 0] ** 3 * points[:, 1] ** 2), 1 / 4 * 1 / 3)

    def test_gauss_rule_ordering(self):
        """First coordinate runs fastest."""
        points, _ = tensor_gauss_rule(2, 2)
        assert points[0, 0] < points[1, 0]
        assert np.isclose(points[0, 1], points[1, 1])
