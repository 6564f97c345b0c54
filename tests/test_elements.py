"""Tests for the element descriptions.

Run with: uv run pytest tests/test_elements.py -v
"""

import numpy as np
import pytest

from AMR import FE_DGQ, FE_Q, DoFLayout, FESystem, PreconditionError, UnsupportedOperation


class TestCounts:
    """DoFs per object and per cell."""

    @pytest.mark.parametrize(
        "dim, degree, per_object, per_cell",
        [
            (1, 3, (1, 2), 4),
            (2, 1, (1, 0, 0), 4),
            (2, 2, (1, 1, 1), 9),
            (3, 2, (1, 1, 1, 1), 27),
            (3, 3, (1, 2, 4, 8), 64),
        ],
    )
    def test_fe_q(self, dim, degree, per_object, per_cell):
        """FE_Q(p) has (p-1)^k DoFs on each k-dimensional object."""
        fe = FE_Q(dim, degree)
        assert fe.dofs_per_object == per_object
        assert fe.dofs_per_cell == per_cell
        assert fe.dofs_per_cell == (degree + 1) ** dim

    def test_face_counts(self):
        assert FE_Q(2, 2).dofs_per_face == 3
        assert FE_Q(3, 2).dofs_per_face == 9
        assert FE_DGQ(2, 1).dofs_per_face == 0

    def test_dgq_interior_only(self):
        fe = FE_DGQ(3, 1)
        assert fe.dofs_per_object == (0, 0, 0, 8)
        assert fe.dofs_per_hex == 8

    def test_missing_object_is_zero(self):
        """Counts for objects above the cell dimension are zero, not errors."""
        assert FE_Q(2, 2).dofs_per_hex == 0

    def test_invalid_degree(self):
        with pytest.raises(PreconditionError):
            FE_Q(2, 0)

    def test_layout_counts(self):
        layout = DoFLayout(2, (1, 1, 1))
        assert layout.dofs_per_cell == 9
        assert not layout.has_support_points
        with pytest.raises(UnsupportedOperation):
            layout.unit_support_points()


class TestShapeFunctions:
    """Nodal basis properties."""

    @pytest.mark.parametrize("fe", [FE_Q(1, 3), FE_Q(2, 2), FE_Q(3, 2), FE_DGQ(2, 1), FE_DGQ(2, 0)])
    def test_kronecker_property(self, fe):
        """Shape function i is 1 at support point i and 0 at the others."""
        values = fe.shape_values(fe.unit_support_points())
        assert np.allclose(values, np.eye(fe.dofs_per_cell))

    def test_partition_of_unity(self):
        fe = FE_Q(2, 3)
        points = np.random.default_rng(1).random((7, 2))
        assert np.allclose(fe.shape_values(points).sum(axis=1), 1.0)
        assert np.allclose(fe.shape_grads(points).sum(axis=1), 0.0)

    def test_support_point_order(self):
        """Vertices first, then line midpoints in line order, then the center."""
        points = FE_Q(2, 2).unit_support_points()
        assert np.allclose(points[:4], [[0, 0], [1, 0], [0, 1], [1, 1]])
        assert np.allclose(points[4:8], [[0, 0.5], [1, 0.5], [0.5, 0], [0.5, 1]])
        assert np.allclose(points[8], [0.5, 0.5])

    def test_gradient_of_linear(self):
        """Interpolating f = 2x - y reproduces its gradient everywhere."""
        fe = FE_Q(2, 2)
        coeffs = 2 * fe.unit_support_points()[:, 0] - fe.unit_support_points()[:, 1]
        grads = np.einsum("qid,i->qd", fe.shape_grads(np.array([[0.2, 0.7], [0.9, 0.1]])), coeffs)
        assert np.allclose(grads, [[2, -1], [2, -1]])


class TestFramePermutations:
    """Translation of object blocks between frames."""

    def test_line_reversal(self):
        assert list(FE_Q(2, 3).line_dof_permutation()) == [1, 0]
        assert list(FE_Q(2, 4).line_dof_permutation()) == [2, 1, 0]

    def test_quad_transpose(self):
        """Swapping the two axes of a quad transposes its interior lattice."""
        assert list(FE_Q(3, 3).quad_dof_permutation((0, 2, 1, 3))) == [0, 2, 1, 3]

    def test_quad_identity(self):
        assert list(FE_Q(3, 4).quad_dof_permutation((0, 1, 2, 3))) == list(range(9))

    def test_quad_permutation_is_geometric(self):
        """The permuted block addresses the same geometric points."""
        fe = FE_Q(2, 4)
        vertex_permutation = (1, 3, 0, 2)
        canonical = fe.unit_support_points()[16:]
        perm = fe.quad_dof_permutation(vertex_permutation)
        # point (u, v) of the other frame in canonical coordinates
        corners = np.array([[0, 0], [1, 0], [0, 1], [1, 1]], dtype=float)
        for q, (u, v) in enumerate(canonical):
            weights = [(1 - u) * (1 - v), u * (1 - v), (1 - u) * v, u * v]
            point = sum(w * corners[vertex_permutation[j]] for j, w in enumerate(weights))
            assert np.allclose(canonical[perm[q]], point)

    def test_system_permutation_per_base(self):
        fe = FESystem((FE_Q(2, 3), 2))
        assert list(fe.line_dof_permutation()) == [1, 0, 3, 2]


class TestSubfaceInterpolation:
    """Coarse-to-fine interpolation on faces."""

    def test_q1(self):
        fe = FE_Q(2, 1)
        assert np.allclose(fe.subface_interpolation_matrix(0), [[1, 0], [0.5, 0.5]])
        assert np.allclose(fe.subface_interpolation_matrix(1), [[0.5, 0.5], [0, 1]])

    def test_q2(self):
        """Fine face DoFs: vertex 0, the face midpoint, then the quarter point."""
        fe = FE_Q(2, 2)
        expected = [[1, 0, 0], [0, 0, 1], [0.375, -0.125, 0.75]]
        assert np.allclose(fe.subface_interpolation_matrix(0), expected)

    def test_rows_sum_to_one(self):
        fe = FE_Q(3, 3)
        for s in range(4):
            assert np.allclose(fe.subface_interpolation_matrix(s).sum(axis=1), 1.0)

    def test_system_does_not_mix_components(self):
        fe = FESystem((FE_Q(2, 1), 2))
        matrix = fe.subface_interpolation_matrix(0)
        comps = fe.face_components()
        assert list(comps) == [0, 1, 0, 1]
        assert np.all(matrix[comps[:, None] != comps[None, :]] == 0)

    def test_dgq_has_none(self):
        with pytest.raises(UnsupportedOperation):
            FE_DGQ(2, 1).subface_interpolation_matrix(0)


class TestSystem:
    """Composite elements."""

    def test_counts_and_components(self):
        fe = FESystem(FE_Q(2, 2), FE_Q(2, 1))
        assert fe.n_components == 2
        assert fe.dofs_per_object == (2, 1, 1)
        assert fe.dofs_per_cell == 13
        assert list(fe.face_components()) == [0, 1, 0, 1, 0]

    def test_vertex_block_order(self):
        """Within an object block, base elements come in order, then their copies."""
        fe = FESystem((FE_Q(2, 1), 2), FE_Q(2, 1))
        assert list(fe.dof_components()[:3]) == [0, 1, 2]
        assert fe.system_to_component(4) == (1, 1)

    def test_support_points(self):
        fe = FESystem((FE_Q(2, 1), 2))
        points = fe.unit_support_points()
        assert np.allclose(points[0], points[1])
        assert np.allclose(points[2], [1, 0])

    def test_mixed_dimensions(self):
        with pytest.raises(PreconditionError):
            FESystem(FE_Q(2, 1), FE_Q(3, 1))
