"""Tests for boundary constraints, sparsity patterns and DoF bookkeeping.

Run with: uv run pytest tests/test_dof_tools.py -v
"""

import numpy as np
import pytest

from AMR import (
    FE_DGQ,
    FE_Q,
    CellId,
    ConstraintMatrix,
    DoFHandler,
    FESystem,
    PreconditionError,
    UnsupportedOperation,
    distribute_dofs,
    extract_boundary_dofs,
    make_boundary_value_constraints,
    make_hanging_node_constraints,
    make_sparsity_pattern,
    make_zero_boundary_constraints,
    map_dofs_to_support_points,
    subdivided_hyper_rectangle,
)
from AMR.dof_tools import (
    count_dofs_per_component,
    count_dofs_with_subdomain_association,
    extract_hanging_node_dofs,
    get_subdomain_association,
    index_ranges,
    interpolate_boundary_values,
    locally_owned_dofs,
)


@pytest.fixture
def square():
    """2x2 cells on the unit square, boundary ids 0..3 by side."""
    return subdivided_hyper_rectangle([2, 2], [0, 0], [1, 1], colorize=True)


class TestBoundary:
    """Boundary DoF extraction and boundary constraints."""

    def test_all_boundary_dofs(self, square):
        dh = DoFHandler(square).distribute_dofs(FE_Q(2, 1))
        assert extract_boundary_dofs(dh).sum() == 8

    def test_by_boundary_id(self, square):
        dh = DoFHandler(square).distribute_dofs(FE_Q(2, 1))
        points = map_dofs_to_support_points(dh)
        mask = extract_boundary_dofs(dh, boundary_ids=[0])
        assert mask.sum() == 3
        assert np.allclose(points[mask, 0], 0.0)

    def test_component_mask(self, square):
        dh = DoFHandler(square).distribute_dofs(FESystem((FE_Q(2, 1), 2)))
        mask = extract_boundary_dofs(dh, component_mask=[False, True])
        assert mask.sum() == 8
        assert set(dh.fe.dof_components()[:2].tolist()) == {0, 1}

    def test_bad_component_mask(self, square):
        dh = DoFHandler(square).distribute_dofs(FE_Q(2, 1))
        with pytest.raises(PreconditionError):
            extract_boundary_dofs(dh, component_mask=[True, True])

    def test_zero_constraints(self, square):
        dh = DoFHandler(square).distribute_dofs(FE_Q(2, 2))
        cm = ConstraintMatrix()
        assert make_zero_boundary_constraints(dh, cm) == 16
        cm.close()
        assert all(line.is_trivial and line.inhomogeneity == 0.0 for line in cm.lines())

    def test_interpolated_values(self, square):
        dh = DoFHandler(square).distribute_dofs(FE_Q(2, 2))
        points = map_dofs_to_support_points(dh)
        values = interpolate_boundary_values(dh, {1: lambda p: p[:, 0] + p[:, 1]})
        assert len(values) == 5
        for dof, value in values.items():
            assert np.isclose(points[dof, 0], 1.0)
            assert np.isclose(value, 1.0 + points[dof, 1])

    def test_vector_valued_function(self, square):
        dh = DoFHandler(square).distribute_dofs(FESystem((FE_Q(2, 1), 2)))
        cm = ConstraintMatrix()
        n = make_boundary_value_constraints(
            dh, cm, {2: lambda p: np.stack([p[:, 0], -p[:, 0]], axis=1)}, component_mask=[False, True]
        )
        assert n == 3
        cm.close()
        points = map_dofs_to_support_points(dh)
        for line in cm.lines():
            assert np.isclose(line.inhomogeneity, -points[line.index, 0])

    def test_hanging_nodes_win(self, rotated_hexes):
        """Hanging nodes on boundary edges keep their hanging-node line.

        Every source of those lines is a Dirichlet DoF, so closing turns
        them into x = 1 lines.
        """
        rotated_hexes.set_refine_flag(rotated_hexes.cell(CellId(0, 0)))
        rotated_hexes.execute_coarsening_and_refinement()
        dh = DoFHandler(rotated_hexes).distribute_dofs(FE_Q(3, 1))
        cm = ConstraintMatrix()
        n_hanging = make_hanging_node_constraints(dh, cm)
        n_boundary = make_boundary_value_constraints(dh, cm, {0: lambda p: np.ones(len(p))})
        cm.close()
        # four of the five hanging vertices are edge midpoints on the boundary
        assert n_hanging == 5
        assert n_boundary == int(extract_boundary_dofs(dh).sum()) - 4
        hanging = np.flatnonzero(extract_hanging_node_dofs(dh))
        assert len(hanging) == 5
        for dof in hanging:
            assert cm.is_constrained(dof)
            assert cm.get_entries(dof) == []
            assert cm.get_inhomogeneity(dof) == pytest.approx(1.0)

    def test_no_support_points(self, square):
        dh = distribute_dofs(square, 1)
        with pytest.raises(UnsupportedOperation):
            map_dofs_to_support_points(dh)


class TestSparsity:
    """Cell-coupling patterns."""

    def test_q1_2x2(self, square):
        dh = DoFHandler(square).distribute_dofs(FE_Q(2, 1))
        pattern = make_sparsity_pattern(dh)
        assert pattern.shape == (9, 9)
        assert pattern.nnz == 49
        assert (pattern != pattern.T).nnz == 0

    def test_dgq_is_block_diagonal(self, square):
        dh = DoFHandler(square).distribute_dofs(FE_DGQ(2, 1))
        assert make_sparsity_pattern(dh).nnz == 4 * 16

    def test_condensed_with_hanging_nodes(self, two_cells):
        two_cells.set_refine_flag(two_cells.cell(CellId(0, 1)))
        two_cells.execute_coarsening_and_refinement()
        dh = DoFHandler(two_cells).distribute_dofs(FE_Q(2, 1))
        cm = ConstraintMatrix()
        make_hanging_node_constraints(dh, cm)
        cm.close()
        pattern = make_sparsity_pattern(dh, cm)
        hanging = int(cm.constrained_dofs()[0])
        row = pattern[hanging].toarray().ravel()
        assert row.sum() == 1 and row[hanging]
        # a fine cell touching the hanging node now couples to both ends of the coarse line
        fine_vertex = two_cells.face(two_cells.cell(CellId(0, 1)), 2).center
        fine = dh.vertex_dofs(fine_vertex)[0]
        assert pattern[fine, dh.vertex_dofs(4)[0]]
        assert not make_sparsity_pattern(dh)[fine, dh.vertex_dofs(4)[0]]


class TestComponentsAndSubdomains:
    """Per-component and per-subdomain bookkeeping."""

    def test_count_per_component(self, square):
        dh = DoFHandler(square).distribute_dofs(FESystem((FE_Q(2, 1), 2), FE_Q(2, 2)))
        assert list(count_dofs_per_component(dh)) == [9, 9, 25]

    def test_subdomain_association(self, square):
        """Interface DoFs go to the last cell touching them."""
        for cell in list(square.active_cells())[2:]:
            square.set_subdomain_id(cell, 1)
        dh = DoFHandler(square).distribute_dofs(FE_Q(2, 1))
        owner = get_subdomain_association(dh)
        points = map_dofs_to_support_points(dh)
        assert np.all(owner[points[:, 1] < 0.25] == 0)
        assert np.all(owner[points[:, 1] > 0.25] == 1)
        assert count_dofs_with_subdomain_association(dh, 1) == 6
        assert list(locally_owned_dofs(dh, 0)) == [0, 1, 4]

    def test_index_ranges(self, square):
        dh = DoFHandler(square).distribute_dofs(FE_Q(2, 1))
        assert index_ranges(dh) == {0: range(0, 9)}
