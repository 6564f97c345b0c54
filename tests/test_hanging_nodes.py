"""Tests for hanging-node constraints on locally refined meshes.

The decisive check is polynomial reproduction: for a function that the
coarse side can represent exactly, overwriting the constrained entries of its
nodal interpolant with garbage and calling distribute() must restore it.

Run with: uv run pytest tests/test_hanging_nodes.py -v
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
    hyper_cube,
    make_boundary_value_constraints,
    make_hanging_node_constraints,
    map_dofs_to_support_points,
    subdivided_hyper_rectangle,
)
from AMR.dof_tools import dof_components, extract_hanging_node_dofs


def cell0(tria):
    return tria.cell(CellId(0, 0))


def cell1(tria):
    return tria.cell(CellId(0, 1))


def refine(tria, cell):
    tria.set_refine_flag(cell)
    tria.execute_coarsening_and_refinement()


def hanging_constraints(tria, fe):
    dh = DoFHandler(tria).distribute_dofs(fe)
    cm = ConstraintMatrix()
    n = make_hanging_node_constraints(dh, cm)
    cm.close()
    return dh, cm, n


def assert_reproduces(dof_handler, constraints, func):
    points = map_dofs_to_support_points(dof_handler)
    exact = func(points)
    u = exact.copy()
    u[constraints.constrained_dofs()] = 1e3
    constraints.distribute(u)
    assert np.allclose(u, exact)


class TestCounts:
    """Number of hanging DoFs for simple configurations."""

    @pytest.mark.parametrize("refined, coarse, face", [(1, 0, 1), (0, 1, 0)])
    def test_q1_two_cells(self, two_cells, refined, coarse, face):
        """One hanging vertex in the middle of the shared line, whichever side is refined."""
        refine(two_cells, two_cells.cell(CellId(0, refined)))
        dh, cm, n = hanging_constraints(two_cells, FE_Q(2, 1))
        assert n == 1
        mid = two_cells.face(two_cells.cell(CellId(0, coarse)), face).center
        dof = dh.vertex_dofs(mid)[0]
        expected = sorted([(dh.vertex_dofs(1)[0], 0.5), (dh.vertex_dofs(4)[0], 0.5)])
        assert cm.get_entries(dof) == expected

    def test_q1_strip(self):
        tria = subdivided_hyper_rectangle([3, 1], [0, 0], [3, 1])
        refine(tria, tria.cell(CellId(0, 1)))
        _, _, n = hanging_constraints(tria, FE_Q(2, 1))
        assert n == 2

    def test_q2_two_cells(self, two_cells):
        """The midpoint vertex plus one DoF on each half line."""
        refine(two_cells, cell1(two_cells))
        dh, cm, n = hanging_constraints(two_cells, FE_Q(2, 2))
        assert n == 3
        assert np.array_equal(np.flatnonzero(extract_hanging_node_dofs(dh)), cm.constrained_dofs())

    @pytest.mark.parametrize("degree, expected", [(1, 5), (2, 21), (3, 45)])
    def test_rotated_hexes(self, rotated_hexes, degree, expected):
        """New face vertices, half lines and quarter quads of the shared face."""
        refine(rotated_hexes, cell0(rotated_hexes))
        _, _, n = hanging_constraints(rotated_hexes, FE_Q(3, degree))
        assert n == expected

    def test_conforming_mesh(self, two_cells):
        two_cells.refine_global(2)
        _, cm, n = hanging_constraints(two_cells, FE_Q(2, 2))
        assert n == 0 and len(cm) == 0

    def test_discontinuous(self, two_cells):
        refine(two_cells, cell1(two_cells))
        _, _, n = hanging_constraints(two_cells, FE_DGQ(2, 1))
        assert n == 0

    def test_1d(self):
        tria = subdivided_hyper_rectangle([2], [0], [1])
        refine(tria, tria.cell(CellId(0, 1)))
        _, _, n = hanging_constraints(tria, FE_Q(1, 2))
        assert n == 0

    def test_existing_lines_are_kept(self, two_cells):
        """A DoF constrained beforehand is not constrained again."""
        refine(two_cells, cell1(two_cells))
        dh = DoFHandler(two_cells).distribute_dofs(FE_Q(2, 1))
        mid = two_cells.face(cell0(two_cells), 1).center
        cm = ConstraintMatrix()
        cm.add_line(dh.vertex_dofs(mid)[0])
        assert make_hanging_node_constraints(dh, cm) == 0


class TestReproduction:
    """distribute() restores functions the coarse side represents exactly."""

    def test_q2_two_cells(self, two_cells):
        refine(two_cells, cell1(two_cells))
        dh, cm, _ = hanging_constraints(two_cells, FE_Q(2, 2))
        assert_reproduces(dh, cm, lambda p: p[:, 0] ** 2 + p[:, 0] * p[:, 1] - p[:, 1] ** 2)

    def test_q3_two_levels(self):
        """Chains of hanging nodes across two refinement levels."""
        tria = hyper_cube(2)
        tria.refine_global(1)
        root = tria.cell(CellId(0, 0))
        refine(tria, root.children[0])
        refine(tria, tria.cell(root.children[0]).children[3])
        dh, cm, n = hanging_constraints(tria, FE_Q(2, 3))
        assert n > 0
        assert_reproduces(dh, cm, lambda p: p[:, 0] ** 3 - 2 * p[:, 1] ** 3 + p[:, 0] * p[:, 1])

    def test_distribute_is_idempotent(self):
        """A second distribute() leaves the vector unchanged, inhomogeneities included."""
        tria = hyper_cube(2)
        tria.refine_global(1)
        root = tria.cell(CellId(0, 0))
        refine(tria, root.children[0])
        refine(tria, tria.cell(root.children[0]).children[3])
        dh = DoFHandler(tria).distribute_dofs(FE_Q(2, 2))
        cm = ConstraintMatrix()
        assert make_hanging_node_constraints(dh, cm) > 0
        make_boundary_value_constraints(dh, cm, {0: lambda p: 1 + p[:, 0]})
        cm.close()
        once = cm.distribute(np.random.default_rng(7).standard_normal(dh.n_dofs))
        twice = cm.distribute(once.copy())
        assert np.allclose(twice, once)

    @pytest.mark.parametrize("degree", [1, 2, 3])
    def test_rotated_hexes(self, rotated_hexes, degree):
        """The refined side is seen through a rotated frame from the coarse side."""
        refine(rotated_hexes, cell0(rotated_hexes))
        dh, cm, _ = hanging_constraints(rotated_hexes, FE_Q(3, degree))
        p = degree

        def func(x):
            return 1 + x[:, 0] - 2 * x[:, 1] + x[:, 1] ** p * x[:, 2] ** p + x[:, 2] ** p

        assert_reproduces(dh, cm, func)

    def test_rotated_hexes_refined_other_side(self, rotated_hexes):
        refine(rotated_hexes, cell1(rotated_hexes))
        dh, cm, n = hanging_constraints(rotated_hexes, FE_Q(3, 2))
        assert n == 21
        assert_reproduces(dh, cm, lambda x: x[:, 1] ** 2 * x[:, 2] + x[:, 2] ** 2 - x[:, 0])

    def test_3d_adaptive(self):
        tria = hyper_cube(3)
        tria.refine_global(1)
        refine(tria, tria.cell(CellId(0, 0)).children[0])
        dh, cm, _ = hanging_constraints(tria, FE_Q(3, 2))
        assert_reproduces(dh, cm, lambda x: x[:, 0] ** 2 + x[:, 1] * x[:, 2] - x[:, 2] ** 2)

    def test_system_components_stay_separate(self, two_cells):
        refine(two_cells, cell1(two_cells))
        fe = FESystem((FE_Q(2, 2), 2))
        dh, cm, n = hanging_constraints(two_cells, fe)
        assert n == 6
        comps = dof_components(dh)
        for line in cm.lines():
            assert all(comps[j] == comps[line.index] for j, _ in line.entries)
