"""Tests for the constraint container.

Run with: uv run pytest tests/test_constraints.py -v
"""

import io

import numpy as np
import pytest
from scipy import sparse

from AMR import ConstraintMatrix, CyclicConstraint, InvalidConstraint, PreconditionError


def chain():
    """x1 = 0.5 x0 + 0.5 x2, x2 = x3 + 1."""
    cm = ConstraintMatrix()
    cm.add_entries(1, [(0, 0.5), (2, 0.5)])
    cm.add_entry(2, 3, 1.0)
    cm.set_inhomogeneity(2, 1.0)
    return cm


class TestBuild:
    """Adding lines and entries."""

    def test_add_line_is_zero_constraint(self):
        cm = ConstraintMatrix()
        cm.add_line(4)
        assert cm.is_constrained(4)
        assert 4 in cm
        assert cm.get_entries(4) == []
        assert cm.get_inhomogeneity(4) == 0.0

    def test_duplicate_entry_is_ignored(self):
        cm = ConstraintMatrix()
        cm.add_entry(1, 0, 0.5)
        cm.add_entry(1, 0, 0.5)
        assert cm.get_entries(1) == [(0, 0.5)]

    def test_conflicting_entry(self):
        cm = ConstraintMatrix()
        cm.add_entry(1, 0, 0.5)
        with pytest.raises(InvalidConstraint):
            cm.add_entry(1, 0, 0.25)

    def test_negative_index(self):
        with pytest.raises(PreconditionError):
            ConstraintMatrix().add_line(-1)

    def test_merge(self):
        a, b = ConstraintMatrix(), ConstraintMatrix()
        a.add_entry(1, 0, 0.5)
        b.add_entry(1, 0, 0.5)
        b.add_line(3)
        a.merge(b)
        assert len(a) == 2

    def test_merge_conflict(self):
        a, b = ConstraintMatrix(), ConstraintMatrix()
        a.add_entry(1, 0, 0.5)
        b.add_entry(1, 2, 0.5)
        with pytest.raises(InvalidConstraint):
            a.merge(b)


class TestClose:
    """Resolution of constraint chains."""

    def test_chain_is_resolved(self):
        cm = chain()
        cm.close()
        assert cm.get_entries(1) == [(0, 0.5), (3, 0.5)]
        assert cm.get_inhomogeneity(1) == pytest.approx(0.5)
        assert cm.get_entries(2) == [(3, 1.0)]

    def test_source_constrained_to_zero(self):
        """A source with an empty line drops out; the line becomes trivial if nothing is left."""
        cm = ConstraintMatrix()
        cm.add_entry(1, 0, 1.0)
        cm.add_line(0)
        cm.close()
        assert cm.get_entries(1) == []
        assert cm.lines()[1].is_trivial
        assert len(cm) == 2

    def test_cycle(self):
        cm = ConstraintMatrix()
        cm.add_entry(0, 1, 1.0)
        cm.add_entry(1, 2, 1.0)
        cm.add_entry(2, 0, 1.0)
        with pytest.raises(CyclicConstraint):
            cm.close()

    def test_self_reference(self):
        cm = ConstraintMatrix()
        cm.add_entry(0, 0, 0.5)
        with pytest.raises(CyclicConstraint):
            cm.close()

    def test_close_twice(self):
        cm = chain()
        cm.close()
        cm.close()
        assert cm.is_closed

    def test_closed_set_is_frozen(self):
        cm = chain()
        cm.close()
        with pytest.raises(InvalidConstraint):
            cm.add_line(7)
        with pytest.raises(InvalidConstraint):
            cm.set_inhomogeneity(1, 2.0)

    def test_distribute_requires_close(self):
        with pytest.raises(PreconditionError):
            chain().distribute(np.zeros(4))


class TestConsumers:
    """distribute, condense and the sparsity pattern."""

    def test_distribute(self):
        cm = chain()
        cm.close()
        x = cm.distribute(np.array([2.0, 99.0, 99.0, 4.0]))
        assert np.allclose(x, [2.0, 0.5 * 2 + 0.5 * 5, 5.0, 4.0])

    def test_distribute_in_place(self):
        cm = ConstraintMatrix()
        cm.add_entry(1, 0, 2.0)
        cm.close()
        x = np.array([1.5, 0.0])
        cm.distribute(x)
        assert x[1] == 3.0

    def test_condense_solves_constrained_system(self):
        """Solve the 1D Laplacian with x0 = 1 and x4 = x3 (a periodic-like tie)."""
        n = 5
        A = sparse.diags([-np.ones(n - 1), 2 * np.ones(n), -np.ones(n - 1)], [-1, 0, 1]).tocsr()
        b = np.ones(n)
        cm = ConstraintMatrix()
        cm.add_line(0)
        cm.set_inhomogeneity(0, 1.0)
        cm.add_entry(4, 3, 1.0)
        cm.close()
        Ac, bc = cm.condense(A, b)
        assert Ac[0, 1] == 0 and Ac[1, 0] == 0
        assert Ac[0, 0] == 2.0
        assert bc[0] == 0.0
        x = cm.distribute(np.linalg.solve(Ac.toarray(), bc))
        assert x[0] == 1.0 and x[4] == x[3]
        # the free equations of the reduced problem hold with x substituted
        C, g = cm.projection_matrix(n)
        residual = C.T @ (A @ x - b)
        assert np.allclose(np.delete(residual, [0, 4]), 0.0)

    def test_condense_vector_and_set_zero(self):
        """Closed: x1 = 0.5 x0 + 0.5 x3 + 0.5, x2 = x3 + 1."""
        cm = chain()
        cm.close()
        out = cm.condense_vector(np.array([1.0, 2.0, 4.0, 8.0]))
        assert np.allclose(out, [1.0 + 0.5 * 2.0, 0.0, 0.0, 0.5 * 2.0 + 4.0 + 8.0])
        assert list(cm.set_zero(np.ones(4))) == [1.0, 0.0, 0.0, 1.0]

    def test_condense_sparsity_pattern(self):
        pattern = sparse.csr_matrix(np.eye(4) + np.eye(4, k=1) + np.eye(4, k=-1))
        cm = ConstraintMatrix()
        cm.add_entry(3, 0, 1.0)
        cm.close()
        condensed = cm.condense_sparsity_pattern(pattern)
        # coupling 2-3 moves to 2-0
        assert condensed[2, 0] and condensed[0, 2]
        assert condensed[3, 3]
        assert not condensed[3, 2]


class TestExport:
    """Text and table output."""

    def test_write(self):
        cm = chain()
        cm.add_line(5)
        cm.close()
        stream = io.StringIO()
        cm.write(stream)
        lines = stream.getvalue().splitlines()
        assert "    1 0:  0.5" in lines
        assert "    5 = 0.0" in lines

    def test_dataframe(self):
        cm = chain()
        cm.add_line(5)
        cm.close()
        df = cm.to_dataframe()
        assert list(df.columns) == ["constrained", "source", "weight", "inhomogeneity"]
        assert len(df) == 4
        assert df["source"].isna().sum() == 1
