"""Linear constraints between DoFs.

A constraint line reads ``x[i] = sum_j w_ij x[j] + b_i``. Lines are collected
with :meth:`ConstraintMatrix.add_line` / :meth:`add_entry`, then closed: every
source that is itself constrained is replaced by its own sources until all
right-hand sides refer to unconstrained DoFs only. Lines whose right-hand side
becomes empty (``x[i] = b_i``, usually ``x[i] = 0``) are kept.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, TextIO

import numpy as np
import pandas as pd
from numba import njit
from numpy.typing import NDArray
from scipy import sparse

from .errors import (
    CyclicConstraint,
    InvalidConstraint,
    PreconditionError,
    check,
    fail,
)

log = logging.getLogger(__name__)

_VISITING, _DONE = 1, 2


@dataclass
class ConstraintLine:
    """One constraint ``x[index] = sum(w * x[j] for j, w in entries) + inhomogeneity``."""

    index: int
    entries: list[tuple[int, float]] = field(default_factory=list)
    inhomogeneity: float = 0.0

    @property
    def is_trivial(self) -> bool:
        """True for lines with no sources, ``x[index] = inhomogeneity``."""
        return not self.entries


@njit
def _distribute_kernel(rows, indptr, cols, vals, inhom, vec):
    for r in range(rows.shape[0]):
        total = inhom[r]
        for p in range(indptr[r], indptr[r + 1]):
            total += vals[p] * vec[cols[p]]
        vec[rows[r]] = total


class ConstraintMatrix:
    """Collection of constraint lines with closure, distribution and condensation."""

    def __init__(self):
        self._lines: dict[int, ConstraintLine] = {}
        self._closed = False
        self._rows = np.zeros(0, dtype=np.int64)
        self._indptr = np.zeros(1, dtype=np.int64)
        self._cols = np.zeros(0, dtype=np.int64)
        self._vals = np.zeros(0)
        self._inhom = np.zeros(0)

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------

    def _check_open(self) -> None:
        check(not self._closed, InvalidConstraint, "Constraint set is closed")

    def add_line(self, index: int) -> None:
        """Declare ``x[index]`` constrained (initially to zero)."""
        self._check_open()
        index = int(index)
        check(index >= 0, PreconditionError, f"Negative DoF index {index}")
        if index not in self._lines:
            self._lines[index] = ConstraintLine(index)

    def add_entry(self, index: int, source: int, weight: float) -> None:
        """Add ``weight * x[source]`` to the line of ``index``, creating it if needed.

        Re-adding an identical entry is ignored; a different weight for the
        same pair raises InvalidConstraint.
        """
        self._check_open()
        index, source, weight = int(index), int(source), float(weight)
        check(source >= 0, PreconditionError, f"Negative DoF index {source}")
        self.add_line(index)
        line = self._lines[index]
        for j, w in line.entries:
            if j == source:
                check(
                    w == weight,
                    InvalidConstraint,
                    f"Conflicting weights for x[{index}] <- x[{source}]: {w} vs {weight}",
                )
                return
        line.entries.append((source, weight))

    def add_entries(self, index: int, entries: Iterable[tuple[int, float]]) -> None:
        for source, weight in entries:
            self.add_entry(index, source, weight)

    def set_inhomogeneity(self, index: int, value: float) -> None:
        self._check_open()
        self.add_line(index)
        self._lines[int(index)].inhomogeneity = float(value)

    def merge(self, other: ConstraintMatrix) -> None:
        """Add all lines of ``other``. Lines present in both must agree."""
        self._check_open()
        for line in other.lines():
            if line.index in self._lines:
                mine = self._lines[line.index]
                check(
                    sorted(mine.entries) == sorted(line.entries)
                    and mine.inhomogeneity == line.inhomogeneity,
                    InvalidConstraint,
                    f"Conflicting constraints for x[{line.index}] while merging",
                )
                continue
            self._lines[line.index] = ConstraintLine(
                line.index, list(line.entries), line.inhomogeneity
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_constrained(self, index: int) -> bool:
        return int(index) in self._lines

    def __contains__(self, index: int) -> bool:
        return self.is_constrained(index)

    def __len__(self) -> int:
        return len(self._lines)

    @property
    def n_constraints(self) -> int:
        return len(self._lines)

    @property
    def is_closed(self) -> bool:
        return self._closed

    def get_entries(self, index: int) -> list[tuple[int, float]]:
        check(self.is_constrained(index), PreconditionError, f"x[{index}] is not constrained")
        return list(self._lines[int(index)].entries)

    def get_inhomogeneity(self, index: int) -> float:
        check(self.is_constrained(index), PreconditionError, f"x[{index}] is not constrained")
        return self._lines[int(index)].inhomogeneity

    def constrained_dofs(self) -> NDArray[np.int64]:
        return np.array(sorted(self._lines), dtype=np.int64)

    def lines(self) -> list[ConstraintLine]:
        """All lines sorted by constrained index, trivial lines included."""
        return [self._lines[i] for i in sorted(self._lines)]

    export = lines

    # ------------------------------------------------------------------
    # Closure
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Resolve chains so that no source is itself constrained.

        Closing a closed set does nothing. Raises CyclicConstraint if a DoF
        depends on itself through a chain of lines.
        """
        if self._closed:
            return
        state: dict[int, int] = {}
        resolved: dict[int, tuple[dict[int, float], float]] = {}

        def resolve(index: int) -> tuple[dict[int, float], float]:
            if state.get(index) == _DONE:
                return resolved[index]
            if state.get(index) == _VISITING:
                fail(CyclicConstraint, f"x[{index}] depends on itself")
            state[index] = _VISITING
            line = self._lines[index]
            weights: dict[int, float] = {}
            inhomogeneity = line.inhomogeneity
            for source, weight in line.entries:
                if source in self._lines:
                    sub_weights, sub_inhomogeneity = resolve(source)
                    for j, w in sub_weights.items():
                        weights[j] = weights.get(j, 0.0) + weight * w
                    inhomogeneity += weight * sub_inhomogeneity
                else:
                    weights[source] = weights.get(source, 0.0) + weight
            state[index] = _DONE
            resolved[index] = (weights, inhomogeneity)
            return resolved[index]

        for index in sorted(self._lines):
            resolve(index)

        n_trivial = 0
        for index in sorted(self._lines):
            weights, inhomogeneity = resolved[index]
            line = self._lines[index]
            line.entries = sorted((j, w) for j, w in weights.items() if w != 0.0)
            line.inhomogeneity = inhomogeneity
            n_trivial += line.is_trivial
        self._build_arrays()
        self._closed = True
        log.info(f"Closed {len(self._lines)} constraints ({n_trivial} without sources)")

    def _build_arrays(self) -> None:
        lines = self.lines()
        self._rows = np.array([line.index for line in lines], dtype=np.int64)
        counts = [len(line.entries) for line in lines]
        self._indptr = np.concatenate([[0], np.cumsum(counts)]).astype(np.int64)
        self._cols = np.array([j for line in lines for j, _ in line.entries], dtype=np.int64)
        self._vals = np.array([w for line in lines for _, w in line.entries], dtype=np.float64)
        self._inhom = np.array([line.inhomogeneity for line in lines], dtype=np.float64)

    def _check_closed(self) -> None:
        check(self._closed, PreconditionError, "Constraint set must be closed first")

    # ------------------------------------------------------------------
    # Consumer contract
    # ------------------------------------------------------------------

    def distribute(self, vec: NDArray[np.float64]) -> NDArray[np.float64]:
        """Overwrite every constrained entry with its right-hand side.

        Works in place on float64 arrays and returns the array.
        """
        self._check_closed()
        vec = np.asarray(vec, dtype=np.float64)
        if self._rows.size:
            check(
                self._rows[-1] < vec.shape[0] and (self._cols.size == 0 or self._cols.max() < vec.shape[0]),
                PreconditionError,
                f"Vector of length {vec.shape[0]} is too short for the constrained DoFs",
            )
            _distribute_kernel(self._rows, self._indptr, self._cols, self._vals, self._inhom, vec)
        return vec

    def set_zero(self, vec: NDArray[np.float64]) -> NDArray[np.float64]:
        vec = np.asarray(vec)
        vec[self.constrained_dofs()] = 0
        return vec

    def projection_matrix(self, n_dofs: int) -> tuple[sparse.csr_matrix, NDArray[np.float64]]:
        """(C, g) with ``x = C @ y + g`` for any vector ``y`` of free values."""
        self._check_closed()
        constrained = np.zeros(n_dofs, dtype=bool)
        constrained[self._rows] = True
        free = np.flatnonzero(~constrained)
        counts = np.diff(self._indptr)
        rows = np.concatenate([free, np.repeat(self._rows, counts)])
        cols = np.concatenate([free, self._cols])
        vals = np.concatenate([np.ones(free.size), self._vals])
        C = sparse.csr_matrix((vals, (rows, cols)), shape=(n_dofs, n_dofs))
        g = np.zeros(n_dofs)
        g[self._rows] = self._inhom
        return C, g

    def condense(self, matrix, rhs=None):
        """Eliminate constrained rows and columns.

        Returns ``C^T A C`` (and ``C^T (b - A g)`` when ``rhs`` is given) with
        every constrained row and column emptied, its diagonal set to the
        original diagonal entry (1 where that is zero) and its right-hand side
        entry set to zero. Solving the condensed system and calling
        :meth:`distribute` on the result solves the constrained problem.
        """
        self._check_closed()
        A = sparse.csr_matrix(matrix, dtype=np.float64)
        n = A.shape[0]
        check(A.shape == (n, n), PreconditionError, f"Matrix must be square, got {A.shape}")
        C, g = self.projection_matrix(n)
        condensed = (C.T @ A @ C).tolil()
        diagonal = A.diagonal()
        for i in self._rows:
            condensed[i, i] = diagonal[i] if diagonal[i] != 0.0 else 1.0
        condensed = condensed.tocsr()
        condensed.eliminate_zeros()
        if rhs is None:
            return condensed
        b = np.asarray(rhs, dtype=np.float64)
        check(b.shape == (n,), PreconditionError, f"Right-hand side must have length {n}")
        b_condensed = C.T @ (b - A @ g)
        b_condensed[self._rows] = 0.0
        return condensed, b_condensed

    def condense_vector(self, rhs: NDArray[np.float64]) -> NDArray[np.float64]:
        """``C^T b`` with constrained entries zeroed (homogeneous part only)."""
        self._check_closed()
        b = np.asarray(rhs, dtype=np.float64)
        C, _ = self.projection_matrix(b.shape[0])
        out = C.T @ b
        out[self._rows] = 0.0
        return out

    def condense_sparsity_pattern(self, pattern) -> sparse.csr_matrix:
        """Sparsity of the condensed matrix, diagonal kept for constrained rows."""
        self._check_closed()
        P = sparse.csr_matrix(pattern, dtype=np.float64)
        P.data = np.ones_like(P.data)
        n = P.shape[0]
        C, _ = self.projection_matrix(n)
        C.data = np.abs(C.data) + 1.0
        condensed = (C.T @ P @ C).tolil()
        for i in self._rows:
            condensed[i, i] = 1.0
        condensed = condensed.tocsr()
        condensed.data = np.ones_like(condensed.data)
        return condensed.astype(bool)

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def write(self, stream: TextIO) -> None:
        """Plain-text dump. Lines without sources are written as ``i = b``."""
        for line in self.lines():
            if line.is_trivial:
                stream.write(f"    {line.index} = {line.inhomogeneity!r}\n")
                continue
            for j, w in line.entries:
                stream.write(f"    {line.index} {j}:  {w!r}\n")
            if line.inhomogeneity != 0.0:
                stream.write(f"    {line.index}: {line.inhomogeneity!r}\n")

    def to_dataframe(self) -> pd.DataFrame:
        """One row per (constrained, source) pair; trivial lines get a missing source."""
        rows = []
        for line in self.lines():
            if line.is_trivial:
                rows.append((line.index, pd.NA, np.nan, line.inhomogeneity))
            for j, w in line.entries:
                rows.append((line.index, j, w, line.inhomogeneity))
        df = pd.DataFrame(rows, columns=["constrained", "source", "weight", "inhomogeneity"])
        df["constrained"] = df["constrained"].astype("int64")
        df["source"] = df["source"].astype("Int64")
        df["weight"] = df["weight"].astype("float64")
        df["inhomogeneity"] = df["inhomogeneity"].astype("float64")
        return df

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"ConstraintMatrix({len(self._lines)} lines, {state})"
