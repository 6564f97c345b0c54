"""Worker/copier assembly loop and a Laplace/Poisson consumer."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import nullcontext
from dataclasses import dataclass
from typing import Callable, Iterable, TypeVar

import numpy as np
from numpy.typing import NDArray
from scipy import sparse
from scipy.sparse.linalg import spsolve

from .constraints import ConstraintMatrix
from .datastructures import Cell
from .dof_tools import make_boundary_value_constraints, make_hanging_node_constraints
from .dofs import DoFHandler
from .errors import PreconditionError, UnsupportedOperation, check
from .geometry import tensor_gauss_rule

log = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

ScalarFunction = Callable[[NDArray[np.float64]], NDArray[np.float64]]


def run_work_stream(
    items: Iterable[T],
    worker: Callable[[T], R],
    copier: Callable[[R], None],
    n_workers: int = 1,
    lock=None,
) -> None:
    """Run ``worker`` on every item and feed the results to ``copier``.

    Workers may run concurrently in a thread pool; the copier always runs
    in the calling thread, one result at a time, in the order of ``items``.
    ``lock`` (typically the triangulation lock) is held for the whole loop
    so the mesh cannot change underneath the workers.
    """
    check(n_workers >= 1, PreconditionError, f"n_workers must be >= 1, got {n_workers}")
    with lock if lock is not None else nullcontext():
        if n_workers == 1:
            for item in items:
                copier(worker(item))
            return
        with ThreadPoolExecutor(max_workers=n_workers) as pool:
            for result in pool.map(worker, items):
                copier(result)


@dataclass
class CellContribution:
    """Local matrix and right-hand side of one cell, with its global DoFs."""

    dofs: NDArray[np.int64]
    matrix: NDArray[np.float64]
    rhs: NDArray[np.float64]


def _cartesian_extent(tria, cell: Cell) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Lower corner and edge lengths of an axis-aligned cell."""
    if tria.spacedim != tria.dim:
        raise UnsupportedOperation("Cartesian assembly needs cells of full space dimension")
    verts = tria.cell_vertices(cell)
    lower = verts[0]
    h = verts[-1] - verts[0]
    expected = lower + tria.geometry.unit_cell_vertices() * h
    if not np.allclose(verts, expected, atol=1e-12 * max(1.0, float(np.abs(h).max()))):
        raise UnsupportedOperation(f"Cell {cell.id} is not an axis-aligned box")
    return lower, h


def assemble_laplace_system(
    dof_handler: DoFHandler,
    rhs_function: ScalarFunction | None = None,
    quadrature_degree: int | None = None,
    n_workers: int = 1,
) -> tuple[sparse.csr_matrix, NDArray[np.float64]]:
    """Assemble ``A_ij = (grad phi_j, grad phi_i)`` and ``b_i = (f, phi_i)``.

    Cells must be axis-aligned boxes, so the mapping is a diagonal scaling
    and gradients scale with ``1 / h`` per direction.
    """
    dof_handler.check_current()
    fe, tria = dof_handler.fe, dof_handler.tria
    check(fe.n_components == 1, PreconditionError, f"Laplace assembly needs a scalar element, got {fe.name}")
    n_q = quadrature_degree if quadrature_degree is not None else fe.degree + 1
    q_points, q_weights = tensor_gauss_rule(tria.dim, n_q)
    values = fe.shape_values(q_points)
    grads = fe.shape_grads(q_points)

    def worker(item: tuple[Cell, NDArray[np.int64]]) -> CellContribution:
        cell, dofs = item
        lower, h = _cartesian_extent(tria, cell)
        JxW = q_weights * np.prod(h)
        real_grads = grads / h
        local_matrix = np.einsum("q,qid,qjd->ij", JxW, real_grads, real_grads)
        if rhs_function is None:
            local_rhs = np.zeros(dofs.shape[0])
        else:
            f = np.asarray(rhs_function(lower + q_points * h), dtype=np.float64)
            local_rhs = values.T @ (JxW * f)
        return CellContribution(dofs, local_matrix, local_rhs)

    rows, cols, data = [], [], []
    b = np.zeros(dof_handler.n_dofs)

    def copier(contribution: CellContribution) -> None:
        n = contribution.dofs.shape[0]
        rows.append(np.repeat(contribution.dofs, n))
        cols.append(np.tile(contribution.dofs, n))
        data.append(contribution.matrix.ravel())
        np.add.at(b, contribution.dofs, contribution.rhs)

    start = time.perf_counter()
    run_work_stream(dof_handler.active_cell_dofs(), worker, copier, n_workers, tria.lock)
    n = dof_handler.n_dofs
    A = sparse.csr_matrix(
        (np.concatenate(data), (np.concatenate(rows), np.concatenate(cols))),
        shape=(n, n),
    )
    log.info(f"Assembled Laplace system with {n} DoFs in {time.perf_counter() - start:.3f}s")
    return A, b


def _boundary_ids(tria) -> list[int]:
    ids = set()
    for cell in tria.active_cells():
        for f in range(tria.geometry.faces_per_cell):
            face = tria.face(cell, f)
            if face.at_boundary:
                ids.add(face.boundary_id)
    return sorted(ids)


def solve_poisson(
    dof_handler: DoFHandler,
    rhs_function: ScalarFunction | None,
    boundary_function: ScalarFunction,
    n_workers: int = 1,
) -> tuple[NDArray[np.float64], ConstraintMatrix]:
    """Solve ``-laplace u = f`` with ``u = g`` on the whole boundary.

    Hanging-node constraints are built first and boundary values only for
    DoFs they leave free. Returns the solution with all constraints
    distributed, and the closed constraint set.
    """
    constraints = ConstraintMatrix()
    make_hanging_node_constraints(dof_handler, constraints)
    make_boundary_value_constraints(
        dof_handler,
        constraints,
        {bid: boundary_function for bid in _boundary_ids(dof_handler.tria)},
    )
    constraints.close()

    A, b = assemble_laplace_system(dof_handler, rhs_function, n_workers=n_workers)
    A_condensed, b_condensed = constraints.condense(A, b)
    solution = np.asarray(spsolve(A_condensed.tocsc(), b_condensed), dtype=np.float64)
    constraints.distribute(solution)
    log.info(f"Solved Poisson problem: {dof_handler.n_dofs} DoFs, {len(constraints)} constraints")
    return solution, constraints
